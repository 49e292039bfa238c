"""Chain Hasher.

Links every entry to its predecessor in the same (channel, date) chain and
hands it to the log store. Appends to one chain are serialized by a
per-chain lock; different chains proceed in parallel.

Append sequence (under the chain lock):
1. Derive the running hash from the log file on first use (cold start),
   refusing the chain if the file contradicts its sidecar checkpoint
2. Compute the entry hash from the canonical entry and the running hash
3. Durably write the line (flush + fsync)
4. Advance the in-memory chain state
5. Record a best-effort sidecar checkpoint

A failed write leaves the state untouched and drops it, so the next append
re-derives it from whatever actually reached the file.
"""

import logging
import threading
from datetime import date

from ..config import DEFAULT_LOCK_TIMEOUT
from ..errors import ChainLockTimeout, ChainWriteError, CheckpointConflict
from ..models import ChainState, LogEntry
from .canonical import encode_line, entry_hash
from .state import ChainStateStore
from .store import LogStore

logger = logging.getLogger(__name__)
diagnostics = logging.getLogger("ehr_audit.diagnostics")

ChainKey = tuple[str, date]


class ChainHasher:
    """Serializes appends per chain and maintains running hashes."""

    def __init__(
        self,
        store: LogStore,
        state_store: ChainStateStore | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        """Initialize chain hasher.

        Args:
            store: Append-only log store
            state_store: Checkpoint store (None disables checkpoints)
            lock_timeout: Seconds to wait for a chain lock before failing
        """
        self.store = store
        self.state_store = state_store
        self.lock_timeout = lock_timeout
        self._registry_lock = threading.Lock()
        self._locks: dict[ChainKey, threading.Lock] = {}
        self._states: dict[ChainKey, ChainState] = {}
        self._latest_day: dict[str, date] = {}

    def append(self, channel: str, day: date, entry: LogEntry) -> LogEntry:
        """Hash an entry into its chain and persist it.

        Args:
            channel: Chain channel
            day: Chain UTC date (the entry's own date)
            entry: Redacted entry without hash

        Returns:
            The entry carrying its chain hash, as written

        Raises:
            ChainLockTimeout: If the chain lock is not acquired in time
            CheckpointConflict: If the log file holds less than its checkpoint recorded
            ChainWriteError: If the entry could not be durably written
            SerializationError: If the entry is not canonicalizable
        """
        key = (channel, day)
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ChainLockTimeout(channel, day.isoformat(), self.lock_timeout)
        try:
            state = self._states.get(key)
            if state is None:
                state = self._cold_start(channel, day)
                self._states[key] = state

            chain_hash = entry_hash(entry.to_dict(include_hash=False), state.running_hash)
            hashed = entry.with_hash(chain_hash)
            line = encode_line(hashed.to_dict())

            try:
                self.store.write(channel, day, line)
            except OSError as e:
                self._states.pop(key, None)
                raise ChainWriteError(channel, day.isoformat(), e.strerror or str(e)) from e

            state = state.advance(chain_hash)
            self._states[key] = state
            self._checkpoint(state)
        finally:
            lock.release()

        self._roll_over(channel, day)
        return hashed

    def current_state(self, channel: str, day: date) -> ChainState | None:
        """Return the in-memory state of a chain, if it has been loaded."""
        return self._states.get((channel, day))

    def close(self) -> None:
        """Close all open chain files and forget in-memory state.

        Must not race with append(); the owning logger stops writers first.
        """
        with self._registry_lock:
            self.store.close_all()
            self._states.clear()
            self._latest_day.clear()

    def _lock_for(self, key: ChainKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _cold_start(self, channel: str, day: date) -> ChainState:
        try:
            tail = self.store.recover_tail(channel, day)
        except OSError as e:
            raise ChainWriteError(channel, day.isoformat(), e.strerror or str(e)) from e

        state = ChainState(channel, day, tail.running_hash, tail.entry_count)
        if self.state_store is None:
            return state

        checkpoint = self.state_store.load(channel, day)
        if checkpoint is None:
            return state
        if checkpoint.entry_count > state.entry_count or (
            checkpoint.entry_count == state.entry_count
            and checkpoint.running_hash != state.running_hash
        ):
            diagnostics.critical(
                "Log file %s/%s contradicts its checkpoint (checkpoint %d entries, file %d); "
                "appends refused until the checkpoint is reviewed",
                channel,
                day.isoformat(),
                checkpoint.entry_count,
                state.entry_count,
                extra={"code": "E303", "channel": channel, "chain_date": day.isoformat()},
            )
            raise CheckpointConflict(
                channel, day.isoformat(), checkpoint.entry_count, state.entry_count
            )
        if checkpoint.running_hash != state.running_hash:
            # Checkpoint lags the file when the process died before recording it.
            logger.warning(
                "Checkpoint for %s/%s diverges from log file (checkpoint %d entries, file %d); "
                "continuing from log file",
                channel,
                day.isoformat(),
                checkpoint.entry_count,
                state.entry_count,
                extra={"channel": channel, "chain_date": day.isoformat()},
            )
        return state

    def _checkpoint(self, state: ChainState) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.save(state.channel, state.date, state.running_hash, state.entry_count)
        except OSError as e:
            logger.warning(
                "Checkpoint for %s/%s not written: %s",
                state.channel,
                state.date.isoformat(),
                e.strerror or e,
                extra={"channel": state.channel, "chain_date": state.date.isoformat()},
            )

    def _roll_over(self, channel: str, day: date) -> None:
        """Release the previous date's file once a channel moves to a newer date."""
        with self._registry_lock:
            previous = self._latest_day.get(channel)
            if previous is not None and day <= previous:
                return
            self._latest_day[channel] = day
            old_lock = self._locks.get((channel, previous)) if previous else None

        if previous is None or old_lock is None:
            return
        # Late entries for the old date may still be in flight.
        if not old_lock.acquire(timeout=self.lock_timeout):
            logger.warning("Could not release %s/%s after rollover", channel, previous.isoformat())
            return
        try:
            self.store.close(channel, previous)
            self._states.pop((channel, previous), None)
        finally:
            old_lock.release()
