"""Integrity Verifier.

Offline, read-only verification of (channel, date) chains. The verifier
streams a chain file line by line, recomputes every hash from the canonical
entry and the previous hash, and stops at the first failure. It never
repairs anything: a violation is a finding for a human investigator.

Causes reported in VerificationResult.cause:
- hash_mismatch: Stored hash differs from the recomputed one (modified,
  inserted, deleted or reordered entry)
- malformed_json: Line is not a JSON object
- missing_hash: Line has no string "hash" field
- truncated: File holds fewer entries than its checkpoint recorded
- checkpoint_mismatch: Hash at the checkpoint position differs from the checkpoint
- missing_file: No chain file exists for the requested channel and date
"""

import logging
from datetime import date
from pathlib import Path

from ..errors import SerializationError
from ..models import GENESIS_HASH, VerificationResult
from .canonical import decode_line, entry_hash
from .state import ChainStateStore
from .store import iter_log_files, log_file_name

logger = logging.getLogger(__name__)


def _as_date(day: date | str) -> date:
    if isinstance(day, date):
        return day
    return date.fromisoformat(day)


class IntegrityVerifier:
    """Verifies chain files against their hashes and checkpoints.

    Example:
        >>> verifier = IntegrityVerifier("/var/log/ehr_audit")
        >>> result = verifier.verify("encounter", "2024-03-01")
        >>> result.valid
        True
    """

    def __init__(self, log_dir: Path | str, state_key: bytes | None = None) -> None:
        """Initialize verifier.

        Args:
            log_dir: Directory holding the chain files
            state_key: Fernet key of the checkpoints, if they are encrypted
        """
        self.log_dir = Path(log_dir)
        self.state_store = ChainStateStore(self.log_dir, state_key)

    def verify(self, channel: str, day: date | str) -> VerificationResult:
        """Verify one chain file.

        Args:
            channel: Chain channel
            day: Chain UTC date (date or 'YYYY-MM-DD')

        Returns:
            VerificationResult describing the first failure, or success

        Raises:
            ValueError: If ``day`` is not a valid ISO date
        """
        day = _as_date(day)
        day_str = day.isoformat()
        path = self.log_dir / log_file_name(channel, day)

        if not path.is_file():
            return VerificationResult(
                valid=False,
                channel=channel,
                date=day_str,
                cause="missing_file",
                error=f"Log file not found: {path.name}",
            )

        checkpoint = self.state_store.load(channel, day)
        checkpoint_hash = GENESIS_HASH if checkpoint and checkpoint.entry_count == 0 else None
        verified = 0
        previous_hash = GENESIS_HASH
        partial_tail = False

        def failure(line: int, cause: str, error: str) -> VerificationResult:
            logger.warning(
                "Chain %s/%s failed verification at line %d: %s", channel, day_str, line, cause
            )
            return VerificationResult(
                valid=False,
                channel=channel,
                date=day_str,
                entries_verified=verified,
                final_hash=previous_hash,
                first_bad_line=line,
                cause=cause,
                error=error,
            )

        with open(path, "rb") as f:
            for line_number, raw in enumerate(f, start=1):
                if not raw.endswith(b"\n"):
                    partial_tail = True
                    break

                try:
                    data = decode_line(raw)
                except ValueError:
                    return failure(
                        line_number, "malformed_json", f"Line {line_number} is not a JSON object"
                    )

                stored_hash = data.get("hash")
                if not isinstance(stored_hash, str):
                    return failure(
                        line_number, "missing_hash", f"Line {line_number} has no hash field"
                    )

                try:
                    computed = entry_hash(data, previous_hash)
                except SerializationError:
                    return failure(
                        line_number, "malformed_json", f"Line {line_number} is not canonicalizable"
                    )

                if computed != stored_hash:
                    return failure(
                        line_number,
                        "hash_mismatch",
                        f"Line {line_number} does not chain to its predecessor",
                    )

                previous_hash = stored_hash
                verified += 1
                if checkpoint is not None and verified == checkpoint.entry_count:
                    checkpoint_hash = stored_hash

        if checkpoint is not None:
            if verified < checkpoint.entry_count:
                return failure(
                    verified + 1,
                    "truncated",
                    f"File has {verified} entries but {checkpoint.entry_count} were recorded",
                )
            if checkpoint_hash != checkpoint.running_hash:
                return failure(
                    checkpoint.entry_count,
                    "checkpoint_mismatch",
                    f"Hash at entry {checkpoint.entry_count} differs from the recorded checkpoint",
                )

        return VerificationResult(
            valid=True,
            channel=channel,
            date=day_str,
            entries_verified=verified,
            final_hash=previous_hash,
            partial_tail=partial_tail,
        )

    def verify_all(self, channel: str | None = None) -> list[VerificationResult]:
        """Verify every chain file in the log directory.

        Args:
            channel: Only verify chains of this channel

        Returns:
            One result per file, oldest first
        """
        return [self.verify(name, day) for name, day, _ in iter_log_files(self.log_dir, channel)]
