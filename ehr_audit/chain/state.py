"""Sidecar chain checkpoints.

After every successful append the chain hasher records the running hash and
entry count of the chain in a hidden file next to the log:
``.{channel}_{YYYY-MM-DD}.state``. The checkpoint is never authoritative (the
log file is); it lets a cold start report divergence and lets the verifier
detect tail truncation, which a hash chain alone cannot reveal.

When a Fernet key is configured the checkpoint is encrypted, making it
opaque to anyone who can read the log directory.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from ..errors import ConfigurationError
from ..models import format_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """Last recorded position of a chain.

    Attributes:
        running_hash: Hash of the last appended entry
        entry_count: Number of entries at that point
        updated_at: When the checkpoint was written (ISO 8601 UTC)
    """

    running_hash: str
    entry_count: int
    updated_at: str = ""


def state_file_name(channel: str, day: date) -> str:
    """Return the checkpoint file name of a (channel, date) chain."""
    return f".{channel}_{day.isoformat()}.state"


class ChainStateStore:
    """Reads and writes per-chain checkpoints.

    Example:
        >>> store = ChainStateStore("/var/log/ehr_audit", key=Fernet.generate_key())
        >>> store.save("encounter", date(2024, 3, 1), "ab12...", 42)
        >>> store.load("encounter", date(2024, 3, 1)).entry_count
        42
    """

    def __init__(self, log_dir: Path | str, key: bytes | None = None) -> None:
        """Initialize checkpoint store.

        Args:
            log_dir: Directory holding the chain files
            key: Fernet key for checkpoint encryption, or None for plaintext JSON

        Raises:
            ConfigurationError: If the key is not a valid Fernet key
        """
        self.log_dir = Path(log_dir)
        self._fernet: Fernet | None = None
        if key:
            try:
                self._fernet = Fernet(key)
            except (ValueError, TypeError):
                raise ConfigurationError(
                    "AUDIT_STATE_KEY", "not a valid Fernet key (32 url-safe base64-encoded bytes)"
                ) from None

    @property
    def encrypted(self) -> bool:
        """Whether checkpoints are encrypted."""
        return self._fernet is not None

    def path_for(self, channel: str, day: date) -> Path:
        """Return the checkpoint path of a (channel, date) chain."""
        return self.log_dir / state_file_name(channel, day)

    def save(self, channel: str, day: date, running_hash: str, entry_count: int) -> None:
        """Atomically replace the checkpoint of a chain.

        Args:
            channel: Chain channel
            day: Chain UTC date
            running_hash: Hash of the last appended entry
            entry_count: Number of entries in the chain

        Raises:
            OSError: If the checkpoint cannot be written
        """
        payload = json.dumps(
            {
                "running_hash": running_hash,
                "entry_count": entry_count,
                "updated_at": format_timestamp(datetime.now(UTC)),
            }
        ).encode()
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)

        target = self.path_for(channel, day)
        fd, tmp_name = tempfile.mkstemp(prefix=target.name, suffix=".tmp", dir=self.log_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, channel: str, day: date) -> Checkpoint | None:
        """Read the checkpoint of a chain.

        Args:
            channel: Chain channel
            day: Chain UTC date

        Returns:
            Checkpoint, or None if it is missing or unreadable
        """
        path = self.path_for(channel, day)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read checkpoint %s: %s", path.name, e.strerror)
            return None

        try:
            if self._fernet is not None:
                raw = self._fernet.decrypt(raw)
            data = json.loads(raw)
            return Checkpoint(
                running_hash=str(data["running_hash"]),
                entry_count=int(data["entry_count"]),
                updated_at=str(data.get("updated_at", "")),
            )
        except InvalidToken:
            logger.warning("Checkpoint %s cannot be decrypted with the configured key", path.name)
        except (ValueError, KeyError, TypeError):
            logger.warning("Checkpoint %s is malformed", path.name)
        return None
