"""Runtime configuration for the audit logging core.

Configuration is resolved once at startup and passed explicitly to the
AuditLogger. Values come from constructor arguments or from environment
variables:

- AUDIT_LOG_DIR: Directory for chain files (default /var/log/ehr_audit)
- PHI_HASH_SALT: Static salt for one-way patient identifier hashing
- AUDIT_STATE_KEY: Fernet key used to encrypt chain checkpoints (optional)
- AUDIT_LOCK_TIMEOUT: Seconds to wait for a per-chain append lock
- AUDIT_REDACTION_RULES: Path to a redaction rules YAML file (optional)
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError

DEFAULT_LOG_DIR = "/var/log/ehr_audit"
DEFAULT_PHI_HASH_SALT = "ehr_audit_phi_salt_v1"
DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_USER_AGENT_MAX_LENGTH = 500


@dataclass(frozen=True)
class AuditConfig:
    """Audit logging configuration.

    Attributes:
        log_dir: Directory holding chain files and checkpoints
        phi_hash_salt: Static salt appended to identifiers before hashing
        state_key: Fernet key for checkpoint encryption, or None for plaintext
        lock_timeout_seconds: Maximum wait for a per-chain append lock
        user_agent_max_length: User agents are truncated to this length
        redaction_rules_path: Redaction rules file, or None for the default rules
    """

    log_dir: Path = Path(DEFAULT_LOG_DIR)
    phi_hash_salt: str = DEFAULT_PHI_HASH_SALT
    state_key: bytes | None = None
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT
    user_agent_max_length: int = DEFAULT_USER_AGENT_MAX_LENGTH
    redaction_rules_path: Path | None = None

    def __post_init__(self) -> None:
        """Normalize paths and validate numeric limits."""
        object.__setattr__(self, "log_dir", Path(self.log_dir))
        if self.redaction_rules_path is not None:
            object.__setattr__(self, "redaction_rules_path", Path(self.redaction_rules_path))
        if self.lock_timeout_seconds <= 0:
            raise ConfigurationError("lock_timeout_seconds", "must be positive")
        if self.user_agent_max_length <= 0:
            raise ConfigurationError("user_agent_max_length", "must be positive")
        if not self.phi_hash_salt:
            raise ConfigurationError("phi_hash_salt", "must not be empty")

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides: object
    ) -> "AuditConfig":
        """Build configuration from environment variables.

        Args:
            environ: Environment mapping (defaults to os.environ)
            **overrides: Explicit values that take precedence over the environment

        Returns:
            AuditConfig

        Raises:
            ConfigurationError: If a variable holds a malformed value
        """
        env = os.environ if environ is None else environ

        values: dict[str, object] = {
            "log_dir": Path(env.get("AUDIT_LOG_DIR", DEFAULT_LOG_DIR)),
            "phi_hash_salt": env.get("PHI_HASH_SALT", DEFAULT_PHI_HASH_SALT),
        }

        key_str = env.get("AUDIT_STATE_KEY", "")
        values["state_key"] = key_str.encode() if key_str else None

        timeout_str = env.get("AUDIT_LOCK_TIMEOUT")
        if timeout_str:
            try:
                values["lock_timeout_seconds"] = float(timeout_str)
            except ValueError:
                raise ConfigurationError("AUDIT_LOCK_TIMEOUT", "must be a number") from None

        rules_path = env.get("AUDIT_REDACTION_RULES")
        if rules_path:
            values["redaction_rules_path"] = Path(rules_path)

        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]
