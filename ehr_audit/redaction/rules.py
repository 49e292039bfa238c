"""Redaction rule configuration.

Rules are loaded once from YAML into an immutable, versioned
``RedactionRuleSet`` so redaction behavior cannot drift while the process
runs. Two kinds of rule exist:

- Field-name rules: an exact key (case-insensitive) whose whole value is
  replaced with ``[REDACTED]``. Grouped by HIPAA category (identity,
  demographic, contact, address, insurance, other, credentials).
- Pattern rules: a regex applied to every remaining string value; matches
  are replaced with a typed token such as ``[SSN-REDACTED]`` so aggregate
  analysis can still see which kind of value was removed.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..errors import ConfigurationError

REDACTED = "[REDACTED]"

DEFAULT_RULES_PATH = Path(__file__).parent / "config" / "redaction_rules.yaml"


@dataclass(frozen=True)
class FieldRule:
    """Deny-listed key.

    Attributes:
        name: Lowercase key name
        category: HIPAA category the key belongs to
    """

    name: str
    category: str


@dataclass(frozen=True)
class PatternRule:
    """Regex rule replacing matches with a typed token.

    Attributes:
        name: Rule name (e.g., 'ssn')
        pattern: Compiled regex
        token: Replacement token (e.g., '[SSN-REDACTED]')
    """

    name: str
    pattern: re.Pattern[str]
    token: str

    def apply(self, value: str) -> str:
        """Replace every match in ``value`` with the token."""
        return self.pattern.sub(self.token, value)


@dataclass(frozen=True)
class RedactionRuleSet:
    """Immutable, versioned set of redaction rules.

    Attributes:
        version: Configuration version string
        field_rules: Deny-listed keys
        pattern_rules: Ordered pattern rules
        max_string_length: Maximum length of a string value after redaction
    """

    version: str
    field_rules: tuple[FieldRule, ...]
    pattern_rules: tuple[PatternRule, ...]
    max_string_length: int = 2000

    def __post_init__(self) -> None:
        """Build the lowercase key index used for O(1) lookups."""
        object.__setattr__(self, "_field_names", frozenset(r.name for r in self.field_rules))

    @property
    def field_names(self) -> frozenset[str]:
        """Lowercase deny-listed key names."""
        names: frozenset[str] = self.__dict__["_field_names"]
        return names

    def is_denied(self, key: str) -> bool:
        """Check whether a key is deny-listed (case-insensitive)."""
        return key.lower() in self.field_names

    @property
    def fingerprint(self) -> str:
        """SHA-256 of the rule content, for tracing which rules were active."""
        content = {
            "version": self.version,
            "fields": sorted(self.field_names),
            "patterns": [[r.name, r.pattern.pattern, r.token] for r in self.pattern_rules],
            "max_string_length": self.max_string_length,
        }
        return hashlib.sha256(json.dumps(content, sort_keys=True).encode()).hexdigest()


def _get_default_rules_config() -> dict[str, Any]:
    """Get default redaction rules (hardcoded fallback).

    Returns:
        Dictionary in the same shape as the shipped redaction_rules.yaml
    """
    return {
        "version": "2024.2",
        "field_names": {
            "identity": [
                "patient_name",
                "first_name",
                "last_name",
                "middle_name",
                "full_name",
                "ssn",
                "social_security",
                "social_security_number",
                "mrn",
                "medical_record_number",
                "patient_id",
                "drivers_license",
                "license_number",
            ],
            "demographic": ["dob", "date_of_birth", "birth_date"],
            "contact": [
                "phone",
                "phone_number",
                "mobile",
                "cell",
                "home_phone",
                "work_phone",
                "email",
                "email_address",
            ],
            "address": ["address", "street", "city", "zip", "zipcode", "postal_code"],
            "insurance": ["insurance_id", "policy_number", "group_number"],
            "other": ["employer_name", "company_name"],
            "credentials": ["password", "token", "secret", "api_key", "access_token"],
        },
        "patterns": [
            {
                "name": "ssn",
                "regex": r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)",
                "token": "[SSN-REDACTED]",
            },
            {
                "name": "phone",
                "regex": r"(?<!\d)\d{3}-\d{3}-\d{4}(?!\d)",
                "token": "[PHONE-REDACTED]",
            },
            {
                "name": "email",
                "regex": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
                "token": "[EMAIL-REDACTED]",
            },
            {
                "name": "date_mdy",
                "regex": r"\b(?:0[1-9]|1[0-2])[-/](?:0[1-9]|[12][0-9]|3[01])[-/](?:19|20)\d{2}\b",
                "token": "[DATE-REDACTED]",
            },
            {
                "name": "date_ymd",
                "regex": r"\b(?:19|20)\d{2}[-/](?:0[1-9]|1[0-2])[-/](?:0[1-9]|[12][0-9]|3[01])\b",
                "token": "[DATE-REDACTED]",
            },
        ],
        "max_string_length": 2000,
    }


def build_rules(config: dict[str, Any], source: str = "<defaults>") -> RedactionRuleSet:
    """Build an immutable rule set from a configuration dictionary.

    Args:
        config: Parsed configuration
        source: Where the configuration came from (for error messages)

    Returns:
        RedactionRuleSet

    Raises:
        ConfigurationError: If the configuration is incomplete or invalid
    """
    if not isinstance(config, dict):
        raise ConfigurationError(source, "top level must be a mapping")

    version = config.get("version")
    if not version:
        raise ConfigurationError(source, "missing 'version'")

    field_rules: list[FieldRule] = []
    categories = config.get("field_names") or {}
    if not isinstance(categories, dict):
        raise ConfigurationError(source, "'field_names' must map categories to key lists")
    for category, names in categories.items():
        for name in names or []:
            field_rules.append(FieldRule(name=str(name).lower(), category=str(category)))

    pattern_rules: list[PatternRule] = []
    for index, item in enumerate(config.get("patterns") or []):
        try:
            name = str(item["name"])
            regex = str(item["regex"])
            token = str(item["token"])
        except (KeyError, TypeError):
            raise ConfigurationError(
                source, f"pattern #{index} needs 'name', 'regex' and 'token'"
            ) from None
        if not token:
            raise ConfigurationError(source, f"pattern '{name}' has an empty token")
        try:
            compiled = re.compile(regex)
        except re.error as e:
            raise ConfigurationError(source, f"pattern '{name}' is not a valid regex: {e}") from e
        pattern_rules.append(PatternRule(name=name, pattern=compiled, token=token))

    max_length = config.get("max_string_length", 2000)
    if not isinstance(max_length, int) or isinstance(max_length, bool) or max_length <= 0:
        raise ConfigurationError(source, "'max_string_length' must be a positive integer")

    return RedactionRuleSet(
        version=str(version),
        field_rules=tuple(field_rules),
        pattern_rules=tuple(pattern_rules),
        max_string_length=max_length,
    )


def load_rules(config_path: Path | str | None = None) -> RedactionRuleSet:
    """Load redaction rules from YAML configuration.

    Args:
        config_path: Path to a rules file. When omitted the rules file shipped with
            the package (config/redaction_rules.yaml) is used, falling back to
            hardcoded defaults if that file is not present.

    Returns:
        Immutable RedactionRuleSet

    Raises:
        ConfigurationError: If an explicit path is missing or any file is invalid
    """
    if config_path is None:
        if not DEFAULT_RULES_PATH.exists():
            return build_rules(_get_default_rules_config())
        config_path = DEFAULT_RULES_PATH

    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(str(path), "file not found")

    try:
        with open(path, encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), f"invalid YAML: {e}") from e

    return build_rules(config, source=str(path))


DEFAULT_RULES = build_rules(_get_default_rules_config())
