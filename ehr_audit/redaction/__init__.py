"""PHI redaction for audit log details.

Modules:
- rules: Immutable, versioned redaction rule configuration (YAML)
- engine: Fail-closed redaction of nested structures
"""

from .engine import RedactionEngine, redact
from .rules import (
    DEFAULT_RULES,
    REDACTED,
    FieldRule,
    PatternRule,
    RedactionRuleSet,
    build_rules,
    load_rules,
)

__all__ = [
    "DEFAULT_RULES",
    "REDACTED",
    "FieldRule",
    "PatternRule",
    "RedactionEngine",
    "RedactionRuleSet",
    "build_rules",
    "load_rules",
    "redact",
]
