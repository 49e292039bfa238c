"""PHI Redaction Engine.

Strips and masks Protected Health Information from arbitrary structured
input before it reaches an audit log. Two ordered passes are applied while
walking the structure:

1. Field-name pass: any deny-listed key has its whole value replaced with
   ``[REDACTED]``, whatever the value's type.
2. Pattern pass: every remaining string value is scanned against the ordered
   pattern rules (SSN, phone, email, two date formats) and matches are
   replaced with typed tokens.

String values are also stripped of control characters before the pattern
pass and truncated afterwards. Every step is idempotent, so
``redact(redact(x)) == redact(x)``.

The engine fails closed: a value it cannot safely traverse raises
RedactionError and the whole log call fails. It never returns partially
redacted output.
"""

import re
from collections.abc import Mapping
from typing import Any

from ..errors import RedactionError
from .rules import DEFAULT_RULES, REDACTED, RedactionRuleSet

CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")

# Nesting deeper than this is treated as malformed input.
MAX_DEPTH = 32


class RedactionEngine:
    """Stateless PHI redactor bound to one immutable rule set.

    Safe to share between threads.

    Example:
        >>> engine = RedactionEngine()
        >>> engine.redact({"ssn": "123-45-6789", "note": "call 555-123-4567"})
        {'ssn': '[REDACTED]', 'note': 'call [PHONE-REDACTED]'}
    """

    def __init__(self, rules: RedactionRuleSet = DEFAULT_RULES, max_depth: int = MAX_DEPTH) -> None:
        """Initialize redaction engine.

        Args:
            rules: Redaction rules to apply
            max_depth: Maximum nesting depth accepted
        """
        self.rules = rules
        self.max_depth = max_depth

    def redact(self, details: Mapping[str, Any], path: str = "details") -> dict[str, Any]:
        """Redact PHI from a details mapping.

        Args:
            details: Structured input (mappings, lists, tuples, scalars)
            path: Name of the root node used in error messages

        Returns:
            New dictionary with PHI removed; the input is not modified

        Raises:
            RedactionError: If any node cannot be safely traversed
        """
        if not isinstance(details, Mapping):
            raise RedactionError(path, f"expected a mapping, got {type(details).__name__}")
        result = self._redact_value(details, path, 0, set())
        redacted: dict[str, Any] = result
        return redacted

    def redact_string(self, value: str) -> str:
        """Apply control-character stripping, pattern rules and truncation to a string."""
        value = CONTROL_CHARACTERS.sub("", value)
        # Truncation can expose a new match at the cut, so repeat until stable.
        # Each round removes digits or '@' characters, which tokens never contain.
        while True:
            redacted = value
            for rule in self.rules.pattern_rules:
                redacted = rule.apply(redacted)
            redacted = redacted[: self.rules.max_string_length]
            if redacted == value:
                return redacted
            value = redacted

    def _redact_value(self, value: Any, path: str, depth: int, active: set[int]) -> Any:
        """Redact a single node.

        Args:
            value: Node to redact
            path: Location of the node
            depth: Current nesting depth
            active: ids of containers on the current traversal path

        Returns:
            Redacted copy of the node
        """
        # bool is a subclass of int, both pass through
        if value is None or isinstance(value, (bool, int, float)):
            return value

        if isinstance(value, str):
            return self.redact_string(value)

        if isinstance(value, (Mapping, list, tuple)):
            if depth >= self.max_depth:
                raise RedactionError(path, f"nesting deeper than {self.max_depth} levels")
            marker = id(value)
            if marker in active:
                raise RedactionError(path, "circular reference")
            active.add(marker)
            try:
                if isinstance(value, Mapping):
                    return self._redact_mapping(value, path, depth, active)
                return [
                    self._redact_value(item, f"{path}[{index}]", depth + 1, active)
                    for index, item in enumerate(value)
                ]
            finally:
                active.discard(marker)

        raise RedactionError(path, f"unsupported type {type(value).__name__}")

    def _redact_mapping(
        self, value: Mapping[Any, Any], path: str, depth: int, active: set[int]
    ) -> dict[str, Any]:
        """Redact a mapping: deny-listed keys first, then recurse into the rest."""
        redacted: dict[str, Any] = {}
        for raw_key, item in value.items():
            if isinstance(raw_key, bool) or not isinstance(raw_key, (str, int)):
                raise RedactionError(path, f"unsupported key type {type(raw_key).__name__}")
            key = str(raw_key)
            if key in redacted:
                raise RedactionError(f"{path}.{key}", "duplicate key after string conversion")

            if self.rules.is_denied(key):
                redacted[key] = REDACTED
                continue

            redacted[key] = self._redact_value(item, f"{path}.{key}", depth + 1, active)
        return redacted


_default_engine = RedactionEngine()


def redact(details: Mapping[str, Any], rules: RedactionRuleSet | None = None) -> dict[str, Any]:
    """Redact PHI from details (convenience function).

    Args:
        details: Structured input to redact
        rules: Optional rule set (defaults to the built-in rules)

    Returns:
        Redacted copy of ``details``

    Raises:
        RedactionError: If the input cannot be safely redacted
    """
    if rules is None:
        return _default_engine.redact(details)
    return RedactionEngine(rules).redact(details)
