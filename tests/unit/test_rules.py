"""Unit tests for redaction rule configuration loading.

Tests verify that rules load from YAML, fall back to defaults, reject
invalid configuration and stay immutable once built.
"""

import dataclasses
import tempfile
from pathlib import Path

import pytest
import yaml

from ehr_audit.errors import ConfigurationError
from ehr_audit.redaction.rules import (
    DEFAULT_RULES,
    DEFAULT_RULES_PATH,
    build_rules,
    load_rules,
)


class TestLoadRules:
    """Test loading rules from YAML files."""

    def test_default_file_loads(self):
        """The shipped configuration should load and match the built-in defaults."""
        rules = load_rules()

        assert rules.version == DEFAULT_RULES.version
        assert rules.field_names == DEFAULT_RULES.field_names
        expected = [r.name for r in DEFAULT_RULES.pattern_rules]
        assert [r.name for r in rules.pattern_rules] == expected

    def test_default_file_exists(self):
        """The default configuration should ship inside the package."""
        assert DEFAULT_RULES_PATH.name == "redaction_rules.yaml"
        assert DEFAULT_RULES_PATH.parent.name == "config"
        assert DEFAULT_RULES_PATH.parent.parent.name == "redaction"
        assert DEFAULT_RULES_PATH.is_file()

    def test_custom_file(self):
        """A custom rules file should be honored."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "rules.yaml"
            path.write_text(
                yaml.safe_dump(
                    {
                        "version": "custom-1",
                        "field_names": {"identity": ["Badge_Number"]},
                        "patterns": [{"name": "badge", "regex": r"B-\d{4}", "token": "[BADGE]"}],
                    }
                )
            )

            rules = load_rules(path)

        assert rules.version == "custom-1"
        assert rules.is_denied("badge_number")
        assert rules.pattern_rules[0].apply("id B-1234") == "id [BADGE]"

    def test_missing_explicit_file(self):
        """An explicit path that does not exist should raise ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_rules("/nonexistent/rules.yaml")

        assert exc_info.value.code == "E801"

    def test_invalid_yaml(self):
        """Unparseable YAML should raise ConfigurationError."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "rules.yaml"
            path.write_text("version: [unclosed\n")

            with pytest.raises(ConfigurationError):
                load_rules(path)


class TestBuildRules:
    """Test rule validation."""

    def test_missing_version(self):
        """Rules without a version should be rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            build_rules({"field_names": {}})

        assert "version" in str(exc_info.value)

    def test_invalid_regex(self):
        """Invalid regular expressions should be rejected."""
        with pytest.raises(ConfigurationError):
            build_rules(
                {"version": "1", "patterns": [{"name": "bad", "regex": "(", "token": "[X]"}]}
            )

    def test_empty_token(self):
        """Empty replacement tokens should be rejected."""
        with pytest.raises(ConfigurationError):
            build_rules({"version": "1", "patterns": [{"name": "p", "regex": "x", "token": ""}]})

    def test_incomplete_pattern(self):
        """Patterns missing a field should be rejected."""
        with pytest.raises(ConfigurationError):
            build_rules({"version": "1", "patterns": [{"name": "p"}]})

    def test_invalid_max_length(self):
        """Non-positive string limits should be rejected."""
        with pytest.raises(ConfigurationError):
            build_rules({"version": "1", "max_string_length": 0})

    def test_field_names_lowercased(self):
        """Field names should be normalized to lowercase."""
        rules = build_rules({"version": "1", "field_names": {"identity": ["MRN"]}})
        assert "mrn" in rules.field_names
        assert rules.is_denied("Mrn")


class TestRuleSetProperties:
    """Test immutability and fingerprinting."""

    def test_rule_set_frozen(self):
        """Rule sets should be immutable."""
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_RULES.version = "changed"  # type: ignore[misc]

    def test_rule_collections_immutable(self):
        """Rule collections should be tuples and frozensets."""
        assert isinstance(DEFAULT_RULES.field_rules, tuple)
        assert isinstance(DEFAULT_RULES.pattern_rules, tuple)
        assert isinstance(DEFAULT_RULES.field_names, frozenset)

    def test_fingerprint_stable(self):
        """Equal configuration should produce equal fingerprints."""
        a = build_rules({"version": "1", "field_names": {"x": ["a", "b"]}})
        b = build_rules({"version": "1", "field_names": {"x": ["b", "a"]}})
        assert a.fingerprint == b.fingerprint

    def test_fingerprint_changes_with_content(self):
        """Different rules should produce different fingerprints."""
        a = build_rules({"version": "1", "field_names": {"x": ["a"]}})
        b = build_rules({"version": "1", "field_names": {"x": ["a", "c"]}})
        assert a.fingerprint != b.fingerprint
