"""Unit tests for the ehr-audit command line interface."""

import json
import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest

from ehr_audit import AuditConfig, AuditLogger
from ehr_audit.cli import EXIT_OK, EXIT_USAGE, EXIT_VIOLATION, main

MOMENT = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def plain_environment(monkeypatch):
    """Keep the caller's audit settings out of the CLI."""
    for name in ("AUDIT_LOG_DIR", "AUDIT_STATE_KEY", "AUDIT_LOCK_TIMEOUT", "PHI_HASH_SALT"):
        monkeypatch.delenv(name, raising=False)


def populate(log_dir: str) -> None:
    with AuditLogger(AuditConfig(log_dir=log_dir)) as audit:
        audit.log("encounter", "READ", user_id=1, timestamp=MOMENT)
        audit.log("encounter", "UPDATE", user_id=2, timestamp=MOMENT)
        audit.log("vitals", "READ", user_id=1, timestamp=MOMENT)


class TestVerifyCommand:
    """Test 'ehr-audit verify'."""

    def test_valid_chain(self, capsys):
        """A valid chain should exit 0 and print the result."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)

            code = main(["verify", "encounter", "2024-03-01", "--log-dir", tmp_dir])

        output = json.loads(capsys.readouterr().out)
        assert code == EXIT_OK
        assert output["valid"] is True
        assert output["entries_verified"] == 2

    def test_tampered_chain(self, capsys):
        """A tampered chain should exit 1 and report the violation."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)
            path = Path(tmp_dir) / "encounter_2024-03-01.log"
            path.write_text(path.read_text().replace('"user_id":2', '"user_id":3'))

            code = main(["verify", "encounter", "2024-03-01", "--log-dir", tmp_dir])

        captured = capsys.readouterr()
        assert code == EXIT_VIOLATION
        assert json.loads(captured.out)["cause"] == "hash_mismatch"
        assert "INTEGRITY VIOLATION" in captured.err

    def test_missing_file(self, capsys):
        """A missing chain file is a violation."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            code = main(["verify", "encounter", "2024-03-01", "--log-dir", tmp_dir])

        assert code == EXIT_VIOLATION
        assert json.loads(capsys.readouterr().out)["cause"] == "missing_file"

    def test_log_dir_from_environment(self, capsys, monkeypatch):
        """The log directory should default to AUDIT_LOG_DIR."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)
            monkeypatch.setenv("AUDIT_LOG_DIR", tmp_dir)

            code = main(["verify", "vitals", "2024-03-01"])

        assert code == EXIT_OK
        capsys.readouterr()


class TestVerifyAllCommand:
    """Test 'ehr-audit verify-all'."""

    def test_all_valid(self, capsys):
        """All chains valid should exit 0."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)

            code = main(["verify-all", "--log-dir", tmp_dir])

        output = json.loads(capsys.readouterr().out)
        assert code == EXIT_OK
        assert output["files_verified"] == 2
        assert output["violations"] == 0

    def test_one_violation(self, capsys):
        """Any broken chain should exit 1."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)
            path = Path(tmp_dir) / "vitals_2024-03-01.log"
            path.write_text("{broken\n")

            code = main(["verify-all", "--log-dir", tmp_dir])

        output = json.loads(capsys.readouterr().out)
        assert code == EXIT_VIOLATION
        assert output["violations"] == 1

    def test_channel_filter(self, capsys):
        """--channel should restrict verification."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)

            main(["verify-all", "--channel", "vitals", "--log-dir", tmp_dir])

        output = json.loads(capsys.readouterr().out)
        assert [r["channel"] for r in output["results"]] == ["vitals"]


class TestStatsCommand:
    """Test 'ehr-audit stats'."""

    def test_stats(self, capsys):
        """Statistics should be printed as JSON."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            populate(tmp_dir)

            code = main(["stats", "encounter", "2024-03-01", "--log-dir", tmp_dir])

        output = json.loads(capsys.readouterr().out)
        assert code == EXIT_OK
        assert output["total_entries"] == 2
        assert output["by_operation"] == {"READ": 1, "UPDATE": 1}

    def test_stats_missing_file(self, capsys):
        """A missing file should print an error and exit 2."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            code = main(["stats", "encounter", "2024-03-01", "--log-dir", tmp_dir])

        output = json.loads(capsys.readouterr().out)
        assert code == EXIT_USAGE
        assert output == {"error": "Log file not found", "file": "encounter_2024-03-01.log"}


class TestUsageErrors:
    """Test argument and configuration errors."""

    def test_no_command(self, capsys):
        """Running without a command is a usage error."""
        assert main([]) == EXIT_USAGE
        capsys.readouterr()

    def test_invalid_date(self, capsys):
        """Malformed dates should be rejected."""
        assert main(["verify", "encounter", "03/01/2024"]) == EXIT_USAGE
        assert "invalid date" in capsys.readouterr().err

    def test_invalid_channel_name(self, capsys):
        """Channel names that could escape the log directory should be rejected."""
        assert main(["verify", "../etc", "2024-03-01"]) == EXIT_USAGE
        capsys.readouterr()

    def test_invalid_configuration(self, capsys, monkeypatch):
        """Invalid configuration should exit 2."""
        monkeypatch.setenv("AUDIT_LOCK_TIMEOUT", "soon")

        assert main(["verify-all", "--log-dir", "/nonexistent"]) == EXIT_USAGE
        assert "AUDIT_LOCK_TIMEOUT" in capsys.readouterr().err
