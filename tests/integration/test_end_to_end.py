"""Integration tests for end-to-end audit trail workflows.

Tests drive complete clinical and dashboard workflows through the
AuditLogger, then tamper with, restart and verify the resulting chains.
"""

import json
import threading
from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from ehr_audit import AuditConfig, AuditLogger, RequestMetrics, request_context
from ehr_audit.audit import (
    create_cache_event,
    create_dashboard_load_event,
    create_encounter_created_event,
    create_encounter_signed_event,
    create_finalization_event,
    create_metric_request_event,
    create_phi_access_event,
    create_vitals_recorded_event,
)
from ehr_audit.cli import EXIT_OK, EXIT_VIOLATION, main
from ehr_audit.errors import CheckpointConflict

DAY = date(2024, 3, 1)
MORNING = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)
NEXT_DAY = datetime(2024, 3, 2, 0, 0, 1, tzinfo=UTC)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    """Empty log directory with a clean audit environment."""
    for name in ("AUDIT_LOG_DIR", "AUDIT_STATE_KEY", "AUDIT_LOCK_TIMEOUT", "PHI_HASH_SALT"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def chain_file(log_dir: Path, channel: str, day: str = "2024-03-01") -> Path:
    return log_dir / f"{channel}_{day}.log"


class TestClinicalWorkflow:
    """Tests for an encounter documented from creation to signing."""

    def test_encounter_lifecycle(self, log_dir):
        """A full encounter should produce verifiable, PHI-free chains."""
        config = AuditConfig(log_dir=log_dir, phi_hash_salt="clinic-salt")

        with AuditLogger(config) as audit, request_context("req-visit-1"):
            audit.log_event(
                create_encounter_created_event(
                    "E-500", "P-000123", {"patient_name": "Jane Doe"}, user_id=11
                )
            )
            audit.log_event(create_vitals_recorded_event("E-500", {"bp": "120/80", "pulse": 72}))
            audit.log_event(create_phi_access_event(11, "P-000123", "view", ["dob", "ssn"]))
            audit.log_event(create_finalization_event("E-500", {"warnings": []}, True))
            audit.log_event(create_encounter_signed_event("E-500", signed_by=11))

        results = AuditLogger(config).verify_all()
        assert {r.channel for r in results} == {
            "encounter",
            "vitals",
            "phi_access",
            "finalization",
            "signature",
        }
        assert all(r.valid for r in results)

        everything = "".join(p.read_text() for p in log_dir.glob("*.log"))
        assert "P-000123" not in everything
        assert "Jane Doe" not in everything
        assert "120/80" not in everything

        request_ids = {
            json.loads(line)["request_id"]
            for p in log_dir.glob("*.log")
            for line in p.read_text().splitlines()
        }
        assert request_ids == {"req-visit-1"}

    def test_dashboard_request_with_metrics(self, log_dir):
        """Dashboard loads should carry their performance summary."""
        metrics = RequestMetrics()
        metrics.record_query("SELECT COUNT(*) FROM encounters WHERE clinic_id = 3", 12.0)
        metrics.record_cache("dashboard:clinic:3", hit=True)

        with AuditLogger(AuditConfig(log_dir=log_dir)) as audit:
            entry = audit.log_event(create_dashboard_load_event("clinic", metrics))

        performance = entry.details["performance"]
        assert performance["query_count"] == 1
        assert performance["cache_hits"] == 1
        assert audit.verify("dashboard", entry.date).valid is True

    def test_dashboard_secrets_never_logged(self, log_dir):
        """Credential filters and SSNs in cache keys should not reach the chain."""
        with AuditLogger(AuditConfig(log_dir=log_dir)) as audit:
            audit.log_event(
                create_metric_request_event(
                    "admin", "visits", filters={"password": "hunter2", "token": "tok-abc"}
                )
            )
            audit.log_event(create_cache_event("dash_123-45-6789", hit=False))

        everything = "".join(p.read_text() for p in log_dir.glob("*.log"))
        assert "hunter2" not in everything
        assert "tok-abc" not in everything
        assert "123-45-6789" not in everything


class TestTamperDetection:
    """Tests for detecting modifications made after the fact."""

    def write_day(self, log_dir: Path, count: int = 5) -> None:
        with AuditLogger(AuditConfig(log_dir=log_dir)) as audit:
            for i in range(count):
                audit.log("encounter", "READ", user_id=i, timestamp=MORNING)

    def test_edit_detected_by_cli(self, log_dir, capsys):
        """Editing an entry should make the CLI exit with a violation."""
        self.write_day(log_dir)
        path = chain_file(log_dir, "encounter")
        lines = path.read_text().splitlines()
        entry = json.loads(lines[2])
        entry["user_id"] = 999
        lines[2] = json.dumps(entry, separators=(",", ":"))
        path.write_text("\n".join(lines) + "\n")

        code = main(["verify", "encounter", "2024-03-01", "--log-dir", str(log_dir)])

        output = json.loads(capsys.readouterr().out)
        assert code == EXIT_VIOLATION
        assert output["first_bad_line"] == 3

    def test_deleted_tail_detected(self, log_dir):
        """Removing the newest entries should be detected through the checkpoint."""
        self.write_day(log_dir)
        path = chain_file(log_dir, "encounter")
        lines = path.read_text().splitlines()
        path.write_text("\n".join(lines[:-2]) + "\n")

        result = AuditLogger(AuditConfig(log_dir=log_dir)).verify("encounter", DAY)

        assert result.valid is False
        assert result.cause == "truncated"

    def test_untouched_chain_passes_cli(self, log_dir, capsys):
        """An untouched directory should pass verify-all."""
        self.write_day(log_dir)

        code = main(["verify-all", "--log-dir", str(log_dir)])

        assert code == EXIT_OK
        assert json.loads(capsys.readouterr().out)["violations"] == 0


class TestRestartAndRollover:
    """Tests for chains that survive restarts and day boundaries."""

    def test_restart_continues_chain(self, log_dir):
        """A new process should continue the existing chain."""
        key = Fernet.generate_key()
        config = AuditConfig(log_dir=log_dir, state_key=key)

        with AuditLogger(config) as audit:
            audit.log("encounter", "READ", timestamp=MORNING)
        with AuditLogger(config) as audit:
            audit.log("encounter", "READ", timestamp=MORNING)
            result = audit.verify("encounter", DAY)

        assert result.valid is True
        assert result.entries_verified == 2

    def test_crash_fragment_repaired_on_restart(self, log_dir):
        """A torn final line should be discarded and the chain continued."""
        config = AuditConfig(log_dir=log_dir)
        with AuditLogger(config) as audit:
            audit.log("encounter", "READ", timestamp=MORNING)
        with open(chain_file(log_dir, "encounter"), "ab") as f:
            f.write(b'{"timestamp":"2024-03-01T08:00:00.000Z","lev')

        with AuditLogger(config) as audit:
            audit.log("encounter", "READ", timestamp=MORNING)
            result = audit.verify("encounter", DAY)

        assert result.valid is True
        assert result.entries_verified == 2
        assert result.partial_tail is False

    def test_restart_after_truncation_keeps_evidence(self, log_dir):
        """Entries removed while the service was down should stay detectable."""
        config = AuditConfig(log_dir=log_dir)
        with AuditLogger(config) as audit:
            for _ in range(5):
                audit.log("encounter", "READ", timestamp=MORNING)
        path = chain_file(log_dir, "encounter")
        lines = path.read_text().splitlines()
        path.write_text("\n".join(lines[:3]) + "\n")

        with AuditLogger(config) as audit:
            with pytest.raises(CheckpointConflict):
                audit.log("encounter", "READ", timestamp=MORNING)
            assert audit.try_log("encounter", "READ", timestamp=MORNING) is None
            assert audit.degraded_writes == 1
            result = audit.verify("encounter", DAY)

        assert len(path.read_text().splitlines()) == 3
        assert result.valid is False
        assert result.cause == "truncated"

    def test_midnight_rollover(self, log_dir):
        """Entries after midnight should start a new chain from genesis."""
        with AuditLogger(AuditConfig(log_dir=log_dir)) as audit:
            audit.log("encounter", "READ", timestamp=MORNING)
            audit.log("encounter", "READ", timestamp=NEXT_DAY)
            audit.log("encounter", "READ", timestamp=MORNING)

            first = audit.verify("encounter", "2024-03-01")
            second = audit.verify("encounter", "2024-03-02")

        assert first.entries_verified == 2
        assert second.entries_verified == 1
        assert first.valid and second.valid


class TestConcurrency:
    """Tests for concurrent writers in one process."""

    def test_threads_share_chain(self, log_dir):
        """Concurrent writers should produce one valid chain with every entry."""
        errors: list[Exception] = []

        with AuditLogger(AuditConfig(log_dir=log_dir)) as audit:

            def worker(worker_id: int) -> None:
                try:
                    for i in range(25):
                        channel = "encounter" if i % 2 else "vitals"
                        audit.log(channel, "READ", user_id=worker_id, timestamp=MORNING)
                except Exception as e:
                    errors.append(e)

            threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            results = {r.channel: r for r in audit.verify_all()}

        assert errors == []
        assert results["encounter"].valid and results["vitals"].valid
        assert results["encounter"].entries_verified == 8 * 12
        assert results["vitals"].entries_verified == 8 * 13
