import json
from datetime import datetime, timedelta, timezone

import pytest

from nvupgrader.errors import PreconditionFailure, UpgraderError
from nvupgrader.models import Severity, UpgradeRecord
from nvupgrader.services.audit import AuditLog


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def warning(self, msg, *args, **_kwargs):
        self.warnings.append(msg % args if args else msg)


def test_open_in_creates_timestamped_file(tmp_path):
    audit = AuditLog(logger=DummyLogger())

    path = audit.open_in(str(tmp_path / "logs"), now=datetime(2024, 11, 5, 14, 3, 9))

    assert path == str(tmp_path / "logs" / "nvidia-upgrade-20241105-140309.log")
    assert audit.log_file == path


def test_records_are_written_as_json_lines(tmp_path):
    audit = AuditLog(logger=DummyLogger())
    audit.record("run", "start", "started")
    audit.open_in(str(tmp_path), now=datetime(2024, 11, 5, 14, 3, 9))
    audit.record("101", "install", "failed", "installer exited 1", Severity.FATAL)

    lines = (tmp_path / "nvidia-upgrade-20241105-140309.log").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]

    assert [entry["action"] for entry in entries] == ["start", "install"]
    assert entries[1]["target_id"] == "101"
    assert entries[1]["severity"] == "fatal"
    assert entries[1]["simulated"] is False


def test_records_keep_time_order():
    audit = AuditLog(logger=DummyLogger())
    for action in ("pre_check", "uninstall", "install", "verify"):
        audit.record("host", action, "ok")

    timestamps = [record.timestamp for record in audit.records]
    assert timestamps == sorted(timestamps)
    assert [record.action for record in audit.for_target("host")] == ["pre_check", "uninstall", "install", "verify"]


def test_append_rejects_out_of_order_records():
    audit = AuditLog(logger=DummyLogger())
    first = audit.record("host", "pre_check", "ok")
    earlier = UpgradeRecord(
        timestamp=first.timestamp - timedelta(seconds=1),
        target_id="host",
        action="install",
        outcome="ok",
    )

    with pytest.raises(UpgraderError, match="time order"):
        audit.append(earlier)

    assert len(audit.records) == 1


def test_entries_are_shared_with_the_caller():
    entries = []
    audit = AuditLog(logger=DummyLogger(), entries=entries)

    audit.record("run", "start", "started")

    assert len(entries) == 1
    assert entries[0].timestamp.tzinfo is timezone.utc


def test_unwritable_audit_dir_is_a_precondition_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    audit = AuditLog(logger=DummyLogger())

    with pytest.raises(PreconditionFailure, match="Cannot write the audit log"):
        audit.open_in(str(blocker / "logs"))


def test_runs_in_the_same_second_get_separate_files(tmp_path):
    now = datetime(2024, 11, 5, 14, 3, 9)
    first = AuditLog(logger=DummyLogger())
    second = AuditLog(logger=DummyLogger())

    first_path = first.open_in(str(tmp_path), now=now)
    first.record("run", "start", "started")
    second_path = second.open_in(str(tmp_path), now=now)
    second.record("run", "start", "started")

    assert first_path == str(tmp_path / "nvidia-upgrade-20241105-140309.log")
    assert second_path == str(tmp_path / "nvidia-upgrade-20241105-140309-1.log")
    assert len((tmp_path / "nvidia-upgrade-20241105-140309.log").read_text(encoding="utf-8").splitlines()) == 1
