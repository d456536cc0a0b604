"""Append-only audit log for one nvupgrader invocation."""

import json
import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from nvupgrader.constants import AUDIT_FILE_TEMPLATE
from nvupgrader.errors import PreconditionFailure, UpgraderError
from nvupgrader.errors_catalog import actionable_error
from nvupgrader.models import Severity, UpgradeRecord


class AuditLog:
    """Records every action and outcome, in order, as JSON lines.

    ``append`` is the only mutator. Records are kept in ``entries`` (usually
    the controller's ``RunContext.log``) and mirrored to ``log_file`` when one
    is configured.
    """

    def __init__(self, logger, log_file: Optional[str] = None, entries: Optional[List[UpgradeRecord]] = None):
        self.logger = logger
        self.log_file = log_file
        self._entries: List[UpgradeRecord] = entries if entries is not None else []

    def open_in(self, audit_dir: str, now: Optional[datetime] = None) -> str:
        """Creates this invocation's timestamped log file and mirrors records into it."""
        stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
        try:
            os.makedirs(audit_dir, exist_ok=True)
            log_file, file_obj = self._create_unique(
                os.path.join(audit_dir, AUDIT_FILE_TEMPLATE.format(stamp=stamp))
            )
            with file_obj:
                for record in self._entries:
                    file_obj.write(json.dumps(record.to_dict(), sort_keys=True))
                    file_obj.write("\n")
        except OSError as exc:
            raise PreconditionFailure(
                actionable_error("audit_dir_unwritable", path=audit_dir, reason=str(exc))
            ) from exc
        self.log_file = log_file
        return log_file

    @staticmethod
    def _create_unique(path: str):
        """Opens a new file at ``path``, adding -1, -2, ... when runs share a second."""
        root, ext = os.path.splitext(path)
        candidate = path
        suffix = 0
        while True:
            try:
                return candidate, open(candidate, "x", encoding="utf-8")
            except FileExistsError:
                suffix += 1
                candidate = f"{root}-{suffix}{ext}"

    @property
    def records(self) -> Tuple[UpgradeRecord, ...]:
        return tuple(self._entries)

    def append(self, record: UpgradeRecord) -> UpgradeRecord:
        if self._entries and record.timestamp < self._entries[-1].timestamp:
            raise UpgraderError(
                f"Audit records must be appended in time order ({record.action} on {record.target_id})."
            )
        self._entries.append(record)
        self._write(record)
        return record

    def record(
        self,
        target_id: str,
        action: str,
        outcome: str,
        message: str = "",
        severity: Severity = Severity.INFO,
        simulated: bool = False,
    ) -> UpgradeRecord:
        timestamp = datetime.now(timezone.utc)
        if self._entries and timestamp < self._entries[-1].timestamp:
            timestamp = self._entries[-1].timestamp
        return self.append(
            UpgradeRecord(
                timestamp=timestamp,
                target_id=target_id,
                action=action,
                outcome=outcome,
                message=message,
                severity=severity,
                simulated=simulated,
            )
        )

    def for_target(self, target_id: str) -> List[UpgradeRecord]:
        return [record for record in self._entries if record.target_id == target_id]

    def _write(self, record: UpgradeRecord):
        if not self.log_file:
            return
        try:
            with open(self.log_file, "a", encoding="utf-8") as file_obj:
                file_obj.write(json.dumps(record.to_dict(), sort_keys=True))
                file_obj.write("\n")
        except OSError as exc:
            self.logger.warning("Could not write audit log '%s': %s", self.log_file, exc)
