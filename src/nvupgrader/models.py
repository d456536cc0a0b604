"""Shared domain models for nvupgrader."""

import functools
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from packaging import version as packaging_version

from .constants import HOST_TARGET_ID
from .errors import InvalidVersionFormat, UpgraderError
from .errors_catalog import actionable_error

_VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")


class Comparison(Enum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """Dotted driver version such as ``550.127.05``.

    ``parts`` drive ordering and equality; ``text`` keeps the spelling used
    upstream so file names and URLs round-trip unchanged.
    """

    parts: Tuple[int, ...]
    text: str

    @classmethod
    def parse(cls, value: str) -> "Version":
        clean_value = (value or "").strip()
        if not _VERSION_PATTERN.match(clean_value):
            raise InvalidVersionFormat(actionable_error("invalid_version", version=clean_value))
        return cls(parts=tuple(int(part) for part in clean_value.split(".")), text=clean_value)

    def compare(self, other: "Version") -> Comparison:
        # packaging zero-pads release segments, so 1.2 and 1.2.0 compare equal.
        left = packaging_version.Version(".".join(str(part) for part in self.parts))
        right = packaging_version.Version(".".join(str(part) for part in other.parts))
        if left < right:
            return Comparison.LESS
        if left > right:
            return Comparison.GREATER
        return Comparison.EQUAL

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) is Comparison.EQUAL

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) is Comparison.LESS

    def __hash__(self):
        parts = list(self.parts)
        while len(parts) > 1 and parts[-1] == 0:
            parts.pop()
        return hash(tuple(parts))

    def __str__(self):
        return self.text


class TargetKind(Enum):
    HOST = "host"
    CONTAINER = "container"


class TargetState(Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    TargetState.PENDING: {TargetState.SKIPPED, TargetState.RUNNING, TargetState.SUCCEEDED},
    TargetState.RUNNING: {TargetState.SUCCEEDED, TargetState.FAILED},
}


@dataclass
class Target:
    id: str
    kind: TargetKind
    desired_version: Version
    state: TargetState = TargetState.PENDING
    simulated: bool = False
    message: Optional[str] = None

    @classmethod
    def host(cls, desired_version: Version) -> "Target":
        return cls(id=HOST_TARGET_ID, kind=TargetKind.HOST, desired_version=desired_version)

    @classmethod
    def container(cls, container_id: str, desired_version: Version) -> "Target":
        return cls(id=str(container_id), kind=TargetKind.CONTAINER, desired_version=desired_version)

    @property
    def is_host(self) -> bool:
        return self.kind is TargetKind.HOST

    def transition(self, new_state: TargetState, message: Optional[str] = None, simulated: bool = False):
        allowed = _ALLOWED_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise UpgraderError(
                f"Illegal state transition for {self.id}: {self.state.value} -> {new_state.value}"
            )
        if new_state is TargetState.SUCCEEDED and self.state is TargetState.PENDING and not simulated:
            raise UpgraderError(f"Target {self.id} must run before it can succeed outside a dry run.")
        self.state = new_state
        self.simulated = simulated
        self.message = message


@dataclass(frozen=True)
class Artifact:
    version: Version
    location: str
    size_bytes: int
    validated: bool


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single sub-step with its declared severity."""

    action: str
    ok: bool
    severity: Severity = Severity.INFO
    message: str = ""


@dataclass(frozen=True)
class UpgradeRecord:
    timestamp: datetime
    target_id: str
    action: str
    outcome: str
    message: str = ""
    severity: Severity = Severity.INFO
    simulated: bool = False

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "target_id": self.target_id,
            "action": self.action,
            "outcome": self.outcome,
            "message": self.message,
            "severity": self.severity.value,
            "simulated": self.simulated,
        }


class FailurePolicy(Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"


@dataclass(frozen=True)
class RunConfig:
    """Toggles for one invocation."""

    dry_run: bool = False
    auto_download: bool = True
    manual_targets: Optional[Tuple[str, ...]] = None
    skip_workload_restart: bool = False
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST


@dataclass
class RunContext:
    """Single unit of state for one invocation, owned by the controller."""

    run_id: str
    dry_run: bool
    desired_version: Optional[Version] = None
    artifact: Optional[Artifact] = None
    targets: List[Target] = field(default_factory=list)
    log: List[UpgradeRecord] = field(default_factory=list)

    def fix_desired_version(self, desired: Version):
        if self.desired_version is not None and self.desired_version != desired:
            raise UpgraderError(
                f"Desired version already fixed at {self.desired_version}; refusing {desired}."
            )
        self.desired_version = desired

    @property
    def host(self) -> Optional[Target]:
        return next((target for target in self.targets if target.is_host), None)

    @property
    def containers(self) -> List[Target]:
        return [target for target in self.targets if not target.is_host]


@dataclass(frozen=True)
class Report:
    host_needs_reboot: bool
    containers_needing_workload_restart: Tuple[str, ...] = ()
    failed_targets: Tuple[str, ...] = ()
    skipped_targets: Tuple[str, ...] = ()
    pending_targets: Tuple[str, ...] = ()
