import pytest
from rich.console import Console

from nvupgrader.errors import InstallFailed, PreconditionFailure, UpgraderError, VersionMismatch
from nvupgrader.models import Artifact, RunContext, Severity, Target, TargetState, Version
from nvupgrader.services.audit import AuditLog
from nvupgrader.services import executor as executor_module
from nvupgrader.services.executor import UpgradeExecutor
from nvupgrader.services.version_resolver import VersionResolver

DESIRED = Version.parse("550.127.05")
ARTIFACT = Artifact(
    version=DESIRED,
    location="/root/NVIDIA-Linux-x86_64-550.127.05.run",
    size_bytes=400_000_000,
    validated=True,
)


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeRuntime:
    def __init__(self, target_id, installed="535.183.01", installs_version="550.127.05", reachable=True):
        self.target_id = target_id
        self.installed = installed
        self.installs_version = installs_version
        self.reachable = reachable
        self.prepare_error = None
        self.failures = {}
        self.mutations = []

    def prepare(self, dry_run=False):
        if self.prepare_error is not None:
            raise self.prepare_error
        return self.reachable

    def query_driver_version(self):
        return self.installed

    def stop_services(self):
        self._mutate("stop_services")

    def uninstall(self):
        self._mutate("uninstall")

    def transfer_artifact(self, artifact):
        self._mutate("transfer")
        return f"/tmp/{artifact.location.rsplit('/', 1)[-1]}"

    def install(self, installer_path):
        self._mutate("install")
        self.installed = self.installs_version

    def remove_installer(self, installer_path):
        self._mutate("cleanup")

    def _mutate(self, action):
        self.mutations.append(action)
        if action in self.failures:
            raise self.failures[action]


def _executor():
    audit = AuditLog(logger=DummyLogger())
    resolver = VersionResolver(logger=DummyLogger(), requests_module=None)
    executor = UpgradeExecutor(
        resolver=resolver,
        audit_log=audit,
        logger=DummyLogger(),
        console=Console(record=True),
        settle_seconds=0,
    )
    return executor, audit


def _context(dry_run=False, artifact=ARTIFACT):
    context = RunContext(run_id="test", dry_run=dry_run, artifact=artifact)
    context.fix_desired_version(DESIRED)
    return context


def _actions(audit, target_id):
    return [(record.action, record.outcome) for record in audit.for_target(target_id)]


def test_target_already_at_version_is_skipped_without_mutation():
    executor, audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101", installed="550.127.05")

    state = executor.execute(target, runtime, _context())

    assert state is TargetState.SKIPPED
    assert runtime.mutations == []
    assert _actions(audit, "101") == [("pre_check", "ok"), ("transition", "skipped")]


def test_skip_uses_numeric_equality():
    executor, _audit = _executor()
    target = Target.container("101", Version.parse("550.0"))
    runtime = FakeRuntime("101", installed="550")
    context = RunContext(run_id="test", dry_run=False, artifact=ARTIFACT)
    context.fix_desired_version(Version.parse("550.0"))

    assert executor.execute(target, runtime, context) is TargetState.SKIPPED


def test_host_upgrade_runs_steps_in_order_and_needs_reboot():
    executor, audit = _executor()
    target = Target.host(DESIRED)
    runtime = FakeRuntime("host")

    state = executor.execute(target, runtime, _context())

    assert state is TargetState.SUCCEEDED
    assert runtime.mutations == ["stop_services", "uninstall", "install"]
    assert _actions(audit, "host") == [
        ("pre_check", "ok"),
        ("transition", "running"),
        ("stop_services", "ok"),
        ("uninstall", "ok"),
        ("install", "ok"),
        ("verify", "ok"),
        ("transition", "succeeded"),
        ("obligation", "reboot"),
    ]


def test_container_upgrade_transfers_installs_and_cleans_up():
    executor, audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101")

    state = executor.execute(target, runtime, _context())

    assert state is TargetState.SUCCEEDED
    assert runtime.mutations == ["uninstall", "transfer", "install", "cleanup"]
    assert _actions(audit, "101")[-1] == ("obligation", "workload_restart")


def test_each_transition_writes_exactly_one_record():
    executor, audit = _executor()
    target = Target.container("101", DESIRED)

    executor.execute(target, FakeRuntime("101"), _context())

    transitions = [record.outcome for record in audit.for_target("101") if record.action == "transition"]
    assert transitions == ["running", "succeeded"]


def test_version_mismatch_fails_target_and_reraises():
    executor, audit = _executor()
    target = Target.host(DESIRED)
    runtime = FakeRuntime("host", installs_version="550.120")

    with pytest.raises(VersionMismatch) as excinfo:
        executor.execute(target, runtime, _context())

    assert target.state is TargetState.FAILED
    assert excinfo.value.expected == "550.127.05"
    assert excinfo.value.actual == "550.120"
    assert ("obligation", "reboot") not in _actions(audit, "host")
    failed = [record for record in audit.for_target("host") if record.outcome == "failed"]
    assert failed[-1].severity is Severity.FATAL


def test_unknown_version_after_install_is_a_mismatch():
    executor, _audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101", installs_version=None)

    with pytest.raises(VersionMismatch) as excinfo:
        executor.execute(target, runtime, _context())

    assert excinfo.value.actual == "unknown"
    assert runtime.mutations[-1] == "cleanup"


def test_best_effort_steps_only_warn():
    executor, audit = _executor()
    target = Target.host(DESIRED)
    runtime = FakeRuntime("host")
    runtime.failures["uninstall"] = UpgraderError("nvidia-installer exited 1")

    state = executor.execute(target, runtime, _context())

    assert state is TargetState.SUCCEEDED
    warnings = [record for record in audit.for_target("host") if record.severity is Severity.WARNING]
    assert [(record.action, record.outcome) for record in warnings] == [("uninstall", "warning")]


def test_install_failure_fails_target_without_verifying():
    executor, audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101")
    runtime.failures["install"] = InstallFailed("101", "installer exited 1")

    with pytest.raises(InstallFailed):
        executor.execute(target, runtime, _context())

    assert target.state is TargetState.FAILED
    assert "verify" not in [record.action for record in audit.for_target("101")]
    assert runtime.mutations[-1] == "cleanup"


def test_other_step_errors_are_reported_as_install_failures():
    executor, _audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101")
    runtime.failures["transfer"] = UpgraderError("pct push failed")

    with pytest.raises(InstallFailed) as excinfo:
        executor.execute(target, runtime, _context())

    assert excinfo.value.target_id == "101"
    assert target.state is TargetState.FAILED


def test_unvalidated_artifact_is_never_installed():
    executor, _audit = _executor()
    target = Target.host(DESIRED)
    runtime = FakeRuntime("host")
    placeholder = Artifact(version=DESIRED, location=ARTIFACT.location, size_bytes=0, validated=False)

    with pytest.raises(InstallFailed, match="not validated"):
        executor.execute(target, runtime, _context(artifact=placeholder))

    assert runtime.mutations == []
    assert target.state is TargetState.FAILED


def test_dry_run_simulates_without_mutation():
    executor, audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101")

    state = executor.execute(target, runtime, _context(dry_run=True))

    assert state is TargetState.SUCCEEDED
    assert target.simulated is True
    assert runtime.mutations == []
    simulated = [record.action for record in audit.for_target("101") if record.simulated]
    assert simulated == ["uninstall", "transfer", "install", "verify", "transition"]
    assert "obligation" not in [record.action for record in audit.for_target("101")]


def test_dry_run_on_stopped_container_treats_version_as_unknown():
    executor, audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = FakeRuntime("101", installed="550.127.05", reachable=False)

    state = executor.execute(target, runtime, _context(dry_run=True))

    assert state is TargetState.SUCCEEDED
    assert audit.for_target("101")[0].message == "current=unknown"


def test_pre_check_failure_leaves_target_pending():
    executor, audit = _executor()
    target = Target.container("999", DESIRED)
    runtime = FakeRuntime("999")
    runtime.prepare_error = PreconditionFailure("Container 999 not found.")

    with pytest.raises(PreconditionFailure):
        executor.execute(target, runtime, _context())

    assert target.state is TargetState.PENDING
    assert runtime.mutations == []
    assert _actions(audit, "999") == [("pre_check", "failed")]


def test_processed_target_cannot_be_executed_again():
    executor, _audit = _executor()
    target = Target.container("101", DESIRED)
    executor.execute(target, FakeRuntime("101"), _context())

    with pytest.raises(UpgraderError, match="already processed"):
        executor.execute(target, FakeRuntime("101"), _context())


def test_desired_version_must_be_fixed():
    executor, _audit = _executor()
    target = Target.container("101", DESIRED)

    with pytest.raises(UpgraderError, match="Desired version"):
        executor.execute(target, FakeRuntime("101"), RunContext(run_id="test", dry_run=False))


def test_failing_version_query_counts_as_unknown():
    class TimingOutRuntime(FakeRuntime):
        def query_driver_version(self):
            if not self.mutations:
                raise UpgraderError("Command timed out after 30s: nvidia-smi")
            return super().query_driver_version()

    executor, audit = _executor()
    target = Target.container("101", DESIRED)
    runtime = TimingOutRuntime("101")

    state = executor.execute(target, runtime, _context())

    assert state is TargetState.SUCCEEDED
    assert audit.for_target("101")[0].message == "current=unknown"


def test_interrupt_handler_is_restored_after_running(monkeypatch):
    installed = []
    original = object()

    def fake_signal(signum, handler):
        installed.append(handler)
        return original if len(installed) == 1 else handler

    monkeypatch.setattr(executor_module.signal, "signal", fake_signal)
    executor, _audit = _executor()

    executor.execute(Target.container("101", DESIRED), FakeRuntime("101"), _context())

    assert installed == [executor_module.signal.SIG_IGN, original]


def test_unknown_interrupt_handler_falls_back_to_default(monkeypatch):
    installed = []

    def fake_signal(signum, handler):
        installed.append(handler)
        return None

    monkeypatch.setattr(executor_module.signal, "signal", fake_signal)
    executor, _audit = _executor()

    executor.execute(Target.container("101", DESIRED), FakeRuntime("101"), _context())

    assert installed == [executor_module.signal.SIG_IGN, executor_module.signal.default_int_handler]
