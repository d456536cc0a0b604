"""Per-target upgrade state machine for nvupgrader."""

import contextlib
import signal
import threading
import time
from typing import Callable, Optional

from nvupgrader.errors import InstallFailed, PreconditionFailure, UpgraderError, VersionMismatch
from nvupgrader.errors_catalog import actionable_error
from nvupgrader.models import (
    Artifact,
    RunContext,
    Severity,
    StepResult,
    Target,
    TargetState,
    Version,
)


@contextlib.contextmanager
def _interrupts_ignored():
    """Ignores Ctrl-C while a target is being mutated."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous if previous is not None else signal.default_int_handler)


class UpgradeExecutor:
    """Drives one target from PENDING to a terminal state.

    Pre-check, then either skip, simulate (dry run) or run the mutating
    steps: stop services (host), uninstall, transfer (container), install and
    verify. Every transition and every sub-step is written to the audit log.
    ``InstallFailed`` and ``VersionMismatch`` leave the target FAILED and are
    re-raised so the controller can stop the line.
    """

    def __init__(self, resolver, audit_log, logger, console, settle_seconds: float = 3.0):
        self.resolver = resolver
        self.audit = audit_log
        self.logger = logger
        self.console = console
        self.settle_seconds = settle_seconds

    def execute(self, target: Target, runtime, context: RunContext) -> TargetState:
        if target.state is not TargetState.PENDING:
            raise UpgraderError(f"Target {target.id} was already processed ({target.state.value}).")

        desired = context.desired_version
        if desired is None:
            raise UpgraderError("Desired version must be resolved before executing targets.")

        label = "Host Driver" if target.is_host else f"Container {target.id}"
        self.console.print(f"\n[bold cyan]====== Upgrading {label} ======[/bold cyan]")

        current = self._pre_check(target, runtime, context.dry_run)
        self.console.print(f"  Current: [yellow]{current or 'unknown'}[/yellow]")
        self.console.print(f"  Target:  [green]{desired}[/green]")

        if current is not None and current == desired:
            self.console.print("[yellow]Already at target, skipping.[/yellow]")
            self._transition(target, TargetState.SKIPPED, f"Already at {desired}")
            return target.state

        if context.dry_run:
            self._simulate(target, context.artifact, desired)
            return target.state

        self._transition(target, TargetState.RUNNING, f"Upgrading from {current or 'unknown'} to {desired}")
        try:
            with _interrupts_ignored():
                self._run_steps(target, runtime, context.artifact, desired)
        except (InstallFailed, VersionMismatch) as exc:
            self._transition(target, TargetState.FAILED, str(exc))
            raise
        except UpgraderError as exc:
            failure = InstallFailed(
                target.id,
                actionable_error("install_failed", target_id=target.id, reason=str(exc)),
            )
            self._transition(target, TargetState.FAILED, str(failure))
            raise failure from exc

        self._transition(target, TargetState.SUCCEEDED, f"Upgraded to {desired}")
        self._record_obligation(target)
        return target.state

    def _pre_check(self, target: Target, runtime, dry_run: bool) -> Optional[Version]:
        try:
            reachable = runtime.prepare(dry_run=dry_run)
        except UpgraderError as exc:
            self.audit.record(target.id, "pre_check", "failed", str(exc), Severity.FATAL)
            if isinstance(exc, PreconditionFailure):
                raise
            raise PreconditionFailure(str(exc)) from exc

        current = self.resolver.get_current_version(runtime) if reachable else None
        self.audit.record(target.id, "pre_check", "ok", f"current={current or 'unknown'}")
        return current

    def _run_steps(self, target: Target, runtime, artifact: Optional[Artifact], desired: Version):
        if artifact is None or not artifact.validated:
            message = actionable_error(
                "install_failed", target_id=target.id, reason="installer artifact was not validated"
            )
            self.audit.record(target.id, "install", "failed", message, Severity.FATAL)
            raise InstallFailed(target.id, message)

        if target.is_host:
            self.logger.info("Stopping services...")
            self._best_effort(target, "stop_services", runtime.stop_services)

        self.logger.info("Uninstalling old driver on %s...", target.id)
        self._best_effort(target, "uninstall", runtime.uninstall)

        installer_path = artifact.location
        if not target.is_host:
            self.logger.info("Copying driver into container %s...", target.id)
            installer_path = self._required(target, "transfer", runtime.transfer_artifact, artifact)

        try:
            self.logger.info("Installing driver %s on %s...", desired, target.id)
            self._required(target, "install", runtime.install, installer_path)
            time.sleep(self.settle_seconds)
            self._verify(target, runtime, desired)
        finally:
            if not target.is_host:
                self._best_effort(target, "cleanup", runtime.remove_installer, installer_path)

    def _verify(self, target: Target, runtime, desired: Version):
        actual = self.resolver.get_current_version(runtime)
        if actual is None or actual != desired:
            actual_text = str(actual) if actual is not None else "unknown"
            message = actionable_error(
                "version_mismatch",
                target_id=target.id,
                actual=actual_text,
                expected=desired.text,
            )
            self.audit.record(target.id, "verify", "failed", message, Severity.FATAL)
            raise VersionMismatch(target.id, desired.text, actual_text, message)

        self.audit.record(target.id, "verify", "ok", f"installed={actual}")
        self.console.print(f"[green]{target.id} upgraded to {actual}.[/green]")

    def _simulate(self, target: Target, artifact: Optional[Artifact], desired: Version):
        location = artifact.location if artifact else "<installer>"
        steps = []
        if target.is_host:
            steps.append(("stop_services", "Would stop docker on the host"))
        steps.append(("uninstall", f"Would uninstall the current driver on {target.id}"))
        if target.is_host:
            steps.append(("install", f"Would run {location} with persistent kernel-level (DKMS) registration"))
        else:
            steps.append(("transfer", f"Would push {location} into container {target.id}"))
            steps.append(("install", f"Would run {location} userspace-only (no kernel module)"))
        steps.append(("verify", f"Would verify the installed version equals {desired}"))

        for action, description in steps:
            self.console.print(f"[blue][DRY-RUN][/blue] {description}")
            self.audit.record(target.id, action, "simulated", description, simulated=True)

        self._transition(target, TargetState.SUCCEEDED, f"Simulated upgrade to {desired}", simulated=True)

    def _required(self, target: Target, action: str, callback: Callable, *args):
        try:
            result = callback(*args)
        except UpgraderError as exc:
            self.audit.record(target.id, action, "failed", str(exc), Severity.FATAL)
            raise
        self.audit.record(target.id, action, "ok")
        return result

    def _best_effort(self, target: Target, action: str, callback: Callable, *args) -> StepResult:
        try:
            callback(*args)
        except UpgraderError as exc:
            self.logger.warning("%s on %s failed (continuing): %s", action, target.id, exc)
            self.audit.record(target.id, action, "warning", str(exc), Severity.WARNING)
            return StepResult(action=action, ok=False, severity=Severity.WARNING, message=str(exc))

        self.audit.record(target.id, action, "ok")
        return StepResult(action=action, ok=True)

    def _transition(self, target: Target, new_state: TargetState, message: str = "", simulated: bool = False):
        target.transition(new_state, message=message, simulated=simulated)
        severity = Severity.FATAL if new_state is TargetState.FAILED else Severity.INFO
        self.audit.record(target.id, "transition", new_state.value, message, severity, simulated)

    def _record_obligation(self, target: Target):
        if target.is_host:
            self.console.print("[yellow]Host needs reboot for the DKMS module.[/yellow]")
            self.audit.record(target.id, "obligation", "reboot", "New DKMS module loads after reboot")
        else:
            self.console.print(f"[yellow]Container {target.id} needs workload restart.[/yellow]")
            self.audit.record(target.id, "obligation", "workload_restart", "GPU workloads must reconnect")
