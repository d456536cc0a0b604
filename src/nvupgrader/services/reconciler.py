"""Best-effort restart of container workloads after a driver upgrade."""

import posixpath
import shlex
from typing import List

from nvupgrader.errors import UpgraderError
from nvupgrader.models import Severity, StepResult, Target, TargetKind, TargetState


class WorkloadReconciler:
    """Restarts Docker and compose projects inside upgraded containers.

    Failures are warnings only; a target's terminal state never changes here.
    """

    SEARCH_ROOTS = ("/opt", "/home", "/root")
    COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

    def __init__(self, audit_log, logger, console):
        self.audit = audit_log
        self.logger = logger
        self.console = console

    def reconcile(self, target: Target, runtime, dry_run: bool = False) -> List[StepResult]:
        if target.kind is not TargetKind.CONTAINER or target.state is not TargetState.SUCCEEDED:
            return []

        if dry_run or target.simulated:
            description = f"Would restart docker and compose projects in container {target.id}"
            self.console.print(f"[blue][DRY-RUN][/blue] {description}")
            self.audit.record(target.id, "restart_workloads", "simulated", description, simulated=True)
            return [StepResult(action="restart_workloads", ok=True, message=description)]

        if not runtime.is_running():
            message = f"Container {target.id} is not running; workloads left untouched."
            self.logger.warning(message)
            self.audit.record(target.id, "restart_workloads", "warning", message, Severity.WARNING)
            return [StepResult(action="restart_workloads", ok=False, severity=Severity.WARNING, message=message)]

        self.console.print(f"[blue]Restarting workloads in {target.id}...[/blue]")
        results = [
            self._attempt(
                target,
                "restart_docker",
                runtime,
                ["sh", "-c", "command -v docker >/dev/null 2>&1 || exit 0; systemctl restart docker"],
            )
        ]

        for compose_file in self.discover_compose_files(runtime):
            project_dir = posixpath.dirname(compose_file)
            quoted_dir = shlex.quote(project_dir)
            quoted_file = shlex.quote(compose_file)
            command = (
                f"cd {quoted_dir} && "
                f"(docker compose -f {quoted_file} up -d || docker-compose -f {quoted_file} up -d)"
            )
            results.append(self._attempt(target, f"compose_up:{project_dir}", runtime, ["sh", "-c", command]))

        if all(result.ok for result in results):
            self.console.print(f"[green]{target.id} workloads restarted.[/green]")
        return results

    def discover_compose_files(self, runtime) -> List[str]:
        name_clauses: List[str] = []
        for file_name in self.COMPOSE_FILE_NAMES:
            if name_clauses:
                name_clauses.append("-o")
            name_clauses.extend(["-name", file_name])

        try:
            # find exits non-zero when a search root is missing; keep whatever it printed.
            result = runtime.execute(
                ["find", *self.SEARCH_ROOTS, "-type", "f", "(", *name_clauses, ")"],
                check=False,
                capture_output=True,
            )
        except UpgraderError as exc:
            self.logger.warning("Could not search compose files in %s: %s", runtime.target_id, exc)
            return []

        found = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        return sorted(set(found))

    def _attempt(self, target: Target, action: str, runtime, args: List[str]) -> StepResult:
        try:
            runtime.execute(args, check=True, capture_output=True)
        except UpgraderError as exc:
            self.logger.warning("%s in %s failed: %s", action, target.id, exc)
            self.audit.record(target.id, action, "warning", str(exc), Severity.WARNING)
            return StepResult(action=action, ok=False, severity=Severity.WARNING, message=str(exc))

        self.audit.record(target.id, action, "ok")
        return StepResult(action=action, ok=True)
