import logging
import subprocess
import uuid
from typing import Dict, Iterable, List, Optional

import requests
from rich.console import Console
from rich.prompt import Confirm

from .constants import (
    DEFAULT_AUDIT_DIR,
    DEFAULT_CACHE_DIR,
    DRIVER_BASE_URL,
    LXC_CONFIG_GLOB,
    MIN_ARTIFACT_BYTES,
)
from .errors import InstallFailed, UpgraderError, VersionMismatch
from .models import (
    Artifact,
    Comparison,
    FailurePolicy,
    Report,
    RunConfig,
    RunContext,
    Severity,
    Target,
    Version,
)
from .services.artifact_cache import ArtifactCache
from .services.audit import AuditLog
from .services.command_runner import CommandRunner
from .services.executor import UpgradeExecutor
from .services.filesystem import FileSystemService
from .services.inventory import TargetInventory
from .services.preflight import PreflightService
from .services.reconciler import WorkloadReconciler
from .services.report import ReportGenerator
from .services.target_runtime import ContainerRuntime, HostRuntime, TargetRuntime
from .services.version_resolver import VersionResolver

console = Console()
logger = logging.getLogger("nvupgrader")

RUN_TARGET_ID = "run"


class DriverUpgrader:
    def __init__(
        self,
        version: Optional[str] = None,
        dry_run: bool = False,
        auto_download: bool = True,
        containers: Optional[Iterable[str]] = None,
        skip_workload_restart: bool = False,
        continue_on_container_failure: bool = False,
        assume_yes: bool = False,
        audit_dir: str = DEFAULT_AUDIT_DIR,
        cache_dir: str = DEFAULT_CACHE_DIR,
        download_base_url: str = DRIVER_BASE_URL,
        download_timeout: float = 60.0,
        min_artifact_bytes: int = MIN_ARTIFACT_BYTES,
        settle_seconds: float = 3.0,
        lxc_config_glob: str = LXC_CONFIG_GLOB,
    ):
        self.requested_version = version
        self.config = RunConfig(
            dry_run=dry_run,
            auto_download=auto_download,
            manual_targets=tuple(containers) if containers else None,
            skip_workload_restart=skip_workload_restart,
            failure_policy=(
                FailurePolicy.CONTINUE if continue_on_container_failure else FailurePolicy.FAIL_FAST
            ),
        )
        self.assume_yes = assume_yes
        self.audit_dir = audit_dir

        self.run_context = RunContext(run_id=uuid.uuid4().hex[:10], dry_run=dry_run)
        self.report: Optional[Report] = None
        self.runtimes: Dict[str, TargetRuntime] = {}

        self.command_runner = CommandRunner(logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.audit_log = AuditLog(logger=logger, entries=self.run_context.log)
        self.preflight_service = PreflightService(logger=logger, console=console, run_cmd=self._run_cmd)
        self.version_resolver = VersionResolver(
            logger=logger,
            requests_module=requests,
            base_url=download_base_url,
        )
        self.artifact_cache = ArtifactCache(
            logger=logger,
            console=console,
            requests_module=requests,
            filesystem_service=self.filesystem_service,
            cache_dir=cache_dir,
            base_url=download_base_url,
            min_size_bytes=min_artifact_bytes,
            timeout=download_timeout,
            auto_download=auto_download,
        )
        self.inventory = TargetInventory(logger=logger, config_glob=lxc_config_glob)
        self.executor = UpgradeExecutor(
            resolver=self.version_resolver,
            audit_log=self.audit_log,
            logger=logger,
            console=console,
            settle_seconds=settle_seconds,
        )
        self.reconciler = WorkloadReconciler(audit_log=self.audit_log, logger=logger, console=console)
        self.report_generator = ReportGenerator(console=console)

    def _run_cmd(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
    ) -> subprocess.CompletedProcess:
        return self.command_runner.run(cmd, check=check, capture_output=capture_output)

    def build_runtime(self, target: Target) -> TargetRuntime:
        if target.is_host:
            return HostRuntime(target.id, self._run_cmd, logger)
        return ContainerRuntime(target.id, self._run_cmd, logger)

    def runtime_for(self, target: Target) -> TargetRuntime:
        if target.id not in self.runtimes:
            self.runtimes[target.id] = self.build_runtime(target)
        return self.runtimes[target.id]

    def validate_environment(self):
        self.preflight_service.check()

    def resolve_version(self) -> Version:
        desired = self.version_resolver.resolve(self.requested_version)
        if not self.requested_version:
            logger.info("Auto-detected: %s", desired)
        return desired

    def show_version_info(self, desired: Version):
        host = Target.host(desired)
        current = self.version_resolver.get_current_version(self.runtime_for(host))

        console.print("\n[bold cyan]====== Version Info ======[/bold cyan]")
        console.print(f"  Current:  [yellow]{current or 'unknown'}[/yellow]")
        console.print(f"  Target:   [green]{desired}[/green]\n")

        if current is None:
            console.print("[yellow]No driver detected on host; fresh install.[/yellow]")
            return
        comparison = self.version_resolver.compare(desired, current)
        if comparison is Comparison.EQUAL:
            console.print("[green]Already on target version.[/green]")
        elif comparison is Comparison.GREATER:
            console.print("[green]Upgrade available.[/green]")
        else:
            console.print("[yellow]Downgrade requested.[/yellow]")

    def confirm(self) -> bool:
        if self.assume_yes:
            return True
        return Confirm.ask("Continue?", console=console, default=False)

    def prepare_artifact(self, desired: Version) -> Artifact:
        return self.artifact_cache.ensure(desired, dry_run=self.config.dry_run)

    def discover_targets(self, desired: Version) -> List[Target]:
        targets = self.inventory.discover(desired, manual_override=self.config.manual_targets)
        for warning in self.inventory.warnings:
            self.audit_log.record("inventory", "discovery", "warning", str(warning), Severity.WARNING)
        for target in targets:
            self.audit_log.record(target.id, "discovered", target.kind.value)
        return targets

    def upgrade_targets(self):
        for target in self.run_context.targets:
            runtime = self.runtime_for(target)
            try:
                self.executor.execute(target, runtime, self.run_context)
            except (InstallFailed, VersionMismatch) as exc:
                if target.is_host or self.config.failure_policy is FailurePolicy.FAIL_FAST:
                    raise
                logger.error("Container %s failed; continuing with remaining containers: %s", target.id, exc)

    def reconcile_workloads(self):
        if self.config.skip_workload_restart:
            logger.info("Skipping container workload restart as requested.")
            return

        containers = self.run_context.containers
        if not containers:
            return
        console.print("\n[bold cyan]====== Restarting Container Workloads ======[/bold cyan]")
        for target in containers:
            self.reconciler.reconcile(target, self.runtime_for(target), dry_run=self.config.dry_run)

    def finish_report(self) -> Report:
        self.report = self.report_generator.summarize(self.run_context)
        self.report_generator.render(self.report, audit_file=self.audit_log.log_file)
        return self.report

    def run(self) -> int:
        exit_code = 1
        reached_targets = False

        try:
            logger.info("Starting nvupgrader...")
            self.audit_log.open_in(self.audit_dir)
            self.audit_log.record(
                RUN_TARGET_ID,
                "start",
                "started",
                f"run_id={self.run_context.run_id} dry_run={self.config.dry_run}",
            )

            self.validate_environment()
            desired = self.resolve_version()
            self.run_context.fix_desired_version(desired)
            self.show_version_info(desired)

            if not self.confirm():
                logger.info("Cancelled")
                self.audit_log.record(RUN_TARGET_ID, "confirm", "cancelled", "Declined at confirmation")
                exit_code = 0
                return exit_code

            self.run_context.artifact = self.prepare_artifact(desired)
            self.run_context.targets = self.discover_targets(desired)
            reached_targets = True

            self.upgrade_targets()
            self.reconcile_workloads()

            self.audit_log.record(RUN_TARGET_ID, "finish", "completed")
            logger.info("Complete")
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            self.audit_log.record(RUN_TARGET_ID, "finish", "cancelled", "Operation cancelled by user.")
            exit_code = 1
            return exit_code
        except UpgraderError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            self.audit_log.record(RUN_TARGET_ID, "finish", "aborted", str(exc), Severity.FATAL)
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            self.audit_log.record(RUN_TARGET_ID, "finish", "aborted", str(exc), Severity.FATAL)
            exit_code = 1
            return exit_code
        finally:
            if reached_targets:
                self.finish_report()
            if self.audit_log.log_file:
                logger.info("Audit log: %s", self.audit_log.log_file)
