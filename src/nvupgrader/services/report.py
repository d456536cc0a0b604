"""Final run summary derived from terminal target states."""

from typing import Dict, Iterable, List, Optional, Tuple

from nvupgrader.models import Report, RunContext, TargetKind, TargetState, UpgradeRecord

_Row = Tuple[str, TargetKind, TargetState, bool]


class ReportGenerator:
    """Summarizes reboot and restart obligations and failures."""

    def __init__(self, console=None):
        self.console = console

    def summarize(self, context: RunContext) -> Report:
        rows = [(target.id, target.kind, target.state, target.simulated) for target in context.targets]
        return self._derive(rows)

    def from_records(self, records: Iterable[UpgradeRecord]) -> Report:
        """Rebuilds the report from the audit log alone."""
        order: List[str] = []
        kinds: Dict[str, TargetKind] = {}
        states: Dict[str, TargetState] = {}
        simulated: Dict[str, bool] = {}

        for record in records:
            if record.action == "discovered":
                if record.target_id not in kinds:
                    order.append(record.target_id)
                kinds[record.target_id] = TargetKind(record.outcome)
                states.setdefault(record.target_id, TargetState.PENDING)
            elif record.action == "transition" and record.target_id in kinds:
                states[record.target_id] = TargetState(record.outcome)
                simulated[record.target_id] = record.simulated

        rows = [
            (target_id, kinds[target_id], states[target_id], simulated.get(target_id, False))
            for target_id in order
        ]
        return self._derive(rows)

    @staticmethod
    def _derive(rows: List[_Row]) -> Report:
        def ids(state: TargetState, kind: Optional[TargetKind] = None, real_only: bool = False):
            return tuple(
                target_id
                for target_id, target_kind, target_state, is_simulated in rows
                if target_state is state
                and (kind is None or target_kind is kind)
                and not (real_only and is_simulated)
            )

        return Report(
            host_needs_reboot=bool(ids(TargetState.SUCCEEDED, TargetKind.HOST, real_only=True)),
            containers_needing_workload_restart=ids(
                TargetState.SUCCEEDED, TargetKind.CONTAINER, real_only=True
            ),
            failed_targets=ids(TargetState.FAILED),
            skipped_targets=ids(TargetState.SKIPPED),
            pending_targets=ids(TargetState.PENDING),
        )

    def render(self, report: Report, audit_file: Optional[str] = None):
        if self.console is None:
            return

        self.console.print("\n[bold cyan]====== Post-Upgrade Status ======[/bold cyan]\n")

        if report.host_needs_reboot:
            self.console.print("[bold red]HOST NEEDS REBOOT[/bold red]")
            self.console.print("  New DKMS module requires reboot to load")
            self.console.print("  Command: reboot\n")

        if report.containers_needing_workload_restart:
            self.console.print("[bold yellow]CONTAINERS NEED WORKLOAD RESTART[/bold yellow]")
            for container_id in report.containers_needing_workload_restart:
                self.console.print(f"  - LXC {container_id} (GPU apps may need to reconnect)")
            self.console.print("")

        if report.failed_targets:
            self.console.print(f"[bold red]FAILED:[/bold red] {', '.join(report.failed_targets)}")
        if report.pending_targets:
            self.console.print(f"[yellow]Not reached:[/yellow] {', '.join(report.pending_targets)}")
        if report.skipped_targets:
            self.console.print(f"[dim]Already at target: {', '.join(report.skipped_targets)}[/dim]")

        if not report.host_needs_reboot and not report.containers_needing_workload_restart:
            self.console.print("[green]No reboot required![/green]")

        if audit_file:
            self.console.print(f"[cyan]Log: {audit_file}[/cyan]")
