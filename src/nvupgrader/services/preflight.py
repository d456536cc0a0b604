"""Host precondition checks for nvupgrader."""

import os
import shutil
from typing import Callable, Iterable

from nvupgrader.constants import REQUIRED_COMMANDS
from nvupgrader.errors import PreconditionFailure
from nvupgrader.errors_catalog import actionable_error


class PreflightService:
    """Verifies privilege, tooling and platform before anything is touched."""

    def __init__(self, logger, console, run_cmd: Callable, required_commands: Iterable[str] = REQUIRED_COMMANDS):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.required_commands = tuple(required_commands)

    def check(self):
        self.console.print("[blue]Validating host environment...[/blue]")
        self.check_root()
        self.check_commands()
        self.check_platform()
        self.console.print("[green]Host environment OK.[/green]")

    def check_root(self):
        geteuid = getattr(os, "geteuid", None)
        if geteuid is None or geteuid() != 0:
            raise PreconditionFailure(actionable_error("not_root"))

    def check_commands(self):
        for command in self.required_commands:
            if shutil.which(command) is None:
                raise PreconditionFailure(actionable_error("missing_command", command=command))
        self.logger.info("Dependencies OK: %s", ", ".join(self.required_commands))

    def check_platform(self):
        result = self.run_cmd(["systemctl", "is-active", "--quiet", "pve"], check=False, capture_output=True)
        if result.returncode != 0:
            raise PreconditionFailure(actionable_error("platform_undetected"))
        self.logger.info("Proxmox OK")
