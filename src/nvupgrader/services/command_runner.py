"""Subprocess execution service for nvupgrader."""

import subprocess
from typing import List, Optional

from nvupgrader.errors import PreconditionFailure, UpgraderError
from nvupgrader.errors_catalog import actionable_error


class CommandRunner:
    """Runs host commands with consistent error handling.

    Every command nvupgrader issues, including ``pct exec`` calls into
    containers, goes through :meth:`run` so failures surface as
    :class:`UpgraderError` subclasses.
    """

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
            )
        except FileNotFoundError as exc:
            raise PreconditionFailure(actionable_error("missing_command", command=cmd[0])) from exc
        except subprocess.TimeoutExpired as exc:
            raise UpgraderError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise UpgraderError(message)

        self.logger.debug(message)
        return result
