"""Host and container capability wrappers for nvupgrader."""

import os
import shlex
import shutil
import time
from typing import Callable, List, Optional

from nvupgrader.constants import CONTAINER_STAGING_DIR, DRIVER_VERSION_QUERY
from nvupgrader.errors import InstallFailed, PreconditionFailure, UpgraderError
from nvupgrader.errors_catalog import actionable_error
from nvupgrader.models import Artifact, TargetKind


class TargetRuntime:
    """Capabilities the executor needs from one execution context."""

    kind: TargetKind

    def __init__(self, target_id: str, run_cmd: Callable, logger):
        self.target_id = target_id
        self.run_cmd = run_cmd
        self.logger = logger

    def execute(self, args: List[str], check: bool = True, capture_output: bool = True):
        raise NotImplementedError

    def prepare(self, dry_run: bool = False) -> bool:
        """Makes the target introspectable; returns False if it is not."""
        return True

    def is_running(self) -> bool:
        return True

    def query_driver_version(self) -> Optional[str]:
        result = self.execute(list(DRIVER_VERSION_QUERY), check=False, capture_output=True)
        if result.returncode != 0:
            return None
        lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        return lines[0] if lines else None

    def stop_services(self):
        return None

    def uninstall(self):
        raise NotImplementedError

    def transfer_artifact(self, artifact: Artifact) -> str:
        raise NotImplementedError

    def install(self, installer_path: str):
        raise NotImplementedError

    def remove_installer(self, installer_path: str):
        return None

    def _install_error(self, exc: UpgraderError) -> InstallFailed:
        return InstallFailed(
            self.target_id,
            actionable_error("install_failed", target_id=self.target_id, reason=str(exc)),
        )


class HostRuntime(TargetRuntime):
    """The Proxmox host: owns the kernel module, registered through DKMS."""

    kind = TargetKind.HOST
    INSTALL_FLAGS = ("--silent", "--dkms", "--no-questions", "--no-x-check")

    def execute(self, args: List[str], check: bool = True, capture_output: bool = True):
        return self.run_cmd(args, check=check, capture_output=capture_output)

    def stop_services(self):
        self.execute(["systemctl", "stop", "docker"])

    def uninstall(self):
        if shutil.which("nvidia-installer") is None:
            self.logger.info("No nvidia-installer on host; nothing to uninstall.")
        else:
            self.execute(["nvidia-installer", "--uninstall", "--silent", "--no-questions"])

        self.logger.info("Cleaning DKMS...")
        status = self.execute(["dkms", "status"], check=False)
        for module in self.registered_dkms_modules(status.stdout or ""):
            result = self.execute(["dkms", "remove", module, "--all"], check=False)
            if result.returncode != 0:
                self.logger.warning("Could not remove DKMS module %s", module)

    @staticmethod
    def registered_dkms_modules(dkms_status: str) -> List[str]:
        modules: List[str] = []
        for line in dkms_status.splitlines():
            if "nvidia" not in line:
                continue
            module = line.split(",")[0].strip()
            if module and module not in modules:
                modules.append(module)
        return sorted(modules)

    def transfer_artifact(self, artifact: Artifact) -> str:
        return artifact.location

    def install(self, installer_path: str):
        try:
            self.execute([installer_path, *self.INSTALL_FLAGS])
        except UpgraderError as exc:
            raise self._install_error(exc) from exc


class ContainerRuntime(TargetRuntime):
    """An LXC container driven through the ``pct`` bridge; userspace only."""

    kind = TargetKind.CONTAINER
    INSTALL_FLAGS = (
        "--silent",
        "--no-kernel-module",
        "--no-questions",
        "--no-x-check",
        "--no-search-path",
        "--accept-license",
    )

    def __init__(self, target_id: str, run_cmd: Callable, logger, start_wait_seconds: float = 5.0):
        super().__init__(target_id, run_cmd, logger)
        self.start_wait_seconds = start_wait_seconds

    def execute(self, args: List[str], check: bool = True, capture_output: bool = True):
        return self.run_cmd(
            ["pct", "exec", self.target_id, "--", *args],
            check=check,
            capture_output=capture_output,
        )

    def exists(self) -> bool:
        result = self.run_cmd(["pct", "status", self.target_id], check=False, capture_output=True)
        return result.returncode == 0

    def is_running(self) -> bool:
        result = self.run_cmd(["pct", "status", self.target_id], check=False, capture_output=True)
        return result.returncode == 0 and "running" in (result.stdout or "")

    def start(self):
        self.run_cmd(["pct", "start", self.target_id], check=True, capture_output=True)

    def prepare(self, dry_run: bool = False) -> bool:
        if not self.exists():
            raise PreconditionFailure(actionable_error("container_not_found", target_id=self.target_id))
        if self.is_running():
            return True
        if dry_run:
            self.logger.info("[DRY-RUN] Container %s is stopped; would start it.", self.target_id)
            return False

        self.logger.info("Starting container %s...", self.target_id)
        self.start()
        time.sleep(self.start_wait_seconds)
        return True

    def uninstall(self):
        self.execute(
            [
                "sh",
                "-c",
                "command -v nvidia-installer >/dev/null 2>&1 || exit 0; "
                "nvidia-installer --uninstall --silent --no-questions",
            ]
        )

    def staging_path(self, artifact: Artifact) -> str:
        return f"{CONTAINER_STAGING_DIR}/{os.path.basename(artifact.location)}"

    def transfer_artifact(self, artifact: Artifact) -> str:
        remote_path = self.staging_path(artifact)
        try:
            self.run_cmd(
                ["pct", "push", self.target_id, artifact.location, remote_path],
                check=True,
                capture_output=True,
            )
        except UpgraderError as exc:
            raise self._install_error(exc) from exc
        return remote_path

    def install(self, installer_path: str):
        quoted = shlex.quote(installer_path)
        command = f"chmod +x {quoted} && {quoted} {' '.join(self.INSTALL_FLAGS)}"
        try:
            self.execute(["sh", "-c", command])
        except UpgraderError as exc:
            raise self._install_error(exc) from exc

    def remove_installer(self, installer_path: str):
        self.execute(["rm", "-f", installer_path])
