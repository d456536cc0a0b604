"""Upgrade target discovery."""

import glob
import os
import re
from typing import Iterable, List, Optional

from nvupgrader.constants import LXC_CONFIG_GLOB, PASSTHROUGH_MARKER
from nvupgrader.errors import DiscoveryWarning
from nvupgrader.models import Target, Version


class TargetInventory:
    """Builds the ordered target list: the host first, then containers."""

    def __init__(self, logger, config_glob: str = LXC_CONFIG_GLOB, marker_pattern: str = PASSTHROUGH_MARKER):
        self.logger = logger
        self.config_glob = config_glob
        self.marker = re.compile(marker_pattern)
        self.warnings: List[DiscoveryWarning] = []

    def discover(
        self,
        desired_version: Version,
        manual_override: Optional[Iterable[str]] = None,
    ) -> List[Target]:
        self.warnings = []
        targets = [Target.host(desired_version)]

        if manual_override is not None:
            container_ids = self._dedupe(manual_override)
            self.logger.info("Using manual containers: %s", " ".join(container_ids) or "<none>")
        else:
            container_ids = self.scan()
            if container_ids:
                self.logger.info("Found GPU containers: %s", " ".join(container_ids))
            else:
                warning = DiscoveryWarning("No GPU containers found; upgrading the host only.")
                self.warnings.append(warning)
                self.logger.warning(str(warning))

        targets.extend(Target.container(container_id, desired_version) for container_id in container_ids)
        return targets

    def scan(self) -> List[str]:
        self.logger.info("Auto-detecting GPU containers...")
        found: List[str] = []
        for conf_path in sorted(glob.glob(self.config_glob)):
            try:
                with open(conf_path, "r", encoding="utf-8", errors="replace") as file_obj:
                    content = file_obj.read()
            except OSError as exc:
                self.logger.warning("Could not read %s: %s", conf_path, exc)
                continue

            if not self.marker.search(content):
                continue
            container_id = os.path.splitext(os.path.basename(conf_path))[0]
            if container_id not in found:
                found.append(container_id)
        return found

    @staticmethod
    def _dedupe(container_ids: Iterable[str]) -> List[str]:
        ordered: List[str] = []
        for container_id in container_ids:
            clean_id = str(container_id).strip()
            if clean_id and clean_id not in ordered:
                ordered.append(clean_id)
        return ordered
