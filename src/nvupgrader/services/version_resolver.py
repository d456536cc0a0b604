"""Driver version resolution and introspection."""

import re
from typing import List, Optional, Sequence

import requests

from nvupgrader.constants import DRIVER_BASE_URL
from nvupgrader.errors import InvalidVersionFormat, UpgraderError, VersionResolutionFailed
from nvupgrader.errors_catalog import actionable_error
from nvupgrader.models import Comparison, Version


class LatestPointerStrategy:
    """Reads the upstream ``latest.txt`` pointer file."""

    name = "latest-pointer"
    PATTERN = re.compile(r"^(\d+\.\d+\.\d+)")

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch(self, requests_module) -> Optional[Version]:
        response = requests_module.get(f"{self.base_url}/latest.txt", timeout=self.timeout)
        response.raise_for_status()
        first_line = (response.text or "").strip().splitlines()[:1]
        if not first_line:
            return None
        match = self.PATTERN.match(first_line[0].strip())
        return Version.parse(match.group(1)) if match else None


class DirectoryListingStrategy:
    """Picks the greatest version linked from the upstream directory index."""

    name = "directory-listing"
    PATTERN = re.compile(r'href="(\d+\.\d+\.\d+)')

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch(self, requests_module) -> Optional[Version]:
        response = requests_module.get(f"{self.base_url}/", timeout=self.timeout)
        response.raise_for_status()
        versions = [Version.parse(found) for found in self.PATTERN.findall(response.text or "")]
        return max(versions) if versions else None


class VersionResolver:
    """Resolves the desired version and reads installed versions from targets."""

    def __init__(
        self,
        logger,
        requests_module=requests,
        base_url: str = DRIVER_BASE_URL,
        strategies: Optional[Sequence] = None,
    ):
        self.logger = logger
        self.requests = requests_module
        self.base_url = base_url
        self.strategies: List = list(
            strategies
            if strategies is not None
            else [LatestPointerStrategy(base_url), DirectoryListingStrategy(base_url)]
        )

    def resolve(self, explicit: Optional[str] = None) -> Version:
        if explicit:
            return Version.parse(explicit)

        self.logger.info("Checking NVIDIA for latest version...")
        for strategy in self.strategies:
            try:
                found = strategy.fetch(self.requests)
            except self.requests.RequestException as exc:
                self.logger.warning("Version source %s failed: %s", strategy.name, exc)
                continue
            except InvalidVersionFormat as exc:
                self.logger.warning("Version source %s returned garbage: %s", strategy.name, exc)
                continue

            if found is not None:
                self.logger.info("Resolved latest version %s via %s", found, strategy.name)
                return found
            self.logger.info("Version source %s returned nothing, trying next.", strategy.name)

        raise VersionResolutionFailed(
            actionable_error("version_resolution_failed", base_url=self.base_url)
        )

    @staticmethod
    def compare(a: Version, b: Version) -> Comparison:
        return a.compare(b)

    def get_current_version(self, runtime) -> Optional[Version]:
        """Returns the installed driver version, or ``None`` when unknown."""
        try:
            raw = runtime.query_driver_version()
        except UpgraderError as exc:
            self.logger.debug("Driver introspection unavailable on %s: %s", runtime.target_id, exc)
            return None

        if not raw:
            return None
        try:
            return Version.parse(raw)
        except InvalidVersionFormat:
            self.logger.debug("Unparseable driver version on %s: %r", runtime.target_id, raw)
            return None
