"""Local cache for driver installer artifacts."""

import os

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from nvupgrader.constants import (
    DEFAULT_CACHE_DIR,
    DRIVER_BASE_URL,
    DRIVER_FILENAME_TEMPLATE,
    MIN_ARTIFACT_BYTES,
    SCRIPT_MODE,
)
from nvupgrader.errors import DownloadFailed, PreconditionFailure
from nvupgrader.errors_catalog import actionable_error
from nvupgrader.models import Artifact, Version


class ArtifactCache:
    """Guarantees a validated installer is present locally for a version."""

    def __init__(
        self,
        logger,
        console,
        requests_module,
        filesystem_service,
        cache_dir: str = DEFAULT_CACHE_DIR,
        base_url: str = DRIVER_BASE_URL,
        min_size_bytes: int = MIN_ARTIFACT_BYTES,
        timeout: float = 60.0,
        auto_download: bool = True,
    ):
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.filesystem = filesystem_service
        self.cache_dir = cache_dir
        self.base_url = base_url.rstrip("/")
        self.min_size_bytes = min_size_bytes
        self.timeout = timeout
        self.auto_download = auto_download

    @staticmethod
    def filename_for(version: Version) -> str:
        return DRIVER_FILENAME_TEMPLATE.format(version=version.text)

    def path_for(self, version: Version) -> str:
        return os.path.join(self.cache_dir, self.filename_for(version))

    def url_for(self, version: Version) -> str:
        return f"{self.base_url}/{version.text}/{self.filename_for(version)}"

    def ensure(self, version: Version, dry_run: bool = False) -> Artifact:
        target_path = self.path_for(version)

        if dry_run:
            self.logger.info("[DRY-RUN] Would ensure installer %s from %s", target_path, self.url_for(version))
            return Artifact(version=version, location=target_path, size_bytes=0, validated=False)

        if os.path.isfile(target_path):
            size = self.filesystem.file_size(target_path)
            if size > self.min_size_bytes:
                self.filesystem.set_permissions(target_path, SCRIPT_MODE)
                self.logger.info("Driver cached at %s", target_path)
                return Artifact(version=version, location=target_path, size_bytes=size, validated=True)

            self.logger.warning(
                "Cached installer %s is only %s bytes; discarding and fetching again.",
                target_path,
                size,
            )
            self.filesystem.remove_file(target_path)

        if not self.auto_download:
            raise PreconditionFailure(actionable_error("artifact_missing", path=target_path))

        url = self.url_for(version)
        self.download(url, target_path, description=f"Downloading driver {version}...")

        size = self.filesystem.file_size(target_path)
        if size <= self.min_size_bytes:
            self.filesystem.remove_file(target_path)
            raise DownloadFailed(actionable_error("artifact_too_small", path=target_path, size=str(size)))

        self.filesystem.set_permissions(target_path, SCRIPT_MODE)
        self.console.print(f"[green]Downloaded driver {version} ({size} bytes).[/green]")
        return Artifact(version=version, location=target_path, size_bytes=size, validated=True)

    def download(self, url: str, dest_path: str, description: str = "Downloading..."):
        self.logger.info("Downloading %s to %s", url, dest_path)
        partial_path = f"{dest_path}.part"

        try:
            os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
            with self.requests.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total_size = int(response.headers.get("Content-Length", 0))

                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    DownloadColumn(),
                    TimeElapsedColumn(),
                    console=self.console,
                ) as progress:
                    task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                    with open(partial_path, "wb") as file_obj:
                        for chunk in response.iter_content(chunk_size=1024 * 1024):
                            if not chunk:
                                continue
                            file_obj.write(chunk)
                            progress.update(task, advance=len(chunk))

            os.replace(partial_path, dest_path)
        except (self.requests.RequestException, OSError) as exc:
            self.filesystem.remove_file(partial_path)
            raise DownloadFailed(actionable_error("download_failed", url=url, reason=str(exc))) from exc
