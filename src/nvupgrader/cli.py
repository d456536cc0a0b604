import logging
import os

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_AUDIT_DIR,
    DEFAULT_CACHE_DIR,
    DEFAULT_CONFIG_FILE,
    DRIVER_BASE_URL,
    MIN_ARTIFACT_BYTES,
)
from .core import DriverUpgrader, UpgraderError
from .services.config_loader import ConfigLoader, parse_bool, parse_container_ids


def _resolve_option(cli_value, env_values, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in env_values:
        return env_values[key]
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.argument("version", required=False)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Describe every action without touching the host or containers (env: DRY_RUN).",
)
@click.option(
    "--auto-download/--no-auto-download",
    default=None,
    help="Download the installer when it is not cached (env: AUTO_DOWNLOAD, default: on).",
)
@click.option(
    "--containers",
    required=False,
    help="Container ids to upgrade, comma or space separated; disables auto-detection (env: LXC_CONTAINERS).",
)
@click.option(
    "--skip-workload-restart",
    is_flag=True,
    default=None,
    help="Do not restart Docker/compose workloads in upgraded containers (env: SKIP_WORKLOAD_RESTART).",
)
@click.option(
    "--continue-on-container-failure",
    is_flag=True,
    default=None,
    help="Keep upgrading remaining containers after a container fails instead of stopping the run.",
)
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=None, help="Skip the confirmation prompt.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to a debug log file")
@click.option(
    "--audit-dir",
    required=False,
    type=click.Path(),
    help=f"Directory for the per-run audit log (default: {DEFAULT_AUDIT_DIR}).",
)
@click.option(
    "--cache-dir",
    required=False,
    type=click.Path(),
    help=f"Directory holding downloaded installers (default: {DEFAULT_CACHE_DIR}).",
)
@click.option(
    "--download-base-url",
    required=False,
    help=f"Base URL of the driver archive (default: {DRIVER_BASE_URL}).",
)
@click.option(
    "--download-timeout",
    required=False,
    type=float,
    default=None,
    help="HTTP download timeout in seconds.",
)
@click.option(
    "--min-artifact-bytes",
    required=False,
    type=int,
    default=None,
    help="Smallest installer size accepted as a complete download.",
)
def main(
    version,
    config,
    dry_run,
    auto_download,
    containers,
    skip_workload_restart,
    continue_on_container_failure,
    assume_yes,
    verbose,
    log_file,
    audit_dir,
    cache_dir,
    download_base_url,
    download_timeout,
    min_artifact_bytes,
):
    """Upgrade the NVIDIA driver on a Proxmox host and its GPU containers.

    VERSION defaults to the latest release published by NVIDIA.
    """
    logger = logging.getLogger("nvupgrader")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
        env_values = config_loader.load_environment(os.environ)

        version = _resolve_option(version, {}, config_values, "version")
        dry_run = parse_bool(
            _resolve_option(dry_run, env_values, config_values, "dry_run", default=False), "dry_run"
        )
        auto_download = parse_bool(
            _resolve_option(auto_download, env_values, config_values, "auto_download", default=True),
            "auto_download",
        )
        containers = parse_container_ids(
            _resolve_option(containers, env_values, config_values, "containers")
        )
        skip_workload_restart = parse_bool(
            _resolve_option(
                skip_workload_restart,
                env_values,
                config_values,
                "skip_workload_restart",
                default=False,
            ),
            "skip_workload_restart",
        )
        continue_on_container_failure = parse_bool(
            _resolve_option(
                continue_on_container_failure,
                {},
                config_values,
                "continue_on_container_failure",
                default=False,
            ),
            "continue_on_container_failure",
        )
        assume_yes = parse_bool(
            _resolve_option(assume_yes, {}, config_values, "assume_yes", default=False), "assume_yes"
        )
        verbose = parse_bool(_resolve_option(verbose, {}, config_values, "verbose", default=False), "verbose")
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    log_file = _resolve_option(log_file, {}, config_values, "log_file")
    audit_dir = _resolve_option(audit_dir, {}, config_values, "audit_dir", default=DEFAULT_AUDIT_DIR)
    cache_dir = _resolve_option(cache_dir, {}, config_values, "cache_dir", default=DEFAULT_CACHE_DIR)
    download_base_url = _resolve_option(
        download_base_url, {}, config_values, "download_base_url", default=DRIVER_BASE_URL
    )
    download_timeout = float(
        _resolve_option(download_timeout, {}, config_values, "download_timeout", default=60.0)
    )
    min_artifact_bytes = int(
        _resolve_option(min_artifact_bytes, {}, config_values, "min_artifact_bytes", default=MIN_ARTIFACT_BYTES)
    )

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    upgrader = DriverUpgrader(
        version=str(version) if version is not None else None,
        dry_run=dry_run,
        auto_download=auto_download,
        containers=containers,
        skip_workload_restart=skip_workload_restart,
        continue_on_container_failure=continue_on_container_failure,
        assume_yes=assume_yes,
        audit_dir=audit_dir,
        cache_dir=cache_dir,
        download_base_url=download_base_url,
        download_timeout=download_timeout,
        min_artifact_bytes=min_artifact_bytes,
    )

    raise SystemExit(upgrader.run())


if __name__ == "__main__":
    main()
