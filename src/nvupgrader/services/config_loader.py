"""Configuration loader for nvupgrader."""

import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from nvupgrader.errors import UpgraderError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise UpgraderError(f"Invalid boolean value for {name}: {value!r}")


def parse_container_ids(value: Any) -> Optional[Tuple[str, ...]]:
    """Normalizes a container selection into an ordered, de-duplicated tuple.

    Accepts a YAML list or a string separated by commas and/or whitespace.
    An empty selection means "not set" and returns ``None``.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        raw_ids = [str(item).strip() for item in value]
    else:
        raw_ids = re.split(r"[,\s]+", str(value))

    ids = []
    for container_id in raw_ids:
        if container_id and container_id not in ids:
            ids.append(container_id)
    return tuple(ids) or None


class ConfigLoader:
    """Loads YAML configuration files and environment toggles for CLI defaults."""

    SUPPORTED_KEYS = {
        "version",
        "dry_run",
        "auto_download",
        "containers",
        "skip_workload_restart",
        "continue_on_container_failure",
        "assume_yes",
        "verbose",
        "log_file",
        "audit_dir",
        "cache_dir",
        "download_base_url",
        "download_timeout",
        "min_artifact_bytes",
    }

    ENVIRONMENT_TOGGLES = {
        "DRY_RUN": "dry_run",
        "AUTO_DOWNLOAD": "auto_download",
        "LXC_CONTAINERS": "containers",
        "SKIP_WORKLOAD_RESTART": "skip_workload_restart",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise UpgraderError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise UpgraderError(f"Unknown configuration keys: {unknown_list}")

        version = parsed.get("version")
        if version is not None and not isinstance(version, str):
            raise UpgraderError(
                f"Config value for version must be a quoted string, got {version!r}. "
                "Quote it exactly as published, e.g. version: '550.90'"
            )

        return parsed

    def load_environment(self, environ: Mapping[str, str]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for env_name, key in self.ENVIRONMENT_TOGGLES.items():
            if env_name not in environ:
                continue
            raw = environ[env_name]
            if key == "containers":
                containers = parse_container_ids(raw)
                if containers:
                    values[key] = containers
            else:
                values[key] = parse_bool(raw, env_name)
        return values
