"""Actionable error catalog for nvupgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "not_root": {
        "what": "nvupgrader must run as root.",
        "next": "Re-run the command with `sudo` or from a root shell on the Proxmox host.",
    },
    "missing_command": {
        "what": "Required command not found: {command}",
        "next": "Install `{command}` on the host and make sure it is on PATH.",
    },
    "platform_undetected": {
        "what": "Proxmox VE does not appear to be running (`pve` service inactive).",
        "next": "Run nvupgrader on a Proxmox VE host with the `pve` service active.",
    },
    "invalid_version": {
        "what": "Invalid driver version `{version}`.",
        "next": "Use a dotted numeric version such as `550.127.05`.",
    },
    "version_resolution_failed": {
        "what": "Could not determine the latest driver version from {base_url}.",
        "next": "Check network access or pass the desired version explicitly.",
    },
    "artifact_missing": {
        "what": "Driver installer not found: {path}",
        "next": "Place the installer at that path or enable automatic downloads.",
    },
    "download_failed": {
        "what": "Download failed for {url}: {reason}",
        "next": "Verify that the version exists upstream and retry, or pre-seed the cache directory.",
    },
    "artifact_too_small": {
        "what": "Downloaded installer {path} is only {size} bytes and looks corrupted.",
        "next": "Delete the file and retry; check proxies or disk space if it keeps happening.",
    },
    "container_not_found": {
        "what": "Container {target_id} not found.",
        "next": "Check the container id with `pct list` or fix the container selection.",
    },
    "install_failed": {
        "what": "Driver install failed on {target_id}: {reason}",
        "next": "Inspect the installer log (/var/log/nvidia-installer.log) on {target_id} and retry.",
    },
    "version_mismatch": {
        "what": "Version mismatch on {target_id}: found {actual}, expected {expected}.",
        "next": "Do not continue the rollout; inspect {target_id} and the installer artifact first.",
    },
    "audit_dir_unwritable": {
        "what": "Cannot write the audit log in {path}: {reason}",
        "next": "Choose a writable directory with `--audit-dir`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
