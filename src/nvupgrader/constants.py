"""Shared constants for nvupgrader."""

DRIVER_BASE_URL = "https://download.nvidia.com/XFree86/Linux-x86_64"
DRIVER_FILENAME_TEMPLATE = "NVIDIA-Linux-x86_64-{version}.run"

# Smaller installers are treated as truncated downloads.
MIN_ARTIFACT_BYTES = 300_000_000

DEFAULT_CACHE_DIR = "/root"
DEFAULT_AUDIT_DIR = "/var/log"
AUDIT_FILE_TEMPLATE = "nvidia-upgrade-{stamp}.log"
DEFAULT_CONFIG_FILE = ".nvupgrader.yml"

HOST_TARGET_ID = "host"
LXC_CONFIG_GLOB = "/etc/pve/nodes/*/lxc/*.conf"
PASSTHROUGH_MARKER = r"nvidia|cuda"
CONTAINER_STAGING_DIR = "/tmp"

REQUIRED_COMMANDS = ("pct", "dkms", "systemctl")
DRIVER_VERSION_QUERY = ["nvidia-smi", "--query-gpu=driver_version", "--format=csv,noheader"]

SCRIPT_MODE = 0o755
