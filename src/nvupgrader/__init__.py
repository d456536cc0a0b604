"""
nvupgrader - NVIDIA driver upgrades for a Proxmox host and its LXC containers
"""

__version__ = "0.1.0"

from .core import DriverUpgrader
from .errors import UpgraderError

__all__ = ["DriverUpgrader", "UpgraderError"]
