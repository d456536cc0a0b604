"""Filesystem helpers for nvupgrader."""

import logging
import os
import sys

from rich.console import Console


class FileSystemService:
    """Encapsulates file side effects on the host."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def file_size(self, path: str) -> int:
        try:
            return os.path.getsize(path)
        except OSError:
            return 0

    def remove_file(self, path: str):
        if not os.path.exists(path):
            return
        try:
            os.remove(path)
            self.logger.debug("Removed file: %s", path)
        except OSError as exc:
            message = f"Warning: Could not remove {path}: {exc}"
            self.console.print(f"[yellow]{message}[/yellow]")
            self.logger.warning(message)
