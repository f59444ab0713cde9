"""Persistent storage for allow-always tool decisions.

Stores allowed tools at two levels:
- Global: <state_dir>/allowed_tools.json (applies to every workdir)
- Workdir: <state_dir>/projects/{slug}/allowed_tools.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from claudekeeper.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

FILENAME = "allowed_tools.json"


def workdir_slug(workdir: str) -> str:
    """Directory name for a workdir (``/home/u/p`` -> ``-home-u-p``)."""
    return workdir.replace("/", "-").replace("\\", "-")


class PermissionStore:
    """Load and save allow-always tool decisions."""

    def __init__(self, state_dir: Path, workdir: str | None = None) -> None:
        self._global_path = state_dir / FILENAME
        self._project_path = (
            state_dir / "projects" / workdir_slug(workdir) / FILENAME
            if workdir else None
        )

    def load(self) -> set[str]:
        """Load all allowed tools (global + workdir merged)."""
        allowed: set[str] = set()
        allowed |= self._load_file(self._global_path)
        if self._project_path:
            allowed |= self._load_file(self._project_path)
        return allowed

    def is_allowed(self, tool_name: str) -> bool:
        return tool_name in self.load()

    def add_project(self, tool_name: str) -> None:
        """Add a tool to the workdir-level allow list."""
        if not self._project_path:
            # No workdir context, fall back to global
            self.add_global(tool_name)
            return
        self._add_to_file(self._project_path, tool_name)

    def add_global(self, tool_name: str) -> None:
        self._add_to_file(self._global_path, tool_name)

    @staticmethod
    def _load_file(path: Path) -> set[str]:
        if not path.exists():
            return set()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, list):
                return {str(name) for name in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return set()

    @staticmethod
    def _add_to_file(path: Path, tool_name: str) -> None:
        existing = PermissionStore._load_file(path)
        if tool_name in existing:
            return
        existing.add(tool_name)
        try:
            atomic_write_text(path, json.dumps(sorted(existing), indent=2) + "\n")
        except OSError:
            logger.warning("Failed to write %s", path)
