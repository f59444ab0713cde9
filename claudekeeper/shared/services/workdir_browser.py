"""File browsing restricted to workdirs that have sessions."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 1024 * 1024

# Signature: def known_workdirs() -> set[str]
KnownWorkdirs = Callable[[], set[str]]


class WorkdirBrowser:
    """Directory listings, file reads and effective settings.

    Every path must resolve inside one of the known workdirs; anything
    else is treated as not found.
    """

    def __init__(self, known_workdirs: KnownWorkdirs, home: Path | None = None) -> None:
        self._known_workdirs = known_workdirs
        self._home = home or Path.home()

    def _is_inside_workdir(self, path: str) -> bool:
        resolved = os.path.abspath(path)
        for workdir in self._known_workdirs():
            if resolved == workdir or resolved.startswith(workdir.rstrip("/") + "/"):
                return True
        return False

    def browse(self, path: str) -> list[dict[str, Any]] | None:
        if not self._is_inside_workdir(path):
            logger.debug("browse: %s is outside known workdirs", path)
            return None
        target = Path(path)
        if not target.is_dir():
            return None

        entries: list[dict[str, Any]] = []
        for child in target.iterdir():
            try:
                st = child.stat()
            except OSError:
                continue
            entries.append({
                "name": child.name,
                "type": "directory" if child.is_dir() else "file",
                "size": st.st_size,
            })
        entries.sort(key=lambda e: (e["type"] != "directory", e["name"]))
        return entries

    def read_file(self, path: str) -> dict[str, Any] | None:
        if not self._is_inside_workdir(path):
            logger.debug("read_file: %s is outside known workdirs", path)
            return None
        target = Path(path)
        if not target.is_file():
            return None
        st = target.stat()
        if st.st_size > MAX_FILE_SIZE:
            return None
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        return {
            "content": content,
            "size": st.st_size,
            "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
        }

    def effective_settings(self, workdir: str) -> dict[str, Any] | None:
        """Global, project and local settings.json merged, later layers winning."""
        if workdir not in self._known_workdirs():
            return None
        layers = (
            self._home / ".claude" / "settings.json",
            Path(workdir) / ".claude" / "settings.json",
            Path(workdir) / ".claude" / "settings.local.json",
        )
        effective: dict[str, Any] = {}
        for layer in layers:
            if not layer.exists():
                continue
            try:
                data = json.loads(layer.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning("Ignoring unreadable settings file %s", layer)
                continue
            if isinstance(data, dict):
                effective.update(data)
        return effective
