"""Per-session metadata and interaction history.

Layout under ``<state_dir>/sessions/<session id>/``:
- ``meta.json``: operator-set fields (``name``, ``config``)
- ``interactions.jsonl``: one resolved attention item per line
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any

from claudekeeper.engine.models import InteractionRecord
from claudekeeper.shared.services.durable_write import append_json_line, atomic_write_text

logger = logging.getLogger(__name__)

META_FILENAME = "meta.json"
INTERACTIONS_FILENAME = "interactions.jsonl"


class SessionMetaStore:
    """File-backed store for session metadata and interactions."""

    def __init__(self, sessions_dir: Path) -> None:
        self.sessions_dir = sessions_dir

    def _dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def get(self, session_id: str) -> dict[str, Any] | None:
        path = self._dir(session_id) / META_FILENAME
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
            return None
        return data if isinstance(data, dict) else None

    def set(self, session_id: str, meta: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge ``meta`` over the stored metadata and save."""
        merged = {**(self.get(session_id) or {}), **meta}
        atomic_write_text(
            self._dir(session_id) / META_FILENAME,
            json.dumps(merged, indent=2, ensure_ascii=False) + "\n",
        )
        return merged

    def update(self, session_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` and return the result.

        A ``config`` mapping is merged key by key rather than replaced.
        """
        changes = dict(changes)
        if isinstance(changes.get("config"), dict):
            current = (self.get(session_id) or {}).get("config") or {}
            changes["config"] = {**current, **changes["config"]}
        return self.set(session_id, changes)

    def delete(self, session_id: str) -> bool:
        path = self._dir(session_id)
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    def all(self) -> dict[str, dict[str, Any]]:
        if not self.sessions_dir.is_dir():
            return {}
        metas: dict[str, dict[str, Any]] = {}
        for entry in sorted(self.sessions_dir.iterdir()):
            meta = self.get(entry.name)
            if meta is not None:
                metas[entry.name] = meta
        return metas

    # ── Interactions ──

    def append_interaction(self, session_id: str, record: InteractionRecord) -> None:
        append_json_line(self._dir(session_id) / INTERACTIONS_FILENAME, record.to_dict())

    def interactions(self, session_id: str) -> list[InteractionRecord]:
        path = self._dir(session_id) / INTERACTIONS_FILENAME
        if not path.exists():
            return []
        records: list[InteractionRecord] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                records.append(InteractionRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError):
                logger.warning("Skipping malformed interaction in %s", path)
        return records
