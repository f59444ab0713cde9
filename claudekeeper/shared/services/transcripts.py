"""Read-only access to the agent runtime's JSONL session transcripts.

Transcripts live under ``<projects_dir>/<workdir slug>/<session id>.jsonl``
where the slug is the workdir with ``/`` replaced by ``-``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from claudekeeper.adapters.permission_store import workdir_slug
from claudekeeper.engine.models import SessionSummary

logger = logging.getLogger(__name__)

FIRST_PROMPT_LIMIT = 200

# Content the runtime injects for local slash commands.
_INTERNAL_MARKERS = ("<local-command-caveat>", "<command-name>")


@dataclass
class TranscriptMessage:
    """One user or assistant message rendered from a transcript."""

    id: str
    role: str
    content: str | list[dict[str, Any]]
    timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


def _iter_rows(path: Path):
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        logger.warning("Failed to read transcript %s: %s", path, exc)
        return
    for raw in lines:
        if not raw.strip():
            continue
        try:
            row = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(row, dict):
            yield row


def _first_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                return str(block["text"])
    return ""


def _is_internal(text: str) -> bool:
    return any(marker in text for marker in _INTERNAL_MARKERS)


def extract_content(content: Any) -> str | list[dict[str, Any]]:
    """Reduce raw message content to displayable text and tool_use blocks.

    Returns ``""`` when nothing displayable is left.
    """
    if not content:
        return ""
    if isinstance(content, str):
        return "" if _is_internal(content) else content
    if not isinstance(content, list):
        return ""

    blocks: list[dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            if _is_internal(block["text"]):
                continue
            blocks.append({"type": "text", "text": block["text"]})
        elif block_type == "tool_use":
            blocks.append({"type": "tool_use", "name": block.get("name"), "input": block.get("input")})
        # tool_result blocks are dropped
    return blocks or ""


def parse_session_file(path: Path) -> SessionSummary | None:
    """Summarize one transcript, or None when it has no prompt or workdir."""
    first_prompt = ""
    created = ""
    modified = ""
    git_branch = ""
    workdir = ""
    message_count = 0

    for entry in _iter_rows(path):
        if not workdir and entry.get("cwd"):
            workdir = str(entry["cwd"])

        entry_type = entry.get("type")
        message = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        if entry_type == "user" and message.get("content"):
            message_count += 1
            if not first_prompt:
                first_prompt = _first_text(message["content"])[:FIRST_PROMPT_LIMIT]
            if not created and entry.get("timestamp"):
                created = str(entry["timestamp"])
            if not git_branch and entry.get("gitBranch"):
                git_branch = str(entry["gitBranch"])
        elif entry_type == "assistant":
            message_count += 1

        if entry.get("timestamp"):
            modified = str(entry["timestamp"])

    if not first_prompt or not workdir:
        return None

    return SessionSummary(
        id=path.stem,
        workdir=workdir,
        first_prompt=first_prompt,
        message_count=message_count,
        created=created or modified,
        modified=modified,
        git_branch=git_branch or None,
    )


class TranscriptStore:
    """Lists, reads and deletes transcripts under a projects directory."""

    def __init__(self, projects_dir: Path) -> None:
        self.projects_dir = projects_dir

    def project_dir(self, workdir: str) -> Path:
        return self.projects_dir / workdir_slug(workdir)

    def _summaries_in(self, project_dir: Path) -> list[SessionSummary]:
        try:
            files = sorted(project_dir.glob("*.jsonl"))
        except OSError:
            return []
        sessions = []
        for path in files:
            summary = parse_session_file(path)
            if summary is not None:
                sessions.append(summary)
        return sessions

    @staticmethod
    def _by_modified(sessions: list[SessionSummary]) -> list[SessionSummary]:
        # ISO-8601 UTC timestamps sort lexicographically
        return sorted(sessions, key=lambda s: s.modified, reverse=True)

    def list_all(self) -> list[SessionSummary]:
        if not self.projects_dir.is_dir():
            return []
        sessions: list[SessionSummary] = []
        for project_dir in sorted(self.projects_dir.iterdir()):
            if project_dir.is_dir():
                sessions.extend(self._summaries_in(project_dir))
        return self._by_modified(sessions)

    def list_for_workdir(self, workdir: str) -> list[SessionSummary]:
        project_dir = self.project_dir(workdir)
        if not project_dir.is_dir():
            return []
        return self._by_modified(self._summaries_in(project_dir))

    def known_workdirs(self) -> set[str]:
        return {s.workdir for s in self.list_all()}

    def get(self, session_id: str) -> SessionSummary | None:
        for session in self.list_all():
            if session.id == session_id:
                return session
        return None

    def get_in_workdir(self, session_id: str, workdir: str) -> SessionSummary | None:
        """Read one transcript from the workdir's project dir, no scan."""
        path = self.project_dir(workdir) / f"{session_id}.jsonl"
        if not path.is_file():
            return None
        return parse_session_file(path)

    def transcript_path(self, session_id: str) -> Path | None:
        session = self.get(session_id)
        if session is None:
            return None
        path = self.project_dir(session.workdir) / f"{session_id}.jsonl"
        return path if path.exists() else None

    def read_messages(self, session_id: str) -> list[TranscriptMessage]:
        path = self.transcript_path(session_id)
        if path is None:
            return []

        messages: list[TranscriptMessage] = []
        for entry in _iter_rows(path):
            role = entry.get("type")
            if role not in ("user", "assistant"):
                continue
            if not isinstance(entry.get("message"), dict) or entry.get("isMeta"):
                continue
            content = extract_content(entry["message"].get("content"))
            if not content:
                continue
            messages.append(TranscriptMessage(
                id=str(entry.get("uuid") or ""),
                role=role,
                content=content,
                timestamp=entry.get("timestamp"),
            ))
        return messages

    def delete(self, session_id: str) -> bool:
        path = self.transcript_path(session_id)
        if path is None:
            return False
        path.unlink()
        logger.info("Deleted transcript %s", path)
        return True
