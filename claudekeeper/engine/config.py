"""Configuration loaded from <state_dir>/config.yaml and the environment.

All settings have sensible defaults. The file is created on first run
with a random API token. Override individual values via CLAUDEKEEPER_*
env vars.
"""
from __future__ import annotations

import logging
import os
import secrets
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigError
from claudekeeper.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

# Keys persisted to config.yaml. Paths are derived, not stored.
_FILE_KEYS = ("host", "port", "token", "session_lookup_delay", "log_level")


def default_state_dir() -> Path:
    override = os.getenv("CLAUDEKEEPER_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".claudekeeper"


def default_claude_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


@dataclass
class KeeperConfig:
    """Server and engine configuration."""

    host: str = "127.0.0.1"
    port: int = 3100
    token: str = field(default_factory=lambda: secrets.token_hex(16))

    # Where meta.json, interactions.jsonl, logs and the PID file live
    state_dir: Path = field(default_factory=default_state_dir)
    # Where the agent runtime writes its JSONL transcripts
    claude_projects_dir: Path = field(default_factory=default_claude_projects_dir)

    # Delay before the first transcript lookup after a session id appears.
    # The runtime writes the transcript asynchronously.
    session_lookup_delay: float = 0.1

    log_level: str = "INFO"

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILENAME

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def pid_path(self) -> Path:
        return self.state_dir / "claudekeeper.pid"

    @classmethod
    def load(cls, state_dir: Path | None = None) -> KeeperConfig:
        """Load config.yaml (creating it on first run), then apply env overrides."""
        state_dir = state_dir or default_state_dir()
        path = state_dir / CONFIG_FILENAME
        if path.is_file():
            try:
                with open(path, encoding="utf-8") as f:
                    raw = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as exc:
                raise ConfigError(str(path), str(exc)) from exc
            if not isinstance(raw, dict):
                raise ConfigError(str(path), "top level must be a mapping")
            config = cls(state_dir=state_dir, **{k: raw[k] for k in _FILE_KEYS if k in raw})
            logger.info("KeeperConfig.load: read %s", path)
        else:
            config = cls(state_dir=state_dir)
            config.save()
            logger.info("KeeperConfig.load: created %s with a new token", path)

        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Apply CLAUDEKEEPER_* environment overrides in place."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("CLAUDEKEEPER_")
        }
        if not overrides:
            logger.debug("KeeperConfig.apply_env: no CLAUDEKEEPER_* env vars set")
            return
        logger.info(
            "KeeperConfig.apply_env: overrides: %s",
            ", ".join(sorted(overrides)),
        )
        try:
            self.host = os.getenv("CLAUDEKEEPER_HOST", self.host)
            self.port = int(os.getenv("CLAUDEKEEPER_PORT", str(self.port)))
            self.token = os.getenv("CLAUDEKEEPER_TOKEN", self.token)
            self.log_level = os.getenv("CLAUDEKEEPER_LOG_LEVEL", self.log_level).upper()
            projects = os.getenv("CLAUDEKEEPER_CLAUDE_PROJECTS", "").strip()
            if projects:
                self.claude_projects_dir = Path(projects).expanduser()
        except ValueError as exc:
            raise ConfigError("environment", str(exc)) from exc

    def save(self) -> None:
        data = {k: v for k, v in asdict(self).items() if k in _FILE_KEYS}
        atomic_write_text(
            self.config_path,
            yaml.safe_dump(data, sort_keys=False, default_flow_style=False),
        )
