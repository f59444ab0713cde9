"""Tests for the CLI's PID file handling and logging setup."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from claudekeeper import app
from claudekeeper.engine.config import KeeperConfig


def _config(tmpdir: str) -> KeeperConfig:
    return KeeperConfig(token="t", state_dir=Path(tmpdir))


def test_pid_file_round_trip() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        pid_path = Path(tmpdir) / "nested" / "claudekeeper.pid"
        assert app.read_pid(pid_path) is None

        app.write_pid(pid_path)
        assert app.read_pid(pid_path) == os.getpid()
        assert app.live_pid(pid_path) == os.getpid()

        app.remove_pid(pid_path)
        app.remove_pid(pid_path)
        assert not pid_path.exists()


def test_stale_pid_file_is_cleaned_up() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        pid_path = Path(tmpdir) / "claudekeeper.pid"
        pid_path.write_text("999999")
        with patch("claudekeeper.app.is_process_running", return_value=False):
            assert app.live_pid(pid_path) is None
        assert not pid_path.exists()


def test_garbage_pid_file_reads_as_none() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        pid_path = Path(tmpdir) / "claudekeeper.pid"
        pid_path.write_text("not a pid")
        assert app.read_pid(pid_path) is None


def test_status_and_stop_without_daemon(capsys) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        assert app.show_status(config) == 1
        assert app.stop_daemon(config) == 0
    out = capsys.readouterr().out
    assert "not running" in out
    assert "No daemon running" in out


def test_stop_signals_running_daemon(capsys) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        config.pid_path.write_text("4242")
        with patch("claudekeeper.app.is_process_running", return_value=True), \
             patch("claudekeeper.app.os.kill") as kill:
            assert app.stop_daemon(config) == 0
        kill.assert_called_once_with(4242, app.signal.SIGTERM)
        assert not config.pid_path.exists()
    assert "Stopped daemon (PID 4242)" in capsys.readouterr().out


def test_main_refuses_second_instance(capsys) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(tmpdir)
        with patch("claudekeeper.app.KeeperConfig.load", return_value=config), \
             patch("claudekeeper.app.live_pid", return_value=1234):
            with pytest.raises(SystemExit) as exc:
                app.main([])
        assert exc.value.code == 1
    assert "already running (PID 1234)" in capsys.readouterr().err


def test_configure_logging_writes_rotating_file() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = app.configure_logging(Path(tmpdir) / "logs", "debug")
            logging.getLogger("claudekeeper.test").info("hello %s", "log")
            for handler in root.handlers:
                handler.flush()
            assert root.level == logging.DEBUG
            assert "hello log" in log_file.read_text()
            for handler in root.handlers:
                handler.close()
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
