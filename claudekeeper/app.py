"""claudekeeper CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from claudekeeper.engine.config import KeeperConfig
from claudekeeper.engine.errors import ConfigError

LOG_FILENAME = "claudekeeper.log"


def _log_runtime_compatibility() -> None:
    """Log SDK/CLI runtime versions."""
    from claudekeeper.engine.providers.claude_provider import find_claude_executable

    logger = logging.getLogger(__name__)
    sdk_version = "unknown"
    try:
        from importlib.metadata import PackageNotFoundError, version

        sdk_version = version("claude-agent-sdk")
    except PackageNotFoundError:
        logger.warning("claude-agent-sdk is not installed; runs will fail")

    cli_version = "unknown"
    cli_path = find_claude_executable() or "claude"
    try:
        out = subprocess.check_output(
            [cli_path, "--version"], text=True, stderr=subprocess.STDOUT, timeout=10,
        ).strip()
        match = re.search(r"(\d+\.\d+\.\d+)", out)
        cli_version = match.group(1) if match else out
    except (OSError, subprocess.SubprocessError):
        logger.debug("Could not resolve claude CLI version", exc_info=True)

    logger.info(
        "Runtime versions: claude-agent-sdk=%s claude-cli=%s (%s)",
        sdk_version, cli_version, cli_path,
    )


def configure_logging(log_dir: Path, level: str) -> Path:
    """Rotating file log plus stderr on the root logger."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


# ── PID file ──

def read_pid(pid_path: Path) -> int | None:
    try:
        return int(pid_path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()), encoding="utf-8")


def remove_pid(pid_path: Path) -> None:
    try:
        pid_path.unlink()
    except FileNotFoundError:
        pass


def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def live_pid(pid_path: Path) -> int | None:
    """PID of a running daemon. Stale PID files are removed."""
    pid = read_pid(pid_path)
    if pid is None:
        return None
    if not is_process_running(pid):
        remove_pid(pid_path)
        return None
    return pid


# ── Commands ──

def stop_daemon(config: KeeperConfig) -> int:
    pid = read_pid(config.pid_path)
    if pid is None:
        print("No daemon running")
        return 0
    if not is_process_running(pid):
        print("Daemon not running, cleaning up stale PID file")
        remove_pid(config.pid_path)
        return 0
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as exc:
        print(f"Failed to stop daemon: {exc}", file=sys.stderr)
        return 1
    print(f"Stopped daemon (PID {pid})")
    remove_pid(config.pid_path)
    return 0


def show_status(config: KeeperConfig) -> int:
    pid = live_pid(config.pid_path)
    if pid is None:
        print("Status: not running")
        return 1
    print(f"Status: running (PID {pid})")
    print(f"Port: {config.port}")
    return 0


def spawn_daemon(args) -> int:
    """Re-launch this CLI detached from the terminal."""
    cmd = [sys.executable, "-m", "claudekeeper.app"]
    if args.port is not None:
        cmd += ["--port", str(args.port)]
    if args.host is not None:
        cmd += ["--host", args.host]
    if args.verbose:
        cmd.append("--verbose")
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    print(f"claudekeeper started in background (PID {proc.pid})")
    return 0


async def serve(config: KeeperConfig) -> None:
    from claudekeeper.web.server import KeeperServer

    server = KeeperServer(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await server.start()
    print(f"claudekeeper running on {config.host}:{config.port}")
    print(f"Token: {config.token}")
    try:
        await stop.wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="claudekeeper",
        description="claudekeeper: session coordinator for Claude Code",
    )
    parser.add_argument(
        "command", nargs="?", choices=("stop", "status"),
        help="Stop a running daemon or show its status",
    )
    parser.add_argument(
        "--daemon", action="store_true",
        help="Run in background mode",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: from config.yaml, 3100)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: from config.yaml, 127.0.0.1)",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args(argv)

    try:
        config = KeeperConfig.load()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)
    if args.port is not None:
        config.port = args.port
    if args.host is not None:
        config.host = args.host
    if args.verbose:
        config.log_level = "DEBUG"

    if args.command == "stop":
        sys.exit(stop_daemon(config))
    if args.command == "status":
        sys.exit(show_status(config))

    existing = live_pid(config.pid_path)
    if existing is not None:
        print(f"claudekeeper is already running (PID {existing})", file=sys.stderr)
        sys.exit(1)

    if args.daemon:
        sys.exit(spawn_daemon(args))

    log_file = configure_logging(config.log_dir, config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting claudekeeper host=%s port=%s state_dir=%s log=%s",
        config.host, config.port, config.state_dir, log_file,
    )
    _log_runtime_compatibility()

    write_pid(config.pid_path)
    try:
        asyncio.run(serve(config))
    finally:
        remove_pid(config.pid_path)
        logger.info("claudekeeper stopped")


if __name__ == "__main__":
    main()
