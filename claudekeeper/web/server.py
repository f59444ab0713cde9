"""HTTP + SSE + WebSocket server for claudekeeper.

Exposes sessions (read from the agent runtime's transcripts), the
pending attention queue and run control over a token-protected REST
API. Every engine event is fanned out to SSE and WebSocket clients.

Usage:
    claudekeeper [--port PORT]
"""
from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web

from claudekeeper.adapters.event_bus import EventBroadcaster
from claudekeeper.adapters.events import (
    AttentionResolved,
    KeeperEvent,
    SessionCreated,
    SessionEnded,
    SessionUpdated,
    event_to_dict,
)
from claudekeeper.adapters.permission_store import PermissionStore
from claudekeeper.engine.attention import AttentionRegistry
from claudekeeper.engine.config import KeeperConfig
from claudekeeper.engine.correlator import RunCorrelator
from claudekeeper.engine.models import PermissionMode, make_temp_run_id, utcnow_iso
from claudekeeper.engine.providers.base import ExecutionEngine
from claudekeeper.engine.supervisor import RunSupervisorTable
from claudekeeper.shared.services.session_meta import SessionMetaStore
from claudekeeper.shared.services.transcripts import TranscriptStore
from claudekeeper.shared.services.workdir_browser import WorkdirBrowser

logger = logging.getLogger(__name__)

# Reachable without a token.
PUBLIC_PATHS = frozenset({"/health"})

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

SSE_KEEPALIVE_SECONDS = 30.0


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    """Parsed JSON object body, ``{}`` when empty, None when malformed."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _parse_permission_mode(value: Any) -> PermissionMode | None:
    if value in (None, ""):
        return None
    return PermissionMode(value)


class KeeperServer:
    """aiohttp application wiring transport to the run correlator."""

    def __init__(self, config: KeeperConfig, engine: ExecutionEngine | None = None) -> None:
        self._config = config
        self._started_at = time.time()

        self._broadcaster = EventBroadcaster()
        self._transcripts = TranscriptStore(config.claude_projects_dir)
        self._meta = SessionMetaStore(config.sessions_dir)
        self._browser = WorkdirBrowser(self._transcripts.known_workdirs)
        self._registry = AttentionRegistry(
            publish=self._publish,
            interaction_sink=self._meta.append_interaction,
        )
        if engine is None:
            from claudekeeper.engine.providers.claude_provider import ClaudeEngine
            engine = ClaudeEngine()
        self._engine = engine
        self._correlator = RunCorrelator(
            engine,
            self._registry,
            RunSupervisorTable(),
            self._publish,
            session_lookup=self._transcripts.get_in_workdir,
            permission_store_factory=lambda workdir: PermissionStore(config.state_dir, workdir),
            session_lookup_delay=config.session_lookup_delay,
        )
        # temp_id -> metadata to store once the real session id is known
        self._pending_meta: dict[str, dict[str, Any]] = {}
        self._runner: web.AppRunner | None = None

        self._app = web.Application(middlewares=[
            self._cors_middleware,
            self._request_logging_middleware,
            self._auth_middleware,
        ])
        self._setup_routes()
        logger.info(
            "KeeperServer init host=%s port=%s state_dir=%s projects=%s engine=%s pid=%s",
            config.host, config.port, config.state_dir, config.claude_projects_dir,
            engine.name, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def broadcaster(self) -> EventBroadcaster:
        return self._broadcaster

    @property
    def correlator(self) -> RunCorrelator:
        return self._correlator

    # ── Event fan-out ──

    def _publish(self, event: KeeperEvent) -> None:
        if isinstance(event, SessionCreated) and event.session is not None:
            meta = self._pending_meta.pop(event.temp_id, None)
            if meta:
                try:
                    self._meta.update(event.session.id, meta)
                except OSError:
                    logger.exception("Failed to store metadata for session %s", event.session.id)
        elif isinstance(event, SessionEnded):
            # Still keyed by temp id: the run ended before a session id was reported.
            meta = self._pending_meta.pop(event.session_id, None)
            if meta:
                logger.warning(
                    "Run %s ended without a session id; dropping metadata name=%r config=%s",
                    event.session_id, meta.get("name"), meta.get("config"),
                )
        self._broadcaster.publish(event)

    # ── Middleware ──

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=204, headers=CORS_HEADERS)
        response = await handler(request)
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.path in PUBLIC_PATHS or self._is_authorized(request):
            return await handler(request)
        logger.warning("Unauthorized request %s %s from=%s", request.method, request.path, request.remote)
        return _error("Unauthorized", 401)

    def _is_authorized(self, request: web.Request) -> bool:
        token = self._config.token
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer ") and hmac.compare_digest(header[len("Bearer "):], token):
            return True
        query_token = request.query.get("token", "")
        return bool(query_token) and hmac.compare_digest(query_token, token)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/ws", self._handle_websocket)
        # Sessions
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_patch("/sessions/{id}", self._handle_update_session)
        r.add_delete("/sessions/{id}", self._handle_delete_session)
        r.add_get("/sessions/{id}/messages", self._handle_get_messages)
        r.add_post("/sessions/{id}/send", self._handle_send)
        r.add_post("/sessions/{id}/interrupt", self._handle_interrupt)
        # Attention
        r.add_get("/attention", self._handle_list_attention)
        r.add_post("/attention/{id}/resolve", self._handle_resolve_attention)
        # Workdirs
        r.add_get("/browse", self._handle_browse)
        r.add_get("/file", self._handle_read_file)
        r.add_get("/workdirs/config", self._handle_workdir_config)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start listening. Returns once the socket is bound."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info("claudekeeper listening on %s:%d", self._config.host, self._config.port)

    async def stop(self) -> None:
        logger.info("Server shutting down")
        await self._correlator.shutdown()
        self._broadcaster.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Streaming handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "timestamp": utcnow_iso(),
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "engine": self._engine.name,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                **CORS_HEADERS,
            },
        )
        await response.prepare(request)

        queue = self._broadcaster.subscribe()
        logger.info(
            "SSE client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._broadcaster.subscriber_count,
        )
        try:
            await response.write(b"event: connected\ndata: {}\n\n")
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    data = json.dumps(event_to_dict(event))
                    await response.write(f"event: {event.event_type}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._broadcaster.unsubscribe(queue)
            logger.info(
                "SSE client disconnected req=%s active_clients=%d",
                request.get("req_id", "unknown"), self._broadcaster.subscriber_count,
            )
        return response

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=SSE_KEEPALIVE_SECONDS)
        await ws.prepare(request)

        queue = self._broadcaster.subscribe()
        logger.info(
            "WebSocket client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._broadcaster.subscriber_count,
        )

        async def forward() -> None:
            async for event in self._broadcaster.consume(queue):
                if ws.closed:
                    return
                await ws.send_json(event_to_dict(event))

        forwarder = asyncio.create_task(forward())
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict) and payload.get("type") == "subscribe":
                    await ws.send_json({"type": "subscribed"})
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectionResetError):
                await forwarder
            self._broadcaster.unsubscribe(queue)
            logger.info(
                "WebSocket client disconnected req=%s active_clients=%d",
                request.get("req_id", "unknown"), self._broadcaster.subscriber_count,
            )
        return ws

    # ── Session handlers ──

    def _session_dict(self, session_id: str, summary: dict[str, Any]) -> dict[str, Any]:
        meta = self._meta.get(session_id) or {}
        return {
            **summary,
            "name": meta.get("name"),
            "active": self._correlator.is_active(session_id),
        }

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        workdir = request.query.get("workdir")
        if workdir:
            sessions = await asyncio.to_thread(self._transcripts.list_for_workdir, workdir)
        else:
            sessions = await asyncio.to_thread(self._transcripts.list_all)
        return web.json_response({
            "sessions": [self._session_dict(s.id, s.to_dict()) for s in sessions],
        })

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        summary = await asyncio.to_thread(self._transcripts.get, session_id)
        active = self._correlator.is_active(session_id)
        if summary is None and not active:
            return _error(f"Session {session_id} not found", 404)

        data = summary.to_dict() if summary is not None else {"id": session_id}
        return web.json_response({
            **data,
            "meta": self._meta.get(session_id) or {},
            "interactions": [r.to_dict() for r in self._meta.interactions(session_id)],
            "attention": [a.to_dict() for a in self._registry.pending_for_run(session_id)],
            "active": active,
        })

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        messages = await asyncio.to_thread(self._transcripts.read_messages, session_id)
        return web.json_response({"messages": [m.to_dict() for m in messages]})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        workdir = str(body.get("workdir") or "").strip()
        prompt = str(body.get("prompt") or "")
        if not workdir:
            return _error("workdir is required", 400)
        if not prompt.strip():
            return _error("prompt is required", 400)
        if not Path(workdir).is_dir():
            return _error(f"workdir does not exist: {workdir}", 400)
        try:
            mode = _parse_permission_mode(body.get("permission_mode"))
        except ValueError:
            return _error(f"Invalid permission_mode: {body.get('permission_mode')}", 400)

        temp_id = make_temp_run_id()
        meta: dict[str, Any] = {}
        if body.get("name"):
            meta["name"] = str(body["name"])
        if mode is not None:
            meta["config"] = {"permission_mode": mode.value}
        if meta:
            self._pending_meta[temp_id] = meta

        self._correlator.launch_run(temp_id, prompt, workdir, permission_mode=mode)
        return web.json_response({"temp_id": temp_id}, status=202)

    async def _handle_send(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await _read_json(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        message = str(body.get("message") or "")
        if not message.strip():
            return _error("message is required", 400)
        if self._correlator.is_active(session_id):
            return _error(f"Session {session_id} is already running", 409)

        summary = await asyncio.to_thread(self._transcripts.get, session_id)
        if summary is None:
            return _error(f"Session {session_id} not found", 404)

        config = (self._meta.get(session_id) or {}).get("config") or {}
        try:
            mode = _parse_permission_mode(config.get("permission_mode"))
        except ValueError:
            mode = None

        temp_id = make_temp_run_id()
        self._correlator.launch_run(
            temp_id, message, summary.workdir, resume_id=session_id, permission_mode=mode,
        )
        return web.json_response({"temp_id": temp_id, "session_id": session_id}, status=202)

    async def _handle_interrupt(self, request: web.Request) -> web.Response:
        interrupted = self._correlator.interrupt(request.match_info["id"])
        return web.json_response({"interrupted": interrupted})

    async def _handle_update_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await _read_json(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        changes = {k: body[k] for k in ("name", "config") if k in body}
        if not changes:
            return _error("name or config is required", 400)
        if "config" in changes:
            if not isinstance(changes["config"], dict):
                return _error("config must be an object", 400)
            try:
                _parse_permission_mode(changes["config"].get("permission_mode"))
            except ValueError:
                return _error(f"Invalid permission_mode: {changes['config'].get('permission_mode')}", 400)

        meta = self._meta.update(session_id, changes)
        self._publish(SessionUpdated(session_id=session_id, changes=changes))
        return web.json_response({"session_id": session_id, "meta": meta})

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        interrupted = self._correlator.interrupt(session_id)
        cleared = self._registry.clear_for_run(session_id)
        transcript_deleted = await asyncio.to_thread(self._transcripts.delete, session_id)
        meta_deleted = self._meta.delete(session_id)
        if not (interrupted or cleared or transcript_deleted or meta_deleted):
            return _error(f"Session {session_id} not found", 404)

        logger.info(
            "Deleted session %s interrupted=%s cleared=%d transcript=%s meta=%s",
            session_id, interrupted, cleared, transcript_deleted, meta_deleted,
        )
        self._publish(SessionEnded(session_id=session_id, reason="deleted"))
        return web.json_response({"deleted": True})

    # ── Attention handlers ──

    async def _handle_list_attention(self, request: web.Request) -> web.Response:
        return web.json_response({
            "attention": [a.to_dict() for a in self._correlator.list_pending_attention()],
        })

    async def _handle_resolve_attention(self, request: web.Request) -> web.Response:
        attention_id = request.match_info["id"]
        body = await _read_json(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        # Permission waiters announce their own resolution once they wake.
        has_waiter = self._registry.has_waiter(attention_id)
        if not self._correlator.resolve_attention(attention_id, body):
            return _error("Attention request not found or already resolved", 404)
        if not has_waiter:
            self._publish(AttentionResolved(attention_id=attention_id))
        return web.json_response({"resolved": True})

    # ── Workdir handlers ──

    async def _handle_browse(self, request: web.Request) -> web.Response:
        path = request.query.get("path", "")
        if not path:
            return _error("path is required", 400)
        entries = await asyncio.to_thread(self._browser.browse, path)
        if entries is None:
            return _error("Directory not found", 404)
        return web.json_response({"path": path, "entries": entries})

    async def _handle_read_file(self, request: web.Request) -> web.Response:
        path = request.query.get("path", "")
        if not path:
            return _error("path is required", 400)
        content = await asyncio.to_thread(self._browser.read_file, path)
        if content is None:
            return _error("File not found", 404)
        return web.json_response({"path": path, **content})

    async def _handle_workdir_config(self, request: web.Request) -> web.Response:
        workdir = request.query.get("workdir", "")
        if not workdir:
            return _error("workdir is required", 400)
        settings = await asyncio.to_thread(self._browser.effective_settings, workdir)
        if settings is None:
            return _error("Unknown workdir", 404)
        return web.json_response({"workdir": workdir, "settings": settings})
