"""HTTP status API for the relay daemon.

Read-only JSON endpoints for monitoring. Runs alongside the chat channel.

Endpoints:
    GET /api/v1/status    — Health check + counters (no auth)
    GET /api/v1/logs      — Recent log records
    GET /api/v1/sessions  — Chat → thread bindings
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from status import StatusBoard

log = logging.getLogger(__name__)


class StatusAPI:
    _AUTH_EXEMPT_PATHS = frozenset({"/api/v1/status"})

    def __init__(
        self,
        board: StatusBoard,
        host: str,
        port: int,
        auth_token: str = "",
        get_sessions: Callable[[], list[dict[str, Any]]] | None = None,
    ):
        self.board = board
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self._get_sessions = get_sessions
        self._runner: web.AppRunner | None = None

    def make_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_get("/api/v1/logs", self._handle_logs)
        app.router.add_get("/api/v1/sessions", self._handle_sessions)
        return app

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Status API listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("Status API stopped")

    # ─── Auth Middleware ──────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        # No token configured = deny everything except the health check
        if not self.auth_token:
            return web.json_response(
                {"error": "No auth token configured"}, status=503,
            )

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("Status API: auth failed from %s %s", request.remote, request.path)
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    # ─── Endpoints ────────────────────────────────────────────────

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.board.snapshot())

    async def _handle_logs(self, request: web.Request) -> web.Response:
        logs = list(self.board.logs)
        level = request.query.get("level", "").lower()
        if level:
            logs = [entry for entry in logs if entry["level"] == level]
        return web.json_response({"logs": logs})

    async def _handle_sessions(self, request: web.Request) -> web.Response:
        sessions = self._get_sessions() if self._get_sessions else []
        return web.json_response({"sessions": sessions})
