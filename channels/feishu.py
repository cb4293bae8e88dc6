"""Feishu (Lark) channel via event subscription webhook.

Inbound: event callbacks (schema 2.0) posted to an aiohttp endpoint.
Outbound: Open API HTTP calls (httpx async) with a cached tenant token.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from collections.abc import AsyncIterator

import httpx
from aiohttp import web

from . import ChatEvent, DispatchError

log = logging.getLogger(__name__)

_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
_REPLY_PATH = "/open-apis/im/v1/messages/{message_id}/reply"

# Refresh the tenant token this long before Feishu expires it
_TOKEN_REFRESH_MARGIN = 60.0

# Feishu error codes meaning "tenant token invalid or expired"
_TOKEN_INVALID_CODES = frozenset({99991661, 99991663, 99991668})

_MESSAGE_EVENT = "im.message.receive_v1"


class FeishuChannel:
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_base: str = "https://open.feishu.cn",
        webhook_host: str = "0.0.0.0",  # noqa: S104
        webhook_port: int = 9000,
        webhook_path: str = "/feishu/events",
        verification_token: str = "",
        chunk_limit: int = 10000,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.api_base = api_base.rstrip("/")
        self.webhook_host = webhook_host
        self.webhook_port = webhook_port
        self.webhook_path = webhook_path
        self.verification_token = verification_token
        self.chunk_limit = chunk_limit

        self._token = ""
        self._token_expires = 0.0
        self._token_lock = asyncio.Lock()
        self._queue: asyncio.Queue[ChatEvent | None] = asyncio.Queue()
        self._client: httpx.AsyncClient | None = None
        self._runner: web.AppRunner | None = None

    # ─── Outbound ─────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    async def _tenant_token(self, force: bool = False) -> str:
        async with self._token_lock:
            if not force and self._token and time.monotonic() < self._token_expires:
                return self._token
            client = await self._get_client()
            resp = await client.post(
                f"{self.api_base}{_TOKEN_PATH}",
                json={"app_id": self.app_id, "app_secret": self.app_secret},
            )
            try:
                data = resp.json()
            except ValueError as exc:
                resp.raise_for_status()
                raise RuntimeError(
                    f"Feishu token error: non-JSON response {resp.status_code}"
                ) from exc
            if data.get("code") != 0:
                raise RuntimeError(f"Feishu token error: {data.get('msg', resp.status_code)}")
            self._token = data["tenant_access_token"]
            expire = float(data.get("expire", 7200))
            self._token_expires = time.monotonic() + max(expire - _TOKEN_REFRESH_MARGIN, 0.0)
            log.debug("Feishu tenant token refreshed (expires in %ds)", int(expire))
            return self._token

    async def _api(self, path: str, payload: dict, _retry: bool = True) -> dict:
        """POST to a Feishu Open API path with the tenant token."""
        token = await self._tenant_token()
        client = await self._get_client()
        resp = await client.post(
            f"{self.api_base}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        # Feishu returns error details in the body even on 4xx
        try:
            data = resp.json()
        except ValueError as exc:
            resp.raise_for_status()
            raise RuntimeError(
                f"Feishu API error ({path}): non-JSON response {resp.status_code}"
            ) from exc

        code = data.get("code", -1)
        if code in _TOKEN_INVALID_CODES and _retry:
            await self._tenant_token(force=True)
            return await self._api(path, payload, _retry=False)
        if code != 0:
            raise RuntimeError(f"Feishu API error ({path}): {data.get('msg', code)}")
        return data.get("data", {})

    async def reply(self, message_id: str, text: str) -> None:
        """Reply to a message by id. Long text is split into several replies."""
        path = _REPLY_PATH.format(message_id=message_id)
        for chunk in self._chunk_text(text):
            try:
                await self._api(path, {
                    "content": json.dumps({"text": chunk}, ensure_ascii=False),
                    "msg_type": "text",
                })
            except (RuntimeError, httpx.HTTPError) as e:
                raise DispatchError(f"Reply to {message_id} failed: {e}") from e

    def _chunk_text(self, text: str) -> list[str]:
        """Split text on newline boundaries within chunk limit."""
        if len(text) <= self.chunk_limit:
            return [text]

        chunks = []
        current = ""
        for line in text.split("\n"):
            if current and len(current) + len(line) + 1 > self.chunk_limit:
                chunks.append(current)
                current = line
            else:
                current = current + "\n" + line if current else line

        while len(current) > self.chunk_limit:
            chunks.append(current[:self.chunk_limit])
            current = current[self.chunk_limit:]
        if current:
            chunks.append(current)
        return chunks

    # ─── Inbound ──────────────────────────────────────────────────

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.webhook_path, self._handle_callback)
        return app

    async def connect(self) -> None:
        """Verify app credentials, then start the webhook server."""
        try:
            await self._tenant_token(force=True)
        except Exception as e:
            log.error("Cannot authenticate with Feishu: %s", e)
            raise ConnectionError(f"Feishu authentication failed: {e}") from e

        self._runner = web.AppRunner(self.make_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.webhook_host, self.webhook_port)
        await site.start()
        log.info("Feishu webhook listening on %s:%d%s",
                 self.webhook_host, self.webhook_port, self.webhook_path)

    async def disconnect(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._queue.put_nowait(None)

    async def receive(self) -> AsyncIterator[ChatEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def _token_ok(self, token: str) -> bool:
        if not self.verification_token:
            return False
        return hmac.compare_digest(token or "", self.verification_token)

    async def _handle_callback(self, request: web.Request) -> web.Response:
        # Fail closed: without a token, callbacks cannot be verified
        if not self.verification_token:
            log.error("Feishu callback rejected: no verification token configured")
            return web.json_response(
                {"error": "No verification token configured"}, status=503,
            )

        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return web.json_response({"error": "invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "invalid JSON body"}, status=400)

        if "encrypt" in body:
            log.warning("Encrypted Feishu callback rejected; disable the Encrypt Key")
            return web.json_response(
                {"error": "encrypted callbacks are not supported"}, status=400,
            )

        # URL verification handshake (sent once when the URL is saved)
        if body.get("type") == "url_verification":
            if not self._token_ok(body.get("token", "")):
                return web.json_response({"error": "unauthorized"}, status=401)
            return web.json_response({"challenge": body.get("challenge", "")})

        header = body.get("header") or {}
        if not self._token_ok(header.get("token", "")):
            log.warning("Feishu callback with bad verification token from %s", request.remote)
            return web.json_response({"error": "unauthorized"}, status=401)

        if header.get("event_type") == _MESSAGE_EVENT:
            event = parse_message_event(body.get("event") or {})
            if event is not None:
                self._queue.put_nowait(event)
        else:
            log.debug("Ignoring Feishu event type %s", header.get("event_type"))

        # Ack fast: Feishu redelivers if no 200 within a few seconds
        return web.json_response({})


def _parse_create_time(raw: object) -> float | None:
    try:
        return int(str(raw)) / 1000.0
    except (TypeError, ValueError):
        return None


def parse_message_event(event: dict) -> ChatEvent | None:
    """Parse an im.message.receive_v1 event body into a ChatEvent, or None to skip."""
    sender = event.get("sender") or {}
    message = event.get("message") or {}

    if sender.get("sender_type", "user") != "user":
        return None

    message_id = message.get("message_id", "")
    chat_id = message.get("chat_id", "")
    if not message_id or not chat_id:
        return None

    msg_type = message.get("message_type", "")
    text = ""
    if msg_type == "text":
        try:
            content = json.loads(message.get("content") or "{}")
            text = content.get("text", "") if isinstance(content, dict) else ""
        except json.JSONDecodeError:
            log.warning("Unparseable content in Feishu message %s", message_id)
        # Group mentions arrive as @_user_N placeholders
        for mention in message.get("mentions") or []:
            key = mention.get("key", "")
            if key:
                text = text.replace(key, "")
        text = text.strip()

    sender_id = (sender.get("sender_id") or {}).get("open_id", "")
    return ChatEvent(
        id=message_id,
        chat_id=chat_id,
        text=text,
        created_at=_parse_create_time(message.get("create_time")),
        type=msg_type or "unknown",
        sender=sender_id,
        source="feishu",
    )
