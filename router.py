"""Event router — inbound chat event in, backend reply out.

Every accepted event gets exactly one user-visible answer: the backend's
reply, a fallback text when the backend said nothing, or an error message.
Only a failing reply channel leaves the user without a response.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from backends import AgentBackend, ThreadOptions
from channels import Channel, ChatEvent
from dedup import EventFilter
from resolver import ThreadResolver
from store import SessionStore

if TYPE_CHECKING:
    from status import StatusBoard

log = logging.getLogger(__name__)

DEFAULT_FALLBACK_REPLY = "Codex returned no content"
DEFAULT_ERROR_PREFIX = "Error: "
RESET_COMMAND = "/reset"

# Characters of message text shown in logs
_PREVIEW_CHARS = 50


def _preview(text: str) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= _PREVIEW_CHARS else text[:_PREVIEW_CHARS] + "..."


class EventRouter:
    def __init__(
        self,
        store: SessionStore,
        backend: AgentBackend,
        channel: Channel,
        options: ThreadOptions | None = None,
        bindings: dict[str, str] | None = None,
        status: StatusBoard | None = None,
        fallback_reply: str = DEFAULT_FALLBACK_REPLY,
        error_prefix: str = DEFAULT_ERROR_PREFIX,
        event_filter: EventFilter | None = None,
    ):
        self.store = store
        self.channel = channel
        self.bindings: dict[str, str] = bindings if bindings is not None else {}
        self.resolver = ThreadResolver(backend, options or ThreadOptions(), self.bindings)
        self.filter = event_filter or EventFilter()
        self.status = status
        self.fallback_reply = fallback_reply
        self.error_prefix = error_prefix
        self._chat_locks: dict[str, asyncio.Lock] = {}
        if self.status is not None:
            self.status.set_sessions(len(self.bindings))

    def _chat_lock(self, chat_id: str) -> asyncio.Lock:
        return self._chat_locks.setdefault(chat_id, asyncio.Lock())

    async def handle(self, event: ChatEvent) -> bool:
        """Process one inbound event. Returns True if it was accepted."""
        if event.type != "text" or not event.text.strip():
            log.debug("Ignoring %s event %s", event.type, event.id)
            return False

        if not self.filter.should_process(event.id, event.created_at):
            return False

        if self.status is not None:
            self.status.record_message()
        log.info("[chat %s] received %s: %s", event.chat_id, event.id, _preview(event.text))

        if event.text.strip() == RESET_COMMAND:
            await self._reset(event)
            return True

        try:
            async with self._chat_lock(event.chat_id):
                thread = await self.resolver.resolve(event.chat_id)
                result = await thread.run(event.text)
                self._bind(event.chat_id, thread.id)
            reply = result.final_response or self.fallback_reply
            log.info("[chat %s] reply: %s", event.chat_id, _preview(reply))
        except Exception as e:
            log.error("[chat %s] failed to process %s: %s", event.chat_id, event.id, e,
                      exc_info=True, extra={"event": "router.turn_failed"})
            if self.status is not None:
                self.status.record_error()
            reply = f"{self.error_prefix}{str(e) or type(e).__name__}"

        await self._dispatch(event, reply)
        return True

    def _bind(self, chat_id: str, thread_id: str | None) -> None:
        """Record a new or changed binding and persist it. No-op when unchanged."""
        if not thread_id or self.bindings.get(chat_id) == thread_id:
            return
        self.bindings[chat_id] = thread_id
        if self.store.save(self.bindings):
            log.info("[chat %s] bound to thread %s and saved", chat_id, thread_id)
        if self.status is not None:
            self.status.set_sessions(len(self.bindings))

    async def _reset(self, event: ChatEvent) -> None:
        async with self._chat_lock(event.chat_id):
            self.resolver.forget(event.chat_id)
            old = self.bindings.pop(event.chat_id, None)
            if old is not None:
                self.store.save(self.bindings)
                if self.status is not None:
                    self.status.set_sessions(len(self.bindings))
        log.info("[chat %s] session reset (was %s)", event.chat_id, old)
        await self._dispatch(event, "Session reset. The next message starts a new thread.")

    async def _dispatch(self, event: ChatEvent, text: str) -> None:
        try:
            await self.channel.reply(event.id, text)
        except Exception as e:
            log.error("[chat %s] reply to %s failed: %s", event.chat_id, event.id, e,
                      extra={"event": "dispatch.failed"})
            if self.status is not None:
                self.status.record_error()

    def snapshot(self) -> list[dict[str, Any]]:
        """Bindings with live-cache state, for the status API."""
        return [
            {"chat_id": chat_id, "thread_id": thread_id,
             "live": self.resolver.cached(chat_id) is not None}
            for chat_id, thread_id in self.bindings.items()
        ]
