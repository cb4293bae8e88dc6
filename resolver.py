"""Thread resolver — one live backend thread per chat.

Resolution order: in-memory cache, then resume the persisted thread id,
then start a new thread. A thread that cannot be resumed is not an error:
the chat simply starts fresh.
"""

from __future__ import annotations

import asyncio
import logging

from backends import AgentBackend, ResumeError, Thread, ThreadOptions

log = logging.getLogger(__name__)


class ThreadResolver:
    def __init__(self, backend: AgentBackend, options: ThreadOptions,
                 bindings: dict[str, str]):
        self.backend = backend
        self.options = options
        # Shared with the router; the router owns writes
        self.bindings = bindings
        self._threads: dict[str, Thread] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def cached_count(self) -> int:
        return len(self._threads)

    def cached(self, chat_id: str) -> Thread | None:
        return self._threads.get(chat_id)

    def forget(self, chat_id: str) -> bool:
        """Drop the cached thread for a chat. Next resolve starts over."""
        return self._threads.pop(chat_id, None) is not None

    async def resolve(self, chat_id: str) -> Thread:
        thread = self._threads.get(chat_id)
        if thread is not None:
            return thread

        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            # Another caller may have finished resolving while we waited
            thread = self._threads.get(chat_id)
            if thread is not None:
                return thread

            existing_id = self.bindings.get(chat_id)
            if existing_id:
                try:
                    log.info("[chat %s] resuming thread %s", chat_id, existing_id)
                    thread = await self.backend.resume_thread(existing_id, self.options)
                except ResumeError as e:
                    log.warning("[chat %s] resume of %s failed, starting new thread: %s",
                                chat_id, existing_id, e)
                    thread = None

            if thread is None:
                log.info("[chat %s] starting new thread", chat_id)
                thread = await self.backend.start_thread(self.options)

            self._threads[chat_id] = thread
            return thread
