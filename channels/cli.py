"""CLI channel — stdin/stdout for testing.

The simplest possible channel. No Feishu app needed.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator

from . import ChatEvent


class CLIChannel:
    chat_id = "cli"

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def receive(self) -> AsyncIterator[ChatEvent]:
        while True:
            try:
                text = await asyncio.to_thread(input, "You> ")
            except (EOFError, KeyboardInterrupt):
                return
            if not text.strip():
                continue
            yield ChatEvent(
                id=f"cli-{uuid.uuid4().hex}",
                chat_id=self.chat_id,
                text=text,
                created_at=time.time(),
                sender="cli",
                source="cli",
            )

    async def reply(self, message_id: str, text: str) -> None:
        if text:
            print(f"Codex> {text}", flush=True)
