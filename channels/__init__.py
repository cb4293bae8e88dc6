"""Channel interface and shared types.

Defines the contract between the daemon and messaging transports.
Each channel implements receive/reply for its transport.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config


class DispatchError(Exception):
    """Raised when a reply cannot be delivered to the chat."""


@dataclass(frozen=True)
class ChatEvent:
    id: str                       # Platform message id; replies are addressed by it
    chat_id: str                  # Direct chat or group
    text: str
    created_at: float | None      # Unix seconds; None if the platform sent no usable time
    type: str = "text"            # "text", "image", "file", ...
    sender: str = ""
    source: str = ""              # "feishu", "cli"


class Channel(Protocol):
    async def connect(self) -> None: ...
    def receive(self) -> AsyncIterator[ChatEvent]: ...
    async def reply(self, message_id: str, text: str) -> None: ...
    async def disconnect(self) -> None: ...


def create_channel(config: Config) -> Channel:
    """Factory: create channel from config."""
    ch_type = config.channel_type

    if ch_type == "cli":
        from .cli import CLIChannel
        return CLIChannel()
    if ch_type == "feishu":
        from .feishu import FeishuChannel
        fs = config.feishu_config
        return FeishuChannel(
            app_id=fs.get("app_id", ""),
            app_secret=fs.get("app_secret", ""),
            api_base=fs.get("api_base", "https://open.feishu.cn"),
            webhook_host=fs.get("webhook_host", "0.0.0.0"),  # noqa: S104
            webhook_port=fs.get("webhook_port", 9000),
            webhook_path=fs.get("webhook_path", "/feishu/events"),
            verification_token=fs.get("verification_token", ""),
            chunk_limit=fs.get("text_chunk_limit", 10000),
        )
    raise ValueError(f"Unknown channel type: {ch_type!r}")
