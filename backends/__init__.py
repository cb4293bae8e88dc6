"""AI backend interface and shared types.

Defines the contract between the router and a conversational backend that
keeps server-side threads. Backend-specific details (CLI flags, API calls)
are handled inside implementations, not in the interface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config

log = logging.getLogger(__name__)


class BackendError(Exception):
    """A turn failed: timeout, quota, process crash, malformed output."""


class ResumeError(BackendError):
    """A persisted thread could not be resumed (expired, deleted, unknown)."""


@dataclass(frozen=True)
class ThreadOptions:
    sandbox_mode: str = "workspace-write"
    approval_policy: str = "never"
    reasoning_effort: str = "medium"
    web_search_enabled: bool = True
    working_directory: str = ""
    skip_git_repo_check: bool = True
    model: str = ""


@dataclass
class Usage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TurnResult:
    final_response: str
    usage: Usage = field(default_factory=Usage)


class Thread(Protocol):
    @property
    def id(self) -> str | None: ...

    async def run(self, text: str) -> TurnResult: ...


class AgentBackend(Protocol):
    async def start_thread(self, options: ThreadOptions) -> Thread: ...

    async def resume_thread(self, thread_id: str, options: ThreadOptions) -> Thread:
        """Reattach to an existing thread. Raises ResumeError if it is gone."""
        ...


def create_backend(config: Config) -> AgentBackend:
    """Factory: create backend from config."""
    backend_type = config.backend_type

    if backend_type == "codex-exec":
        from .codex_exec import CodexExecBackend
        return CodexExecBackend(
            binary=config.codex_binary,
            codex_home=config.codex_home,
            turn_timeout=config.codex_turn_timeout,
        )
    if backend_type == "openai-conversations":
        from .openai_conversations import OpenAIConversationsBackend
        return OpenAIConversationsBackend(
            api_key=config.openai_api_key,
            model=config.openai_model,
            base_url=config.openai_base_url,
        )
    raise ValueError(f"Unknown backend type: {backend_type!r}")
