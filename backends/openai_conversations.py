"""OpenAI backend using server-side conversations.

A conversation object holds the thread state; each turn is a Responses API
call attached to it. The conversation id is the durable thread id.
"""

from __future__ import annotations

import logging
from typing import Any

import openai

from . import BackendError, ResumeError, ThreadOptions, TurnResult, Usage

log = logging.getLogger(__name__)


class ConversationThread:
    def __init__(self, backend: OpenAIConversationsBackend, conversation_id: str,
                 options: ThreadOptions):
        self._backend = backend
        self._id = conversation_id
        self._options = options

    @property
    def id(self) -> str:
        return self._id

    async def run(self, text: str) -> TurnResult:
        return await self._backend.run_turn(self._id, self._options, text)


class OpenAIConversationsBackend:
    def __init__(self, api_key: str, model: str = "gpt-5", base_url: str = "",
                 client: Any = None):
        if client is None:
            kwargs: dict = {"api_key": api_key}
            if base_url:
                kwargs["base_url"] = base_url
            client = openai.AsyncOpenAI(**kwargs)
        self.client = client
        self.model = model

    async def start_thread(self, options: ThreadOptions) -> ConversationThread:
        try:
            conversation = await self.client.conversations.create()
        except openai.APIError as e:
            raise BackendError(f"Cannot create conversation: {e}") from e
        log.info("Created conversation %s", conversation.id)
        return ConversationThread(self, conversation.id, options)

    async def resume_thread(self, thread_id: str, options: ThreadOptions) -> ConversationThread:
        try:
            conversation = await self.client.conversations.retrieve(thread_id)
        except openai.NotFoundError as e:
            raise ResumeError(f"Conversation {thread_id} not found") from e
        except (openai.BadRequestError, openai.PermissionDeniedError) as e:
            raise ResumeError(f"Conversation {thread_id} is not usable: {e}") from e
        except openai.APIError as e:
            # Transient (network, 429, 5xx): keep the binding, fail this turn
            raise BackendError(f"Cannot retrieve conversation {thread_id}: {e}") from e
        return ConversationThread(self, conversation.id, options)

    def _request_params(self, conversation_id: str, options: ThreadOptions,
                        text: str) -> dict:
        params: dict[str, Any] = {
            "model": options.model or self.model,
            "conversation": conversation_id,
            "input": text,
        }
        if options.reasoning_effort:
            params["reasoning"] = {"effort": options.reasoning_effort}
        if options.web_search_enabled:
            params["tools"] = [{"type": "web_search"}]
        return params

    async def run_turn(self, conversation_id: str, options: ThreadOptions,
                       text: str) -> TurnResult:
        params = self._request_params(conversation_id, options, text)
        try:
            response = await self.client.responses.create(**params)
        except openai.APIError as e:
            raise BackendError(str(e)) from e

        usage = Usage()
        if getattr(response, "usage", None) is not None:
            u = response.usage
            details = getattr(u, "input_tokens_details", None)
            usage = Usage(
                input_tokens=getattr(u, "input_tokens", 0) or 0,
                cached_input_tokens=getattr(details, "cached_tokens", 0) or 0,
                output_tokens=getattr(u, "output_tokens", 0) or 0,
            )
        return TurnResult(final_response=response.output_text or "", usage=usage)
