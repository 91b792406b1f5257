"""Adapter between the request coordinator and the language-model provider."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol

import openai

from chatdesk.utils.error_handler import ProviderError
from chatdesk.utils.logger import get_logger
from chatdesk.utils.openai_client import get_openai_client

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderReply:
    created: int
    content: str
    finish_reason: Optional[str]
    completion_tokens: int


class ChatProvider(Protocol):
    def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ProviderReply:
        ...


class OpenAIProvider:
    """Chat completions through the official ``openai`` SDK.

    The client is built on first use so that importing the backend does not
    require an API key.
    """

    def __init__(self, client: Optional[openai.OpenAI] = None, api_key: Optional[str] = None):
        self._client = client
        self._api_key = api_key

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            try:
                self._client = get_openai_client(self._api_key)
            except ValueError as exc:
                raise ProviderError(str(exc)) from exc
        return self._client

    def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ProviderReply:
        params = dict(parameters or {})
        logger.info("Calling OpenAI chat completion | model=%s | messages=%d", model, len(messages))
        try:
            response = self.client.chat.completions.create(model=model, messages=messages, **params)
        except openai.OpenAIError as exc:
            logger.error("OpenAI chat completion failed: %s", exc)
            raise ProviderError(str(exc)) from exc

        try:
            choice = response.choices[0]
            content = choice.message.content
            if content is None:
                raise ValueError("completion has no text content")
            return ProviderReply(
                created=int(response.created),
                content=content,
                finish_reason=choice.finish_reason,
                completion_tokens=int(response.usage.completion_tokens),
            )
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            logger.error("Malformed OpenAI response: %s", exc)
            raise ProviderError(f"Malformed provider response: {exc}") from exc
