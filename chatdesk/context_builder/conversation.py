"""In-memory context window over one chat's exchanges.

A ``Conversation`` keeps two sequences:

* the full *history* of persisted exchanges, in insertion order, and
* the live *context*: the suffix of the history that is still sent to the
  provider with the next prompt.

Eviction only ever shortens the live context from the front (oldest first);
persisted data is never touched.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional

from chatdesk.memory.crud import decode_parameters
from chatdesk.utils.logger import get_logger

from .display import DisplayRow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Exchange:
    """One persisted prompt/completion round trip."""

    request_id: int
    timestamp: int
    prompt: str
    completion: str
    prompt_tokens: int
    completion_tokens: int
    model: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None

    @property
    def tokens(self) -> int:
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Exchange":
        """Build from a reconstruction view row."""
        return cls(
            request_id=row["request_id"],
            timestamp=row["completion_created"],
            prompt=row["prompt"] or "",
            completion=row["completion"] or "",
            prompt_tokens=row["prompt_tokens"] or 0,
            completion_tokens=row["completion_tokens"] or 0,
            model=row["model"] or "",
            parameters=decode_parameters(row["parameters"]),
            finish_reason=row["finish_reason"],
        )


class Conversation:
    """History and live context of one chat.

    ``chat_id`` stays ``None`` until the first exchange has been saved.
    Instances compare by identity so they can key per-conversation state.
    """

    def __init__(
        self,
        chat_id: Optional[int] = None,
        title: str = "",
        system_message: str = "",
        system_tokens: int = 0,
    ):
        self.chat_id = chat_id
        self.title = title
        self._system_message = system_message or ""
        self.system_tokens = system_tokens
        self._history: List[Exchange] = []
        self._context: Deque[Exchange] = deque()

    def __repr__(self) -> str:
        return f"Conversation(chat_id={self.chat_id!r}, title={self.title!r}, exchanges={len(self._history)})"

    @property
    def system_message(self) -> str:
        return self._system_message

    @property
    def is_new(self) -> bool:
        return self.chat_id is None

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]], system_tokens: int = 0) -> "Conversation":
        """Rebuild a conversation from view rows belonging to a single chat."""
        rows = list(rows)
        if not rows:
            raise ValueError("Cannot rebuild a conversation from zero rows")

        first = rows[0]
        conversation = cls(
            chat_id=first["chat_id"],
            title=first["chat_title"] or "",
            system_message=first["system_message"] or "",
            system_tokens=system_tokens,
        )
        for row in rows:
            conversation.append_exchange(Exchange.from_row(row))
        return conversation

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append_exchange(self, exchange: Exchange) -> None:
        """Append to history and live context. Never triggers eviction."""
        self._history.append(exchange)
        self._context.append(exchange)

    def reset_context(self) -> None:
        """Drop the live context; history stays intact."""
        self._context.clear()

    def trim(self, maximum: int, reserve: int, count_system: bool = False) -> List[Exchange]:
        """Evict the oldest exchanges until the budget fits.

        Removes from the front while ``tokens + reserve > maximum``. The loop
        stops once the context is empty even if the budget still does not
        fit; the provider is then asked with the system message only.
        Returns the evicted exchanges, oldest first.
        """
        evicted = [self._context.popleft() for _ in range(self._overflow(maximum, reserve, count_system))]
        if evicted:
            logger.debug(
                "Evicted %d exchange(s) from chat %s; %d tokens remain in context",
                len(evicted), self.chat_id, self.context_token_count(),
            )
        return evicted

    def _overflow(self, maximum: int, reserve: int, count_system: bool) -> int:
        """How many of the oldest context exchanges do not fit the budget."""
        overhead = reserve + (self.system_tokens if count_system else 0)
        total = self.context_token_count()
        count = 0
        for exchange in self._context:
            if total + overhead <= maximum:
                break
            total -= exchange.tokens
            count += 1
        return count

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    @property
    def exchanges(self) -> List[Exchange]:
        return list(self._history)

    @property
    def context_exchanges(self) -> List[Exchange]:
        return list(self._context)

    def context_token_count(self) -> int:
        """Prompt plus completion tokens over the live context.

        The system message is not included; see ``trim(count_system=...)``.
        """
        return sum(exchange.tokens for exchange in self._context)

    def history_array(self) -> List[Dict[str, Any]]:
        return [
            {
                "request_id": exchange.request_id,
                "timestamp": exchange.timestamp,
                "prompt": exchange.prompt,
                "completion": exchange.completion,
            }
            for exchange in self._history
        ]

    def context_array(
        self,
        trim: bool = True,
        maximum: Optional[int] = None,
        reserve: int = 0,
        count_system: bool = False,
        evict: bool = True,
    ) -> List[Dict[str, str]]:
        """Return OpenAI ChatCompletion-style messages for the live context.

        The first entry is always the system message (possibly empty),
        followed by one user/assistant pair per retained exchange. With
        ``evict=False`` the trimmed messages are computed but the live context
        is left untouched.
        """
        exchanges = list(self._context)
        if trim:
            if maximum is None:
                raise ValueError("maximum is required when trimming the context")
            if evict:
                self.trim(maximum, reserve, count_system=count_system)
                exchanges = list(self._context)
            else:
                exchanges = exchanges[self._overflow(maximum, reserve, count_system):]

        messages: List[Dict[str, str]] = [{"role": "system", "content": self._system_message}]
        for exchange in exchanges:
            messages.append({"role": "user", "content": exchange.prompt})
            messages.append({"role": "assistant", "content": exchange.completion})
        return messages

    def display_rows(self) -> List[DisplayRow]:
        rows: List[DisplayRow] = []
        for exchange in self._history:
            rows.append(DisplayRow.prompt(exchange.prompt, exchange.request_id))
            rows.append(DisplayRow.response(exchange.completion, exchange.request_id))
        return rows
