"""Registry of the conversations that are live in this process.

Lifecycle: built once at startup from the reconstruction view
(``SessionState.load``), mutated only by the request coordinator and by
explicit create/delete operations, cleared by ``close`` at shutdown.
"""
from __future__ import annotations

import threading
from itertools import groupby
from typing import Callable, Dict, Iterator, List, Optional

from chatdesk.memory.crud import ChatStore
from chatdesk.utils.logger import get_logger

from .conversation import Conversation

logger = get_logger(__name__)

TokenCounter = Callable[[str, str], int]


class SessionState:
    def __init__(self, token_counter: Optional[TokenCounter] = None, model: str = ""):
        self._conversations: Dict[int, Conversation] = {}
        self._lock = threading.RLock()
        self._token_counter = token_counter
        self._model = model

    def __len__(self) -> int:
        return len(self._conversations)

    def __iter__(self) -> Iterator[Conversation]:
        with self._lock:
            return iter(list(self._conversations.values()))

    def __contains__(self, chat_id: int) -> bool:
        return chat_id in self._conversations

    def _system_tokens(self, system_message: str) -> int:
        if not system_message or self._token_counter is None:
            return 0
        return self._token_counter(self._model, system_message)

    @classmethod
    def load(
        cls,
        store: ChatStore,
        token_counter: Optional[TokenCounter] = None,
        model: str = "",
    ) -> "SessionState":
        """Hydrate every stored chat from the reconstruction view."""
        state = cls(token_counter=token_counter, model=model)
        rows = sorted(store.fetch_all_exchanges(), key=lambda r: r["chat_id"])
        for _, chat_rows in groupby(rows, key=lambda r: r["chat_id"]):
            chat_rows = sorted(chat_rows, key=lambda r: r["request_id"])
            conversation = Conversation.from_rows(
                chat_rows,
                system_tokens=state._system_tokens(chat_rows[0]["system_message"] or ""),
            )
            state._conversations[conversation.chat_id] = conversation
        logger.info("Loaded %d saved chat(s)", len(state))
        return state

    def get(self, chat_id: int) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(chat_id)

    def chats(self) -> List[Conversation]:
        with self._lock:
            return sorted(self._conversations.values(), key=lambda c: c.chat_id)

    def new_conversation(self, title: str = "", system_message: str = "") -> Conversation:
        """Return an unsaved conversation; it is registered once it gets an id."""
        return Conversation(
            title=title or "",
            system_message=system_message or "",
            system_tokens=self._system_tokens(system_message or ""),
        )

    def attach(self, conversation: Conversation, chat_id: int) -> None:
        with self._lock:
            conversation.chat_id = chat_id
            self._conversations[chat_id] = conversation

    def remove(self, chat_id: int) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.pop(chat_id, None)

    def close(self) -> None:
        with self._lock:
            self._conversations.clear()
