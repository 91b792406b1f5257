import sys
import threading
from pathlib import Path
from typing import List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chatdesk import config  # noqa: E402
from chatdesk.backend.coordinator import RequestCoordinator  # noqa: E402
from chatdesk.context_builder.session import SessionState  # noqa: E402
from chatdesk.llm.provider import ProviderReply  # noqa: E402
from chatdesk.memory.crud import ChatStore  # noqa: E402


def word_count(model: str, text: str) -> int:
    """Deterministic stand-in for a real tokenizer."""
    return len(text.split())


class FakeProvider:
    """Replays queued replies (or raises queued exceptions) in order.

    ``gate`` holds the first call open so a test can observe the in-flight
    state; later calls go straight through.
    """

    def __init__(self, *replies, gate: threading.Event | None = None):
        self.replies: List = list(replies)
        self.calls: List[dict] = []
        self.gate = gate
        self.entered = threading.Event()

    def complete(self, model, messages, parameters=None):
        self.calls.append({"model": model, "messages": messages, "parameters": dict(parameters or {})})
        self.entered.set()
        if self.gate is not None and len(self.calls) == 1:
            self.gate.wait(timeout=5)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def reply(content: str, finish_reason: str = "stop", created: int = 1700000000, completion_tokens: int | None = None):
    return ProviderReply(
        created=created,
        content=content,
        finish_reason=finish_reason,
        completion_tokens=completion_tokens if completion_tokens is not None else len(content.split()),
    )


@pytest.fixture
def store(tmp_path):
    chat_store = ChatStore(f"sqlite:///{tmp_path / 'chat_history.sqlite'}")
    yield chat_store
    chat_store.dispose()


@pytest.fixture
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(config, "STORAGE_RETRY_DELAY", 0)
    monkeypatch.setattr(config, "STORAGE_RETRY_ATTEMPTS", 2)


@pytest.fixture
def make_coordinator(store, no_retry_delay):
    def _make(provider, auto_title=False, **kwargs):
        events = []
        coordinator = RequestCoordinator(
            store,
            provider,
            session=SessionState.load(store, token_counter=word_count),
            token_counter=word_count,
            listener=lambda name, payload: events.append((name, payload)),
            auto_title=auto_title,
            **kwargs,
        )
        coordinator.events = events
        return coordinator
    return _make
