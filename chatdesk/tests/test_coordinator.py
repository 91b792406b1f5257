import sys
import threading
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeProvider, reply  # noqa: E402

from chatdesk import config  # noqa: E402
from chatdesk.backend.coordinator import RequestState  # noqa: E402
from chatdesk.utils.error_handler import (  # noqa: E402
    ChatNotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)


def event_names(coordinator):
    return [name for name, _ in coordinator.events]


def test_first_exchange_creates_chat(store, make_coordinator):
    provider = FakeProvider(reply("Hi there"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for(system_message="")

    result = coordinator.request_exchange(conversation, "m", "Hello")

    assert result.ok and result.chat_created
    assert conversation.chat_id is not None
    assert coordinator.session.get(conversation.chat_id) is conversation
    assert provider.calls[0]["messages"] == [
        {"role": "system", "content": ""},
        {"role": "user", "content": "Hello"},
    ]

    rows = store.fetch_all_exchanges()
    assert len(rows) == 1
    row = rows[0]
    assert row["chat_id"] == conversation.chat_id
    assert row["model"] == "m" and row["finish_reason"] == "stop"
    assert row["prompt"] == "Hello" and row["completion"] == "Hi there"
    assert row["prompt_tokens"] == 1 and row["completion_tokens"] == 2

    assert event_names(coordinator) == ["chat-created", "response-ready", "response-success"]
    assert coordinator.state_of(conversation) is RequestState.IDLE
    assert [r.kind.value for r in result.rows] == ["prompt", "response"]


def test_follow_up_exchange_sends_previous_turns(store, make_coordinator):
    provider = FakeProvider(reply("first answer"), reply("second answer"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for(system_message="sys")

    coordinator.request_exchange(conversation, "m", "first question")
    result = coordinator.request_exchange(conversation, "m", "second question", {"temperature": 0})

    assert result.ok and not result.chat_created
    assert [m["content"] for m in provider.calls[1]["messages"]] == [
        "sys", "first question", "first answer", "second question",
    ]
    assert provider.calls[1]["parameters"] == {"temperature": 0}
    assert [h["prompt"] for h in conversation.history_array()] == ["first question", "second question"]
    assert len(store.fetch_all_exchanges(conversation.chat_id)) == 2


def test_context_is_trimmed_to_model_limit(store, make_coordinator, monkeypatch):
    monkeypatch.setitem(config.MODEL_CONTEXT_LIMITS, "tiny", 10)
    provider = FakeProvider(
        reply("a b c", completion_tokens=3),
        reply("d e f", completion_tokens=3),
        reply("done"),
    )
    coordinator = make_coordinator(provider, reserve=2)
    conversation = coordinator.conversation_for()

    coordinator.request_exchange(conversation, "tiny", "one two")        # 2 + 3 tokens
    coordinator.request_exchange(conversation, "tiny", "three four")     # 2 + 3 tokens
    coordinator.request_exchange(conversation, "tiny", "five")

    # 5 + 5 + reserve 2 > 10, so only the newest exchange is kept
    sent = [m["content"] for m in provider.calls[2]["messages"]]
    assert sent == ["", "three four", "d e f", "five"]
    assert len(conversation.history_array()) == 3


def test_max_tokens_parameter_is_used_as_reserve(store, make_coordinator, monkeypatch):
    monkeypatch.setitem(config.MODEL_CONTEXT_LIMITS, "tiny", 10)
    provider = FakeProvider(reply("x", completion_tokens=1), reply("y"))
    coordinator = make_coordinator(provider, reserve=0)
    conversation = coordinator.conversation_for()

    coordinator.request_exchange(conversation, "tiny", "q")
    coordinator.request_exchange(conversation, "tiny", "r", {"max_tokens": 9})

    assert [m["content"] for m in provider.calls[1]["messages"]] == ["", "r"]
    assert provider.calls[1]["parameters"] == {"max_tokens": 9}


def test_explicit_context_is_sent_verbatim(store, make_coordinator):
    provider = FakeProvider(reply("ok"))
    coordinator = make_coordinator(provider)
    context = [{"role": "system", "content": "custom"}]

    coordinator.request_exchange(coordinator.conversation_for(), "m", "go", context=context)

    assert provider.calls[0]["messages"] == [
        {"role": "system", "content": "custom"},
        {"role": "user", "content": "go"},
    ]
    assert context == [{"role": "system", "content": "custom"}]


def test_provider_failure_persists_nothing(store, make_coordinator):
    provider = FakeProvider(ProviderError("rate limited"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for()

    result = coordinator.request_exchange(conversation, "m", "Hello")

    assert result.state is RequestState.FAILURE
    assert result.prompt == "Hello"
    assert isinstance(result.error, ProviderError)
    assert result.rows[0].kind.value == "error"
    assert conversation.chat_id is None
    assert conversation.exchanges == []
    assert store.fetch_all_exchanges() == []
    assert event_names(coordinator) == ["response-ready", "response-error"]
    assert coordinator.state_of(conversation) is RequestState.IDLE


def test_provider_failure_on_existing_chat_keeps_history(store, make_coordinator):
    provider = FakeProvider(reply("fine"), ProviderError("boom"), reply("back"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for()
    coordinator.request_exchange(conversation, "m", "one")

    failed = coordinator.request_exchange(conversation, "m", "two")
    retried = coordinator.request_exchange(conversation, "m", failed.prompt)

    assert not failed.ok and retried.ok
    assert [h["prompt"] for h in conversation.history_array()] == ["one", "two"]
    assert len(store.fetch_all_exchanges()) == 2


def test_storage_failure_rolls_back(store, make_coordinator):
    provider = FakeProvider(reply("first"), reply("lost"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for()
    coordinator.request_exchange(conversation, "m", "one")

    # the chat disappears underneath the live conversation
    store.delete_chat(conversation.chat_id)
    result = coordinator.request_exchange(conversation, "m", "two")

    assert result.state is RequestState.FAILURE
    assert isinstance(result.error, StorageError)
    assert result.prompt == "two"
    assert [h["prompt"] for h in conversation.history_array()] == ["one"]
    assert store.fetch_all_exchanges() == []
    assert coordinator.state_of(conversation) is RequestState.IDLE


def test_second_request_while_in_flight_is_ignored(store, make_coordinator):
    gate = threading.Event()
    provider = FakeProvider(reply("slow answer"), gate=gate)
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for()
    results = []

    worker = threading.Thread(
        target=lambda: results.append(coordinator.request_exchange(conversation, "m", "first"))
    )
    worker.start()
    assert provider.entered.wait(timeout=5)
    assert coordinator.state_of(conversation) is RequestState.IN_FLIGHT

    assert coordinator.request_exchange(conversation, "m", "second") is None

    gate.set()
    worker.join(timeout=5)

    assert len(provider.calls) == 1
    assert results[0].ok
    assert len(store.fetch_all_exchanges()) == 1
    assert coordinator.state_of(conversation) is RequestState.IDLE


def test_other_conversations_are_not_blocked(store, make_coordinator):
    gate = threading.Event()
    provider = FakeProvider(reply("slow"), reply("fast"), gate=gate)
    coordinator = make_coordinator(provider)
    busy = coordinator.conversation_for()
    other = coordinator.conversation_for()

    worker = threading.Thread(target=coordinator.request_exchange, args=(busy, "m", "first"))
    worker.start()
    assert provider.entered.wait(timeout=5)

    result = coordinator.request_exchange(other, "m", "second")
    assert coordinator.state_of(busy) is RequestState.IN_FLIGHT
    gate.set()
    worker.join(timeout=5)

    assert result is not None and result.ok
    assert len(provider.calls) == 2


@pytest.mark.parametrize("prompt", ["", "   "])
def test_empty_prompt_is_rejected(make_coordinator, prompt):
    provider = FakeProvider()
    coordinator = make_coordinator(provider)
    with pytest.raises(ValidationError):
        coordinator.request_exchange(coordinator.conversation_for(), "m", prompt)
    assert provider.calls == []


def test_unknown_chat_id(make_coordinator):
    coordinator = make_coordinator(FakeProvider())
    with pytest.raises(ChatNotFoundError):
        coordinator.conversation_for(123)


def test_title_is_generated_for_untitled_chat(store, make_coordinator):
    provider = FakeProvider(reply("Hi there"), reply('"Friendly greeting"\n'))
    coordinator = make_coordinator(provider, auto_title=True)
    conversation = coordinator.conversation_for()

    coordinator.request_exchange(conversation, "m", "Hello")

    title_prompt = provider.calls[1]["messages"][0]["content"]
    assert "Q: Hello" in title_prompt and "A: Hi there" in title_prompt
    assert conversation.title == "Friendly greeting"
    assert store.fetch_all_exchanges()[0]["chat_title"] == "Friendly greeting"
    assert event_names(coordinator)[-2:] == ["generating-chat-title", "chat-title-generated"]


def test_title_failure_keeps_saved_exchange(store, make_coordinator):
    provider = FakeProvider(reply("Hi there"), ProviderError("down"))
    coordinator = make_coordinator(provider, auto_title=True)
    conversation = coordinator.conversation_for()

    result = coordinator.request_exchange(conversation, "m", "Hello")

    assert result.ok
    assert conversation.title == "New Chat"
    rows = store.fetch_all_exchanges()
    assert len(rows) == 1 and rows[0]["chat_title"] == "New Chat"
    assert event_names(coordinator)[-1] == "chat-title-failure"
    assert coordinator.events[-1][1] == {"chat_id": conversation.chat_id, "error": "down"}


def test_titled_chat_skips_title_generation(store, make_coordinator):
    provider = FakeProvider(reply("Hi there"))
    coordinator = make_coordinator(provider, auto_title=True)
    conversation = coordinator.conversation_for(chat_title="Mine")

    coordinator.request_exchange(conversation, "m", "Hello")

    assert len(provider.calls) == 1
    assert store.fetch_all_exchanges()[0]["chat_title"] == "Mine"


def test_rename_and_delete_keep_session_in_sync(store, make_coordinator):
    provider = FakeProvider(reply("Hi"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for(chat_title="Old")
    coordinator.request_exchange(conversation, "m", "Hello")
    chat_id = conversation.chat_id

    coordinator.rename_chat(chat_id, "Old", "New")
    assert conversation.title == "New"

    with pytest.raises(ValidationError):
        coordinator.rename_chat(chat_id, "New", " ")
    assert coordinator.events[-1] == ("chat-title-edit-failure", {"chat_id": chat_id, "old_title": "New"})
    assert conversation.title == "New"

    coordinator.delete_chat(chat_id)
    assert chat_id not in coordinator.session
    assert store.fetch_all_exchanges() == []
    assert coordinator.events[-1] == ("chat-deleted", {"chat_id": chat_id})


def test_reset_context(store, make_coordinator):
    provider = FakeProvider(reply("Hi"), reply("again"))
    coordinator = make_coordinator(provider)
    conversation = coordinator.conversation_for()
    coordinator.request_exchange(conversation, "m", "Hello")

    coordinator.reset_context(conversation.chat_id)
    coordinator.request_exchange(conversation, "m", "fresh")

    assert [m["content"] for m in provider.calls[1]["messages"]] == ["", "fresh"]
    assert len(conversation.history_array()) == 2


def test_per_call_listener(store, make_coordinator):
    provider = FakeProvider(reply("Hi"))
    coordinator = make_coordinator(provider)
    seen = []

    coordinator.request_exchange(
        coordinator.conversation_for(), "m", "Hello",
        listener=lambda name, payload: seen.append(name),
    )

    assert seen == ["chat-created", "response-ready", "response-success"]
    assert coordinator.events == []
