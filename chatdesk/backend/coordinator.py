"""Request lifecycle for chat exchanges.

Each conversation moves through ``IDLE -> IN_FLIGHT -> SUCCESS|FAILURE -> IDLE``.
At most one exchange per conversation is in flight; a second request made
meanwhile is dropped. Only exchanges the provider answered *and* the store
accepted reach the in-memory conversation.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from chatdesk import config
from chatdesk.context_builder.conversation import Conversation, Exchange
from chatdesk.context_builder.display import DisplayRow
from chatdesk.context_builder.session import SessionState
from chatdesk.llm.prompt_builder import build_messages, build_title_messages, clean_title
from chatdesk.llm.provider import ChatProvider, ProviderReply
from chatdesk.llm.tokens import count_tokens
from chatdesk.memory.crud import ChatStore
from chatdesk.utils.error_handler import (
    ChatNotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
    handle_exceptions,
    retry,
)
from chatdesk.utils.feature_flags import is_feature_enabled
from chatdesk.utils.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]
TokenCounter = Callable[[str, str], int]


class RequestState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ExchangeResult:
    """Outcome of one exchange attempt.

    On failure ``prompt`` carries the original text so the caller can put it
    back into the input for a retry.
    """

    state: RequestState
    conversation: Conversation
    prompt: str
    exchange: Optional[Exchange] = None
    error: Optional[Exception] = None
    chat_created: bool = False
    rows: List[DisplayRow] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is RequestState.SUCCESS


def _report_title_failure(
    error: Exception, coordinator: RequestCoordinator, conversation: Conversation, *_: Any
) -> None:
    coordinator._emit("chat-title-failure", {"chat_id": conversation.chat_id, "error": str(error)})


class RequestCoordinator:
    def __init__(
        self,
        store: ChatStore,
        provider: ChatProvider,
        session: Optional[SessionState] = None,
        token_counter: TokenCounter = count_tokens,
        listener: Optional[Listener] = None,
        reserve: Optional[int] = None,
        auto_title: Optional[bool] = None,
        count_system: Optional[bool] = None,
    ):
        self.store = store
        self.provider = provider
        self.token_counter = token_counter
        self.listener = listener
        self.reserve = config.CONTEXT_RESERVE if reserve is None else reserve
        self.auto_title = is_feature_enabled("auto_title") if auto_title is None else auto_title
        self.count_system = (
            is_feature_enabled("count_system_message") if count_system is None else count_system
        )
        if session is None:
            session = SessionState.load(store, token_counter=token_counter, model=config.DEFAULT_MODEL)
        self.session = session

        self._states: Dict[Conversation, RequestState] = {}
        self._lock = threading.Lock()
        # Per-call listener override, see request_exchange(listener=...).
        self._local = threading.local()
        self._persist = retry(
            max_attempts=config.STORAGE_RETRY_ATTEMPTS,
            delay=config.STORAGE_RETRY_DELAY,
            exceptions=StorageError,
        )(self._persist_once)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def state_of(self, conversation: Conversation) -> RequestState:
        with self._lock:
            return self._states.get(conversation, RequestState.IDLE)

    def _begin(self, conversation: Conversation) -> bool:
        with self._lock:
            if self._states.get(conversation) is RequestState.IN_FLIGHT:
                return False
            self._states[conversation] = RequestState.IN_FLIGHT
        logger.debug("Chat %s: idle -> in_flight", conversation.chat_id)
        return True

    def _transition(self, conversation: Conversation, state: RequestState) -> None:
        with self._lock:
            self._states[conversation] = state
        logger.debug("Chat %s: in_flight -> %s", conversation.chat_id, state.value)

    def _finish(self, conversation: Conversation) -> None:
        with self._lock:
            self._states.pop(conversation, None)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        listener = getattr(self._local, "listener", None) or self.listener
        if listener is not None:
            listener(event, payload)

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def conversation_for(
        self,
        chat_id: Optional[int] = None,
        chat_title: str = "",
        system_message: str = "",
    ) -> Conversation:
        """Return the live conversation for ``chat_id`` or a fresh unsaved one."""
        if chat_id is None:
            return self.session.new_conversation(title=chat_title, system_message=system_message)
        conversation = self.session.get(chat_id)
        if conversation is None:
            raise ChatNotFoundError(chat_id)
        return conversation

    def request_exchange(
        self,
        conversation: Conversation,
        model: str,
        prompt: str,
        parameters: Optional[Mapping[str, Any]] = None,
        context: Optional[List[Dict[str, str]]] = None,
        listener: Optional[Listener] = None,
    ) -> Optional[ExchangeResult]:
        """Run one exchange for ``conversation``.

        Returns ``None`` without side effects when an exchange for the same
        conversation is already in flight. ``listener`` replaces the
        coordinator-wide listener for the events of this call only.
        """
        if not model:
            raise ValidationError("A model identifier is required")
        if prompt is None or not prompt.strip():
            raise ValidationError("Prompt must not be empty")

        if not self._begin(conversation):
            logger.info("Chat %s already has a request in flight; ignoring", conversation.chat_id)
            return None

        untitled = conversation.is_new and not conversation.title
        self._local.listener = listener
        try:
            try:
                result = self._run_exchange(conversation, model, prompt, dict(parameters or {}), context)
            finally:
                self._finish(conversation)

            if result.ok and untitled and self.auto_title:
                self.generate_title(conversation, model, result.exchange)
        finally:
            self._local.listener = None
        return result

    def _run_exchange(
        self,
        conversation: Conversation,
        model: str,
        prompt: str,
        parameters: Dict[str, Any],
        context: Optional[List[Dict[str, str]]],
    ) -> ExchangeResult:
        if context is None:
            context = conversation.context_array(
                trim=True,
                maximum=config.context_limit_for(model),
                reserve=parameters.get("max_tokens") or self.reserve,
                count_system=self.count_system,
            )
        messages = build_messages(context, prompt)

        try:
            reply = self.provider.complete(model, messages, parameters)
        except ProviderError as exc:
            return self._fail(conversation, prompt, exc)

        prompt_tokens = self.token_counter(model, prompt)
        try:
            chat_created, request_id = self._persist(
                conversation, model, reply, parameters, prompt, prompt_tokens
            )
        except StorageError as exc:
            return self._fail(conversation, prompt, exc)

        exchange = Exchange(
            request_id=request_id,
            timestamp=reply.created,
            prompt=prompt,
            completion=reply.content,
            prompt_tokens=prompt_tokens,
            completion_tokens=reply.completion_tokens,
            model=model,
            parameters=parameters,
            finish_reason=reply.finish_reason,
        )
        conversation.append_exchange(exchange)
        self._transition(conversation, RequestState.SUCCESS)

        self._emit("response-ready", {"chat_id": conversation.chat_id})
        self._emit("response-success", {
            "chat_id": conversation.chat_id,
            "request_id": request_id,
            "model": model,
            "timestamp": reply.created,
            "parameters": parameters,
            "finish_reason": reply.finish_reason,
            "prompt": prompt,
            "completion": reply.content,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": reply.completion_tokens,
        })
        return ExchangeResult(
            state=RequestState.SUCCESS,
            conversation=conversation,
            prompt=prompt,
            exchange=exchange,
            chat_created=chat_created,
            rows=[DisplayRow.prompt(prompt, request_id), DisplayRow.response(reply.content, request_id)],
        )

    def _persist_once(
        self,
        conversation: Conversation,
        model: str,
        reply: ProviderReply,
        parameters: Dict[str, Any],
        prompt: str,
        prompt_tokens: int,
    ) -> Tuple[bool, int]:
        exchange_fields = dict(
            model=model,
            timestamp=reply.created,
            parameters=parameters,
            finish_reason=reply.finish_reason,
            prompt=prompt,
            prompt_tokens=prompt_tokens,
            completion=reply.content,
            completion_tokens=reply.completion_tokens,
        )
        if conversation.chat_id is not None:
            return False, self.store.insert_exchange(conversation.chat_id, **exchange_fields)

        chat_id, request_id = self.store.start_chat(
            conversation.title or None, conversation.system_message, **exchange_fields
        )
        self.session.attach(conversation, chat_id)
        if not conversation.title:
            conversation.title = "New Chat"
        self._emit("chat-created", {
            "chat_id": chat_id,
            "chat_title": conversation.title,
            "system_message": conversation.system_message,
        })
        return True, request_id

    def _fail(self, conversation: Conversation, prompt: str, error: Exception) -> ExchangeResult:
        logger.warning("Exchange for chat %s failed: %s", conversation.chat_id, error)
        self._transition(conversation, RequestState.FAILURE)
        self._emit("response-ready", {"chat_id": conversation.chat_id})
        self._emit("response-error", {
            "chat_id": conversation.chat_id,
            "prompt": prompt,
            "error": str(error),
            "kind": type(error).__name__,
        })
        return ExchangeResult(
            state=RequestState.FAILURE,
            conversation=conversation,
            prompt=prompt,
            error=error,
            rows=[DisplayRow.error(str(error))],
        )

    @handle_exceptions((ProviderError, StorageError, ValidationError), on_error=_report_title_failure)
    def generate_title(self, conversation: Conversation, model: str, exchange: Exchange) -> Optional[str]:
        """Ask the provider for a short title and store it.

        Returns ``None`` on failure, which is reported through the listener
        only; the exchange that was already saved is unaffected.
        """
        chat_id = conversation.chat_id
        self._emit("generating-chat-title", {"chat_id": chat_id})
        reply = self.provider.complete(model, build_title_messages(exchange.prompt, exchange.completion))
        title = clean_title(reply.content)
        self.store.rename_chat(chat_id, title)

        conversation.title = title
        logger.info("Chat %s titled %r", chat_id, title)
        self._emit("chat-title-generated", {"chat_id": chat_id, "chat_title": title})
        return title

    # ------------------------------------------------------------------
    # Chat management
    # ------------------------------------------------------------------

    def saved_chats(self) -> List[Dict[str, Any]]:
        """All reconstruction view rows; storage failures propagate."""
        return self.store.fetch_all_exchanges()

    def rename_chat(self, chat_id: int, old_title: str, new_title: str) -> None:
        try:
            self.store.rename_chat(chat_id, new_title)
        except (StorageError, ValidationError):
            self._emit("chat-title-edit-failure", {"chat_id": chat_id, "old_title": old_title})
            raise
        conversation = self.session.get(chat_id)
        if conversation is not None:
            conversation.title = new_title

    def delete_chat(self, chat_id: int) -> None:
        self.store.delete_chat(chat_id)
        self.session.remove(chat_id)
        self._emit("chat-deleted", {"chat_id": chat_id})

    def reset_context(self, chat_id: int) -> Conversation:
        conversation = self.conversation_for(chat_id)
        conversation.reset_context()
        return conversation
