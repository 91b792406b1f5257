import json
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatdesk.utils.error_handler import ChatNotFoundError, StorageError, ValidationError
from chatdesk.utils.logger import get_logger

from .db import create_db_engine, init_db, make_session_factory
from .models import Chat, Message, Request, message_list_view

logger = get_logger(__name__)


def encode_parameters(parameters: Optional[Mapping[str, Any]]) -> Optional[str]:
    if parameters is None:
        return None
    return json.dumps(dict(parameters), separators=(",", ":"))


def decode_parameters(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    return json.loads(raw)


class ChatStore:
    """Durable chat history backed by SQLAlchemy.

    Every write is whole-record: a chat row, or a request together with its two
    messages. Writes touching the same chat are serialized so that a delete is
    linearizable with respect to an exchange being saved into that chat.
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if database_url is None:
                from chatdesk.config import DATABASE_URL
                database_url = DATABASE_URL
            engine = create_db_engine(database_url)
        self.engine = engine
        self._session_factory = make_session_factory(engine)
        self._chat_locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        try:
            init_db(engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to initialise chat history schema: {exc}") from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _chat_lock(self, chat_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._chat_locks.get(chat_id)
            if lock is None:
                lock = self._chat_locks[chat_id] = threading.Lock()
            return lock

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on failure."""
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Storage failure while trying to %s: %s", action, exc)
            raise StorageError(f"Failed to {action}: {exc}") from exc
        finally:
            db.close()

    @staticmethod
    def _build_request(
        model: str,
        timestamp: int,
        parameters: Optional[Mapping[str, Any]],
        finish_reason: Optional[str],
        prompt: str,
        prompt_tokens: Optional[int],
        completion: str,
        completion_tokens: Optional[int],
    ) -> Request:
        return Request(
            model=model,
            created=int(timestamp),
            parameters=encode_parameters(parameters),
            finish_reason=finish_reason,
            messages=[
                Message(role="user", content=prompt, tokens=prompt_tokens),
                Message(role="assistant", content=completion, tokens=completion_tokens),
            ],
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_chat(self, title: Optional[str] = None, system_message: str = "") -> int:
        """Insert an empty chat row and return its id."""
        with self._session("create chat") as db:
            chat = Chat(title=title if title is not None else "New Chat", system_message=system_message or "")
            db.add(chat)
            db.flush()
            chat_id = chat.id
        logger.info("Created chat %s", chat_id)
        return chat_id

    def start_chat(
        self,
        title: Optional[str],
        system_message: str,
        model: str,
        timestamp: int,
        parameters: Optional[Mapping[str, Any]],
        finish_reason: Optional[str],
        prompt: str,
        prompt_tokens: Optional[int],
        completion: str,
        completion_tokens: Optional[int],
    ) -> Tuple[int, int]:
        """Create a chat together with its first exchange in one transaction.

        Returns ``(chat_id, request_id)``. A chat is never observable without
        at least one exchange when created this way.
        """
        with self._session("start chat") as db:
            request = self._build_request(
                model, timestamp, parameters, finish_reason,
                prompt, prompt_tokens, completion, completion_tokens,
            )
            chat = Chat(
                title=title if title is not None else "New Chat",
                system_message=system_message or "",
                requests=[request],
            )
            db.add(chat)
            db.flush()
            chat_id, request_id = chat.id, request.id
        logger.info("Started chat %s with request %s", chat_id, request_id)
        return chat_id, request_id

    def insert_exchange(
        self,
        chat_id: int,
        model: str,
        timestamp: int,
        parameters: Optional[Mapping[str, Any]],
        finish_reason: Optional[str],
        prompt: str,
        prompt_tokens: Optional[int],
        completion: str,
        completion_tokens: Optional[int],
    ) -> int:
        """Persist one request and both of its messages atomically.

        Raises ``StorageError`` (nothing committed) if any row fails, including
        when ``chat_id`` no longer exists.
        """
        with self._chat_lock(chat_id):
            with self._session("insert exchange") as db:
                request = self._build_request(
                    model, timestamp, parameters, finish_reason,
                    prompt, prompt_tokens, completion, completion_tokens,
                )
                request.chat_id = chat_id
                db.add(request)
                db.flush()
                request_id = request.id
        logger.debug("Saved request %s in chat %s", request_id, chat_id)
        return request_id

    def rename_chat(self, chat_id: int, new_title: str) -> None:
        if new_title is None or not new_title.strip():
            raise ValidationError("Chat title must not be empty")

        with self._chat_lock(chat_id):
            with self._session("rename chat") as db:
                result = db.execute(
                    update(Chat).where(Chat.id == chat_id).values(title=new_title)
                )
                if result.rowcount == 0:
                    raise ChatNotFoundError(chat_id)
        logger.info("Renamed chat %s", chat_id)

    def delete_chat(self, chat_id: int) -> None:
        """Delete a chat; its requests and messages go with it."""
        with self._chat_lock(chat_id):
            with self._session("delete chat") as db:
                chat = db.get(Chat, chat_id)
                if chat is None:
                    raise ChatNotFoundError(chat_id)
                db.delete(chat)
        with self._locks_guard:
            self._chat_locks.pop(chat_id, None)
        logger.info("Deleted chat %s", chat_id)

    # ------------------------------------------------------------------
    # Reads (all through the reconstruction view)
    # ------------------------------------------------------------------

    def fetch_all_exchanges(self, chat_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return view rows ordered by request id, optionally for one chat only."""
        stmt = select(message_list_view)
        if chat_id is not None:
            stmt = stmt.where(message_list_view.c.chat_id == chat_id)
        stmt = stmt.order_by(message_list_view.c.request_id)

        with self._session("fetch exchanges") as db:
            rows = db.execute(stmt).mappings().all()
            return [dict(row) for row in rows]

    def fetch_exchange(self, request_id: int) -> Optional[Dict[str, Any]]:
        stmt = select(message_list_view).where(message_list_view.c.request_id == request_id)
        with self._session("fetch exchange") as db:
            row = db.execute(stmt).mappings().first()
            return dict(row) if row is not None else None

    def fetch_chat(self, chat_id: int) -> Optional[Dict[str, Any]]:
        """Chat header (id, title, system message), also for chats without requests."""
        with self._session("fetch chat") as db:
            chat = db.get(Chat, chat_id)
            if chat is None:
                return None
            return {"chat_id": chat.id, "chat_title": chat.title, "system_message": chat.system_message}

    def dispose(self) -> None:
        self.engine.dispose()
