from __future__ import annotations

"""FastAPI backend for chatdesk.

Run with:
    uvicorn chatdesk.backend.app:app --reload --port 8000

Env vars required:
    OPENAI_API_KEY
"""

import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from pydantic import BaseModel, Field

from chatdesk import config
from chatdesk.backend.coordinator import RequestCoordinator
from chatdesk.llm.provider import OpenAIProvider
from chatdesk.memory.crud import ChatStore
from chatdesk.memory.export import export_chat_csv
from chatdesk.search.engine import SearchEngine
from chatdesk.utils.error_handler import ChatNotFoundError, StorageError, ValidationError

# ---------------------------------------------------------------------------
# Pydantic Schemas
# ---------------------------------------------------------------------------


class ContextMessage(BaseModel):
    role: str
    content: str


class ExchangeRequest(BaseModel):
    chat_id: int | None = None
    chat_title: str = ""
    system_message: str = ""
    model: str = Field(default_factory=lambda: config.DEFAULT_MODEL)
    prompt: str
    context: List[ContextMessage] | None = Field(
        default=None,
        description="Explicit context array. If omitted, the server trims and builds it from the chat.",
    )
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ExchangeResponse(BaseModel):
    chat_id: int | None
    chat_title: str
    state: str
    request_id: int | None = None
    timestamp: int | None = None
    completion: str | None = None
    finish_reason: str | None = None
    prompt: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    chat_created: bool = False
    error: str | None = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    events: List[Dict[str, Any]] = Field(default_factory=list)


class RenameRequest(BaseModel):
    old_title: str
    new_title: str


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


def create_app(
    coordinator: Optional[RequestCoordinator] = None,
    search_engine: Optional[SearchEngine] = None,
) -> FastAPI:
    """Build the API. Default collaborators are created on first use."""
    services: Dict[str, Any] = {"coordinator": coordinator, "search": search_engine}
    services_lock = threading.Lock()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        if services["coordinator"] is not None:
            services["coordinator"].session.close()

    app = FastAPI(title="chatdesk", version="0.1.0", lifespan=lifespan)

    def get_coordinator() -> RequestCoordinator:
        with services_lock:
            if services["coordinator"] is None:
                store = ChatStore(config.DATABASE_URL)
                services["coordinator"] = RequestCoordinator(store, OpenAIProvider())
            return services["coordinator"]

    def get_search() -> SearchEngine:
        store = get_coordinator().store
        with services_lock:
            if services["search"] is None:
                services["search"] = SearchEngine(store)
        return services["search"]

    @app.exception_handler(ValidationError)
    async def _validation_error(_, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ChatNotFoundError)
    async def _not_found(_, exc: ChatNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "chat_id": exc.chat_id})

    @app.exception_handler(StorageError)
    async def _storage_error(_, exc: StorageError):
        logger.error("Storage failure: {}", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.post("/exchange", response_model=ExchangeResponse)
    def exchange(req: ExchangeRequest):
        coordinator = get_coordinator()
        conversation = coordinator.conversation_for(req.chat_id, req.chat_title, req.system_message)
        context = [m.model_dump() for m in req.context] if req.context is not None else None

        events: List[Dict[str, Any]] = []
        result = coordinator.request_exchange(
            conversation,
            req.model,
            req.prompt,
            req.parameters,
            context=context,
            listener=lambda name, payload: events.append({"event": name, **payload}),
        )

        if result is None:
            raise HTTPException(status_code=409, detail="A request for this chat is already in progress.")

        body = ExchangeResponse(
            chat_id=conversation.chat_id,
            chat_title=conversation.title,
            state=result.state.value,
            prompt=result.prompt,
            chat_created=result.chat_created,
            rows=[row.to_dict() for row in result.rows],
            events=events,
        )
        if result.ok:
            ex = result.exchange
            body.request_id = ex.request_id
            body.timestamp = ex.timestamp
            body.completion = ex.completion
            body.finish_reason = ex.finish_reason
            body.prompt_tokens = ex.prompt_tokens
            body.completion_tokens = ex.completion_tokens
            return body

        logger.warning("Exchange failed for chat {}: {}", conversation.chat_id, result.error)
        body.error = str(result.error)
        status = 500 if isinstance(result.error, StorageError) else 502
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.get("/chats")
    def saved_chats():
        return get_coordinator().saved_chats()

    @app.get("/chats/{chat_id}/history")
    def history(chat_id: int):
        conversation = get_coordinator().conversation_for(chat_id)
        return {
            "chat_id": chat_id,
            "chat_title": conversation.title,
            "system_message": conversation.system_message,
            "history": conversation.history_array(),
        }

    @app.get("/chats/{chat_id}/context")
    def context(chat_id: int, trim: bool = False, model: str | None = None):
        coordinator = get_coordinator()
        conversation = coordinator.conversation_for(chat_id)
        model = model or config.DEFAULT_MODEL
        messages = conversation.context_array(
            trim=trim,
            maximum=config.context_limit_for(model),
            reserve=coordinator.reserve,
            count_system=coordinator.count_system,
            evict=False,
        )
        return {
            "chat_id": chat_id,
            "context_tokens": conversation.context_token_count(),
            "messages": messages,
        }

    @app.post("/chats/{chat_id}/context/reset")
    def reset_context(chat_id: int):
        conversation = get_coordinator().reset_context(chat_id)
        return {"chat_id": chat_id, "context_tokens": conversation.context_token_count()}

    @app.patch("/chats/{chat_id}", status_code=204)
    def rename(chat_id: int, req: RenameRequest):
        try:
            get_coordinator().rename_chat(chat_id, req.old_title, req.new_title)
        except ValidationError as exc:
            return JSONResponse(
                status_code=422,
                content={"detail": str(exc), "chat_id": chat_id, "old_title": req.old_title},
            )
        except ChatNotFoundError as exc:
            return JSONResponse(
                status_code=404,
                content={"detail": str(exc), "chat_id": chat_id, "old_title": req.old_title},
            )
        except StorageError as exc:
            logger.error("Rename of chat {} failed: {}", chat_id, exc)
            return JSONResponse(
                status_code=500,
                content={"detail": str(exc), "chat_id": chat_id, "old_title": req.old_title},
            )
        return Response(status_code=204)

    @app.delete("/chats/{chat_id}")
    def delete(chat_id: int):
        get_coordinator().delete_chat(chat_id)
        return {"chat_id": chat_id, "deleted": True}

    @app.get("/chats/{chat_id}/export", response_class=PlainTextResponse)
    def export(chat_id: int):
        csv_text = export_chat_csv(get_coordinator().store, chat_id)
        return PlainTextResponse(csv_text, media_type="text/csv")

    @app.get("/search")
    def search(query: str = Query(..., description="Text to look for in prompts and completions")):
        results = get_search().search(query)
        return [result.to_dict() for result in results]

    return app


config.setup_logging()

app = create_app()
