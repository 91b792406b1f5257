from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# Database configuration
# ---------------------------------------------------------------------------

# Declarative base class that the ORM models should inherit from.
Base = declarative_base()

VIEW_NAME = "message_list_view"

# One row per request: the chat it belongs to plus both sides of the exchange.
_VIEW_SELECT = """
    SELECT
      chat.id AS chat_id,
      chat.title AS chat_title,
      chat.system_message AS system_message,
      request.id AS request_id,
      request.model AS model,
      request.created AS completion_created,
      request.parameters AS parameters,
      request.finish_reason AS finish_reason,
      prompt.content AS prompt,
      completion.content AS completion,
      prompt.tokens AS prompt_tokens,
      completion.tokens AS completion_tokens
    FROM request
      JOIN chat ON chat.id = request.chat_id
      JOIN (SELECT request_id, content, tokens FROM message WHERE role = 'user') AS prompt
        ON request.id = prompt.request_id
      JOIN (SELECT request_id, content, tokens FROM message WHERE role = 'assistant') AS completion
        ON request.id = completion.request_id
    ORDER BY request.id
"""


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless the pragma is set per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Build an engine for ``database_url``.

    ``check_same_thread`` must be disabled for SQLite so the store can be used
    from FastAPI worker threads; in-memory databases share a single connection.
    """
    is_sqlite = database_url.startswith("sqlite")
    kwargs = {}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, echo=echo, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def init_db(engine: Engine) -> None:
    """Create tables and the reconstruction view if they do not yet exist.

    Importing ``chatdesk.memory.models`` registers all subclasses with the Base
    metadata, after which ``metadata.create_all`` will build the schema.
    """
    # The models import needs to stay **inside** the function to avoid circular
    # imports (models.py imports Base from here).
    from . import models  # noqa: F401  (side-effect import)

    Base.metadata.create_all(bind=engine)

    with engine.begin() as conn:
        if engine.dialect.name == "sqlite":
            # SQLite has no CREATE OR REPLACE VIEW
            conn.execute(text(f"DROP VIEW IF EXISTS {VIEW_NAME}"))
            conn.execute(text(f"CREATE VIEW {VIEW_NAME} AS {_VIEW_SELECT}"))
        else:
            conn.execute(text(f"CREATE OR REPLACE VIEW {VIEW_NAME} AS {_VIEW_SELECT}"))
