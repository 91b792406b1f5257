from sqlalchemy import Column, ForeignKey, Integer, String, Text, Table, MetaData
from sqlalchemy.orm import relationship

from .db import Base, VIEW_NAME


class Chat(Base):
    """ORM model representing a conversation thread.

    Attributes
    ----------
    id
        Auto-increment primary key, assigned on the first successful exchange.
    title
        User-editable or auto-generated; the only mutable column.
    system_message
        Prepended to every context array sent to the provider. Never changes
        after the chat is created.
    """

    __tablename__ = "chat"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False, default="New Chat", server_default="New Chat")
    system_message = Column(Text, default="", server_default="")

    requests = relationship(
        "Request",
        back_populates="chat",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Request.id",
    )


class Request(Base):
    """One successful exchange with the provider.

    Failed attempts are never stored, so every row here has exactly two
    messages: the user prompt and the assistant completion.
    """

    __tablename__ = "request"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(
        Integer,
        ForeignKey("chat.id", onupdate="CASCADE", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    model = Column(String(128), nullable=False)
    # Provider-reported creation time, seconds since epoch.
    created = Column(Integer, nullable=False)
    # JSON-serialized request parameters.
    parameters = Column(Text, nullable=True)
    finish_reason = Column(String(32), nullable=True)

    chat = relationship("Chat", back_populates="requests")
    messages = relationship(
        "Message",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """One side of an exchange ("user" or "assistant")."""

    __tablename__ = "message"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(
        Integer,
        ForeignKey("request.id", onupdate="CASCADE", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    tokens = Column(Integer, nullable=True)

    request = relationship("Request", back_populates="messages")


# The view lives in its own metadata so ``create_all`` never tries to build it
# as a table; ``init_db`` creates it with explicit DDL.
view_metadata = MetaData()

message_list_view = Table(
    VIEW_NAME,
    view_metadata,
    Column("chat_id", Integer),
    Column("chat_title", Text),
    Column("system_message", Text),
    Column("request_id", Integer),
    Column("model", String),
    Column("completion_created", Integer),
    Column("parameters", Text),
    Column("finish_reason", String),
    Column("prompt", Text),
    Column("completion", Text),
    Column("prompt_tokens", Integer),
    Column("completion_tokens", Integer),
)
