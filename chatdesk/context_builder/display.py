from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RowKind(str, Enum):
    PROMPT = "prompt"
    RESPONSE = "response"
    ERROR = "error"


# Avatar references handed to the renderer, one per row kind.
AVATARS = {
    RowKind.PROMPT: "user",
    RowKind.RESPONSE: "assistant",
    RowKind.ERROR: "error",
}


@dataclass(frozen=True)
class DisplayRow:
    """A single row of the chat transcript, switched on ``kind`` when rendered."""

    kind: RowKind
    text: str
    avatar_ref: str
    request_id: Optional[int] = None

    @classmethod
    def prompt(cls, text: str, request_id: Optional[int] = None) -> "DisplayRow":
        return cls(RowKind.PROMPT, text, AVATARS[RowKind.PROMPT], request_id)

    @classmethod
    def response(cls, text: str, request_id: Optional[int] = None) -> "DisplayRow":
        return cls(RowKind.RESPONSE, text, AVATARS[RowKind.RESPONSE], request_id)

    @classmethod
    def error(cls, text: str) -> "DisplayRow":
        return cls(RowKind.ERROR, text, AVATARS[RowKind.ERROR])

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "avatar_ref": self.avatar_ref,
            "request_id": self.request_id,
        }
