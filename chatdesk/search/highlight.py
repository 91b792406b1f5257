"""Split matched text into highlighted and plain runs for display.

Plain runs longer than ``run_length`` word-boundary tokens are elided:
before the first match only the tail is kept, between matches both ends,
after the last match only the head.
"""
import re
from typing import List, Sequence, Tuple

from chatdesk.search.fuzzy import Span

_WORD_BOUNDARY = re.compile(r"\b")

LEFT = "left"
MIDDLE = "middle"
RIGHT = "right"


def _tokens(text: str) -> List[str]:
    return [t for t in _WORD_BOUNDARY.split(text) if t]


def cut(text: str, position: str, run_length: int = 6) -> str:
    tokens = _tokens(text)
    if len(tokens) <= run_length:
        return text
    if position == MIDDLE and len(tokens) <= run_length * 2:
        return text

    if position == MIDDLE:
        return "".join(tokens[:run_length] + [" ... "] + tokens[-run_length:])
    if position == LEFT:
        return "".join(["... "] + tokens[-run_length:])
    if position == RIGHT:
        return "".join(tokens[:run_length] + [" ..."])
    raise ValueError(f"wrong cut position: {position}")


def highlight_runs(text: str, spans: Sequence[Span], run_length: int = 6) -> List[Tuple[str, bool]]:
    """Return ``(text, highlighted)`` runs covering ``text`` in order."""
    runs: List[Tuple[str, bool]] = []
    index = 0
    for start, end in spans:
        if start > index:
            position = LEFT if index == 0 else MIDDLE
            runs.append((cut(text[index:start], position, run_length), False))
        runs.append((text[start:end + 1], True))
        index = end + 1

    remainder = text[index:]
    if remainder:
        runs.append((cut(remainder, RIGHT, run_length), False))
    return runs
