"""Token counting with tiktoken.

Encodings are cached per model; models tiktoken does not know fall back to
``cl100k_base``.
"""
import threading
from typing import Dict

import tiktoken

FALLBACK_ENCODING = "cl100k_base"

_ENCODINGS: Dict[str, tiktoken.Encoding] = {}
_LOCK = threading.Lock()


def _encoding_for(model: str) -> tiktoken.Encoding:
    with _LOCK:
        encoding = _ENCODINGS.get(model)
        if encoding is None:
            try:
                encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                encoding = tiktoken.get_encoding(FALLBACK_ENCODING)
            _ENCODINGS[model] = encoding
        return encoding


def count_tokens(model: str, text: str) -> int:
    """Return the number of tokens ``text`` occupies for ``model``."""
    if not text:
        return 0
    return len(_encoding_for(model).encode(text, disallowed_special=()))
