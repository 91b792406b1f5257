from __future__ import annotations

"""Prompt construction helpers for chatdesk.

All provider-facing message lists are assembled via this module so we keep
one single source of truth for request and title prompts.

Templates live in ``chatdesk/prompts/`` and use Jinja2 for simple variable
substitution.
"""

from pathlib import Path
from typing import Dict, List

import jinja2

# ---------------------------------------------------------------------------
# Paths & Jinja environment
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent  # chatdesk/
PROMPTS_DIR = BASE_DIR / "prompts"

TITLE_MAX_CHARS = 30

# Lazy-initialised Jinja environment so we only pay the cost once.
_ENV: jinja2.Environment | None = None


def _get_env() -> jinja2.Environment:
    global _ENV
    if _ENV is None:
        _ENV = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(PROMPTS_DIR)),
            autoescape=False,  # we do not render HTML
            keep_trailing_newline=False,
        )
    return _ENV


# ---------------------------------------------------------------------------
# Public API – build the messages list
# ---------------------------------------------------------------------------

def build_messages(context: List[Dict[str, str]], prompt: str) -> List[Dict[str, str]]:
    """Return the context array followed by the new user turn.

    ``context`` is copied; the caller's list is left untouched.
    """
    messages = [dict(message) for message in context]
    messages.append({"role": "user", "content": prompt})
    return messages


def build_title_messages(prompt: str, completion: str) -> List[Dict[str, str]]:
    """Single user message asking the provider to title the first exchange."""
    title_prompt = _get_env().get_template("title_prompt.jinja").render(
        prompt=prompt,
        completion=completion,
        max_chars=TITLE_MAX_CHARS,
    )
    return [{"role": "user", "content": title_prompt}]


def clean_title(raw: str) -> str:
    """Strip whitespace and wrapping quotes the model tends to add."""
    return raw.strip().strip('"\'“”').strip()
