"""CSV export of a single chat's history."""

from pathlib import Path
from typing import Optional

import pandas as pd

from chatdesk.utils.error_handler import ChatNotFoundError
from chatdesk.utils.logger import log_function_call

from .crud import ChatStore

EXPORT_COLUMNS = [
    "model",
    "system_message",
    "prompt",
    "parameters",
    "completion",
    "completion_created",
    "finish_reason",
]


@log_function_call()
def export_chat_csv(store: ChatStore, chat_id: int, path: Optional[Path] = None) -> str:
    """Return (and optionally write to ``path``) the CSV for ``chat_id``.

    One row per request; ``completion_created`` is converted from epoch seconds
    to an ISO-8601 UTC timestamp. The header row is always present.
    """
    if store.fetch_chat(chat_id) is None:
        raise ChatNotFoundError(chat_id)
    rows = store.fetch_all_exchanges(chat_id)

    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    df["completion_created"] = [
        pd.Timestamp(ts, unit="s", tz="UTC").isoformat() for ts in df["completion_created"]
    ]

    csv_text = df.to_csv(index=False)
    if path is not None:
        Path(path).write_text(csv_text, encoding="utf-8")
    return csv_text
