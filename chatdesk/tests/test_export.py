import csv
import io
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chatdesk.memory.export import EXPORT_COLUMNS, export_chat_csv  # noqa: E402
from chatdesk.utils.error_handler import ChatNotFoundError  # noqa: E402


def test_export_one_row_per_request(store, tmp_path):
    chat_id, _ = store.start_chat(
        "Export me", "sys", model="m", timestamp=1700000000, parameters={"temperature": 1},
        finish_reason="stop", prompt="Hello", prompt_tokens=1,
        completion="Hi, there", completion_tokens=2,
    )
    store.insert_exchange(
        chat_id, model="m", timestamp=1700000060, parameters=None, finish_reason="length",
        prompt="More", prompt_tokens=1, completion="Sure", completion_tokens=1,
    )
    out = tmp_path / "export.csv"

    csv_text = export_chat_csv(store, chat_id, out)

    rows = list(csv.DictReader(io.StringIO(csv_text)))
    assert list(rows[0].keys()) == EXPORT_COLUMNS
    assert len(rows) == 2
    assert rows[0]["completion"] == "Hi, there"
    assert rows[0]["parameters"] == '{"temperature":1}'
    assert rows[0]["completion_created"] == "2023-11-14T22:13:20+00:00"
    assert rows[1]["finish_reason"] == "length"
    assert out.read_text(encoding="utf-8") == csv_text


def test_export_header_is_always_present(store):
    chat_id = store.create_chat("Empty")
    csv_text = export_chat_csv(store, chat_id)
    assert csv_text.strip() == ",".join(EXPORT_COLUMNS)


def test_export_unknown_chat(store):
    with pytest.raises(ChatNotFoundError):
        export_chat_csv(store, 99)
