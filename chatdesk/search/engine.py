"""Fuzzy full-text search over every stored prompt and completion.

Usage:
    python -m chatdesk.search.engine "query text" [--limit 10]
"""
from __future__ import annotations

import argparse
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from chatdesk import config
from chatdesk.memory.crud import ChatStore
from chatdesk.search.fuzzy import Span, bitap_search, fold_case, max_errors_for
from chatdesk.search.highlight import highlight_runs
from chatdesk.utils.error_handler import ValidationError
from chatdesk.utils.logger import get_logger

logger = get_logger(__name__)

SEARCH_KEYS = ("prompt", "completion")
MIN_QUERY_LENGTH = 2


@dataclass(frozen=True)
class PoolRecord:
    chat_id: int
    chat_title: str
    request_id: int
    timestamp: int
    prompt: str
    completion: str


@dataclass
class FieldMatch:
    key: str
    value: str
    indices: List[Span]
    score: float

    def runs(self, run_length: int = config.HIGHLIGHT_RUN_LENGTH):
        return highlight_runs(self.value, self.indices, run_length)


@dataclass
class SearchResult:
    chat_id: int
    chat_title: str
    request_id: int
    timestamp: int
    score: float
    matches: List[FieldMatch] = field(default_factory=list)

    def to_dict(self, run_length: int = config.HIGHLIGHT_RUN_LENGTH) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "chat_title": self.chat_title,
            "request_id": self.request_id,
            "timestamp": self.timestamp,
            "score": self.score,
            "matches": [
                {
                    "key": m.key,
                    "value": m.value,
                    "indices": [list(span) for span in m.indices],
                    "runs": [{"text": text, "highlighted": hl} for text, hl in m.runs(run_length)],
                }
                for m in self.matches
            ],
        }


def min_match_length(query_length: int) -> int:
    """Step function from query length to minimum match length (before flooring)."""
    if query_length <= 4:
        return query_length
    if query_length == 5:
        return query_length - 1
    if query_length <= 7:
        return query_length - 2
    if query_length <= 9:
        return query_length - 3
    return query_length - 4


def effective_min_match_length(query_length: int) -> int:
    return max(min_match_length(query_length), 2)


def field_norm(text: str) -> float:
    """Shorter fields weigh exact hits more; ``1/sqrt(word count)`` to 3 places."""
    words = len(text.split()) or 1
    return round(1 / math.sqrt(words), 3)


def build_pool(rows: Sequence[Dict[str, Any]]) -> List[PoolRecord]:
    """Flatten reconstruction view rows into searchable records."""
    return [
        PoolRecord(
            chat_id=row["chat_id"],
            chat_title=row["chat_title"] or "",
            request_id=row["request_id"],
            timestamp=row["completion_created"],
            prompt=row["prompt"] or "",
            completion=row["completion"] or "",
        )
        for row in rows
    ]


class SearchEngine:
    def __init__(self, store: Optional[ChatStore] = None, threshold: float = config.SEARCH_THRESHOLD):
        self.store = store
        self.threshold = threshold

    def pool(self) -> List[PoolRecord]:
        if self.store is None:
            raise ValueError("SearchEngine needs a store to build its pool")
        return build_pool(self.store.fetch_all_exchanges())

    def search(self, query: str, pool: Optional[Sequence[PoolRecord]] = None) -> List[SearchResult]:
        """Return matching records, best first.

        Raises ``ValidationError`` for queries shorter than two characters
        (after stripping whitespace).
        """
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            raise ValidationError(f"Search query must be at least {MIN_QUERY_LENGTH} characters long")

        if pool is None:
            pool = self.pool()

        pattern = fold_case(query)
        max_errors = max_errors_for(len(pattern), self.threshold)
        min_length = effective_min_match_length(len(query))

        results: List[SearchResult] = []
        for record in pool:
            total = 1.0
            matches: List[FieldMatch] = []
            for key in SEARCH_KEYS:
                value = getattr(record, key)
                found = bitap_search(fold_case(value), pattern, max_errors, min_length)
                if found is None:
                    continue
                matches.append(FieldMatch(key=key, value=value, indices=found.spans, score=found.score))
                total *= found.score ** field_norm(value)
            if matches:
                results.append(SearchResult(
                    chat_id=record.chat_id,
                    chat_title=record.chat_title,
                    request_id=record.request_id,
                    timestamp=record.timestamp,
                    score=total,
                    matches=matches,
                ))

        # Stable: equal scores keep request order.
        results.sort(key=lambda r: r.score)
        logger.info("Search %r matched %d of %d exchanges", query, len(results), len(pool))
        return results


def main():
    parser = argparse.ArgumentParser(description="Search saved chat history")
    parser.add_argument("query", type=str, help="Query string")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--db", type=str, default=None, help="Database URL (defaults to CHATDESK_DB_URL)")
    args = parser.parse_args()

    config.setup_logging()
    engine = SearchEngine(ChatStore(args.db))
    results = engine.search(args.query)
    if not results:
        print("No matches found")
        return
    for i, result in enumerate(results[: args.limit]):
        print(f"[{i+1}] {result.chat_title} (chat {result.chat_id}, request {result.request_id})")
        for match in result.matches:
            text = "".join(f"[{t}]" if hl else t for t, hl in match.runs())
            print(f"  {match.key}: {text}")
        print("---")


if __name__ == "__main__":
    main()
