"""Approximate substring matching (Bitap / shift-and with k errors).

A field matches when the pattern occurs somewhere in it with at most
``max_errors`` edits (insertions, deletions, substitutions). Highlight spans
are the true extent of every best occurrence, plus verbatim pieces of the
pattern found anywhere in the text that are at least ``min_match_length``
characters long. Overlapping spans are merged.
"""
from dataclasses import dataclass
from itertools import groupby
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

Span = Tuple[int, int]  # (start, end) inclusive character offsets


@dataclass(frozen=True)
class FuzzyMatch:
    errors: int
    score: float
    spans: List[Span]


def fold_case(text: str) -> str:
    """Lower-case ``text`` one character at a time, keeping offsets stable.

    Characters whose lower-case form is longer than one code point are left
    alone so that span offsets still index into the original text.
    """
    folded = []
    for ch in text:
        lower = ch.lower()
        folded.append(lower if len(lower) == 1 else ch)
    return "".join(folded)


def max_errors_for(pattern_length: int, threshold: float) -> int:
    return int(threshold * pattern_length)


def _pattern_masks(pattern: str) -> Dict[str, int]:
    masks: Dict[str, int] = {}
    for i, ch in enumerate(pattern):
        masks[ch] = masks.get(ch, 0) | (1 << i)
    return masks


def _merge(spans: Iterable[Span]) -> List[Span]:
    merged: List[Span] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1] + 1:
            last_start, last_end = merged[-1]
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def _scan(text: str, pattern: str, max_errors: int) -> Iterator[Tuple[int, int]]:
    """Yield ``(end, errors)`` for every offset where ``pattern`` ends.

    ``errors`` is the fewest edits needed for an occurrence ending there.
    """
    m = len(pattern)
    masks = _pattern_masks(pattern)
    limit = (1 << m) - 1
    accept = 1 << (m - 1)
    # state[d] bit i: pattern[:i + 1] ends here with at most d edits
    state = [(1 << d) - 1 for d in range(max_errors + 1)]

    for j, ch in enumerate(text):
        char_mask = masks.get(ch, 0)
        prev_old = state[0]
        state[0] = ((state[0] << 1) | 1) & char_mask
        for d in range(1, max_errors + 1):
            old = state[d]
            state[d] = (
                (((old << 1) | 1) & char_mask)   # match
                | prev_old                       # insertion
                | ((prev_old << 1) | 1)          # substitution
                | ((state[d - 1] << 1) | 1)      # deletion
            ) & limit
            prev_old = old

        for d, bits in enumerate(state):
            if bits & accept:
                yield j, d
                break


def _best_ends(hits: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Keep, per run of adjacent end offsets, only those with the fewest errors.

    An occurrence with edits to spare also "ends" one character early or late;
    those neighbours are not separate occurrences.
    """
    best: List[Tuple[int, int]] = []
    # end - index is constant along a run of adjacent offsets
    for _, run in groupby(enumerate(hits), key=lambda item: item[1][0] - item[0]):
        group = [hit for _, hit in run]
        fewest = min(errors for _, errors in group)
        best.extend(hit for hit in group if hit[1] == fewest)
    return best


def _start_of(text: str, pattern: str, end: int, errors: int) -> int:
    """Find where the occurrence ending at ``end`` starts.

    Runs the matcher backwards from ``end`` with the reversed pattern; the
    first acceptance is the shortest occurrence within ``errors`` edits.
    """
    window_start = max(0, end - len(pattern) - errors + 1)
    window = text[window_start:end + 1][::-1]
    for offset, _ in _scan(window, pattern[::-1], errors):
        return end - offset
    return window_start


def _fragments(text: str, pattern: str, min_length: int) -> List[Span]:
    """Spans of ``text`` that are verbatim pieces of ``pattern``.

    Only pieces of at least ``min_length`` characters are returned. For every
    text offset the longest piece of the pattern ending there is tracked
    (longest common substring, one row at a time).
    """
    spans: List[Span] = []
    previous = [0] * len(pattern)
    for j, ch in enumerate(text):
        current = [0] * len(pattern)
        longest = 0
        for p, pc in enumerate(pattern):
            if pc == ch:
                current[p] = (previous[p - 1] if p else 0) + 1
                longest = max(longest, current[p])
        if longest >= min_length:
            spans.append((j - longest + 1, j))
        previous = current
    return spans


def bitap_search(
    text: str,
    pattern: str,
    max_errors: int = 0,
    min_match_length: int = 1,
) -> Optional[FuzzyMatch]:
    """Return every approximate occurrence of ``pattern`` in ``text``.

    Both strings are expected to be case-folded already. Returns ``None`` when
    nothing matches within ``max_errors``, or when no span is at least
    ``min_match_length`` characters long.
    """
    m = len(pattern)
    if m == 0 or not text:
        return None

    max_errors = min(max_errors, m - 1)
    ends = _best_ends(_scan(text, pattern, max_errors))
    if not ends:
        return None

    best = min(errors for _, errors in ends)
    spans = [(_start_of(text, pattern, end, errors), end) for end, errors in ends]
    if min_match_length < m:
        spans.extend(_fragments(text, pattern, min_match_length))

    spans = _merge(s for s in spans if s[1] - s[0] + 1 >= min_match_length)
    if not spans:
        return None
    return FuzzyMatch(errors=best, score=max(0.001, best / m), spans=spans)
