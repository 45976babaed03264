"""Utilities for transcript text: labels, titles, snippets and hashing."""

import hashlib
import re
import unicodedata
from datetime import datetime
from typing import Iterable, Optional

_WORD_RE = re.compile(r"[^\W_]+")


def format_time_label(ms: int) -> str:
    """Meeting-relative ``MM:SS``; minutes keep counting past the hour."""
    total_seconds = max(int(ms), 0) // 1000
    return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}"


def default_meeting_title(started_at: Optional[datetime] = None) -> str:
    """Title such as ``Mon 06/02/25 · 9:05 AM`` for a meeting started then."""
    started_at = started_at or datetime.now()
    hour = started_at.hour % 12 or 12
    return f"{started_at:%a %m/%d/%y} · {hour}:{started_at:%M %p}"


def enrich_segment_text(text: str, meeting_title: str, time_label: str) -> str:
    """Text handed to the embedding model.

    Prefixing the meeting title and timestamp lets questions such as
    "what did we say about pricing in the standup" match on context the
    segment itself does not mention.
    """
    return f"Meeting: {meeting_title} | Time: {time_label} | {text.strip()}"


def text_hash(text: str) -> str:
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()


def fold_text(text: str) -> str:
    """Lowercase ``text`` and strip diacritics, one character at a time.

    The result has the same length as the input, so offsets found in the
    folded text index the original.  ``München`` folds to ``munchen``.
    """
    folded = []
    for char in text:
        lowered = char.lower()
        if len(lowered) != 1:
            lowered = char
        base = "".join(c for c in unicodedata.normalize("NFD", lowered) if not unicodedata.combining(c))
        folded.append(base if len(base) == 1 else lowered)
    return "".join(folded)


def tokenize(text: str, min_length: int = 2) -> list[str]:
    """Folded words (letters and digits in any script), in order, without duplicates."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for word in _WORD_RE.findall(fold_text(text)):
        if len(word) >= min_length:
            seen.setdefault(word, None)
    return list(seen)


def extract_snippet(text: str, terms: Iterable[str], context_chars: int = 60) -> str:
    """Extract a snippet around the first occurrence of any of ``terms``.

    Args:
        text: The text to search in
        terms: Candidate words or phrases (case and accent insensitive)
        context_chars: Number of characters to include before/after match

    Returns:
        Snippet with ellipsis if truncated
    """
    if not text:
        return ""

    text_lower = fold_text(text)
    best_idx = -1
    best_len = 0
    for term in terms:
        term_lower = fold_text(term)
        if not term_lower:
            continue
        idx = text_lower.find(term_lower)
        if idx != -1 and (best_idx == -1 or idx < best_idx):
            best_idx = idx
            best_len = len(term_lower)

    if best_idx == -1:
        # No exact match, return start of text
        limit = context_chars * 2
        return text[:limit] + ("..." if len(text) > limit else "")

    start = max(0, best_idx - context_chars)
    end = min(len(text), best_idx + best_len + context_chars)

    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet
