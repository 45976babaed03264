"""Durable meeting transcript store with a full-text index.

Meetings, segments and embedding vectors live in one SQLite database.
Every segment write updates the FTS5 index inside the same transaction,
so readers never observe a segment that is stored but not searchable (or
the reverse).  Appends are validated against the meeting's last stored
segment and rejected with ``OrderingViolation`` instead of being
reordered.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

import numpy as np

from sidecar.services.errors import NotFoundError, OrderingViolation, SessionStateError
from sidecar.services.transcript_utils import (
    default_meeting_title,
    extract_snippet,
    format_time_label,
    text_hash,
    tokenize,
)

PENDING = "pending"
EMBEDDED = "embedded"
FAILED = "failed"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meetings (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    ended_at TEXT,
    pinned INTEGER NOT NULL DEFAULT 0,
    tags TEXT NOT NULL DEFAULT '[]',
    duration_ms INTEGER
);
CREATE TABLE IF NOT EXISTS segments (
    id TEXT PRIMARY KEY,
    meeting_id TEXT NOT NULL REFERENCES meetings(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    text TEXT NOT NULL,
    start_ms INTEGER NOT NULL,
    end_ms INTEGER NOT NULL,
    speaker_id TEXT,
    embedding_state TEXT NOT NULL DEFAULT 'pending',
    text_hash TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_segments_meeting ON segments(meeting_id, start_ms);
CREATE INDEX IF NOT EXISTS idx_segments_state ON segments(embedding_state);
CREATE TABLE IF NOT EXISTS embeddings (
    segment_id TEXT PRIMARY KEY REFERENCES segments(id) ON DELETE CASCADE,
    vector BLOB NOT NULL,
    dim INTEGER NOT NULL,
    model_version TEXT NOT NULL,
    text_hash TEXT NOT NULL
);
CREATE VIRTUAL TABLE IF NOT EXISTS segments_fts USING fts5(
    text,
    segment_id UNINDEXED,
    meeting_id UNINDEXED,
    tokenize = 'porter unicode61'
);
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class Meeting:
    id: str
    title: str
    created_at: str
    ended_at: Optional[str] = None
    pinned: bool = False
    tags: list[str] = field(default_factory=list)
    duration_ms: Optional[int] = None
    segment_count: int = 0
    first_segment_text: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TranscriptSegment:
    id: str
    meeting_id: str
    text: str
    start_ms: int
    end_ms: int
    speaker_id: Optional[str] = None
    embedding_state: str = PENDING
    seq: int = 0
    text_hash: str = ""

    @property
    def time_label(self) -> str:
        return format_time_label(self.start_ms)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meeting_id": self.meeting_id,
            "text": self.text,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "time_label": self.time_label,
            "speaker_id": self.speaker_id,
            "embedding_state": self.embedding_state,
        }


@dataclass
class EmbeddingRecord:
    segment_id: str
    vector: np.ndarray
    model_version: str
    text_hash: str


@dataclass
class TextMatch:
    """A lexical hit with a snippet around the first matching term."""
    segment: TranscriptSegment
    meeting_title: str
    snippet: str
    score: float

    def to_dict(self) -> dict:
        return {
            "segment_id": self.segment.id,
            "meeting_id": self.segment.meeting_id,
            "meeting_title": self.meeting_title,
            "time_label": self.segment.time_label,
            "start_ms": self.segment.start_ms,
            "snippet": self.snippet,
            "score": self.score,
        }


def _row_to_segment(row: sqlite3.Row) -> TranscriptSegment:
    return TranscriptSegment(
        id=row["id"],
        meeting_id=row["meeting_id"],
        text=row["text"],
        start_ms=row["start_ms"],
        end_ms=row["end_ms"],
        speaker_id=row["speaker_id"],
        embedding_state=row["embedding_state"],
        seq=row["seq"],
        text_hash=row["text_hash"],
    )


def _row_to_meeting(row: sqlite3.Row) -> Meeting:
    keys = row.keys()
    return Meeting(
        id=row["id"],
        title=row["title"],
        created_at=row["created_at"],
        ended_at=row["ended_at"],
        pinned=bool(row["pinned"]),
        tags=json.loads(row["tags"] or "[]"),
        duration_ms=row["duration_ms"],
        segment_count=row["segment_count"] if "segment_count" in keys else 0,
        first_segment_text=row["first_segment_text"] if "first_segment_text" in keys else None,
    )


def _fts_query(terms: Iterable[str]) -> str:
    return " OR ".join(f'"{term}"' for term in terms)


class SegmentStore:
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._logger = logging.getLogger("sidecar.store")
        self._lock = threading.RLock()
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.execute("PRAGMA foreign_keys = ON")
            if db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(_SCHEMA)
        self._logger.info("Segment store ready: %s", db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Meetings ───────────────────────────────────────────────────────

    def create_meeting(
        self,
        title: Optional[str] = None,
        tags: Optional[list[str]] = None,
        started_at: Optional[datetime] = None,
    ) -> Meeting:
        started_at = started_at or datetime.now()
        meeting = Meeting(
            id=str(uuid.uuid4()),
            title=(title or "").strip() or default_meeting_title(started_at),
            created_at=started_at.astimezone(timezone.utc).isoformat(timespec="seconds"),
            tags=list(tags or []),
        )
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO meetings (id, title, created_at, pinned, tags) VALUES (?, ?, ?, 0, ?)",
                (meeting.id, meeting.title, meeting.created_at, json.dumps(meeting.tags)),
            )
        self._logger.info("Meeting created: id=%s title=%s", meeting.id, meeting.title)
        return meeting

    def _meeting_row(self, meeting_id: str) -> sqlite3.Row:
        row = self._conn.execute(
            """
            SELECT m.*,
                   (SELECT COUNT(*) FROM segments s WHERE s.meeting_id = m.id) AS segment_count,
                   (SELECT s.text FROM segments s WHERE s.meeting_id = m.id
                     ORDER BY s.start_ms, s.seq LIMIT 1) AS first_segment_text
            FROM meetings m WHERE m.id = ?
            """,
            (meeting_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return row

    def get_meeting(self, meeting_id: str) -> Meeting:
        with self._lock:
            return _row_to_meeting(self._meeting_row(meeting_id))

    def list_meetings(self) -> list[Meeting]:
        """All meetings, pinned first, then newest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT m.*,
                       (SELECT COUNT(*) FROM segments s WHERE s.meeting_id = m.id) AS segment_count,
                       (SELECT s.text FROM segments s WHERE s.meeting_id = m.id
                         ORDER BY s.start_ms, s.seq LIMIT 1) AS first_segment_text
                FROM meetings m
                ORDER BY m.pinned DESC, m.created_at DESC, m.rowid DESC
                """
            ).fetchall()
        return [_row_to_meeting(row) for row in rows]

    def _update_meeting(self, meeting_id: str, column: str, value) -> Meeting:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    f"UPDATE meetings SET {column} = ? WHERE id = ?", (value, meeting_id)
                )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Meeting not found: {meeting_id}")
            return self.get_meeting(meeting_id)

    def rename_meeting(self, meeting_id: str, title: str) -> Meeting:
        title = title.strip()
        if not title:
            raise ValueError("Title must not be empty")
        return self._update_meeting(meeting_id, "title", title)

    def set_pinned(self, meeting_id: str, pinned: bool) -> Meeting:
        return self._update_meeting(meeting_id, "pinned", 1 if pinned else 0)

    def set_tags(self, meeting_id: str, tags: list[str]) -> Meeting:
        cleaned = [tag.strip() for tag in tags if tag and tag.strip()]
        return self._update_meeting(meeting_id, "tags", json.dumps(cleaned))

    def close_meeting(self, meeting_id: str, ended_at: Optional[str] = None) -> Meeting:
        """Set ``ended_at`` once; closing an already closed meeting is an error."""
        with self._lock:
            meeting = self.get_meeting(meeting_id)
            if meeting.is_closed:
                raise SessionStateError(f"Meeting already closed: {meeting_id}")
            row = self._conn.execute(
                "SELECT MAX(end_ms) AS last_end FROM segments WHERE meeting_id = ?",
                (meeting_id,),
            ).fetchone()
            with self._conn:
                self._conn.execute(
                    "UPDATE meetings SET ended_at = ?, duration_ms = ? WHERE id = ?",
                    (ended_at or _utcnow(), row["last_end"] or 0, meeting_id),
                )
            closed = self.get_meeting(meeting_id)
        self._logger.info(
            "Meeting closed: id=%s segments=%d duration_ms=%s",
            meeting_id,
            closed.segment_count,
            closed.duration_ms,
        )
        return closed

    def delete_meeting(self, meeting_id: str) -> None:
        with self._lock:
            self._meeting_row(meeting_id)
            with self._conn:
                self._conn.execute("DELETE FROM segments_fts WHERE meeting_id = ?", (meeting_id,))
                # segments and embeddings cascade
                self._conn.execute("DELETE FROM meetings WHERE id = ?", (meeting_id,))
        self._logger.info("Meeting deleted: id=%s", meeting_id)

    # ── Segments ───────────────────────────────────────────────────────

    def append_segment(
        self,
        meeting_id: str,
        text: str,
        start_ms: int,
        end_ms: int,
        speaker_id: Optional[str] = None,
    ) -> TranscriptSegment:
        """Persist and index a new segment at the end of the meeting's transcript.

        Raises:
            OrderingViolation: the segment starts before the previous one
                ends, or ends before it starts.
            SessionStateError: the meeting is closed.
            NotFoundError: unknown meeting.
        """
        start_ms = int(start_ms)
        end_ms = int(end_ms)
        text = text.strip()
        if end_ms < start_ms:
            raise OrderingViolation(f"Segment ends before it starts: [{start_ms}, {end_ms}]")

        with self._lock:
            meeting = self._meeting_row(meeting_id)
            if meeting["ended_at"] is not None:
                raise SessionStateError(f"Meeting is closed: {meeting_id}")
            last = self._conn.execute(
                """
                SELECT start_ms, end_ms, seq FROM segments WHERE meeting_id = ?
                ORDER BY start_ms DESC, seq DESC LIMIT 1
                """,
                (meeting_id,),
            ).fetchone()
            if last is not None and (start_ms < last["start_ms"] or start_ms < last["end_ms"]):
                raise OrderingViolation(
                    f"Segment [{start_ms}, {end_ms}] overlaps or precedes "
                    f"[{last['start_ms']}, {last['end_ms']}] in meeting {meeting_id}"
                )
            seq_row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM segments WHERE meeting_id = ?",
                (meeting_id,),
            ).fetchone()
            segment = TranscriptSegment(
                id=str(uuid.uuid4()),
                meeting_id=meeting_id,
                text=text,
                start_ms=start_ms,
                end_ms=end_ms,
                speaker_id=speaker_id,
                embedding_state=PENDING,
                seq=seq_row["next_seq"],
                text_hash=text_hash(text),
            )
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO segments
                        (id, meeting_id, seq, text, start_ms, end_ms, speaker_id, embedding_state, text_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        segment.id,
                        meeting_id,
                        segment.seq,
                        text,
                        start_ms,
                        end_ms,
                        speaker_id,
                        PENDING,
                        segment.text_hash,
                    ),
                )
                self._conn.execute(
                    "INSERT INTO segments_fts (text, segment_id, meeting_id) VALUES (?, ?, ?)",
                    (text, segment.id, meeting_id),
                )
        self._logger.debug("Segment appended: %s [%d-%d ms]", segment.id, start_ms, end_ms)
        return segment

    def get_segment(self, segment_id: str) -> TranscriptSegment:
        with self._lock:
            row = self._conn.execute("SELECT * FROM segments WHERE id = ?", (segment_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Segment not found: {segment_id}")
        return _row_to_segment(row)

    def get_segments(self, meeting_id: str) -> list[TranscriptSegment]:
        with self._lock:
            self._meeting_row(meeting_id)
            rows = self._conn.execute(
                "SELECT * FROM segments WHERE meeting_id = ? ORDER BY start_ms, seq",
                (meeting_id,),
            ).fetchall()
        return [_row_to_segment(row) for row in rows]

    def recent_segments(self, meeting_id: str, count: int) -> list[TranscriptSegment]:
        """The last ``count`` segments of a meeting, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM segments WHERE meeting_id = ? ORDER BY start_ms DESC, seq DESC LIMIT ?",
                (meeting_id, int(count)),
            ).fetchall()
        return [_row_to_segment(row) for row in reversed(rows)]

    def update_segment(self, segment_id: str, text: str) -> TranscriptSegment:
        """Replace a segment's text, re-index it and queue it for re-embedding."""
        text = text.strip()
        new_hash = text_hash(text)
        with self._lock:
            current = self.get_segment(segment_id)
            if current.text_hash == new_hash:
                return current
            with self._conn:
                self._conn.execute(
                    "UPDATE segments SET text = ?, text_hash = ?, embedding_state = ? WHERE id = ?",
                    (text, new_hash, PENDING, segment_id),
                )
                self._conn.execute("DELETE FROM embeddings WHERE segment_id = ?", (segment_id,))
                self._conn.execute("DELETE FROM segments_fts WHERE segment_id = ?", (segment_id,))
                self._conn.execute(
                    "INSERT INTO segments_fts (text, segment_id, meeting_id) VALUES (?, ?, ?)",
                    (text, segment_id, current.meeting_id),
                )
            updated = self.get_segment(segment_id)
        self._logger.info("Segment updated: %s", segment_id)
        return updated

    def delete_segment(self, segment_id: str) -> None:
        with self._lock:
            self.get_segment(segment_id)
            with self._conn:
                self._conn.execute("DELETE FROM segments_fts WHERE segment_id = ?", (segment_id,))
                self._conn.execute("DELETE FROM segments WHERE id = ?", (segment_id,))
        self._logger.info("Segment deleted: %s", segment_id)

    # ── Lexical search ─────────────────────────────────────────────────

    def search_text(
        self,
        query: str,
        meeting_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[TextMatch]:
        """Full-text search ranked by BM25, scores normalized to (0, 1].

        Any query term may match.  Equal scores order by most recent
        ``start_ms`` first.
        """
        terms = tokenize(query)
        if not terms:
            return []

        sql = """
            SELECT s.*, m.title AS meeting_title, bm25(segments_fts) AS rank
            FROM segments_fts
            JOIN segments s ON s.id = segments_fts.segment_id
            JOIN meetings m ON m.id = s.meeting_id
            WHERE segments_fts MATCH ?
        """
        params: list = [_fts_query(terms)]
        if meeting_id:
            sql += " AND s.meeting_id = ?"
            params.append(meeting_id)
        sql += " ORDER BY rank LIMIT ?"
        params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        if not rows:
            return []

        # bm25() is negative; more negative is a better match
        raw_scores = [max(-float(row["rank"]), 0.0) for row in rows]
        best = max(raw_scores)
        matches = []
        for row, raw in zip(rows, raw_scores):
            segment = _row_to_segment(row)
            matches.append(
                TextMatch(
                    segment=segment,
                    meeting_title=row["meeting_title"],
                    snippet=extract_snippet(segment.text, terms),
                    score=raw / best if best > 0 else 1.0,
                )
            )
        matches.sort(key=lambda m: (-m.score, -m.segment.start_ms, m.segment.id))
        self._logger.debug("Text search '%s' found %d matches", query, len(matches))
        return matches

    # ── Embedding bookkeeping ──────────────────────────────────────────

    def pending_segments(self, limit: int = 32) -> list[TranscriptSegment]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM segments WHERE embedding_state = ? ORDER BY meeting_id, start_ms, seq LIMIT ?",
                (PENDING, int(limit)),
            ).fetchall()
        return [_row_to_segment(row) for row in rows]

    def mark_embedded(
        self,
        segment_id: str,
        vector,
        model_version: str,
        expected_hash: str,
    ) -> bool:
        """Store a vector if the segment text still hashes to ``expected_hash``.

        Returns False when the segment was edited or deleted while it was
        being embedded; it then stays (or is already) pending.
        """
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "UPDATE segments SET embedding_state = ? WHERE id = ? AND text_hash = ?",
                    (EMBEDDED, segment_id, expected_hash),
                )
                if cursor.rowcount == 0:
                    return False
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO embeddings (segment_id, vector, dim, model_version, text_hash)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (segment_id, array.tobytes(), int(array.size), model_version, expected_hash),
                )
        return True

    def mark_failed(self, segment_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE segments SET embedding_state = ? WHERE id = ? AND embedding_state != ?",
                (FAILED, segment_id, EMBEDDED),
            )

    def requeue_failed(
        self,
        meeting_id: Optional[str] = None,
        segment_id: Optional[str] = None,
    ) -> int:
        """Move ``failed`` segments back to ``pending``; returns how many moved."""
        sql = "UPDATE segments SET embedding_state = ? WHERE embedding_state = ?"
        params: list = [PENDING, FAILED]
        if meeting_id:
            sql += " AND meeting_id = ?"
            params.append(meeting_id)
        if segment_id:
            sql += " AND id = ?"
            params.append(segment_id)
        with self._lock, self._conn:
            cursor = self._conn.execute(sql, params)
        return cursor.rowcount

    def get_embedding(self, segment_id: str) -> Optional[EmbeddingRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM embeddings WHERE segment_id = ?", (segment_id,)
            ).fetchone()
        if row is None:
            return None
        return EmbeddingRecord(
            segment_id=row["segment_id"],
            vector=np.frombuffer(row["vector"], dtype=np.float32).copy(),
            model_version=row["model_version"],
            text_hash=row["text_hash"],
        )

    def embedded_vectors(
        self,
        meeting_id: Optional[str] = None,
        model_version: Optional[str] = None,
    ) -> tuple[list[TranscriptSegment], list[str], np.ndarray]:
        """Embedded segments in scope, their meeting titles and an ``(n, dim)`` matrix."""
        sql = """
            SELECT s.*, m.title AS meeting_title, e.vector AS vector, e.dim AS dim
            FROM segments s
            JOIN embeddings e ON e.segment_id = s.id
            JOIN meetings m ON m.id = s.meeting_id
            WHERE s.embedding_state = ?
        """
        params: list = [EMBEDDED]
        if meeting_id:
            sql += " AND s.meeting_id = ?"
            params.append(meeting_id)
        if model_version:
            sql += " AND e.model_version = ?"
            params.append(model_version)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        if not rows:
            return [], [], np.zeros((0, 0), dtype=np.float32)

        dim = rows[0]["dim"]
        kept = [row for row in rows if row["dim"] == dim]
        if len(kept) != len(rows):
            self._logger.warning("Ignoring %d embeddings with mismatched dimensions", len(rows) - len(kept))
        matrix = np.vstack([np.frombuffer(row["vector"], dtype=np.float32) for row in kept])
        return [_row_to_segment(row) for row in kept], [row["meeting_title"] for row in kept], matrix

    def embedding_counts(self, meeting_id: Optional[str] = None) -> dict:
        sql = "SELECT embedding_state, COUNT(*) AS n FROM segments"
        params: list = []
        if meeting_id:
            sql += " WHERE meeting_id = ?"
            params.append(meeting_id)
        sql += " GROUP BY embedding_state"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        counts = {PENDING: 0, EMBEDDED: 0, FAILED: 0}
        for row in rows:
            counts[row["embedding_state"]] = row["n"]
        return {
            "embedded": counts[EMBEDDED],
            "pending": counts[PENDING],
            "failed": counts[FAILED],
            "total": sum(counts.values()),
        }
