"""
Note-mention monitor: watch-phrases checked against the live transcript.

Every ``trigger_every`` new segments the monitor evaluates each active
watch-phrase against the last ``window_segments`` segments of the meeting.
Checks run on a background thread and never overlap: a trigger that
arrives while a check is in flight is ignored.  A phrase judged mentioned
always has its ``mention_count`` bumped, but an alert is only emitted if
the phrase's cooldown has elapsed since its previous alert.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from sidecar.services.errors import NotFoundError, SidecarError
from sidecar.services.llm import LLMProvider
from sidecar.services.pipeline_config import NoteMonitorConfig
from sidecar.services.segment_store import SegmentStore, TranscriptSegment
from sidecar.services.transcript_utils import extract_snippet, tokenize


@dataclass
class NoteWatch:
    id: str
    text: str
    mention_count: int = 0
    last_mentioned_at: Optional[float] = None
    last_alerted_at: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MentionResult:
    mentioned: bool
    briefing: str = ""


class MentionEvaluator(ABC):
    @abstractmethod
    def evaluate(self, phrase: str, segments: list[TranscriptSegment]) -> MentionResult:
        raise NotImplementedError


class KeywordMentionEvaluator(MentionEvaluator):
    """Mentioned when every significant word of the phrase occurs in the window."""

    def evaluate(self, phrase: str, segments: list[TranscriptSegment]) -> MentionResult:
        terms = tokenize(phrase, min_length=3) or tokenize(phrase, min_length=1)
        if not terms or not segments:
            return MentionResult(False)
        window_words: set[str] = set()
        for segment in segments:
            window_words.update(tokenize(segment.text, min_length=1))
        if not all(term in window_words for term in terms):
            return MentionResult(False)

        for segment in reversed(segments):
            words = set(tokenize(segment.text, min_length=1))
            if words & set(terms):
                snippet = extract_snippet(segment.text, terms, context_chars=60)
                return MentionResult(True, f"[{segment.time_label}] {snippet}")
        return MentionResult(True, "")


class LLMMentionEvaluator(MentionEvaluator):
    """Asks the configured LLM for a YES/NO judgement and a one-line briefing."""

    def __init__(self, llm_factory: Callable[[], LLMProvider]) -> None:
        self._llm_factory = llm_factory

    def evaluate(self, phrase: str, segments: list[TranscriptSegment]) -> MentionResult:
        if not segments:
            return MentionResult(False)
        transcript = "\n".join(f"[{s.time_label}] {s.text}" for s in segments)
        mentioned, briefing = self._llm_factory().evaluate_mention(phrase, transcript)
        return MentionResult(mentioned, briefing)


class NoteMentionMonitor:
    def __init__(
        self,
        store: SegmentStore,
        evaluator: MentionEvaluator,
        config: Optional[NoteMonitorConfig] = None,
        on_alert: Optional[Callable[[str, dict], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._evaluator = evaluator
        self._config = config or NoteMonitorConfig()
        self._on_alert = on_alert
        self._clock = clock
        self._logger = logging.getLogger("sidecar.notes")

        self._lock = threading.Lock()
        self._watches: dict[str, NoteWatch] = {}
        self._segments_since_check = 0
        self._in_flight = False
        self._check_thread: Optional[threading.Thread] = None

    # ── Watch management ───────────────────────────────────────────────

    def add_watch(self, text: str) -> NoteWatch:
        text = text.strip()
        if not text:
            raise ValueError("Watch phrase must not be empty")
        with self._lock:
            if len(self._watches) >= self._config.max_watches:
                raise SidecarError(f"At most {self._config.max_watches} watch-phrases can be active")
            watch = NoteWatch(id=uuid.uuid4().hex[:12], text=text)
            self._watches[watch.id] = watch
        self._logger.info("Watch added: id=%s text=%s", watch.id, text)
        return NoteWatch(**asdict(watch))

    def remove_watch(self, watch_id: str) -> None:
        with self._lock:
            if self._watches.pop(watch_id, None) is None:
                raise NotFoundError(f"Watch not found: {watch_id}")
        self._logger.info("Watch removed: id=%s", watch_id)

    def list_watches(self) -> list[NoteWatch]:
        with self._lock:
            return [NoteWatch(**asdict(watch)) for watch in self._watches.values()]

    def clear(self) -> None:
        with self._lock:
            self._watches.clear()
            self._segments_since_check = 0

    def reset_counter(self) -> None:
        """Start counting new segments from zero, e.g. for a new meeting."""
        with self._lock:
            self._segments_since_check = 0

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    # ── Triggering ─────────────────────────────────────────────────────

    def on_segment(self, segment: TranscriptSegment) -> bool:
        """Count a new segment; returns True if it started a background check."""
        with self._lock:
            self._segments_since_check += 1
            if self._segments_since_check < self._config.trigger_every:
                return False
            self._segments_since_check = 0
            if not self._watches:
                return False
            if self._in_flight:
                self._logger.debug("Mention check already running; trigger ignored")
                return False
            self._in_flight = True
            self._check_thread = threading.Thread(
                target=self._run_check,
                args=(segment.meeting_id,),
                daemon=True,
                name="note-mention-check",
            )
            self._check_thread.start()
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        thread = self._check_thread
        if thread is not None:
            thread.join(timeout)

    def _run_check(self, meeting_id: str) -> None:
        try:
            self.check_now(meeting_id)
        except Exception as exc:
            self._logger.warning("Mention check crashed: %s", exc)
        finally:
            with self._lock:
                self._in_flight = False

    def check_now(self, meeting_id: str) -> list[dict]:
        """Evaluate every watch against the recent window; returns emitted alerts.

        If the evaluator fails, the whole cycle is skipped and nothing is
        counted.
        """
        with self._lock:
            watches = [(watch.id, watch.text) for watch in self._watches.values()]
        if not watches:
            return []
        segments = self._store.recent_segments(meeting_id, self._config.window_segments)
        if not segments:
            return []

        results: list[tuple[str, MentionResult]] = []
        try:
            for watch_id, text in watches:
                results.append((watch_id, self._evaluator.evaluate(text, segments)))
        except Exception as exc:
            self._logger.warning("Mention check skipped: evaluator failed: %s", exc)
            return []

        alerts: list[dict] = []
        now = self._clock()
        with self._lock:
            for watch_id, result in results:
                watch = self._watches.get(watch_id)
                if watch is None or not result.mentioned:
                    continue
                watch.mention_count += 1
                watch.last_mentioned_at = now
                if watch.last_alerted_at is not None and now - watch.last_alerted_at < self._config.cooldown_s:
                    self._logger.debug("Alert for '%s' suppressed by cooldown", watch.text)
                    continue
                watch.last_alerted_at = now
                alerts.append(
                    {
                        "watch_id": watch.id,
                        "text": watch.text,
                        "briefing": result.briefing,
                        "mention_count": watch.mention_count,
                    }
                )

        for alert in alerts:
            self._logger.info("Note mentioned: '%s' (count=%d)", alert["text"], alert["mention_count"])
            if self._on_alert:
                self._on_alert(meeting_id, alert)
        return alerts
