"""Question answering over meeting transcripts (retrieve, then ask the LLM)."""

import logging
import time
from typing import Callable, Optional

from sidecar.services.errors import NotFoundError
from sidecar.services.llm import LLMProvider
from sidecar.services.retrieval import RetrievalEngine, RetrievalResult
from sidecar.services.segment_store import SegmentStore

# Bounds the prompt when falling back to a whole transcript
_MAX_FALLBACK_CHARS = 24_000


class QAService:
    def __init__(
        self,
        store: SegmentStore,
        retrieval: RetrievalEngine,
        llm_factory: Callable[[], LLMProvider],
    ) -> None:
        self._store = store
        self._retrieval = retrieval
        self._llm_factory = llm_factory
        self._logger = logging.getLogger("sidecar.qa")

    @staticmethod
    def format_context(results: list[RetrievalResult], include_meeting: bool) -> str:
        lines = []
        # Chronological reads better to the model than score order
        for result in sorted(results, key=lambda r: (r.meeting_id, r.start_ms)):
            prefix = f"[{result.time_label}]"
            if include_meeting:
                prefix += f" ({result.meeting_title})"
            lines.append(f"{prefix} {result.text}")
        return "\n".join(lines)

    def _full_transcript(self, meeting_id: str) -> str:
        segments = self._store.get_segments(meeting_id)
        if not segments:
            raise NotFoundError(f"No transcript available for meeting {meeting_id}")
        text = "\n".join(f"[{segment.time_label}] {segment.text}" for segment in segments)
        if len(text) > _MAX_FALLBACK_CHARS:
            text = text[-_MAX_FALLBACK_CHARS:]
        return text

    def ask(
        self,
        question: str,
        meeting_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """Answer ``question`` from retrieved context.

        When retrieval finds nothing inside a single meeting, the meeting's
        whole transcript (tail-truncated) is used instead.
        """
        question = question.strip()
        if not question:
            raise ValueError("Question must not be empty")
        if meeting_id:
            self._store.get_meeting(meeting_id)

        start_time = time.perf_counter()
        results = self._retrieval.retrieve(question, meeting_id=meeting_id, limit=limit)
        if results:
            context = self.format_context(results, include_meeting=meeting_id is None)
            context_mode = "retrieval"
        elif meeting_id:
            context = self._full_transcript(meeting_id)
            context_mode = "full_transcript"
        else:
            raise NotFoundError("No transcript content available to answer from")

        answer = self._llm_factory().answer_question(question, context)
        self._logger.info(
            "Answered question scope=%s mode=%s sources=%d in %.2fs",
            meeting_id or "all",
            context_mode,
            len(results),
            time.perf_counter() - start_time,
        )
        return {
            "answer": answer,
            "context_mode": context_mode,
            "sources": [result.to_dict() for result in results],
            "limit": limit or self._retrieval.default_limit,
            "next_limit": self._retrieval.expand_limit(limit or self._retrieval.default_limit),
        }
