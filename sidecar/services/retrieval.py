"""Hybrid retrieval over transcript segments.

Vector similarity is computed with numpy over every embedded segment in
scope (one meeting or all of them) and unioned with lexical FTS matches,
which recover exact names and terms embeddings tend to blur.  Results
are de-duplicated by segment id, keeping the higher score.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from sidecar.services.embedding_pipeline import EmbeddingPipeline
from sidecar.services.errors import ModelUnavailable
from sidecar.services.pipeline_config import RetrievalConfig
from sidecar.services.segment_store import SegmentStore, TranscriptSegment
from sidecar.services.transcript_utils import extract_snippet, tokenize


@dataclass
class RetrievalResult:
    segment_id: str
    meeting_id: str
    meeting_title: str
    text: str
    snippet: str
    time_label: str
    start_ms: int
    end_ms: int
    score: float
    source: str  # "vector", "lexical" or "both"

    def to_dict(self) -> dict:
        return {
            "segment_id": self.segment_id,
            "meeting_id": self.meeting_id,
            "meeting_title": self.meeting_title,
            "text": self.text,
            "snippet": self.snippet,
            "time_label": self.time_label,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "score": round(self.score, 4),
            "source": self.source,
        }


def cosine_similarity(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    return (matrix @ query) / np.maximum(norms, 1e-12)


class RetrievalEngine:
    def __init__(
        self,
        store: SegmentStore,
        embeddings: Optional[EmbeddingPipeline],
        config: Optional[RetrievalConfig] = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._config = config or RetrievalConfig()
        self._logger = logging.getLogger("sidecar.retrieval")

    @property
    def default_limit(self) -> int:
        return self._config.default_limit

    def expand_limit(self, current: int) -> int:
        """Next context window size: 10 -> 20 -> 30, capped at the maximum."""
        return min(max(int(current), 0) + self._config.limit_step, self._config.max_limit)

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self._config.default_limit
        return max(1, min(int(limit), self._config.max_limit))

    def _result(
        self,
        segment: TranscriptSegment,
        meeting_title: str,
        terms: list[str],
        score: float,
        source: str,
    ) -> RetrievalResult:
        return RetrievalResult(
            segment_id=segment.id,
            meeting_id=segment.meeting_id,
            meeting_title=meeting_title,
            text=segment.text,
            snippet=extract_snippet(segment.text, terms),
            time_label=segment.time_label,
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            score=float(min(max(score, 0.0), 1.0)),
            source=source,
        )

    def _query_vector(self, query: str) -> Optional[np.ndarray]:
        if self._embeddings is None:
            return None
        try:
            return self._embeddings.embed_query(query)
        except ModelUnavailable as exc:
            self._logger.info("Vector search unavailable (%s); lexical only", exc)
        except Exception as exc:
            self._logger.warning("Query embedding failed (%s); lexical only", exc)
        return None

    def retrieve(
        self,
        query: str,
        meeting_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RetrievalResult]:
        """Rank segments for ``query`` within one meeting or across all of them.

        Scores are in [0, 1]: cosine similarity mapped from [-1, 1], or the
        normalized BM25 score (weighted when unioned with vector results).
        Equal scores order by the most recent ``start_ms`` first.
        """
        query = (query or "").strip()
        if not query:
            return []
        limit = self._clamp_limit(limit)
        terms = tokenize(query)
        candidates: dict[str, RetrievalResult] = {}

        query_vector = self._query_vector(query)
        if query_vector is not None:
            segments, titles, matrix = self._store.embedded_vectors(
                meeting_id, model_version=self._embeddings.model_version
            )
            if segments and matrix.shape[1] == query_vector.shape[0]:
                similarities = cosine_similarity(matrix, query_vector)
                for segment, title, similarity in zip(segments, titles, similarities):
                    score = (float(similarity) + 1.0) / 2.0
                    candidates[segment.id] = self._result(segment, title, terms, score, "vector")
            elif segments:
                self._logger.warning(
                    "Stored vectors have %d dims, query has %d; skipping vector ranking",
                    matrix.shape[1],
                    query_vector.shape[0],
                )

        lexical_only = query_vector is None
        if self._config.lexical_union or lexical_only:
            weight = 1.0 if lexical_only else self._config.lexical_weight
            for match in self._store.search_text(query, meeting_id=meeting_id, limit=max(limit * 2, 20)):
                score = match.score * weight
                existing = candidates.get(match.segment.id)
                if existing is None:
                    candidates[match.segment.id] = self._result(
                        match.segment, match.meeting_title, terms, score, "lexical"
                    )
                else:
                    existing.score = max(existing.score, min(score, 1.0))
                    existing.source = "both"

        results = sorted(candidates.values(), key=lambda r: (-r.score, -r.start_ms, r.segment_id))
        results = results[:limit]
        self._logger.info(
            "Retrieve '%s' scope=%s limit=%d -> %d results (top score: %.3f)",
            query[:80],
            meeting_id or "all",
            limit,
            len(results),
            results[0].score if results else 0.0,
        )
        return results
