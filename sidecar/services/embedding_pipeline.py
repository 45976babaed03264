"""
Background vectorization of finalized transcript segments.

The pipeline runs on its own daemon thread and never touches the
transcription path: the segment store is the only thing the two share.
Segments arrive as ``pending``.  Each pass first moves ``failed``
segments back to ``pending`` and then embeds everything pending in
batches, so a segment only ever becomes ``embedded`` from ``pending``.

While the embedding model is not loaded, passes are skipped and pending
segments simply pile up in the store; once the model reports ``loaded``
the backlog drains on the next wake-up.  A batch that raises is retried
segment by segment so one bad input only fails itself.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

from sidecar.services.embeddings.base import EmbeddingBackend
from sidecar.services.errors import EmbeddingFailed, NotFoundError
from sidecar.services.model_manager import ModelAvailability
from sidecar.services.pipeline_config import EmbeddingConfig
from sidecar.services.segment_store import EMBEDDED, FAILED, PENDING, SegmentStore, TranscriptSegment
from sidecar.services.transcript_utils import enrich_segment_text


class EmbeddingPipeline:
    def __init__(
        self,
        store: SegmentStore,
        backend: EmbeddingBackend,
        availability: ModelAvailability,
        config: Optional[EmbeddingConfig] = None,
        on_embedded: Optional[Callable[[list[str]], None]] = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._availability = availability
        self._config = config or EmbeddingConfig()
        self._on_embedded = on_embedded
        self._logger = logging.getLogger("sidecar.embeddings")

        # One embed call at a time, pipeline passes and query embeddings alike
        self._backend_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def availability(self) -> ModelAvailability:
        return self._availability

    @property
    def model_version(self) -> str:
        return self._backend.model_version

    # ── Background loop ────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_requested.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="embedding-pipeline",
        )
        self._thread.start()
        self._logger.info("Embedding pipeline started: model=%s", self._backend.model_version)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_requested.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def notify(self, segment_id: Optional[str] = None) -> None:
        """Signal that a segment was finalized (or the model became available)."""
        self._wake.set()

    def _run_loop(self) -> None:
        while not self._stop_requested.is_set():
            self._wake.wait(self._config.retry_interval_s)
            self._wake.clear()
            if self._stop_requested.is_set():
                break
            if not self._availability.is_loaded:
                continue
            try:
                self.run_pass()
            except Exception as exc:
                self._logger.exception("Embedding pass failed: %s", exc)
        self._logger.debug("Embedding loop ended")

    # ── Passes ─────────────────────────────────────────────────────────

    def run_pass(self) -> dict:
        """Requeue failed segments, then embed everything pending.

        A segment that fails is attempted once per pass; it goes back to
        pending at the start of the next one.

        Returns counts of segments embedded and failed during the pass.
        A no-op while the model is not loaded.
        """
        if not self._availability.is_loaded:
            return {"embedded": 0, "failed": 0}

        embedded = 0
        failed = 0
        with self._pass_lock:
            requeued = self._store.requeue_failed()
            if requeued:
                self._logger.debug("Requeued %d failed segment(s)", requeued)
            attempted: set[str] = set()
            while True:
                batch = [
                    segment
                    for segment in self._store.pending_segments(
                        limit=self._config.batch_limit + len(attempted)
                    )
                    if segment.id not in attempted
                ]
                if not batch:
                    break
                attempted.update(segment.id for segment in batch)
                ok, bad = self._embed_batch(batch)
                embedded += ok
                failed += bad

        if embedded or failed:
            self._logger.info("Embedding pass: embedded=%d failed=%d", embedded, failed)
        return {"embedded": embedded, "failed": failed}

    def _embed_batch(self, segments: list[TranscriptSegment]) -> tuple[int, int]:
        titles: dict[str, Optional[str]] = {}
        ready: list[TranscriptSegment] = []
        texts: list[str] = []
        for segment in segments:
            if segment.meeting_id not in titles:
                try:
                    titles[segment.meeting_id] = self._store.get_meeting(segment.meeting_id).title
                except NotFoundError:
                    titles[segment.meeting_id] = None
            title = titles[segment.meeting_id]
            if title is None:
                continue
            ready.append(segment)
            texts.append(enrich_segment_text(segment.text, title, segment.time_label))
        if not ready:
            return 0, 0

        vectors: Optional[np.ndarray] = None
        try:
            vectors = self._embed_texts(texts)
            if vectors.shape[0] != len(ready):
                raise EmbeddingFailed(f"Backend returned {vectors.shape[0]} vectors for {len(ready)} texts")
        except Exception as exc:
            self._logger.warning("Batch of %d failed (%s); retrying one by one", len(ready), exc)
            vectors = None

        embedded = 0
        failed = 0
        stored_ids: list[str] = []
        for i, segment in enumerate(ready):
            if vectors is not None:
                vector = vectors[i]
            else:
                try:
                    vector = self._embed_texts([texts[i]])[0]
                except Exception as exc:
                    self._logger.warning("%s: segment %s: %s", EmbeddingFailed.__name__, segment.id, exc)
                    self._store.mark_failed(segment.id)
                    failed += 1
                    continue
            if self._store.mark_embedded(segment.id, vector, self._backend.model_version, segment.text_hash):
                embedded += 1
                stored_ids.append(segment.id)
            else:
                self._logger.debug("Segment %s changed while embedding; left pending", segment.id)

        if stored_ids and self._on_embedded:
            self._on_embedded(stored_ids)
        return embedded, failed

    def _embed_texts(self, texts: list[str]) -> np.ndarray:
        with self._backend_lock:
            return np.asarray(self._backend.embed(texts), dtype=np.float32)

    # ── Direct operations ──────────────────────────────────────────────

    def embed_segment(self, segment_id: str) -> bool:
        """Embed one segment now; returns False if it was already up to date.

        An ``embedded`` segment whose text is unchanged keeps its vector
        and state untouched.
        """
        segment = self._store.get_segment(segment_id)
        if segment.embedding_state == EMBEDDED:
            record = self._store.get_embedding(segment_id)
            if (
                record is not None
                and record.text_hash == segment.text_hash
                and record.model_version == self._backend.model_version
            ):
                return False
        self._availability.require_loaded()
        if segment.embedding_state == FAILED:
            self._store.requeue_failed(segment_id=segment_id)
        embedded, failed = self._embed_batch([segment])
        if failed:
            raise EmbeddingFailed(f"Embedding failed for segment {segment_id}")
        return embedded > 0

    def embed_meeting(self, meeting_id: str) -> int:
        """Embed every not-yet-embedded segment of one meeting; returns the count.

        Failed segments of the meeting are requeued first.
        """
        self._availability.require_loaded()
        embedded = 0
        batch_size = max(self._config.batch_limit, 1)
        with self._pass_lock:
            self._store.requeue_failed(meeting_id=meeting_id)
            todo = [s for s in self._store.get_segments(meeting_id) if s.embedding_state == PENDING]
            for start in range(0, len(todo), batch_size):
                ok, _ = self._embed_batch(todo[start:start + batch_size])
                embedded += ok
        self._logger.info("Embedded meeting %s: %d/%d segments", meeting_id, embedded, len(todo))
        return embedded

    def embed_query(self, text: str) -> np.ndarray:
        self._availability.require_loaded()
        return self._embed_texts([text])[0]

    def status(self) -> dict:
        counts = self._store.embedding_counts()
        return {
            "model_state": self._availability.state,
            "model_version": self._backend.model_version,
            "embedded": counts["embedded"],
            "total": counts["total"],
            "backlog": counts["pending"] + counts["failed"],
            "failed": counts["failed"],
        }
