"""
Recording session: one meeting's capture-to-transcript lifecycle.

A session owns the per-recording pipeline objects (capture buffer, chunk
scheduler, transcription worker and the chunk queue between them) and
wires their output into the shared services (segment store, event bus,
embedding pipeline, note monitor).  Nothing about the recording lives in
module globals; the session is created at start and discarded after
``stop()``.

Lifecycle: ``init -> active -> draining -> closed``.  Pausing is a flag
on an active session.  ``stop()`` stops the source, flushes the scheduler,
waits for the worker queue to drain and only then closes the meeting, so
``ended_at`` is never set while a chunk is still untranscribed.  If that
wait times out the session stays ``draining``; it closes by itself when
the final chunk is done, and ``stop()`` may be called again meanwhile.
Embedding and note checks are not waited for.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Optional

import numpy as np

from sidecar.services import events
from sidecar.services.audio_source import AudioSource
from sidecar.services.capture_buffer import CaptureBuffer
from sidecar.services.chunk_scheduler import AudioChunk, ChunkScheduler
from sidecar.services.embedding_pipeline import EmbeddingPipeline
from sidecar.services.errors import OrderingViolation, SessionStateError, TranscriptionFailed
from sidecar.services.events import EventBus
from sidecar.services.model_manager import ModelManager
from sidecar.services.note_monitor import NoteMentionMonitor
from sidecar.services.pipeline_config import PipelineConfig
from sidecar.services.segment_store import Meeting, SegmentStore
from sidecar.services.transcription.base import AsrBackend, AsrSegment
from sidecar.services.transcription_worker import TranscriptionWorker

INIT = "init"
ACTIVE = "active"
DRAINING = "draining"
CLOSED = "closed"


class RecordingSession:
    def __init__(
        self,
        store: SegmentStore,
        bus: EventBus,
        asr_backend: AsrBackend,
        config: Optional[PipelineConfig] = None,
        embedding_pipeline: Optional[EmbeddingPipeline] = None,
        note_monitor: Optional[NoteMentionMonitor] = None,
        sample_rate: int = 16000,
    ) -> None:
        self._store = store
        self._bus = bus
        self._asr_backend = asr_backend
        self._config = config or PipelineConfig()
        self._embedding_pipeline = embedding_pipeline
        self._note_monitor = note_monitor
        self._sample_rate = int(sample_rate)
        self._logger = logging.getLogger("sidecar.session")

        self._lock = threading.RLock()
        self._state = INIT
        self._paused = False
        self._meeting: Optional[Meeting] = None
        self._source: Optional[AudioSource] = None
        self._buffer: Optional[CaptureBuffer] = None
        self._scheduler: Optional[ChunkScheduler] = None
        self._worker: Optional[TranscriptionWorker] = None
        self._started_at: Optional[float] = None

    # ── Introspection ──────────────────────────────────────────────────

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def meeting_id(self) -> Optional[str]:
        return self._meeting.id if self._meeting else None

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def current_level(self) -> float:
        buffer = self._buffer
        if buffer is None or self.state != ACTIVE:
            return 0.0
        return buffer.current_level()

    def status(self) -> dict:
        with self._lock:
            status = {
                "state": self._state,
                "meeting_id": self.meeting_id,
                "paused": self._paused,
                "level": self.current_level() if self._state == ACTIVE else 0.0,
                "scheduler_state": self._scheduler.state if self._scheduler else None,
                "elapsed_ms": self._scheduler.elapsed_ms if self._scheduler else 0,
                "processing": False,
                "pending_chunks": 0,
            }
            if self._worker is not None:
                worker_status = self._worker.status()
                status["processing"] = worker_status["processing"]
                status["pending_chunks"] = worker_status["pending_chunks"]
            if self._buffer is not None:
                status["dropped_samples"] = self._buffer.dropped_samples
            return status

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(
        self,
        title: Optional[str] = None,
        tags: Optional[list[str]] = None,
        source: Optional[AudioSource] = None,
    ) -> Meeting:
        with self._lock:
            if self._state != INIT:
                raise SessionStateError(f"Cannot start a session in state {self._state}")
            if source is not None:
                self._sample_rate = source.sample_rate

            meeting = self._store.create_meeting(title=title, tags=tags)
            self._meeting = meeting
            chunk_queue: "queue.Queue[AudioChunk]" = queue.Queue(
                maxsize=self._config.scheduler.queue_capacity
            )
            self._buffer = CaptureBuffer(
                self._sample_rate,
                self._config.capture,
                on_overflow=self._on_overflow,
            )
            self._worker = TranscriptionWorker(
                self._asr_backend,
                chunk_queue,
                on_segment=self._on_segment,
                on_status=self._on_status,
                on_error=self._on_chunk_error,
                on_drained=self._on_drained,
                silence_threshold=self._config.scheduler.silence_threshold,
                skip_silent_chunks=self._config.asr.skip_silent_chunks,
            )
            self._scheduler = ChunkScheduler(
                self._buffer,
                chunk_queue,
                self._config.scheduler,
                on_backpressure=self._on_backpressure,
                submit=self._worker.submit,
            )
            self._worker.start()
            self._scheduler.start()
            self._started_at = time.perf_counter()
            self._state = ACTIVE

            if source is not None:
                self._source = source
                source.start(self.push_audio)

        self._logger.info(
            "Session started: meeting_id=%s sample_rate=%s backend=%s",
            meeting.id,
            self._sample_rate,
            self._asr_backend.name,
        )
        self._publish_state()
        return meeting

    def push_audio(self, samples) -> int:
        """Entry point for audio sources; a no-op outside the active state."""
        buffer = self._buffer
        if buffer is None or self.state != ACTIVE:
            return 0
        return buffer.push(np.asarray(samples))

    def pause(self) -> None:
        with self._lock:
            self._require(ACTIVE)
            if self._paused:
                return
            self._scheduler.pause()
            self._paused = True
        self._publish_state()

    def resume(self) -> None:
        with self._lock:
            self._require(ACTIVE)
            if not self._paused:
                return
            self._scheduler.resume()
            self._paused = False
        self._publish_state()

    def stop(self, timeout: Optional[float] = 120.0) -> Meeting:
        """Flush, wait for transcription to finish, then close the meeting.

        Calling ``stop()`` again while the session is still draining (after
        a timeout) retries any undelivered chunks and waits again.  A session
        that timed out also closes on its own once the final chunk has been
        transcribed.

        Raises:
            SessionStateError: the session is neither active nor draining.
            ChunkQueueFull: the final chunk could not be queued in time.
            TranscriptionFailed: the worker did not drain within ``timeout``;
                the meeting stays open until it does.
        """
        with self._lock:
            if self._state not in (ACTIVE, DRAINING):
                raise SessionStateError(f"Session is {self._state}, expected {ACTIVE} or {DRAINING}")
            retry = self._state == DRAINING
            self._state = DRAINING

        if retry:
            self._logger.info("Session still draining, waiting again: meeting_id=%s", self.meeting_id)
            self._scheduler.deliver_pending(timeout=timeout)
        else:
            self._publish_state()
            self._logger.info("Session draining: meeting_id=%s", self.meeting_id)
            if self._source is not None:
                try:
                    self._source.stop()
                except Exception as exc:
                    self._logger.warning("Audio source stop failed: %s", exc)
            self._scheduler.stop(timeout=timeout)

        if not self._worker.drain(timeout):
            status = self._worker.status()
            raise TranscriptionFailed(
                f"Transcription did not drain within {timeout}s "
                f"({status['pending_chunks']} chunk(s) pending)"
            )
        return self._close()

    def _close(self) -> Meeting:
        """Close the meeting exactly once, after the final chunk is done."""
        with self._lock:
            if self._state == CLOSED:
                return self._meeting
            meeting = self._store.close_meeting(self._meeting.id)
            self._meeting = meeting
            self._state = CLOSED
            final = self._scheduler.final_chunk
            elapsed = time.perf_counter() - (self._started_at or time.perf_counter())
            self._logger.info(
                "Session closed: meeting_id=%s segments=%d final_chunk=%.2fs wall=%.1fs",
                meeting.id,
                meeting.segment_count,
                final.duration_s if final else 0.0,
                elapsed,
            )
            self._bus.publish(events.MEETING_CLOSED, meeting.id, meeting.to_dict())
            self._publish_state()
        self._worker.stop()
        return meeting

    def _require(self, state: str) -> None:
        if self._state != state:
            raise SessionStateError(f"Session is {self._state}, expected {state}")

    # ── Pipeline callbacks ─────────────────────────────────────────────

    def _on_segment(self, asr_segment: AsrSegment) -> None:
        meeting_id = self.meeting_id
        try:
            segment = self._store.append_segment(
                meeting_id,
                asr_segment.text,
                asr_segment.start_ms,
                asr_segment.end_ms,
                speaker_id=asr_segment.speaker_id,
            )
        except OrderingViolation as exc:
            self._logger.error("Segment rejected: %s", exc)
            self._bus.publish(
                events.PIPELINE_ERROR,
                meeting_id,
                {"stage": "store", "error": type(exc).__name__, "detail": str(exc)},
            )
            return

        self._bus.publish(events.SEGMENT_READY, meeting_id, segment.to_dict())
        if self._embedding_pipeline is not None:
            self._embedding_pipeline.notify(segment.id)
        if self._note_monitor is not None:
            self._note_monitor.on_segment(segment)

    def _on_status(self, status: dict) -> None:
        self._bus.publish(events.TRANSCRIPTION_STATUS, self.meeting_id, status)

    def _on_chunk_error(self, exc: Exception, chunk: AudioChunk) -> None:
        self._bus.publish(
            events.TRANSCRIPTION_STATUS,
            self.meeting_id,
            {
                "processing": False,
                "pending_chunks": self._worker.status()["pending_chunks"] if self._worker else 0,
                "error": type(exc).__name__,
                "detail": str(exc),
                "chunk": {"index": chunk.index, "start_ms": chunk.start_ms, "end_ms": chunk.end_ms},
            },
        )

    def _on_drained(self) -> None:
        # Runs on the worker thread; closes a session whose stop() timed out
        self._close()

    def _on_overflow(self, dropped: int) -> None:
        self._bus.publish(
            events.CAPTURE_OVERFLOW,
            self.meeting_id,
            {"dropped_samples": dropped, "sample_rate": self._sample_rate},
        )

    def _on_backpressure(self, active: bool, pending_chunks: int) -> None:
        self._bus.publish(
            events.BACKPRESSURE,
            self.meeting_id,
            {"active": active, "pending_chunks": pending_chunks},
        )

    def _publish_state(self) -> None:
        with self._lock:
            data = {"state": self._state, "paused": self._paused}
        self._bus.publish(events.SESSION_STATE, self.meeting_id, data)


class RecordingManager:
    """Owns at most one live session and builds new ones on request."""

    def __init__(
        self,
        store: SegmentStore,
        bus: EventBus,
        model_manager: ModelManager,
        config: Optional[PipelineConfig] = None,
        embedding_pipeline: Optional[EmbeddingPipeline] = None,
        note_monitor: Optional[NoteMentionMonitor] = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._model_manager = model_manager
        self._config = config or PipelineConfig()
        self._embedding_pipeline = embedding_pipeline
        self._note_monitor = note_monitor
        self._lock = threading.Lock()
        self._current: Optional[RecordingSession] = None
        self._logger = logging.getLogger("sidecar.recording")

    @property
    def current(self) -> Optional[RecordingSession]:
        with self._lock:
            return self._current

    def _live_session(self) -> RecordingSession:
        session = self.current
        if session is None or session.state not in (ACTIVE, DRAINING):
            raise SessionStateError("No recording in progress")
        return session

    def start_session(
        self,
        title: Optional[str] = None,
        tags: Optional[list[str]] = None,
        source: Optional[AudioSource] = None,
        sample_rate: int = 16000,
    ) -> RecordingSession:
        with self._lock:
            if self._current is not None and self._current.state in (ACTIVE, DRAINING):
                raise SessionStateError("A recording is already in progress")
            if self._model_manager.state("asr") != "loaded":
                # Chunks fail with ModelUnavailable until this completes
                self._model_manager.load_async("asr")
            session = RecordingSession(
                self._store,
                self._bus,
                self._model_manager.backend("asr"),
                config=self._config,
                embedding_pipeline=self._embedding_pipeline,
                note_monitor=self._note_monitor,
                sample_rate=sample_rate,
            )
            if self._note_monitor is not None:
                self._note_monitor.reset_counter()
            session.start(title=title, tags=tags, source=source)
            self._current = session
        return session

    def pause(self) -> None:
        self._live_session().pause()

    def resume(self) -> None:
        self._live_session().resume()

    def stop_session(self, timeout: Optional[float] = 120.0) -> Meeting:
        return self._live_session().stop(timeout=timeout)

    def status(self) -> dict:
        session = self.current
        if session is None:
            return {"state": "idle", "meeting_id": None, "paused": False, "level": 0.0}
        return session.status()
