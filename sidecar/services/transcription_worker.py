"""
Transcription worker: serializes sealed chunks through one ASR backend.

A single daemon thread pops chunks from the FIFO shared with the chunk
scheduler, runs inference, shifts the recognized segments onto the
meeting timeline and hands them to ``on_segment`` before taking the next
chunk.  Because there is exactly one consumer thread (and the backend call
is additionally guarded by a lock), at most one inference is ever in
flight, and segments leave in chunk order.

A chunk that fails is logged, reported through ``on_error`` and dropped;
the transcript simply has a gap there.  When the backend is not loaded,
every chunk fails with ``ModelUnavailable`` until it is.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Optional

from sidecar.services.audio_utils import rms
from sidecar.services.chunk_scheduler import AudioChunk
from sidecar.services.errors import ChunkQueueFull, ModelUnavailable, TranscriptionFailed
from sidecar.services.transcription.base import AsrBackend, AsrSegment


class TranscriptionWorker:
    def __init__(
        self,
        backend: AsrBackend,
        chunk_queue: "queue.Queue[AudioChunk]",
        on_segment: Optional[Callable[[AsrSegment], None]] = None,
        on_status: Optional[Callable[[dict], None]] = None,
        on_error: Optional[Callable[[Exception, AudioChunk], None]] = None,
        on_drained: Optional[Callable[[], None]] = None,
        silence_threshold: float = 0.01,
        skip_silent_chunks: bool = True,
    ) -> None:
        self._backend = backend
        self._queue = chunk_queue
        self._on_segment = on_segment
        self._on_status = on_status
        self._on_error = on_error
        self._on_drained = on_drained
        self._silence_threshold = silence_threshold
        self._skip_silent_chunks = skip_silent_chunks
        self._logger = logging.getLogger("sidecar.transcription.worker")

        self._lock = threading.RLock()
        self._inference_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._final_processed = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._processing = False
        self._last_end_ms = 0
        self._chunks_processed = 0
        self._chunks_failed = 0
        self._segments_emitted = 0

    @property
    def backend(self) -> AsrBackend:
        return self._backend

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._stop_requested.clear()
            self._final_processed.clear()
            self._thread = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name="transcription-worker",
            )
            self._thread.start()
        self._logger.info("Transcription worker started: backend=%s", self._backend.name)

    def submit(self, chunk: AudioChunk, block: bool = False, timeout: Optional[float] = None) -> None:
        """Queue a chunk and publish the new backlog size.

        Does not wait unless ``block`` is set; raises ``ChunkQueueFull`` if
        no slot is free (within ``timeout`` seconds when blocking).
        """
        try:
            self._queue.put(chunk, block=block, timeout=timeout)
        except queue.Full:
            raise ChunkQueueFull(f"Chunk queue full ({self._queue.qsize()} pending)") from None
        self._emit_status()

    def status(self) -> dict:
        with self._lock:
            return {
                "processing": self._processing,
                "pending_chunks": self._queue.qsize(),
                "chunks_processed": self._chunks_processed,
                "chunks_failed": self._chunks_failed,
                "segments_emitted": self._segments_emitted,
            }

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until the final chunk has been transcribed.

        The queue is FIFO, so every chunk submitted before the final one
        has been handled by then.  Returns False on timeout.
        """
        return self._final_processed.wait(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_requested.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _worker_loop(self) -> None:
        self._logger.debug("Worker loop started")
        while True:
            try:
                chunk = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._stop_requested.is_set():
                    break
                continue

            with self._lock:
                self._processing = True
            self._emit_status()
            try:
                self._process_chunk(chunk)
            except Exception as exc:
                # Callback bugs must not kill the only worker thread
                self._logger.exception("Unexpected error on chunk #%d: %s", chunk.index, exc)
            finally:
                with self._lock:
                    self._processing = False
                    self._chunks_processed += 1
                self._queue.task_done()
                self._emit_status()

            if chunk.is_final:
                self._logger.info(
                    "Final chunk processed: chunks=%d failed=%d segments=%d",
                    self._chunks_processed,
                    self._chunks_failed,
                    self._segments_emitted,
                )
                if self._on_drained:
                    try:
                        self._on_drained()
                    except Exception as exc:
                        self._logger.exception("Drained callback failed: %s", exc)
                self._final_processed.set()
                break
        self._logger.debug("Worker loop ended")

    def _process_chunk(self, chunk: AudioChunk) -> None:
        if chunk.samples.size == 0:
            return
        if self._skip_silent_chunks and rms(chunk.samples) < self._silence_threshold:
            self._logger.debug("Skipping silent chunk #%d [%d-%d ms]", chunk.index, chunk.start_ms, chunk.end_ms)
            return

        start_time = time.perf_counter()
        try:
            if not self._backend.is_loaded:
                raise ModelUnavailable(f"ASR backend '{self._backend.name}' is not loaded")
            with self._inference_lock:
                raw_segments = self._backend.transcribe(chunk.samples, chunk.sample_rate)
        except ModelUnavailable as exc:
            self._fail(chunk, exc)
            return
        except Exception as exc:
            failure = TranscriptionFailed(
                f"Chunk #{chunk.index} [{chunk.start_ms}-{chunk.end_ms} ms] failed: {exc}"
            )
            failure.__cause__ = exc
            self._fail(chunk, failure)
            return

        self._logger.debug(
            "Chunk #%d transcribed in %.2fs: %d segment(s)",
            chunk.index,
            time.perf_counter() - start_time,
            len(raw_segments),
        )
        for raw in raw_segments:
            segment = self._to_meeting_time(chunk, raw)
            if segment is None:
                continue
            with self._lock:
                self._segments_emitted += 1
            if self._on_segment:
                self._on_segment(segment)

    def _to_meeting_time(self, chunk: AudioChunk, raw: AsrSegment) -> Optional[AsrSegment]:
        text = raw.text.strip()
        if not text:
            return None
        start = chunk.start_ms + max(raw.start_ms, 0)
        end = chunk.start_ms + max(raw.end_ms, raw.start_ms, 0)
        # Keep segments inside their chunk and never behind the previous one
        start = min(max(start, self._last_end_ms, chunk.start_ms), chunk.end_ms)
        end = min(max(end, start), chunk.end_ms)
        self._last_end_ms = end
        return AsrSegment(text=text, start_ms=start, end_ms=end, speaker_id=raw.speaker_id)

    def _fail(self, chunk: AudioChunk, exc: Exception) -> None:
        with self._lock:
            self._chunks_failed += 1
        self._logger.warning("%s: %s", type(exc).__name__, exc)
        if self._on_error:
            try:
                self._on_error(exc, chunk)
            except Exception as callback_exc:
                self._logger.warning("Error callback failed: %s", callback_exc)

    def _emit_status(self) -> None:
        if not self._on_status:
            return
        status = self.status()
        try:
            self._on_status({"processing": status["processing"], "pending_chunks": status["pending_chunks"]})
        except Exception as exc:
            self._logger.warning("Status callback failed: %s", exc)
