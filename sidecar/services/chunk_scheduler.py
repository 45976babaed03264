"""
Chunk scheduler: turns buffered capture audio into sealed transcription chunks.

Audio drained from the capture buffer is resampled to the ASR rate and
analysed in short frames.  A run of accumulated audio is sealed when:

1. it reaches the hard maximum (bounds ASR latency per call), or
2. it is at least ``min_chunk_s`` long and the trailing ``silence_hold_s``
   is below the silence threshold (early seal at a pause), or
3. it has passed the nominal window and the latest frame is silent.

Continuous speech past the nominal window therefore defers sealing until
the next pause or the hard maximum.  Decisions are made frame by frame,
so they do not depend on how often ``tick`` runs.

Sealed chunks go onto a bounded FIFO shared with the transcription
worker, through ``submit`` (normally ``TranscriptionWorker.submit``, so
every enqueue also publishes the worker's status).  The scheduler never
blocks on that queue: when it is full the chunk is held back, new seals
stop, and the backpressure callback fires until the worker catches up.
Only ``stop()`` waits on the queue, to hand over the final flush; chunks
it could not hand over stay undelivered until ``deliver_pending()``.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from sidecar.services.audio_utils import resample, rms, samples_to_ms
from sidecar.services.capture_buffer import CaptureBuffer
from sidecar.services.errors import ChunkQueueFull, SessionStateError
from sidecar.services.pipeline_config import SchedulerConfig

IDLE = "idle"
ARMED = "armed"
SEALING = "sealing"
PAUSED = "paused"
BACKPRESSURE = "backpressure"
STOPPED = "stopped"


@dataclass(frozen=True, eq=False)
class AudioChunk:
    """A sealed span of mono float32 audio, timed from meeting start."""
    samples: np.ndarray
    start_ms: int
    end_ms: int
    sample_rate: int
    is_final: bool = False
    index: int = 0

    @property
    def duration_s(self) -> float:
        return self.samples.size / self.sample_rate


class ChunkScheduler:
    def __init__(
        self,
        buffer: CaptureBuffer,
        chunk_queue: "queue.Queue[AudioChunk]",
        config: Optional[SchedulerConfig] = None,
        on_backpressure: Optional[Callable[[bool, int], None]] = None,
        submit: Optional[Callable[..., None]] = None,
    ) -> None:
        self._buffer = buffer
        self._queue = chunk_queue
        self._submit = submit or self._queue_submit
        self._config = config or SchedulerConfig()
        self._on_backpressure = on_backpressure
        self._logger = logging.getLogger("sidecar.scheduler")

        cfg = self._config
        self._source_rate = buffer.sample_rate
        self._rate = int(cfg.target_sample_rate)
        self._frame = max(int(round(cfg.analysis_frame_s * self._rate)), 1)
        self._hold_frames = max(int(math.ceil(cfg.silence_hold_s * self._rate / self._frame)), 1)
        self._min_samples = int(cfg.min_chunk_s * self._rate)
        self._nominal_samples = int(cfg.nominal_window_s * self._rate)
        self._max_samples = max(int(cfg.max_chunk_s * self._rate), self._frame)

        self._lock = threading.RLock()
        self._state = IDLE
        self._paused = False
        self._pending = np.zeros(0, dtype=np.float32)
        self._analyzed = 0
        self._frame_levels: list[float] = []
        self._sealed_samples = 0
        self._chunk_count = 0
        self._held: deque[AudioChunk] = deque()
        self._undelivered: deque[AudioChunk] = deque()
        self._final: Optional[AudioChunk] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Introspection ──────────────────────────────────────────────────

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def sample_rate(self) -> int:
        return self._rate

    @property
    def held_chunks(self) -> int:
        with self._lock:
            return len(self._held)

    @property
    def undelivered_chunks(self) -> int:
        return len(self._undelivered)

    @property
    def final_chunk(self) -> Optional[AudioChunk]:
        return self._final

    @property
    def chunks_sealed(self) -> int:
        with self._lock:
            return self._chunk_count

    @property
    def elapsed_ms(self) -> int:
        """Audio time sealed or accumulated so far, excluding paused time."""
        with self._lock:
            return samples_to_ms(self._sealed_samples + self._pending.size, self._rate)

    # ── Background loop ────────────────────────────────────────────────

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._run_loop,
                daemon=True,
                name="chunk-scheduler",
            )
            self._thread.start()
        self._logger.info(
            "Scheduler started: source_rate=%s target_rate=%s window=%.1fs max=%.1fs",
            self._source_rate,
            self._rate,
            self._config.nominal_window_s,
            self._config.max_chunk_s,
        )

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._config.poll_interval_s):
            try:
                self.tick()
            except Exception as exc:
                self._logger.exception("Scheduler tick failed: %s", exc)
        self._logger.debug("Scheduler loop ended")

    # ── Sealing ────────────────────────────────────────────────────────

    def tick(self) -> list[AudioChunk]:
        """Drain the capture buffer and seal whatever the policy allows.

        Returns the chunks handed to the queue during this call.
        """
        with self._lock:
            if self._state == STOPPED:
                return []
            delivered = self._flush_held()
            if self._held or self._paused:
                return delivered

            raw = self._buffer.drain()
            if raw.size:
                self._append(raw)
            delivered.extend(self._scan())
            self._refresh_state()
            return delivered

    def _append(self, raw: np.ndarray) -> None:
        audio = resample(raw, self._source_rate, self._rate)
        self._pending = np.concatenate([self._pending, audio])

    def _scan(self) -> list[AudioChunk]:
        delivered: list[AudioChunk] = []
        while not self._held and self._pending.size - self._analyzed >= self._frame:
            frame = self._pending[self._analyzed:self._analyzed + self._frame]
            self._frame_levels.append(rms(frame))
            self._analyzed += self._frame

            reason = self._seal_reason()
            if reason is None:
                continue
            chunk = self._seal(self._analyzed, is_final=False, reason=reason)
            if self._offer(chunk):
                delivered.append(chunk)
            else:
                self._hold(chunk)
        return delivered

    def _seal_reason(self) -> Optional[str]:
        analyzed = self._analyzed
        threshold = self._config.silence_threshold
        if analyzed >= self._max_samples:
            return "max"
        if analyzed >= self._min_samples and len(self._frame_levels) >= self._hold_frames:
            if all(level < threshold for level in self._frame_levels[-self._hold_frames:]):
                return "silence"
        if analyzed >= self._nominal_samples and self._frame_levels[-1] < threshold:
            return "nominal"
        return None

    def _seal(self, count: int, *, is_final: bool, reason: str) -> AudioChunk:
        self._state = SEALING
        samples = self._pending[:count].copy()
        samples.setflags(write=False)
        self._pending = self._pending[count:]
        self._analyzed = max(self._analyzed - count, 0)
        self._frame_levels = []

        start_ms = samples_to_ms(self._sealed_samples, self._rate)
        self._sealed_samples += samples.size
        end_ms = samples_to_ms(self._sealed_samples, self._rate)
        chunk = AudioChunk(
            samples=samples,
            start_ms=start_ms,
            end_ms=end_ms,
            sample_rate=self._rate,
            is_final=is_final,
            index=self._chunk_count,
        )
        self._chunk_count += 1
        self._logger.debug(
            "Sealed chunk #%d [%d-%d ms] reason=%s final=%s",
            chunk.index,
            start_ms,
            end_ms,
            reason,
            is_final,
        )
        return chunk

    def _queue_submit(self, chunk: AudioChunk, block: bool = False, timeout: Optional[float] = None) -> None:
        try:
            self._queue.put(chunk, block=block, timeout=timeout)
        except queue.Full:
            raise ChunkQueueFull(f"Chunk queue full ({self._queue.qsize()} pending)") from None

    def _offer(self, chunk: AudioChunk) -> bool:
        try:
            self._submit(chunk)
        except ChunkQueueFull:
            return False
        return True

    def _hold(self, chunk: AudioChunk) -> None:
        first = not self._held
        self._held.append(chunk)
        self._state = BACKPRESSURE
        if first:
            self._logger.warning(
                "%s: holding chunk #%d until the transcription worker catches up",
                ChunkQueueFull.__name__,
                chunk.index,
            )
            if self._on_backpressure:
                self._on_backpressure(True, self._queue.qsize())

    def _flush_held(self) -> list[AudioChunk]:
        delivered: list[AudioChunk] = []
        if not self._held:
            return delivered
        while self._held and self._offer(self._held[0]):
            delivered.append(self._held.popleft())
        if not self._held:
            self._logger.info("Backpressure cleared after %d held chunk(s)", len(delivered))
            self._refresh_state()
            if self._on_backpressure:
                self._on_backpressure(False, self._queue.qsize())
        return delivered

    def _refresh_state(self) -> None:
        if self._held:
            self._state = BACKPRESSURE
        elif self._paused:
            self._state = PAUSED
        elif self._pending.size:
            self._state = ARMED
        else:
            self._state = IDLE

    # ── Lifecycle ──────────────────────────────────────────────────────

    def pause(self) -> None:
        """Stop accepting audio; anything pushed while paused is discarded.

        Audio captured before the pause is sealed immediately so it is not
        lost, unless chunks are already held back by backpressure, in which
        case it stays pending until the queue drains.
        """
        with self._lock:
            if self._state == STOPPED:
                raise SessionStateError("Scheduler already stopped")
            if self._paused:
                return
            self._buffer.pause()
            raw = self._buffer.drain()
            self._buffer.clear()
            if raw.size:
                self._append(raw)
            if self._pending.size and not self._held:
                chunk = self._seal(self._pending.size, is_final=False, reason="pause")
                if not self._offer(chunk):
                    self._hold(chunk)
            self._paused = True
            self._refresh_state()
        self._logger.info("Scheduler paused at %d ms", self.elapsed_ms)

    def resume(self) -> None:
        with self._lock:
            if self._state == STOPPED:
                raise SessionStateError("Scheduler already stopped")
            if not self._paused:
                return
            self._paused = False
            self._frame_levels = []
            self._analyzed = 0
            self._buffer.resume()
            self._refresh_state()
        self._logger.info("Scheduler resumed")

    def stop(self, timeout: Optional[float] = 30.0) -> AudioChunk:
        """Seal everything that remains as one final chunk and enqueue it.

        Held chunks are enqueued first, in order.  This is the only call
        that waits on the queue; it raises ``ChunkQueueFull`` if the worker
        does not free a slot within ``timeout`` seconds.  The chunks not yet
        handed over are kept for ``deliver_pending()``.
        """
        with self._lock:
            if self._state == STOPPED:
                raise SessionStateError("Scheduler already stopped")
            self._stop_event.set()
            if not self._paused:
                raw = self._buffer.drain()
                if raw.size:
                    self._append(raw)
            self._buffer.pause()
            self._buffer.clear()
            final = self._seal(self._pending.size, is_final=True, reason="stop")
            self._final = final
            self._undelivered.extend(self._held)
            self._undelivered.append(final)
            self._held.clear()
            self._state = STOPPED

        self.deliver_pending(timeout=timeout)

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)

        self._logger.info(
            "Scheduler stopped: chunks=%d final=%.2fs",
            self._chunk_count,
            final.duration_s,
        )
        return final

    def deliver_pending(self, timeout: Optional[float] = 30.0) -> int:
        """Hand chunks left over by ``stop()`` to the queue, oldest first.

        Returns how many were delivered; raises ``ChunkQueueFull`` if a slot
        does not free up within ``timeout`` seconds.
        """
        delivered = 0
        while self._undelivered:
            chunk = self._undelivered[0]
            try:
                self._submit(chunk, block=True, timeout=timeout)
            except ChunkQueueFull:
                raise ChunkQueueFull(
                    f"Chunk queue still full after {timeout}s; chunk #{chunk.index} not delivered"
                ) from None
            self._undelivered.popleft()
            delivered += 1
        return delivered
