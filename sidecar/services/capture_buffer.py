"""Bounded ring buffer between the audio source and the chunk scheduler.

The audio source pushes blocks at whatever cadence the device delivers
them; the scheduler drains from the other end.  The buffer never blocks
the writer: when the scheduler stalls long enough to fill the ring, the
oldest samples are overwritten and a ``CaptureOverflow`` warning is
logged.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

from sidecar.services.audio_utils import rms, to_mono
from sidecar.services.errors import CaptureOverflow
from sidecar.services.pipeline_config import CaptureConfig


class CaptureBuffer:
    def __init__(
        self,
        sample_rate: int,
        config: Optional[CaptureConfig] = None,
        on_overflow: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._config = config or CaptureConfig()
        self._sample_rate = int(sample_rate)
        self._capacity = max(int(self._config.max_buffer_seconds * self._sample_rate), 1)
        self._on_overflow = on_overflow
        self._logger = logging.getLogger("sidecar.capture")

        self._lock = threading.Lock()
        self._ring = np.zeros(self._capacity, dtype=np.float32)
        self._head = 0  # index of the oldest sample
        self._size = 0

        self._paused = False
        self._active = False
        self._level = 0.0
        self._level_tail = np.zeros(0, dtype=np.float32)
        self._dropped_samples = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def dropped_samples(self) -> int:
        with self._lock:
            return self._dropped_samples

    def push(self, samples) -> int:
        """Append a block of samples; returns how many were accepted.

        Multi-channel blocks are averaged to mono.  While paused the block
        is discarded and 0 is returned.
        """
        audio = to_mono(samples)
        if audio.size == 0:
            return 0

        dropped = 0
        with self._lock:
            if self._paused:
                return 0
            self._active = True
            self._update_level(audio)

            if audio.size >= self._capacity:
                dropped = self._size + audio.size - self._capacity
                self._ring[:] = audio[-self._capacity:]
                self._head = 0
                self._size = self._capacity
            else:
                overflow = self._size + audio.size - self._capacity
                if overflow > 0:
                    self._head = (self._head + overflow) % self._capacity
                    self._size -= overflow
                    dropped = overflow
                tail = (self._head + self._size) % self._capacity
                first = min(audio.size, self._capacity - tail)
                self._ring[tail:tail + first] = audio[:first]
                if first < audio.size:
                    self._ring[:audio.size - first] = audio[first:]
                self._size += audio.size

            if dropped:
                self._dropped_samples += dropped

        if dropped:
            self._logger.warning(
                "%s: dropped %d oldest samples (%.2fs) at cap %.1fs",
                CaptureOverflow.__name__,
                dropped,
                dropped / self._sample_rate,
                self._config.max_buffer_seconds,
            )
            if self._on_overflow:
                self._on_overflow(dropped)
        return int(audio.size)

    def _update_level(self, audio: np.ndarray) -> None:
        window = self._config.level_window
        if audio.size >= window:
            self._level_tail = audio[-window:].copy()
        else:
            self._level_tail = np.concatenate([self._level_tail, audio])[-window:]
        instant = min(rms(self._level_tail) * self._config.level_gain, 1.0)
        self._level = max(instant, self._level * self._config.level_decay)

    def _take(self, count: int, consume: bool, from_tail: bool = False) -> np.ndarray:
        count = max(0, min(count, self._size))
        if count == 0:
            return np.zeros(0, dtype=np.float32)
        start = self._head + (self._size - count if from_tail else 0)
        indices = (start + np.arange(count)) % self._capacity
        out = self._ring[indices].copy()
        if consume:
            self._head = (self._head + count) % self._capacity
            self._size -= count
        return out

    def drain(self, max_samples: Optional[int] = None) -> np.ndarray:
        """Remove and return up to ``max_samples`` of the oldest samples."""
        with self._lock:
            count = self._size if max_samples is None else int(max_samples)
            return self._take(count, consume=True)

    def drain_chunk(self, max_duration_s: float) -> np.ndarray:
        return self.drain(int(max_duration_s * self._sample_rate))

    def peek_tail(self, count: int) -> np.ndarray:
        """Copy of the newest ``count`` samples, left in place."""
        with self._lock:
            return self._take(int(count), consume=False, from_tail=True)

    def available(self) -> int:
        with self._lock:
            return self._size

    def duration_s(self) -> float:
        return self.available() / self._sample_rate

    def current_level(self) -> float:
        """Decayed RMS meter value in [0, 1]; 0 while idle or paused."""
        with self._lock:
            if self._paused or not self._active:
                return 0.0
            return self._level

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            self._level = 0.0

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def clear(self) -> None:
        """Forget all buffered audio and return the meter to idle."""
        with self._lock:
            self._head = 0
            self._size = 0
            self._active = False
            self._level = 0.0
            self._level_tail = np.zeros(0, dtype=np.float32)
