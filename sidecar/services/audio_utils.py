"""Small numpy helpers shared by capture, scheduling and transcription."""

from __future__ import annotations

from math import gcd

import numpy as np
from scipy.signal import resample_poly


def as_float32(samples) -> np.ndarray:
    audio = np.asarray(samples)
    if audio.dtype == np.int16:
        return audio.astype(np.float32) / 32768.0
    return audio.astype(np.float32, copy=False)


def to_mono(samples) -> np.ndarray:
    """Average interleaved frames ``(frames, channels)`` down to one channel."""
    audio = as_float32(samples)
    if audio.ndim == 2:
        audio = audio.mean(axis=1)
    return np.ascontiguousarray(audio.reshape(-1), dtype=np.float32)


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    if source_rate == target_rate or samples.size == 0:
        return samples
    divisor = gcd(int(source_rate), int(target_rate))
    up = int(target_rate) // divisor
    down = int(source_rate) // divisor
    return resample_poly(samples, up, down).astype(np.float32)


def samples_to_ms(sample_count: int, sample_rate: int) -> int:
    return int(round(sample_count * 1000 / sample_rate))
