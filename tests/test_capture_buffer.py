"""Tests for the bounded capture ring buffer."""

import numpy as np

from sidecar.services.capture_buffer import CaptureBuffer
from sidecar.services.pipeline_config import CaptureConfig

from conftest import silence, tone


def make_buffer(seconds=1.0, rate=1000, on_overflow=None):
    return CaptureBuffer(rate, CaptureConfig(max_buffer_seconds=seconds, level_window=100), on_overflow)


class TestPushAndDrain:
    def test_drain_returns_samples_in_order(self):
        buffer = make_buffer()
        buffer.push(np.arange(10, dtype=np.float32))
        buffer.push(np.arange(10, 20, dtype=np.float32))

        assert buffer.available() == 20
        np.testing.assert_array_equal(buffer.drain(5), np.arange(5, dtype=np.float32))
        np.testing.assert_array_equal(buffer.drain(), np.arange(5, 20, dtype=np.float32))
        assert buffer.available() == 0

    def test_stereo_blocks_are_averaged_to_mono(self):
        buffer = make_buffer()
        stereo = np.array([[1.0, 0.0], [0.5, 0.5], [0.0, -1.0]], dtype=np.float32)
        assert buffer.push(stereo) == 3
        np.testing.assert_allclose(buffer.drain(), [0.5, 0.5, -0.5])

    def test_int16_is_scaled(self):
        buffer = make_buffer()
        buffer.push(np.array([16384, -32768], dtype=np.int16))
        np.testing.assert_allclose(buffer.drain(), [0.5, -1.0])

    def test_peek_tail_leaves_samples(self):
        buffer = make_buffer()
        buffer.push(np.arange(10, dtype=np.float32))
        np.testing.assert_array_equal(buffer.peek_tail(3), [7, 8, 9])
        assert buffer.available() == 10


class TestOverflow:
    def test_oldest_samples_are_dropped_at_cap(self):
        dropped = []
        buffer = make_buffer(seconds=1.0, rate=100, on_overflow=dropped.append)
        buffer.push(np.arange(80, dtype=np.float32))
        buffer.push(np.arange(80, 130, dtype=np.float32))

        assert buffer.available() == 100
        assert dropped == [30]
        assert buffer.dropped_samples == 30
        np.testing.assert_array_equal(buffer.drain(), np.arange(30, 130, dtype=np.float32))

    def test_block_larger_than_capacity_keeps_newest(self):
        buffer = make_buffer(seconds=1.0, rate=100)
        buffer.push(np.arange(250, dtype=np.float32))
        np.testing.assert_array_equal(buffer.drain(), np.arange(150, 250, dtype=np.float32))
        assert buffer.dropped_samples == 150


class TestPauseAndLevel:
    def test_push_while_paused_is_discarded(self):
        buffer = make_buffer()
        buffer.pause()
        assert buffer.push(tone(0.1, rate=1000)) == 0
        assert buffer.available() == 0
        buffer.resume()
        assert buffer.push(tone(0.1, rate=1000)) == 100

    def test_level_is_zero_when_idle_or_paused(self):
        buffer = make_buffer()
        assert buffer.current_level() == 0.0
        buffer.push(tone(0.2, rate=1000))
        assert buffer.current_level() > 0.5
        buffer.pause()
        assert buffer.current_level() == 0.0

    def test_level_decays_after_speech_stops(self):
        buffer = make_buffer()
        buffer.push(tone(0.2, rate=1000))
        loud = buffer.current_level()
        buffer.push(silence(0.2, rate=1000))
        quieter = buffer.current_level()
        assert 0.0 < quieter < loud
        for _ in range(30):
            buffer.push(silence(0.1, rate=1000))
        assert buffer.current_level() < 0.01

    def test_level_is_bounded(self):
        buffer = make_buffer()
        buffer.push(np.ones(500, dtype=np.float32))
        assert buffer.current_level() == 1.0

    def test_clear_resets_meter(self):
        buffer = make_buffer()
        buffer.push(tone(0.2, rate=1000))
        buffer.clear()
        assert buffer.available() == 0
        assert buffer.current_level() == 0.0
