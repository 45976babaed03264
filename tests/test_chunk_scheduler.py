"""Tests for chunk sealing policy, pause, stop and backpressure."""

import queue
import threading

import numpy as np
import pytest

from sidecar.services import chunk_scheduler
from sidecar.services.capture_buffer import CaptureBuffer
from sidecar.services.chunk_scheduler import ChunkScheduler
from sidecar.services.errors import ChunkQueueFull, SessionStateError
from sidecar.services.pipeline_config import SchedulerConfig
from sidecar.services.transcription_worker import TranscriptionWorker

from conftest import SAMPLE_RATE, FakeAsrBackend, silence, tone


def make_scheduler(capacity=8, source_rate=SAMPLE_RATE, on_backpressure=None):
    buffer = CaptureBuffer(source_rate)
    chunk_queue = queue.Queue(maxsize=capacity)
    scheduler = ChunkScheduler(buffer, chunk_queue, SchedulerConfig(queue_capacity=capacity), on_backpressure)
    return buffer, chunk_queue, scheduler


def feed(buffer, scheduler, audio, block_s=0.1, rate=SAMPLE_RATE):
    """Push ``audio`` in real-time-sized blocks, ticking after each one."""
    block = int(block_s * rate)
    delivered = []
    for start in range(0, audio.size, block):
        buffer.push(audio[start:start + block])
        delivered.extend(scheduler.tick())
    return delivered


def queued(chunk_queue):
    chunks = []
    while not chunk_queue.empty():
        chunks.append(chunk_queue.get_nowait())
    return chunks


class TestSealingPolicy:
    def test_speech_then_silence(self):
        """A short pause seals early, a pause at the window seals on time."""
        buffer, chunk_queue, scheduler = make_scheduler()
        audio = np.concatenate([tone(4.9), silence(0.1), tone(4.0), silence(1.0)])
        feed(buffer, scheduler, audio)
        final = scheduler.stop()

        chunks = queued(chunk_queue)
        assert len(chunks) == 3
        first, second, last = chunks
        assert first.duration_s == pytest.approx(5.0)
        assert 4.0 <= second.duration_s < 5.0
        assert last is final and last.is_final
        assert first.end_ms == second.start_ms
        assert second.end_ms == last.start_ms
        assert last.end_ms == 10000

    def test_continuous_speech_defers_the_nominal_seal_to_the_next_pause(self):
        """9 s of speech then 1 s of silence: the first pause after 5 s seals."""
        buffer, chunk_queue, scheduler = make_scheduler()
        audio = np.concatenate([tone(5.0), tone(4.0), silence(1.0)])
        feed(buffer, scheduler, audio)
        final = scheduler.stop()

        first, last = queued(chunk_queue)
        assert first.duration_s == pytest.approx(9.05)
        assert first.end_ms == 9050
        assert last is final
        assert last.duration_s == pytest.approx(0.95)
        assert last.end_ms == 10000

    def test_continuous_speech_seals_at_maximum(self):
        buffer, chunk_queue, scheduler = make_scheduler()
        feed(buffer, scheduler, tone(12.0))

        chunks = queued(chunk_queue)
        assert len(chunks) == 1
        assert chunks[0].duration_s == pytest.approx(10.0)
        assert chunks[0].start_ms == 0 and chunks[0].end_ms == 10000

    def test_short_blip_is_not_sealed(self):
        buffer, chunk_queue, scheduler = make_scheduler()
        feed(buffer, scheduler, np.concatenate([tone(0.3), silence(0.6)]))
        assert chunk_queue.empty()
        assert scheduler.state == chunk_scheduler.ARMED

    def test_decisions_do_not_depend_on_tick_rate(self):
        audio = np.concatenate([tone(2.0), silence(0.6), tone(1.0)])
        buffer_a, queue_a, scheduler_a = make_scheduler()
        feed(buffer_a, scheduler_a, audio, block_s=0.05)
        buffer_b, queue_b, scheduler_b = make_scheduler()
        feed(buffer_b, scheduler_b, audio, block_s=0.5)

        durations_a = [chunk.duration_s for chunk in queued(queue_a)]
        durations_b = [chunk.duration_s for chunk in queued(queue_b)]
        assert durations_a == durations_b == [pytest.approx(2.5)]

    def test_source_audio_is_resampled(self):
        buffer, chunk_queue, scheduler = make_scheduler(source_rate=48000)
        feed(buffer, scheduler, tone(11.0, rate=48000), rate=48000)
        chunk = queued(chunk_queue)[0]
        assert chunk.sample_rate == SAMPLE_RATE
        assert chunk.samples.size == 10 * SAMPLE_RATE
        assert chunk.samples.dtype == np.float32


class TestPauseAndStop:
    def test_pause_seals_captured_audio_and_discards_paused_audio(self):
        buffer, chunk_queue, scheduler = make_scheduler()
        feed(buffer, scheduler, tone(2.0))
        scheduler.pause()
        assert scheduler.state == chunk_scheduler.PAUSED

        buffer.push(tone(3.0))
        assert scheduler.tick() == []
        scheduler.resume()
        feed(buffer, scheduler, tone(1.0))
        final = scheduler.stop()

        first, last = queued(chunk_queue)
        assert first.duration_s == pytest.approx(2.0)
        assert final is last
        assert last.start_ms == 2000 and last.end_ms == 3000

    def test_stop_with_nothing_buffered_yields_empty_final_chunk(self):
        buffer, chunk_queue, scheduler = make_scheduler()
        final = scheduler.stop()
        assert final.is_final
        assert final.samples.size == 0
        assert queued(chunk_queue) == [final]
        assert scheduler.state == chunk_scheduler.STOPPED

    def test_stop_twice_is_rejected(self):
        _, _, scheduler = make_scheduler()
        scheduler.stop()
        with pytest.raises(SessionStateError):
            scheduler.stop()
        with pytest.raises(SessionStateError):
            scheduler.pause()

    def test_stop_raises_when_queue_never_frees(self):
        buffer, chunk_queue, scheduler = make_scheduler(capacity=1)
        chunk_queue.put_nowait(object())
        buffer.push(tone(1.0))
        with pytest.raises(ChunkQueueFull):
            scheduler.stop(timeout=0.05)

    def test_chunk_samples_are_read_only(self):
        buffer, chunk_queue, scheduler = make_scheduler()
        buffer.push(tone(1.0))
        chunk = scheduler.stop()
        with pytest.raises(ValueError):
            chunk.samples[0] = 1.0


class TestBackpressure:
    def test_full_queue_holds_chunks_until_worker_catches_up(self):
        signals = []
        buffer, chunk_queue, scheduler = make_scheduler(
            capacity=1, on_backpressure=lambda active, pending: signals.append(active)
        )
        feed(buffer, scheduler, tone(20.0))
        assert scheduler.state == chunk_scheduler.BACKPRESSURE
        assert scheduler.held_chunks == 1
        assert signals == [True]

        # Capture keeps buffering while held; nothing is drained
        feed(buffer, scheduler, tone(2.0))
        assert buffer.available() == 2 * SAMPLE_RATE

        first = chunk_queue.get_nowait()
        delivered = scheduler.tick()
        assert signals == [True, False]
        assert [chunk.index for chunk in delivered] == [1]
        assert first.end_ms == delivered[0].start_ms
        assert scheduler.held_chunks == 0

    def test_held_chunks_are_flushed_in_order_on_stop(self):
        buffer, chunk_queue, scheduler = make_scheduler(capacity=1)
        feed(buffer, scheduler, tone(20.0))
        received = [chunk_queue.get_nowait()]

        def consume():
            for _ in range(2):
                received.append(chunk_queue.get(timeout=5))

        consumer = threading.Thread(target=consume)
        consumer.start()
        scheduler.stop(timeout=5)
        consumer.join(timeout=5)

        assert [chunk.index for chunk in received] == [0, 1, 2]
        assert received[-1].is_final

    def test_growing_backlog_is_reported_through_the_worker(self):
        statuses = []
        backend = FakeAsrBackend(delay=0.5)
        buffer = CaptureBuffer(SAMPLE_RATE)
        chunk_queue = queue.Queue(maxsize=8)
        worker = TranscriptionWorker(backend, chunk_queue, on_status=statuses.append)
        scheduler = ChunkScheduler(buffer, chunk_queue, SchedulerConfig(queue_capacity=8), submit=worker.submit)
        worker.start()

        delivered = feed(buffer, scheduler, np.concatenate([tone(1.0), silence(0.6)] * 3))
        assert len(delivered) == 3
        assert max(status["pending_chunks"] for status in statuses) >= 2

        scheduler.stop(timeout=5)
        assert worker.drain(timeout=10)
        worker.stop()
        assert backend.calls == 3
        assert statuses[-1] == {"processing": False, "pending_chunks": 0}

    def test_undelivered_chunks_can_be_delivered_later(self):
        buffer, chunk_queue, scheduler = make_scheduler(capacity=1)
        blocker = object()
        chunk_queue.put_nowait(blocker)
        buffer.push(tone(1.0))
        with pytest.raises(ChunkQueueFull):
            scheduler.stop(timeout=0.05)
        assert scheduler.undelivered_chunks == 1

        assert chunk_queue.get_nowait() is blocker
        assert scheduler.deliver_pending(timeout=1) == 1
        assert chunk_queue.get_nowait() is scheduler.final_chunk
        assert scheduler.undelivered_chunks == 0
