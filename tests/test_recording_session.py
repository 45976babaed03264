"""End-to-end tests for the recording session lifecycle."""

import numpy as np
import pytest
import soundfile as sf

from sidecar.services import events
from sidecar.services.audio_source import FileAudioSource
from sidecar.services.errors import SessionStateError, TranscriptionFailed
from sidecar.services.model_manager import ModelManager
from sidecar.services.note_monitor import KeywordMentionEvaluator, NoteMentionMonitor
from sidecar.services.pipeline_config import NoteMonitorConfig
from sidecar.services.recording_session import ACTIVE, CLOSED, DRAINING, RecordingManager, RecordingSession

from conftest import FakeAsrBackend, silence, tone, wait_for


def speech():
    return np.concatenate([tone(6.0), silence(1.0), tone(3.0)])


def drain_events(subscriber):
    collected = []
    while not subscriber.empty():
        collected.append(subscriber.get_nowait())
    return collected


class TestRecordingSession:
    def test_meeting_closes_after_all_chunks_are_transcribed(self, store, bus):
        subscriber = bus.subscribe()
        session = RecordingSession(store, bus, FakeAsrBackend(delay=0.05))
        meeting = session.start(title="Design sync")
        assert session.state == ACTIVE

        audio = speech()
        for start in range(0, audio.size, 1600):
            session.push_audio(audio[start:start + 1600])
        # First chunk seals on the scheduler thread at the pause after 6s
        assert wait_for(lambda: len(store.get_segments(meeting.id)) >= 1)
        closed = session.stop(timeout=10)

        assert session.state == CLOSED
        assert closed.is_closed
        segments = store.get_segments(meeting.id)
        assert len(segments) >= 2
        for earlier, later in zip(segments, segments[1:]):
            assert earlier.end_ms <= later.start_ms
        assert segments[-1].end_ms == 10000

        published = drain_events(subscriber)
        types = [event["type"] for event in published]
        assert types.count(events.SEGMENT_READY) == len(segments)
        assert types.index(events.MEETING_CLOSED) > max(
            i for i, t in enumerate(types) if t == events.SEGMENT_READY
        )
        assert events.TRANSCRIPTION_STATUS in types

    def test_stop_times_out_then_closes_in_the_background(self, store, bus):
        subscriber = bus.subscribe()
        session = RecordingSession(store, bus, FakeAsrBackend(delay=0.5))
        meeting = session.start()
        session.push_audio(tone(2.0))
        with pytest.raises(TranscriptionFailed):
            session.stop(timeout=0.05)
        assert session.state == DRAINING
        assert not store.get_meeting(meeting.id).is_closed

        assert wait_for(lambda: session.state == CLOSED)
        assert store.get_meeting(meeting.id).is_closed
        assert len(store.get_segments(meeting.id)) == 1
        types = [event["type"] for event in drain_events(subscriber)]
        assert types.count(events.MEETING_CLOSED) == 1
        with pytest.raises(SessionStateError):
            session.stop()

    def test_stop_can_be_retried_while_draining(self, store, bus):
        session = RecordingSession(store, bus, FakeAsrBackend(delay=0.5))
        meeting = session.start()
        session.push_audio(tone(2.0))
        with pytest.raises(TranscriptionFailed):
            session.stop(timeout=0.05)

        closed = session.stop(timeout=10)
        assert closed.is_closed
        assert session.state == CLOSED
        assert store.get_meeting(meeting.id).is_closed
        assert len(store.get_segments(meeting.id)) == 1

    def test_pause_excludes_audio_from_timeline(self, store, bus):
        session = RecordingSession(store, bus, FakeAsrBackend())
        meeting = session.start()
        session.push_audio(tone(2.0))
        session.pause()
        assert session.paused
        assert session.push_audio(tone(5.0)) == 0
        assert session.current_level() == 0.0
        session.resume()
        session.push_audio(tone(1.0))
        session.stop(timeout=10)

        segments = store.get_segments(meeting.id)
        assert segments[-1].end_ms == 3000

    def test_illegal_transitions(self, store, bus):
        session = RecordingSession(store, bus, FakeAsrBackend())
        with pytest.raises(SessionStateError):
            session.pause()
        session.start()
        session.stop(timeout=10)
        with pytest.raises(SessionStateError):
            session.stop()
        with pytest.raises(SessionStateError):
            session.start()

    def test_segments_feed_the_note_monitor(self, store, bus):
        subscriber = bus.subscribe()
        monitor = NoteMentionMonitor(
            store,
            KeywordMentionEvaluator(),
            NoteMonitorConfig(trigger_every=1),
            on_alert=lambda meeting_id, alert: bus.publish(events.NOTE_MENTION_ALERT, meeting_id, alert),
        )
        monitor.add_watch("quarterly budget")
        backend = FakeAsrBackend(texts=["the quarterly budget is approved"])
        session = RecordingSession(store, bus, backend, note_monitor=monitor)
        session.start()
        session.push_audio(tone(2.0))
        session.stop(timeout=10)
        monitor.wait_idle(5)

        alerts = [e for e in drain_events(subscriber) if e["type"] == events.NOTE_MENTION_ALERT]
        assert len(alerts) == 1
        assert alerts[0]["data"]["text"] == "quarterly budget"

    def test_file_source_replays_into_transcript(self, store, bus, tmp_path):
        path = tmp_path / "meeting.wav"
        stereo = np.stack([tone(3.0, rate=48000), tone(3.0, rate=48000)], axis=1)
        sf.write(str(path), stereo, 48000)

        source = FileAudioSource(str(path), speed_percent=0)
        session = RecordingSession(store, bus, FakeAsrBackend())
        meeting = session.start(source=source)
        assert source.wait_complete(5)
        session.stop(timeout=10)

        segments = store.get_segments(meeting.id)
        assert len(segments) == 1
        assert segments[0].end_ms == 3000


class TestRecordingManager:
    def make_manager(self, store, bus, backend=None):
        models = ModelManager()
        models.register("asr", backend or FakeAsrBackend())
        return RecordingManager(store, bus, models)

    def test_only_one_session_at_a_time(self, store, bus):
        manager = self.make_manager(store, bus)
        manager.start_session(title="First")
        with pytest.raises(SessionStateError):
            manager.start_session(title="Second")
        manager.stop_session(timeout=10)
        second = manager.start_session(title="Second")
        assert store.get_meeting(second.meeting_id).title == "Second"
        manager.stop_session(timeout=10)

    def test_controls_without_session(self, store, bus):
        manager = self.make_manager(store, bus)
        assert manager.status()["state"] == "idle"
        with pytest.raises(SessionStateError):
            manager.pause()
        with pytest.raises(SessionStateError):
            manager.stop_session()

    def test_unloaded_asr_is_loaded_on_start(self, store, bus):
        backend = FakeAsrBackend(loaded=False)
        manager = self.make_manager(store, bus, backend)
        manager.start_session()
        assert wait_for(lambda: backend.is_loaded)
        manager.stop_session(timeout=10)

    def test_new_session_after_a_stop_timed_out(self, store, bus):
        manager = self.make_manager(store, bus, FakeAsrBackend(delay=0.5))
        first = manager.start_session(title="First")
        first.push_audio(tone(2.0))
        with pytest.raises(TranscriptionFailed):
            manager.stop_session(timeout=0.05)
        with pytest.raises(SessionStateError):
            manager.start_session(title="Second")

        assert wait_for(lambda: first.state == CLOSED)
        assert store.get_meeting(first.meeting_id).is_closed
        second = manager.start_session(title="Second")
        assert second.meeting_id != first.meeting_id
        manager.stop_session(timeout=10)
