"""Tests for hybrid vector + lexical retrieval."""

import math

import numpy as np
import pytest

from sidecar.services.embedding_pipeline import EmbeddingPipeline
from sidecar.services.model_manager import ModelAvailability
from sidecar.services.pipeline_config import RetrievalConfig
from sidecar.services.retrieval import RetrievalEngine, cosine_similarity

from conftest import FakeEmbeddingBackend

QUERY = [1.0, 0.0]
CLOSE = [0.8, 0.6]  # cosine 0.8 -> score 0.9
FAR = [-0.2, math.sqrt(0.96)]  # cosine -0.2 -> score 0.4


def build(store, availability, config=None, vectors=None):
    backend = FakeEmbeddingBackend(vectors=vectors or {"launch": CLOSE, "lunch": FAR, "when": QUERY})
    pipeline = EmbeddingPipeline(store, backend, availability)
    return pipeline, RetrievalEngine(store, pipeline, config or RetrievalConfig(lexical_union=False))


class TestRetrieval:
    def test_results_ranked_by_similarity(self, store, loaded_availability):
        pipeline, engine = build(store, loaded_availability)
        meeting = store.create_meeting(title="Standup")
        far = store.append_segment(meeting.id, "lunch order for friday", 0, 1000)
        close = store.append_segment(meeting.id, "launch moved to march", 1000, 2000)
        pipeline.run_pass()

        results = engine.retrieve("when is it", meeting_id=meeting.id)
        assert [r.segment_id for r in results] == [close.id, far.id]
        assert results[0].score == pytest.approx(0.9, abs=1e-4)
        assert results[1].score == pytest.approx(0.4, abs=1e-4)
        assert results[0].source == "vector"
        assert results[0].meeting_title == "Standup"
        assert results[0].time_label == "00:01"

    def test_equal_scores_prefer_most_recent(self, store, loaded_availability):
        pipeline, engine = build(store, loaded_availability)
        meeting = store.create_meeting(title="Standup")
        older = store.append_segment(meeting.id, "launch plan", 0, 1000)
        newer = store.append_segment(meeting.id, "launch plan again", 5000, 6000)
        pipeline.run_pass()
        results = engine.retrieve("when", meeting_id=meeting.id)
        assert [r.segment_id for r in results] == [newer.id, older.id]

    def test_scope_across_meetings(self, store, loaded_availability):
        pipeline, engine = build(store, loaded_availability)
        first = store.create_meeting(title="First")
        second = store.create_meeting(title="Second")
        store.append_segment(first.id, "launch in first", 0, 1000)
        store.append_segment(second.id, "launch in second", 0, 1000)
        pipeline.run_pass()

        assert {r.meeting_id for r in engine.retrieve("when")} == {first.id, second.id}
        assert {r.meeting_id for r in engine.retrieve("when", meeting_id=second.id)} == {second.id}

    def test_limit_is_applied_and_clamped(self, store, loaded_availability):
        pipeline, engine = build(store, loaded_availability)
        meeting = store.create_meeting(title="Long")
        for i in range(40):
            store.append_segment(meeting.id, f"launch item {i}", i * 1000, i * 1000 + 500)
        pipeline.run_pass()
        assert len(engine.retrieve("when")) == 10
        assert len(engine.retrieve("when", limit=25)) == 25
        assert len(engine.retrieve("when", limit=500)) == 30

    def test_expand_limit_steps_to_cap(self, store, loaded_availability):
        _, engine = build(store, loaded_availability)
        assert engine.default_limit == 10
        assert engine.expand_limit(10) == 20
        assert engine.expand_limit(20) == 30
        assert engine.expand_limit(30) == 30

    def test_lexical_matches_are_unioned(self, store, loaded_availability):
        pipeline, engine = build(store, loaded_availability, RetrievalConfig(lexical_union=True))
        meeting = store.create_meeting(title="Ops")
        named = store.append_segment(meeting.id, "Priya owns the migration", 0, 1000)
        pipeline.run_pass()
        # Exclude the vector hit so only the lexical path can find it
        store.update_segment(named.id, "Priya owns the migration now")

        results = engine.retrieve("priya")
        assert [r.segment_id for r in results] == [named.id]
        assert results[0].source == "lexical"
        assert results[0].score == pytest.approx(0.5)

    def test_falls_back_to_lexical_when_model_unavailable(self, store):
        _, engine = build(store, ModelAvailability("embedding"))
        meeting = store.create_meeting(title="Ops")
        segment = store.append_segment(meeting.id, "rollback checklist reviewed", 0, 1000)

        results = engine.retrieve("rollback")
        assert [r.segment_id for r in results] == [segment.id]
        assert results[0].source == "lexical"
        assert results[0].score == pytest.approx(1.0)
        assert "rollback" in results[0].snippet

    def test_empty_query(self, store, loaded_availability):
        _, engine = build(store, loaded_availability)
        assert engine.retrieve("   ") == []


def test_cosine_similarity():
    matrix = np.array([[1.0, 0.0], [0.0, 2.0], [-3.0, 0.0]], dtype=np.float32)
    np.testing.assert_allclose(cosine_similarity(matrix, np.array([2.0, 0.0])), [1.0, 0.0, -1.0])
