"""
Pytest fixtures and in-process fakes for the sidecar tests.

The fakes stand in for the model-backed pieces (ASR, embeddings, LLM) so
the pipeline can be driven deterministically without downloading weights.
"""

import threading
import time

import numpy as np
import pytest

from sidecar.services.embeddings.base import EmbeddingBackend
from sidecar.services.events import EventBus
from sidecar.services.llm.base import BaseLLMProvider
from sidecar.services.model_manager import LOADED, ModelAvailability
from sidecar.services.segment_store import SegmentStore
from sidecar.services.transcription.base import AsrBackend, AsrSegment

SAMPLE_RATE = 16000


def tone(seconds: float, amplitude: float = 0.5, freq: float = 440.0, rate: int = SAMPLE_RATE) -> np.ndarray:
    t = np.arange(int(round(seconds * rate))) / rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def silence(seconds: float, rate: int = SAMPLE_RATE) -> np.ndarray:
    return np.zeros(int(round(seconds * rate)), dtype=np.float32)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeAsrBackend(AsrBackend):
    """Returns one segment per chunk covering the whole chunk."""

    name = "fake"

    def __init__(self, loaded: bool = True, fail_calls=(), delay: float = 0.0, texts=None):
        self._loaded = loaded
        self.fail_calls = set(fail_calls)
        self.delay = delay
        self.texts = list(texts or [])
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        self._loaded = True

    def transcribe(self, samples, sample_rate):
        with self._lock:
            call = self.calls
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if call in self.fail_calls:
                raise RuntimeError(f"decoder crashed on call {call}")
            text = self.texts[call] if call < len(self.texts) else f"utterance {call}"
            end_ms = int(samples.size * 1000 / sample_rate)
            return [AsrSegment(text=text, start_ms=0, end_ms=end_ms)]
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeEmbeddingBackend(EmbeddingBackend):
    """Maps text to vectors through ``vector_for``; texts containing a poison word fail."""

    def __init__(self, dimensions: int = 2, vectors=None, poison: str = "", version: str = "fake-v1"):
        self._dimensions = dimensions
        self.vectors = dict(vectors or {})
        self.poison = poison
        self.version = version
        self.calls: list[list[str]] = []
        self._loaded = True

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_version(self) -> str:
        return self.version

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        self._loaded = True

    def vector_for(self, text: str) -> np.ndarray:
        body = text.rsplit("|", 1)[-1].strip().lower()
        for keyword, vector in self.vectors.items():
            if keyword in body:
                return np.asarray(vector, dtype=np.float32)
        vector = np.zeros(self._dimensions, dtype=np.float32)
        vector[-1] = 1.0
        return vector

    def embed(self, texts):
        self.calls.append(list(texts))
        if self.poison and any(self.poison in text for text in texts):
            raise RuntimeError("tokenizer rejected input")
        return np.vstack([self.vector_for(text) for text in texts])


class FakeLLM(BaseLLMProvider):
    def __init__(self, reply: str = "It was decided to ship on Friday.", error: Exception = None):
        super().__init__(logger_name="sidecar.llm.fake")
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    def _call_api(self, prompt, temperature=0.2, timeout=120, system_prompt=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def store(tmp_path):
    segment_store = SegmentStore(str(tmp_path / "transcripts.sqlite3"))
    yield segment_store
    segment_store.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def loaded_availability():
    availability = ModelAvailability("embedding")
    availability.transition(LOADED)
    return availability
