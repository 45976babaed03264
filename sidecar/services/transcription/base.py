from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class AsrSegment:
    """Recognized text; times are relative to the start of the audio passed in."""
    text: str
    start_ms: int
    end_ms: int
    speaker_id: Optional[str] = None


class AsrBackend(ABC):
    """A speech recognizer the transcription worker can drive.

    Implementations are single-owner resources: the worker calls
    ``transcribe`` from one thread, one chunk at a time.
    """

    name: str = "asr"

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        raise NotImplementedError

    @property
    def model_id(self) -> Optional[str]:
        """HuggingFace repo the model is fetched from, if any."""
        return None

    @abstractmethod
    def load(self) -> None:
        """Load model weights; raises ``TranscriptionProviderError`` on failure."""
        raise NotImplementedError

    @abstractmethod
    def transcribe(self, samples: np.ndarray, sample_rate: int) -> list[AsrSegment]:
        raise NotImplementedError


class TranscriptionProviderError(RuntimeError):
    pass
