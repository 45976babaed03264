from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

# Workaround for tqdm threading issue in huggingface_hub downloads
# This must be set before importing faster_whisper
os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

import numpy as np
from faster_whisper import WhisperModel

from sidecar.services.audio_utils import resample
from sidecar.services.pipeline_config import AsrConfig
from sidecar.services.transcription.base import (
    AsrBackend,
    AsrSegment,
    TranscriptionProviderError,
)

WHISPER_SAMPLE_RATE = 16000


class FasterWhisperBackend(AsrBackend):
    """Multilingual Whisper via CTranslate2."""

    name = "whisper"

    def __init__(self, config: AsrConfig) -> None:
        self._config = config
        self._logger = logging.getLogger("sidecar.transcription.whisper")
        self._model: Optional[WhisperModel] = None
        self._load_lock = threading.Lock()

    @property
    def model_size(self) -> str:
        return self._config.model_size

    @property
    def language(self) -> Optional[str]:
        return self._config.language or None

    @property
    def model_id(self) -> Optional[str]:
        if "/" in self.model_size:
            return self.model_size
        return f"Systran/faster-whisper-{self.model_size}"

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            self._logger.info(
                "Loading whisper model: size=%s device=%s compute_type=%s",
                self.model_size,
                self._config.device,
                self._config.compute_type,
            )
            start_time = time.perf_counter()
            try:
                self._model = WhisperModel(
                    self.model_size,
                    device=self._config.device,
                    compute_type=self._config.compute_type,
                )
            except Exception as exc:
                self._logger.exception("Whisper model load failed: %s", exc)
                raise TranscriptionProviderError(f"Failed to load whisper model {self.model_size}") from exc
            self._logger.info("Whisper model loaded in %.2fs", time.perf_counter() - start_time)

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> list[AsrSegment]:
        if self._model is None:
            raise TranscriptionProviderError("Whisper model not loaded")

        audio = resample(np.asarray(samples, dtype=np.float32), sample_rate, WHISPER_SAMPLE_RATE)
        start_time = time.perf_counter()
        try:
            segments_iter, _info = self._model.transcribe(
                audio,
                language=self.language,
                vad_filter=False,
                condition_on_previous_text=False,
            )
            segments: list[AsrSegment] = []
            for segment in segments_iter:
                text = segment.text.strip()
                if not text:
                    continue
                segments.append(
                    AsrSegment(
                        text=text,
                        start_ms=int(round(float(segment.start) * 1000)),
                        end_ms=int(round(float(segment.end) * 1000)),
                    )
                )
        except Exception as exc:
            self._logger.exception("Transcription failed: %s", exc)
            raise TranscriptionProviderError("Transcription failed") from exc

        self._logger.debug(
            "Transcribed %.2fs of audio: segments=%d in %.2fs",
            audio.size / WHISPER_SAMPLE_RATE,
            len(segments),
            time.perf_counter() - start_time,
        )
        return segments


class EnglishWhisperBackend(FasterWhisperBackend):
    """English-only ``.en`` Whisper checkpoint: smaller and faster, no language detection."""

    name = "whisper_en"

    @property
    def model_size(self) -> str:
        size = self._config.model_size
        if "/" in size or size.endswith(".en") or size.startswith(("large", "distil")):
            return size
        return f"{size}.en"

    @property
    def language(self) -> Optional[str]:
        return "en"
