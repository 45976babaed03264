from sidecar.services.pipeline_config import AsrConfig
from sidecar.services.transcription.base import (
    AsrBackend,
    AsrSegment,
    TranscriptionProviderError,
)

ASR_BACKENDS = ("whisper", "whisper_en")


def create_asr_backend(config: AsrConfig) -> AsrBackend:
    """Build the configured backend; faster_whisper is imported only here."""
    from sidecar.services.transcription.whisper_local import (
        EnglishWhisperBackend,
        FasterWhisperBackend,
    )

    if config.backend == "whisper":
        return FasterWhisperBackend(config)
    if config.backend == "whisper_en":
        return EnglishWhisperBackend(config)
    raise ValueError(f"Unknown ASR backend '{config.backend}'. Available: {list(ASR_BACKENDS)}")


__all__ = [
    "ASR_BACKENDS",
    "AsrBackend",
    "AsrSegment",
    "TranscriptionProviderError",
    "create_asr_backend",
]
