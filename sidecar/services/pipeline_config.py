"""Tunable pipeline settings loaded from ``data/config.json``.

Each section of the JSON file maps onto one frozen dataclass.  Missing
sections and keys fall back to the defaults below; unknown keys are
ignored so that an older config file keeps working.

Example::

    {
      "scheduler": {"silence_threshold": 0.02, "silence_hold_s": 0.75},
      "asr": {"backend": "whisper_en", "model_size": "base.en"},
      "llm": {"provider": "ollama", "ollama_model": "llama3.2"}
    }
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

_logger = logging.getLogger("sidecar.config")


@dataclass(frozen=True)
class CaptureConfig:
    max_buffer_seconds: float = 60.0
    level_window: int = 1024
    level_gain: float = 3.0
    level_decay: float = 0.6


@dataclass(frozen=True)
class SchedulerConfig:
    target_sample_rate: int = 16000
    nominal_window_s: float = 5.0
    min_chunk_s: float = 1.0
    max_chunk_s: float = 10.0
    # RMS of float32 samples in [-1, 1]
    silence_threshold: float = 0.01
    silence_hold_s: float = 0.5
    analysis_frame_s: float = 0.05
    queue_capacity: int = 8
    poll_interval_s: float = 0.1


@dataclass(frozen=True)
class AsrConfig:
    backend: str = "whisper"
    model_size: str = "small"
    device: str = "cpu"
    compute_type: str = "int8"
    language: Optional[str] = "en"
    skip_silent_chunks: bool = True


@dataclass(frozen=True)
class EmbeddingConfig:
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    device: str = "cpu"
    retry_interval_s: float = 5.0
    batch_limit: int = 32


@dataclass(frozen=True)
class RetrievalConfig:
    default_limit: int = 10
    limit_step: int = 10
    max_limit: int = 30
    lexical_union: bool = True
    lexical_weight: float = 0.5


@dataclass(frozen=True)
class NoteMonitorConfig:
    max_watches: int = 10
    window_segments: int = 10
    trigger_every: int = 5
    cooldown_s: float = 60.0
    evaluator: str = "keyword"


@dataclass(frozen=True)
class LLMConfig:
    provider: str = "ollama"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com"
    timeout: int = 120


@dataclass(frozen=True)
class PipelineConfig:
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    asr: AsrConfig = field(default_factory=AsrConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    notes: NoteMonitorConfig = field(default_factory=NoteMonitorConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)


def _section(cls: type, data: Any):
    if not isinstance(data, dict):
        return cls()
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        _logger.debug("Ignoring unknown %s keys: %s", cls.__name__, unknown)
    return cls(**{key: value for key, value in data.items() if key in known})


def parse_pipeline_config(data: dict) -> PipelineConfig:
    return PipelineConfig(
        capture=_section(CaptureConfig, data.get("capture")),
        scheduler=_section(SchedulerConfig, data.get("scheduler")),
        asr=_section(AsrConfig, data.get("asr")),
        embedding=_section(EmbeddingConfig, data.get("embedding")),
        retrieval=_section(RetrievalConfig, data.get("retrieval")),
        notes=_section(NoteMonitorConfig, data.get("notes")),
        llm=_section(LLMConfig, data.get("llm")),
    )


def load_config_file(config_path: str) -> dict:
    """Read the raw JSON config; a missing or malformed file yields ``{}``."""
    if not os.path.exists(config_path):
        _logger.info("Config file missing=%s, using defaults", config_path)
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as config_file:
            data = json.load(config_file)
    except (OSError, json.JSONDecodeError) as exc:
        _logger.warning("Config file unreadable=%s (%s), using defaults", config_path, exc)
        return {}
    if not isinstance(data, dict):
        _logger.warning("Config file %s is not a JSON object, using defaults", config_path)
        return {}
    return data


def load_pipeline_config(config_path: str) -> PipelineConfig:
    return parse_pipeline_config(load_config_file(config_path))
