import os

# Workaround for tqdm threading issue in huggingface_hub downloads
# This MUST be set before importing any libraries that use huggingface_hub
os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

import logging
from typing import Optional

from fastapi import FastAPI

from sidecar.context import AppContext
from sidecar.routers.meetings import create_meetings_router
from sidecar.routers.models import create_models_router
from sidecar.routers.notes import create_notes_router
from sidecar.routers.recording import create_recording_router
from sidecar.routers.search import create_search_router
from sidecar.services import events
from sidecar.services.crash_logging import enable_crash_logging
from sidecar.services.embedding_pipeline import EmbeddingPipeline
from sidecar.services.embeddings import SentenceTransformerBackend
from sidecar.services.events import EventBus
from sidecar.services.llm import create_llm_provider
from sidecar.services.logging_setup import configure_logging
from sidecar.services.model_manager import LOADED, ModelManager
from sidecar.services.note_monitor import (
    KeywordMentionEvaluator,
    LLMMentionEvaluator,
    MentionEvaluator,
    NoteMentionMonitor,
)
from sidecar.services.pipeline_config import PipelineConfig, load_config_file, parse_pipeline_config
from sidecar.services.qa_service import QAService
from sidecar.services.recording_session import RecordingManager
from sidecar.services.retrieval import RetrievalEngine
from sidecar.services.segment_store import SegmentStore
from sidecar.services.transcription import create_asr_backend


def _resolve_data_dir(config: dict, default_data_dir: str, logger: logging.Logger) -> str:
    custom_data_dir = config.get("data_dir", "")
    if custom_data_dir and os.path.isdir(custom_data_dir) and os.access(custom_data_dir, os.W_OK):
        logger.info("Boot: using custom data_dir=%s", custom_data_dir)
        return custom_data_dir
    if custom_data_dir:
        logger.warning(
            "Boot: custom data_dir=%s is invalid or not writable, falling back to %s",
            custom_data_dir, default_data_dir,
        )
    else:
        logger.info("Boot: using default data_dir=%s", default_data_dir)
    return default_data_dir


def _build_evaluator(pipeline_config: PipelineConfig, llm_factory) -> MentionEvaluator:
    if pipeline_config.notes.evaluator == "llm":
        return LLMMentionEvaluator(llm_factory)
    return KeywordMentionEvaluator()


def create_app(cwd: Optional[str] = None) -> FastAPI:
    cwd = cwd or os.getcwd()
    logs_dir = os.path.join(cwd, "logs")
    configure_logging(logs_dir)
    logger = logging.getLogger("sidecar.boot")
    logger.info("Boot: starting create_app")
    enable_crash_logging(logs_dir)

    # Default to offline mode for HuggingFace; no auto-downloads.
    # The hf_models.auto_download setting in config.json can override this at boot.
    os.environ.setdefault("HF_HUB_OFFLINE", "1")
    logger.info("Boot: HF_HUB_OFFLINE=%s (initial)", os.environ.get("HF_HUB_OFFLINE"))

    default_data_dir = os.path.join(cwd, "data")
    os.makedirs(default_data_dir, exist_ok=True)
    # Config always lives in the app-level data dir regardless of custom data_dir
    config_path = os.path.join(default_data_dir, "config.json")
    config = load_config_file(config_path)
    logger.info("Boot: config keys=%s", sorted(config.keys()))
    pipeline_config = parse_pipeline_config(config)

    ctx = AppContext(
        cwd=cwd,
        data_dir=_resolve_data_dir(config, default_data_dir, logger),
        default_data_dir=default_data_dir,
        config_path=config_path,
    )
    ctx.ensure_dirs()
    logger.info("Boot: AppContext ready data_dir=%s", ctx.data_dir)

    hf_config = config.get("hf_models", {}) if isinstance(config.get("hf_models"), dict) else {}
    auto_download = bool(hf_config.get("auto_download", False))
    logger.info("Boot: HF auto-download %s", "ON" if auto_download else "OFF")

    app = FastAPI(title="Transcript Sidecar", version="0.1.0")
    app.state.ctx = ctx
    app.state.pipeline_config = pipeline_config

    store = SegmentStore(ctx.db_path)
    bus = EventBus()
    logger.info("Boot: segment_store ready db_path=%s", ctx.db_path)

    embedding_pipeline: Optional[EmbeddingPipeline] = None

    def on_model_change(kind: str, snapshot: dict) -> None:
        bus.publish(f"{kind}_model_state", None, snapshot)
        if kind == "embedding" and snapshot["state"] == LOADED and embedding_pipeline is not None:
            # Work through the backlog accumulated while the model was unavailable
            embedding_pipeline.notify()

    model_manager = ModelManager(
        on_change=on_model_change,
        auto_download=auto_download,
        hf_token=hf_config.get("token") or None,
    )
    model_manager.register("asr", create_asr_backend(pipeline_config.asr))
    embedding_backend = SentenceTransformerBackend(pipeline_config.embedding, cache_dir=ctx.models_dir)
    embedding_availability = model_manager.register("embedding", embedding_backend)
    logger.info(
        "Boot: models registered asr=%s embedding=%s",
        pipeline_config.asr.backend,
        embedding_backend.model_version,
    )

    embedding_pipeline = EmbeddingPipeline(
        store,
        embedding_backend,
        embedding_availability,
        pipeline_config.embedding,
        on_embedded=lambda segment_ids: bus.publish(
            events.SEGMENTS_EMBEDDED, None, {"segment_ids": segment_ids}
        ),
    )
    embedding_pipeline.start()
    retrieval = RetrievalEngine(store, embedding_pipeline, pipeline_config.retrieval)

    def llm_factory():
        return create_llm_provider(pipeline_config.llm)

    qa_service = QAService(store, retrieval, llm_factory)
    note_monitor = NoteMentionMonitor(
        store,
        _build_evaluator(pipeline_config, llm_factory),
        pipeline_config.notes,
        on_alert=lambda meeting_id, alert: bus.publish(events.NOTE_MENTION_ALERT, meeting_id, alert),
    )
    recording = RecordingManager(
        store,
        bus,
        model_manager,
        config=pipeline_config,
        embedding_pipeline=embedding_pipeline,
        note_monitor=note_monitor,
    )
    app.state.store = store
    app.state.bus = bus
    app.state.model_manager = model_manager
    app.state.recording = recording

    for kind in ("asr", "embedding"):
        model_manager.load_async(kind)
    logger.info("Boot: model loading initiated in background")

    app.include_router(create_recording_router(recording))
    logger.info("Boot: recording router mounted")
    app.include_router(create_meetings_router(store, bus, embedding_pipeline))
    logger.info("Boot: meetings router mounted")
    app.include_router(create_search_router(store, retrieval, qa_service))
    logger.info("Boot: search router mounted")
    app.include_router(create_notes_router(note_monitor))
    logger.info("Boot: notes router mounted")
    app.include_router(create_models_router(model_manager, embedding_pipeline, store))
    logger.info("Boot: models router mounted")

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "version": app.version, "models": model_manager.status()}

    logger.info("Boot: create_app complete")
    return app
