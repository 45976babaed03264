import logging
import time

from fastapi import APIRouter, HTTPException

from sidecar.routers.http_errors import http_error
from sidecar.services.embedding_pipeline import EmbeddingPipeline
from sidecar.services.model_manager import ModelManager, list_models
from sidecar.services.segment_store import SegmentStore


def create_models_router(
    model_manager: ModelManager,
    embedding_pipeline: EmbeddingPipeline,
    store: SegmentStore,
) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("sidecar.api.models")

    @router.get("/api/models")
    def known_models() -> list[dict]:
        return list_models()

    @router.get("/api/models/status")
    def models_status() -> dict:
        return model_manager.status()

    @router.post("/api/models/{kind}/load")
    def load_model(kind: str) -> dict:
        logger.info("Model load requested: kind=%s", kind)
        try:
            model_manager.load_async(kind)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown model kind '{kind}'") from exc
        return model_manager.availability(kind).snapshot()

    @router.get("/api/embeddings/status")
    def embeddings_status() -> dict:
        return embedding_pipeline.status()

    @router.post("/api/meetings/{meeting_id}/embed")
    def embed_meeting(meeting_id: str) -> dict:
        start_time = time.perf_counter()
        try:
            store.get_meeting(meeting_id)
            embedded = embedding_pipeline.embed_meeting(meeting_id)
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info("embed_meeting %s: %d segments in %.2f ms", meeting_id, embedded, duration_ms)
            return {"meeting_id": meeting_id, "embedded": embedded, **store.embedding_counts(meeting_id)}
        except Exception as exc:
            raise http_error(exc, logger, "embed_meeting", start_time) from exc

    return router
