import logging
import time

from fastapi import APIRouter
from pydantic import BaseModel, Field

from sidecar.routers.http_errors import http_error
from sidecar.services.note_monitor import NoteMentionMonitor


class AddNoteRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Phrase to listen for")


def create_notes_router(monitor: NoteMentionMonitor) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("sidecar.api.notes")

    @router.get("/api/notes")
    def list_notes() -> list[dict]:
        return [watch.to_dict() for watch in monitor.list_watches()]

    @router.post("/api/notes")
    def add_note(payload: AddNoteRequest) -> dict:
        start_time = time.perf_counter()
        try:
            return monitor.add_watch(payload.text).to_dict()
        except Exception as exc:
            raise http_error(exc, logger, "add_note", start_time) from exc

    @router.delete("/api/notes/{watch_id}")
    def remove_note(watch_id: str) -> dict:
        start_time = time.perf_counter()
        try:
            monitor.remove_watch(watch_id)
            return {"status": "ok"}
        except Exception as exc:
            raise http_error(exc, logger, "remove_note", start_time) from exc

    return router
