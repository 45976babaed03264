from typing import Optional

import json
import logging
import time

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from sidecar.routers.http_errors import http_error
from sidecar.services.embedding_pipeline import EmbeddingPipeline
from sidecar.services.events import EventBus
from sidecar.services.segment_store import SegmentStore


class UpdateMeetingRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    pinned: Optional[bool] = None
    tags: Optional[list[str]] = None


class UpdateSegmentRequest(BaseModel):
    text: str = Field(..., min_length=1)


def create_meetings_router(
    store: SegmentStore,
    bus: EventBus,
    embedding_pipeline: Optional[EmbeddingPipeline] = None,
) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("sidecar.api.meetings")

    @router.get("/api/meetings")
    def list_meetings() -> list[dict]:
        return [meeting.to_dict() for meeting in store.list_meetings()]

    @router.get("/api/events")
    def pipeline_events() -> StreamingResponse:
        logger.info("Events SSE connected")

        def event_stream():
            cursor = bus.cursor
            while True:
                # Timeout after 5s to send heartbeat for connection keepalive
                events, cursor = bus.wait_for_events(cursor, timeout=5.0)
                for event in events:
                    yield f"data: {json.dumps(event)}\n\n"
                if not events:
                    yield "data: {\"type\":\"heartbeat\"}\n\n"

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    @router.get("/api/meetings/{meeting_id}")
    def get_meeting(meeting_id: str) -> dict:
        start_time = time.perf_counter()
        try:
            meeting = store.get_meeting(meeting_id).to_dict()
            meeting["segments"] = [segment.to_dict() for segment in store.get_segments(meeting_id)]
            return meeting
        except Exception as exc:
            raise http_error(exc, logger, "get_meeting", start_time) from exc

    @router.patch("/api/meetings/{meeting_id}")
    def update_meeting(meeting_id: str, payload: UpdateMeetingRequest) -> dict:
        start_time = time.perf_counter()
        logger.info("Meeting update: id=%s fields=%s", meeting_id, payload.model_dump(exclude_none=True))
        try:
            meeting = store.get_meeting(meeting_id)
            if payload.title is not None:
                meeting = store.rename_meeting(meeting_id, payload.title)
            if payload.pinned is not None:
                meeting = store.set_pinned(meeting_id, payload.pinned)
            if payload.tags is not None:
                meeting = store.set_tags(meeting_id, payload.tags)
            return meeting.to_dict()
        except Exception as exc:
            raise http_error(exc, logger, "update_meeting", start_time) from exc

    @router.delete("/api/meetings/{meeting_id}")
    def delete_meeting(meeting_id: str) -> dict:
        start_time = time.perf_counter()
        try:
            store.delete_meeting(meeting_id)
            return {"status": "ok"}
        except Exception as exc:
            raise http_error(exc, logger, "delete_meeting", start_time) from exc

    @router.patch("/api/segments/{segment_id}")
    def update_segment(segment_id: str, payload: UpdateSegmentRequest) -> dict:
        start_time = time.perf_counter()
        try:
            segment = store.update_segment(segment_id, payload.text)
            if embedding_pipeline is not None:
                embedding_pipeline.notify(segment.id)
            return segment.to_dict()
        except Exception as exc:
            raise http_error(exc, logger, "update_segment", start_time) from exc

    @router.delete("/api/segments/{segment_id}")
    def delete_segment(segment_id: str) -> dict:
        start_time = time.perf_counter()
        try:
            store.delete_segment(segment_id)
            return {"status": "ok"}
        except Exception as exc:
            raise http_error(exc, logger, "delete_segment", start_time) from exc

    return router
