"""Search router: lexical search, hybrid retrieval and question answering."""

import time
import logging
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from sidecar.routers.http_errors import http_error
from sidecar.services.qa_service import QAService
from sidecar.services.retrieval import RetrievalEngine
from sidecar.services.segment_store import SegmentStore


class RetrieveRequest(BaseModel):
    query: str = Field(..., min_length=1)
    meeting_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1)
    meeting_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)


def create_search_router(
    store: SegmentStore,
    retrieval: RetrievalEngine,
    qa_service: QAService,
) -> APIRouter:
    router = APIRouter(tags=["search"])
    logger = logging.getLogger("sidecar.api.search")

    @router.get("/api/search")
    def search_segments(
        q: str = Query(..., min_length=2, description="Search query"),
        meeting_id: Optional[str] = Query(None, description="Restrict to one meeting"),
        limit: int = Query(50, ge=1, le=200, description="Maximum results"),
    ):
        """Full-text search over transcript segments.

        Returns matches with snippets showing context around the match.
        """
        start_time = time.perf_counter()
        try:
            matches = store.search_text(q, meeting_id=meeting_id, limit=limit)
            return [match.to_dict() for match in matches]
        except Exception as exc:
            raise http_error(exc, logger, "search", start_time) from exc

    @router.post("/api/retrieve")
    def retrieve(payload: RetrieveRequest) -> dict:
        start_time = time.perf_counter()
        try:
            limit = payload.limit or retrieval.default_limit
            results = retrieval.retrieve(payload.query, meeting_id=payload.meeting_id, limit=limit)
            return {
                "results": [result.to_dict() for result in results],
                "limit": limit,
                "next_limit": retrieval.expand_limit(limit),
            }
        except Exception as exc:
            raise http_error(exc, logger, "retrieve", start_time) from exc

    @router.post("/api/ask")
    def ask(payload: AskRequest) -> dict:
        start_time = time.perf_counter()
        logger.debug("ask received: meeting_id=%s limit=%s", payload.meeting_id, payload.limit)
        try:
            return qa_service.ask(payload.question, meeting_id=payload.meeting_id, limit=payload.limit)
        except Exception as exc:
            raise http_error(exc, logger, "ask", start_time) from exc

    return router
