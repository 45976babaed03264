import logging
import time

from fastapi import HTTPException

from sidecar.services.errors import (
    ModelUnavailable,
    NotFoundError,
    OrderingViolation,
    SessionStateError,
)


def http_error(
    exc: Exception,
    logger: logging.Logger,
    action: str,
    start_time: float,
) -> HTTPException:
    """Log a failed request and translate the exception into an HTTP status."""
    duration_ms = (time.perf_counter() - start_time) * 1000
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, NotFoundError):
        logger.info("%s not found in %.2f ms: %s", action, duration_ms, exc)
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (SessionStateError, OrderingViolation)):
        logger.warning("%s conflict in %.2f ms: %s", action, duration_ms, exc)
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ModelUnavailable):
        logger.warning("%s unavailable in %.2f ms: %s", action, duration_ms, exc)
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (RuntimeError, ValueError)):
        logger.warning("%s failed in %.2f ms: %s", action, duration_ms, exc)
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception("%s error in %.2f ms: %s", action, duration_ms, exc)
    return HTTPException(status_code=500, detail="Internal Server Error")
