import logging
import time

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from sidecar.routers.http_errors import http_error
from sidecar.services.audio_source import AudioSource, FileAudioSource, MicAudioSource
from sidecar.services.recording_session import RecordingManager


class StartRecordingRequest(BaseModel):
    source: str = Field("mic", description="Audio source: mic or file")
    device_index: Optional[int] = Field(None, description="Input device index (mic only)")
    samplerate: int = Field(16000, description="Capture sample rate in Hz (mic only)")
    channels: int = Field(1, description="Number of input channels (mic only)")
    file_path: Optional[str] = Field(None, description="Audio file to replay (file only)")
    speed_percent: int = Field(100, ge=0, description="Replay speed, 100 = real-time")
    title: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class StopRecordingRequest(BaseModel):
    timeout: float = Field(120.0, gt=0, description="Seconds to wait for transcription to drain")


def create_recording_router(recording: RecordingManager) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("sidecar.api.recording")

    def build_source(payload: StartRecordingRequest) -> AudioSource:
        if payload.source == "mic":
            return MicAudioSource(
                device_index=payload.device_index,
                sample_rate=payload.samplerate,
                channels=payload.channels,
            )
        if payload.source == "file":
            if not payload.file_path:
                raise ValueError("file_path is required for file source")
            return FileAudioSource(payload.file_path, speed_percent=payload.speed_percent)
        raise ValueError(f"Unknown audio source '{payload.source}'")

    @router.get("/api/recording/status")
    def recording_status() -> dict:
        return recording.status()

    @router.get("/api/recording/level")
    def recording_level() -> dict:
        session = recording.current
        level = session.current_level() if session is not None else 0.0
        return {"level": level}

    @router.post("/api/recording/start")
    def start_recording(payload: StartRecordingRequest) -> dict:
        start_time = time.perf_counter()
        logger.debug("start_recording received: %s", payload.model_dump())
        try:
            source = build_source(payload)
            session = recording.start_session(
                title=payload.title,
                tags=payload.tags,
                source=source,
            )
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info("start_recording completed in %.2f ms", duration_ms)
            return session.status()
        except Exception as exc:
            raise http_error(exc, logger, "start_recording", start_time) from exc

    @router.post("/api/recording/pause")
    def pause_recording() -> dict:
        start_time = time.perf_counter()
        try:
            recording.pause()
            return recording.status()
        except Exception as exc:
            raise http_error(exc, logger, "pause_recording", start_time) from exc

    @router.post("/api/recording/resume")
    def resume_recording() -> dict:
        start_time = time.perf_counter()
        try:
            recording.resume()
            return recording.status()
        except Exception as exc:
            raise http_error(exc, logger, "resume_recording", start_time) from exc

    @router.post("/api/recording/stop")
    def stop_recording(payload: Optional[StopRecordingRequest] = None) -> dict:
        start_time = time.perf_counter()
        timeout = payload.timeout if payload else 120.0
        logger.debug("stop_recording received: timeout=%s", timeout)
        try:
            meeting = recording.stop_session(timeout=timeout)
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info("stop_recording completed in %.2f ms", duration_ms)
            return meeting.to_dict()
        except Exception as exc:
            raise http_error(exc, logger, "stop_recording", start_time) from exc

    return router
