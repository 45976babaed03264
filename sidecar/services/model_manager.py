"""Model availability tracking and HuggingFace cache management.

Each model the pipeline depends on (one ASR backend, one embedding
backend) has an availability state machine::

    not_loaded ──► downloading ──► loaded
        │               │
        │               ▼
        └─────────►  failed ──► downloading   (retry)

Stages consult the state instead of the backend: while the embedding
model is not ``loaded`` segments accumulate as a backlog, and while the
ASR model is not ``loaded`` each chunk fails with ``ModelUnavailable``.

All network operations temporarily clear HF_HUB_OFFLINE so that the rest
of the process stays offline by default.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from sidecar.services.errors import ModelUnavailable, SessionStateError

_logger = logging.getLogger("sidecar.models")

NOT_LOADED = "not_loaded"
DOWNLOADING = "downloading"
LOADED = "loaded"
FAILED = "failed"

_TRANSITIONS = {
    NOT_LOADED: {DOWNLOADING, LOADED, FAILED},
    DOWNLOADING: {LOADED, FAILED},
    FAILED: {DOWNLOADING},
    LOADED: {NOT_LOADED},
}

# Every HuggingFace model the sidecar might fetch at runtime.
KNOWN_MODELS = [
    {"id": "Systran/faster-whisper-base", "label": "Whisper Base", "kind": "asr"},
    {"id": "Systran/faster-whisper-small", "label": "Whisper Small", "kind": "asr"},
    {"id": "Systran/faster-whisper-medium", "label": "Whisper Medium", "kind": "asr"},
    {"id": "Systran/faster-whisper-base.en", "label": "Whisper Base (English)", "kind": "asr"},
    {"id": "Systran/faster-whisper-small.en", "label": "Whisper Small (English)", "kind": "asr"},
    {"id": "sentence-transformers/all-MiniLM-L6-v2", "label": "MiniLM L6 v2", "kind": "embedding"},
    {"id": "BAAI/bge-small-en-v1.5", "label": "BGE Small EN v1.5", "kind": "embedding"},
]


def _get_cache_info(model_id: str) -> dict:
    """Return cache status for a single model."""
    try:
        from huggingface_hub import scan_cache_dir
        cache = scan_cache_dir()
        for repo in cache.repos:
            if repo.repo_id == model_id:
                total_size = repo.size_on_disk
                return {
                    "cached": True,
                    "size_bytes": total_size,
                    "size_mb": round(total_size / (1024 * 1024), 1),
                }
        return {"cached": False}
    except Exception as exc:
        _logger.warning("Cache scan failed for %s: %s", model_id, exc)
        return {"cached": False, "error": str(exc)}


def list_models() -> list[dict]:
    """All known models with their local cache status."""
    return [{**m, **_get_cache_info(m["id"])} for m in KNOWN_MODELS]


def _with_network(fn, *args, **kwargs):
    """Run *fn* with HF_HUB_OFFLINE temporarily cleared."""
    prev = os.environ.pop("HF_HUB_OFFLINE", None)
    try:
        return fn(*args, **kwargs)
    finally:
        # Always restore offline mode (boot default is "1").
        os.environ["HF_HUB_OFFLINE"] = prev if prev is not None else "1"


def download_model(model_id: str, hf_token: Optional[str] = None) -> str:
    """Download (or update) a model snapshot; returns the local path."""
    from huggingface_hub import snapshot_download
    _logger.info("Downloading model: %s", model_id)
    path = _with_network(snapshot_download, model_id, token=hf_token)
    _logger.info("Download complete: %s -> %s", model_id, path)
    return str(path)


class ModelAvailability:
    """Thread-safe availability state of one model."""

    def __init__(
        self,
        kind: str,
        on_change: Optional[Callable[[str, dict], None]] = None,
    ) -> None:
        self._kind = kind
        self._on_change = on_change
        self._condition = threading.Condition()
        self._state = NOT_LOADED
        self._error: Optional[str] = None

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def state(self) -> str:
        with self._condition:
            return self._state

    @property
    def is_loaded(self) -> bool:
        return self.state == LOADED

    def snapshot(self) -> dict:
        with self._condition:
            return {"kind": self._kind, "state": self._state, "error": self._error}

    def transition(self, new_state: str, error: Optional[str] = None) -> None:
        with self._condition:
            if new_state not in _TRANSITIONS.get(self._state, set()):
                raise SessionStateError(
                    f"Illegal {self._kind} model transition {self._state} -> {new_state}"
                )
            previous = self._state
            self._state = new_state
            self._error = error if new_state == FAILED else None
            self._condition.notify_all()
            snapshot = {"kind": self._kind, "state": self._state, "error": self._error}
        _logger.info("Model %s: %s -> %s", self._kind, previous, new_state)
        if self._on_change:
            self._on_change(self._kind, snapshot)

    def wait_until_loaded(self, timeout: Optional[float] = None) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: self._state in (LOADED, FAILED), timeout=timeout
            ) and self._state == LOADED

    def require_loaded(self) -> None:
        if not self.is_loaded:
            raise ModelUnavailable(f"{self._kind} model is {self.state}")


class ModelManager:
    """Loads registered backends and owns their availability state."""

    def __init__(
        self,
        on_change: Optional[Callable[[str, dict], None]] = None,
        auto_download: bool = False,
        hf_token: Optional[str] = None,
    ) -> None:
        self._on_change = on_change
        self._auto_download = auto_download
        self._hf_token = hf_token
        self._lock = threading.Lock()
        self._backends: dict = {}
        self._availability: dict[str, ModelAvailability] = {}
        self._threads: dict[str, threading.Thread] = {}

    def register(self, kind: str, backend) -> ModelAvailability:
        availability = ModelAvailability(kind, on_change=self._on_change)
        with self._lock:
            self._backends[kind] = backend
            self._availability[kind] = availability
        if getattr(backend, "is_loaded", False):
            availability.transition(LOADED)
        return availability

    def availability(self, kind: str) -> ModelAvailability:
        with self._lock:
            if kind not in self._availability:
                raise KeyError(f"Unknown model kind '{kind}'")
            return self._availability[kind]

    def backend(self, kind: str):
        with self._lock:
            return self._backends[kind]

    def state(self, kind: str) -> str:
        return self.availability(kind).state

    def status(self) -> dict:
        with self._lock:
            items = list(self._availability.items())
        return {kind: availability.snapshot() for kind, availability in items}

    def load(self, kind: str) -> bool:
        """Download if needed and load; returns True once the model is loaded."""
        availability = self.availability(kind)
        backend = self.backend(kind)
        with self._lock:
            state = availability.state
            if state in (LOADED, DOWNLOADING):
                return state == LOADED
            availability.transition(DOWNLOADING)

        try:
            model_id = getattr(backend, "model_id", None)
            if self._auto_download and model_id and not _get_cache_info(model_id).get("cached"):
                download_model(model_id, hf_token=self._hf_token)
            backend.load()
        except Exception as exc:
            _logger.error("Loading %s model failed: %s", kind, exc)
            availability.transition(FAILED, error=str(exc)[:300])
            return False
        availability.transition(LOADED)
        return True

    def load_async(self, kind: str) -> threading.Thread:
        """Load on a background thread; a load already in flight is reused."""
        with self._lock:
            thread = self._threads.get(kind)
            if thread is not None and thread.is_alive():
                return thread
            thread = threading.Thread(
                target=self.load,
                args=(kind,),
                daemon=True,
                name=f"model-loader-{kind}",
            )
            self._threads[kind] = thread
        thread.start()
        return thread
