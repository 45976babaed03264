"""Application context: single source of truth for all runtime paths.

Every service and router receives this object instead of individual path
strings.  Properties always return the *current* value, so updating
``data_dir`` at runtime automatically propagates to every consumer (the
segment database path, the model cache) without re-plumbing arguments.
"""

from __future__ import annotations

import os
import threading


class AppContext:
    """Holds all runtime directory paths for the sidecar."""

    def __init__(
        self,
        *,
        cwd: str,
        data_dir: str,
        default_data_dir: str,
        config_path: str,
    ) -> None:
        self._lock = threading.Lock()
        self._cwd = cwd
        self._data_dir = data_dir
        self._default_data_dir = default_data_dir
        self._config_path = config_path

    # ── data_dir (hot-swappable) ───────────────────────────────────────

    @property
    def data_dir(self) -> str:
        with self._lock:
            return self._data_dir

    @data_dir.setter
    def data_dir(self, value: str) -> None:
        with self._lock:
            self._data_dir = value

    @property
    def default_data_dir(self) -> str:
        return self._default_data_dir

    # ── Derived data paths (always follow current data_dir) ────────────

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, "transcripts.sqlite3")

    @property
    def models_dir(self) -> str:
        return os.path.join(self.data_dir, "models")

    # ── Config (always in the app-level default data dir) ──────────────

    @property
    def config_path(self) -> str:
        return self._config_path

    # ── Logs (stay in cwd, not in data_dir) ────────────────────────────

    @property
    def logs_dir(self) -> str:
        return os.path.join(self._cwd, "logs")

    # ── Helpers ────────────────────────────────────────────────────────

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        for d in (self.data_dir, self.models_dir, self.logs_dir):
            os.makedirs(d, exist_ok=True)
