"""Application context: single source of truth for runtime paths.

Every service and router receives this object instead of individual path
strings. It is a plain object rather than a module global so tests can give
each app instance its own storage root.
"""

from __future__ import annotations

import os


class AppContext:
    """Holds all runtime directory paths for the application."""

    def __init__(self, *, cwd: str, base_dir: str, config_path: str) -> None:
        self._cwd = cwd
        self._base_dir = base_dir
        self._config_path = config_path

    # ── Storage root (LOCAL_STORAGE_DIR) ───────────────────────────────

    @property
    def base_dir(self) -> str:
        return self._base_dir

    @property
    def conversations_dir(self) -> str:
        return os.path.join(self._base_dir, "conversations")

    @property
    def audio_dir(self) -> str:
        return os.path.join(self._base_dir, "audio")

    @property
    def temp_dir(self) -> str:
        return os.path.join(self._base_dir, "tmp")

    @property
    def watermark_path(self) -> str:
        return os.path.join(self._base_dir, ".last-cleanup")

    # ── Config (always in the app-level data dir) ──────────────────────

    @property
    def config_path(self) -> str:
        return self._config_path

    # ── Logs (stay in cwd, not in the storage root) ────────────────────

    @property
    def logs_dir(self) -> str:
        return os.path.join(self._cwd, "logs")

    # ── Helpers ────────────────────────────────────────────────────────

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        for d in (
            self.base_dir,
            self.conversations_dir,
            self.audio_dir,
            self.temp_dir,
            self.logs_dir,
        ):
            os.makedirs(d, exist_ok=True)
