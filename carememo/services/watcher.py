from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from carememo.services.conversation_store import sanitize_segment
from carememo.services.ingestion import IngestionJob

if TYPE_CHECKING:
    from carememo.services.conversation_store import ConversationStore
    from carememo.services.ingestion import ConversationProcessor

AUDIO_EXTENSIONS = frozenset([".mp3", ".wav", ".m4a", ".ogg"])
UNKNOWN_USER = "unknown_user"
UNKNOWN_PERSON = "Unknown"
WATCHER_METADATA = {"recordingDevice": "watcher", "source": "watcher"}


class _AudioEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "IngestionWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._watcher.handle_path(os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        """Atomic renames into the tree show up as moves, not creations."""
        if event.is_directory:
            return
        self._watcher.handle_path(os.fsdecode(event.dest_path))


class IngestionWatcher:
    """Picks up audio files dropped under ``<base>/audio/<userId>/`` and processes them.

    Stopping the watcher only stops observation. Jobs already handed to the
    processor run to completion.
    """

    def __init__(
        self,
        audio_root: str,
        processor: "ConversationProcessor",
        store: "ConversationStore",
        *,
        max_depth: int = 3,
        max_audio_bytes: int = 50 * 1024 * 1024,
        settle_seconds: float = 0.5,
    ) -> None:
        self._audio_root = os.path.realpath(audio_root)
        self._processor = processor
        self._store = store
        self._max_depth = max_depth
        self._max_audio_bytes = max_audio_bytes
        self._settle_seconds = settle_seconds
        self._observer: Optional[Observer] = None
        self._lock = threading.Lock()
        self._logger = logging.getLogger("carememo.watcher")

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        with self._lock:
            if self._observer is not None:
                self._logger.warning("Watcher already running")
                return
            os.makedirs(self._audio_root, exist_ok=True)
            observer = Observer()
            observer.schedule(_AudioEventHandler(self), self._audio_root, recursive=True)
            observer.start()
            self._observer = observer
        self._logger.info("Watcher started: root=%s max_depth=%s", self._audio_root, self._max_depth)

    def stop(self) -> None:
        with self._lock:
            observer = self._observer
            self._observer = None
        if observer is None:
            self._logger.warning("Watcher is not running")
            return
        observer.stop()
        observer.join()
        self._logger.info("Watcher stopped")

    def _accepts(self, path: str) -> Optional[list[str]]:
        """Return the path's segments below the root when it should be ingested."""
        rel = os.path.relpath(path, self._audio_root)
        if rel.startswith(os.pardir):
            return None
        parts = rel.split(os.sep)
        if any(part.startswith(".") for part in parts):
            return None
        if os.path.splitext(parts[-1])[1].lower() not in AUDIO_EXTENSIONS:
            return None
        if len(parts) - 1 > self._max_depth:
            self._logger.debug("Ignoring audio nested too deep: %s", path)
            return None
        return parts

    def handle_path(self, path: str) -> Optional["Future"]:
        """Dispatch one file to the processor; returns the job future, or None when skipped."""
        path = os.path.realpath(path)
        try:
            parts = self._accepts(path)
            if parts is None:
                return None
            try:
                size = os.path.getsize(path)
            except FileNotFoundError:
                return None
            if size > self._max_audio_bytes:
                self._logger.warning(
                    "Ignoring oversized audio: %s bytes=%s limit=%s", path, size, self._max_audio_bytes
                )
                return None

            user_id = sanitize_segment(parts[0]) if len(parts) > 1 else UNKNOWN_USER
            if not self._processor.claim(path):
                self._logger.debug("Audio already being processed: %s", path)
                return None
            try:
                if self._store.find_by_audio_path(user_id, path) is not None:
                    self._logger.debug("Audio already stored: %s", path)
                    self._processor.release(path)
                    return None
                self._logger.info("New audio detected: %s user=%s", path, user_id)
                return self._processor.submit(
                    IngestionJob(
                        user_id=user_id,
                        person_name=UNKNOWN_PERSON,
                        filename=parts[-1],
                        audio_path=path,
                        metadata=dict(WATCHER_METADATA),
                        settle_seconds=self._settle_seconds,
                    )
                )
            except Exception:
                self._processor.release(path)
                raise
        except Exception as exc:
            self._logger.exception("Watcher error processing %s: %s", path, exc)
            return None
