from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from carememo.services.models import ConversationRecord, ConversationResult, ProcessingStatus

if TYPE_CHECKING:
    from carememo.services.conversation_store import ConversationStore
    from carememo.services.pipeline import ConversationPipeline


@dataclass
class IngestionJob:
    """One audio file to process for a user; ``audio_bytes`` is read from ``audio_path`` when absent."""

    user_id: str
    person_name: str
    filename: str
    audio_path: Optional[str] = None
    audio_bytes: Optional[bytes] = None
    notes: str = ""
    metadata: dict = field(default_factory=dict)
    # Wait for the file size to stop changing before reading (files still being copied in).
    settle_seconds: float = 0.0


def _normalize(path: str) -> str:
    return os.path.realpath(path)


class ConversationProcessor:
    """Runs the pipeline for uploaded and watched audio off the request/observer threads.

    Audio paths are claimed from ``submit`` until the record is saved so the
    watcher never ingests a file that an upload is already processing.
    """

    def __init__(
        self,
        pipeline: "ConversationPipeline",
        store: "ConversationStore",
        *,
        max_workers: int = 2,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        self._claims: set[str] = set()
        self._claims_lock = threading.Lock()
        self._logger = logging.getLogger("carememo.ingestion")

    # ── Claims ─────────────────────────────────────────────────────────

    def claim(self, audio_path: str) -> bool:
        """Claim a path; False when someone else already holds it."""
        key = _normalize(audio_path)
        with self._claims_lock:
            if key in self._claims:
                return False
            self._claims.add(key)
            return True

    def release(self, audio_path: str) -> None:
        with self._claims_lock:
            self._claims.discard(_normalize(audio_path))

    def is_claimed(self, audio_path: str) -> bool:
        with self._claims_lock:
            return _normalize(audio_path) in self._claims

    # ── Processing ─────────────────────────────────────────────────────

    def submit(self, job: IngestionJob) -> "Future[ConversationRecord]":
        if job.audio_path:
            self.claim(job.audio_path)
        future = self._executor.submit(self._run, job)
        self._logger.info(
            "Ingestion queued: user=%s person=%s file=%s",
            job.user_id,
            job.person_name,
            job.filename,
        )
        return future

    def _run(self, job: IngestionJob) -> ConversationRecord:
        try:
            return self.process(job)
        except Exception:
            self._logger.exception(
                "Ingestion failed: user=%s file=%s", job.user_id, job.audio_path or job.filename
            )
            raise
        finally:
            if job.audio_path:
                self.release(job.audio_path)

    def _read_audio(self, job: IngestionJob) -> bytes:
        if job.audio_bytes is not None:
            return job.audio_bytes
        if not job.audio_path:
            raise ValueError("Ingestion job has neither audio bytes nor an audio path")
        if job.settle_seconds > 0:
            self._wait_until_stable(job.audio_path, job.settle_seconds)
        with open(job.audio_path, "rb") as f:
            return f.read()

    @staticmethod
    def _wait_until_stable(path: str, interval: float, attempts: int = 20) -> None:
        size = -1
        for _ in range(attempts):
            current = os.path.getsize(path)
            if current == size:
                return
            size = current
            time.sleep(interval)

    def process(self, job: IngestionJob) -> ConversationRecord:
        """Run the pipeline for one job and store the outcome, completed or failed."""
        try:
            audio_bytes = self._read_audio(job)
        except OSError as exc:
            self._logger.warning("Could not read audio %s: %s", job.audio_path, exc)
            result = ConversationResult(
                status=ProcessingStatus.FAILED, error=f"Could not read audio: {exc}"
            )
        else:
            result = self._pipeline.process_conversation(audio_bytes, job.filename, job.person_name)

        record = ConversationRecord.from_result(
            result,
            user_id=job.user_id,
            person_name=job.person_name,
            audio_path=job.audio_path,
            notes=job.notes,
            metadata=job.metadata,
        )
        saved = self._store.save(job.user_id, record)
        self._logger.info(
            "Ingestion complete: user=%s id=%s status=%s",
            job.user_id,
            saved.id,
            saved.processing_status,
        )
        return saved

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._logger.info("Conversation processor shut down")
