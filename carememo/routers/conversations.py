from __future__ import annotations

import logging
import math
import mimetypes
import os
import random
import time
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel

from carememo.routers.common import http_errors
from carememo.services.conversation_store import ConversationStore
from carememo.services.ingestion import ConversationProcessor, IngestionJob
from carememo.services.models import ProcessingStatus
from carememo.services.summarization import SummarizationService
from carememo.services.watcher import AUDIO_EXTENSIONS

UPLOAD_METADATA = {"recordingDevice": "offline", "source": "upload"}


class UpdateConversationRequest(BaseModel):
    notes: Optional[str] = None
    tags: Optional[list[str]] = None


class DailySummaryRequest(BaseModel):
    date: Optional[str] = None  # YYYY-MM-DD, UTC; defaults to today


def _upload_filename(original: str) -> str:
    _, ext = os.path.splitext(original or "")
    return f"conversation_{int(time.time() * 1000)}_{random.randint(0, 10**9)}{ext.lower()}"


def create_conversations_router(
    store: ConversationStore,
    processor: ConversationProcessor,
    summarization_service: SummarizationService,
    *,
    max_audio_bytes: int,
) -> APIRouter:
    router = APIRouter(prefix="/api/offline/conversations")
    logger = logging.getLogger("carememo.api.conversations")

    @router.post("/upload", status_code=201)
    async def upload_conversation(
        audio: UploadFile = File(...),
        user_id: str = Form(...),
        person_name: str = Form(...),
        notes: str = Form(""),
    ) -> dict:
        if not person_name.strip():
            raise HTTPException(status_code=400, detail="Person name is required")
        _, ext = os.path.splitext(audio.filename or "")
        if ext.lower() not in AUDIO_EXTENSIONS:
            raise HTTPException(status_code=400, detail=f"Unsupported audio type: {ext or 'none'}")

        contents = await audio.read(max_audio_bytes + 1)
        if len(contents) > max_audio_bytes:
            raise HTTPException(status_code=413, detail="Audio file too large")
        if not contents:
            raise HTTPException(status_code=400, detail="No audio file provided")

        filename = _upload_filename(audio.filename)
        claimed: list[str] = []

        def claim_before_write(path: str) -> None:
            # The watcher must never see an unclaimed upload.
            if processor.claim(path):
                claimed.append(path)

        with http_errors(logger, "Upload"):
            try:
                audio_path = store.save_audio(
                    user_id, contents, filename, before_write=claim_before_write
                )
            except Exception:
                for path in claimed:
                    processor.release(path)
                raise
            for path in claimed:
                if path != audio_path:
                    processor.release(path)
            processor.submit(
                IngestionJob(
                    user_id=user_id,
                    person_name=person_name.strip(),
                    filename=filename,
                    audio_path=audio_path,
                    audio_bytes=contents,
                    notes=notes,
                    metadata=dict(UPLOAD_METADATA),
                )
            )

        logger.info("Upload accepted: user=%s person=%s file=%s", user_id, person_name, filename)
        return {"filename": filename, "status": ProcessingStatus.PROCESSING.value, "personName": person_name}

    @router.get("/{user_id}")
    def list_conversations(
        user_id: str,
        person_name: Optional[str] = None,
        search: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
    ) -> dict:
        with http_errors(logger, "List conversations"):
            result = store.list_conversations(
                user_id,
                person_name=person_name,
                limit=limit,
                offset=(page - 1) * limit,
                search=search,
            )
        return {
            "conversations": [record.to_dict() for record in result.records],
            "hasMore": result.has_more,
            "pagination": {
                "currentPage": page,
                "totalPages": math.ceil(result.total / limit),
                "totalItems": result.total,
                "itemsPerPage": limit,
            },
        }

    @router.get("/{user_id}/stats")
    def conversation_stats(user_id: str) -> dict:
        with http_errors(logger, "Conversation stats"):
            return store.insights(user_id)

    @router.get("/{user_id}/storage-stats")
    def storage_stats(user_id: str) -> dict:
        with http_errors(logger, "Storage stats"):
            return store.stats(user_id).to_dict()

    @router.get("/{user_id}/by-person/{person_name}")
    def conversations_by_person(user_id: str, person_name: str) -> dict:
        with http_errors(logger, "Conversations by person"):
            records = store.all_conversations(user_id, person_name)
        return {
            "personName": person_name,
            "conversations": [record.to_dict() for record in records],
            "total": len(records),
        }

    @router.get("/{user_id}/audio/{conversation_id}")
    def conversation_audio(user_id: str, conversation_id: str) -> FileResponse:
        with http_errors(logger, "Audio download"):
            record = store.get(user_id, conversation_id)
        if not record.audio_path or not os.path.isfile(record.audio_path):
            raise HTTPException(status_code=404, detail="Audio file not found")
        media_type = mimetypes.guess_type(record.audio_path)[0] or "audio/mpeg"
        return FileResponse(
            record.audio_path,
            media_type=media_type,
            filename=os.path.basename(record.audio_path),
            content_disposition_type="inline",
        )

    @router.post("/{user_id}/daily-summary")
    def daily_summary(user_id: str, payload: Optional[DailySummaryRequest] = None) -> dict:
        with http_errors(logger, "Daily summary"):
            raw_date = payload.date if payload and payload.date else None
            day = date.fromisoformat(raw_date) if raw_date else datetime.now(timezone.utc).date()
            conversations = [
                record
                for record in reversed(store.all_conversations(user_id))
                if record.processing_status == ProcessingStatus.COMPLETED.value
                and record.created_at.date() == day
            ]
        summary, tier = summarization_service.daily_summary(conversations)
        logger.info(
            "Daily summary: user=%s date=%s conversations=%s tier=%s",
            user_id,
            day.isoformat(),
            len(conversations),
            tier.value,
        )
        return {
            "date": day.isoformat(),
            "conversationCount": len(conversations),
            "tier": tier.value,
            **summary.to_dict(),
        }

    @router.get("/{user_id}/{conversation_id}")
    def get_conversation(user_id: str, conversation_id: str) -> dict:
        with http_errors(logger, "Get conversation"):
            return store.get(user_id, conversation_id).to_dict()

    @router.patch("/{user_id}/{conversation_id}")
    def update_conversation(
        user_id: str, conversation_id: str, payload: UpdateConversationRequest
    ) -> dict:
        with http_errors(logger, "Update conversation"):
            record = store.update_annotations(
                user_id, conversation_id, notes=payload.notes, tags=payload.tags
            )
        return record.to_dict()

    @router.delete("/{user_id}/{conversation_id}")
    def delete_conversation(user_id: str, conversation_id: str) -> dict:
        with http_errors(logger, "Delete conversation"):
            store.delete(user_id, conversation_id)
        return {"deleted": True, "id": conversation_id}

    return router
