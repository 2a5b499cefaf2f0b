from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from carememo.routers.common import http_errors
from carememo.services.retention import RetentionScheduler


class CleanupUserRequest(BaseModel):
    months: Optional[int] = Field(None, ge=0)


class CleanupSettingsRequest(BaseModel):
    months: Optional[int] = None
    schedule: Optional[str] = None


def create_cleanup_router(scheduler: RetentionScheduler) -> APIRouter:
    router = APIRouter(prefix="/api/offline/cleanup")
    logger = logging.getLogger("carememo.api.cleanup")

    @router.get("/status")
    def cleanup_status() -> dict:
        with http_errors(logger, "Cleanup status"):
            return scheduler.status()

    @router.post("/run")
    def run_cleanup() -> dict:
        logger.info("Manual retention sweep requested")
        with http_errors(logger, "Retention sweep"):
            return scheduler.run_sweep().to_dict()

    @router.post("/users/{user_id}")
    def cleanup_user(user_id: str, payload: Optional[CleanupUserRequest] = None) -> dict:
        months = payload.months if payload else None
        with http_errors(logger, "User cleanup"):
            result = scheduler.cleanup_user(user_id, months)
        return {"userId": user_id, **result.to_dict()}

    @router.put("/settings")
    def update_cleanup_settings(payload: CleanupSettingsRequest) -> dict:
        with http_errors(logger, "Cleanup settings"):
            return scheduler.update_settings(months=payload.months, schedule=payload.schedule)

    return router
