import os

# Workaround for tqdm threading issue in huggingface_hub downloads (faster-whisper).
# This MUST be set before importing any libraries that use huggingface_hub
os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Mapping, Optional

from fastapi import FastAPI

from carememo.config import Settings, load_settings
from carememo.context import AppContext
from carememo.routers.cleanup import create_cleanup_router
from carememo.routers.conversations import create_conversations_router
from carememo.services.conversation_store import ConversationStore
from carememo.services.extraction import FeatureExtractor
from carememo.services.ingestion import ConversationProcessor
from carememo.services.logging_setup import configure_logging
from carememo.services.pipeline import ConversationPipeline
from carememo.services.retention import RetentionScheduler
from carememo.services.summarization import build_summarization_service
from carememo.services.transcription import build_transcription_service
from carememo.services.watcher import IngestionWatcher

VERSION = "0.1.0"


def create_app(
    config_path: Optional[str] = None,
    base_dir: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> FastAPI:
    cwd = os.getcwd()
    config_path = config_path or os.path.join(cwd, "data", "config.json")
    # Settings carry the log levels, so they load before handlers exist.
    settings: Settings = load_settings(
        config_path, default_base_dir=os.path.join(cwd, "local-storage"), env=env
    )
    configure_logging(os.path.join(cwd, "logs"), settings.logging)
    logger = logging.getLogger("carememo.boot")
    logger.info("Boot: starting create_app cwd=%s config=%s", cwd, config_path)
    if base_dir:
        settings = replace(settings, storage=replace(settings.storage, base_dir=base_dir))

    ctx = AppContext(
        cwd=cwd,
        base_dir=os.path.abspath(settings.storage.base_dir),
        config_path=config_path,
    )
    ctx.ensure_dirs()
    logger.info("Boot: AppContext ready base_dir=%s", ctx.base_dir)

    store = ConversationStore(ctx.base_dir)
    transcription_service = build_transcription_service(settings.transcription, temp_dir=ctx.temp_dir)
    summarization_service = build_summarization_service(settings.summarization)
    pipeline = ConversationPipeline(transcription_service, summarization_service, FeatureExtractor())
    processor = ConversationProcessor(pipeline, store)
    scheduler = RetentionScheduler(store, settings.retention, ctx.watermark_path)
    watcher = IngestionWatcher(
        ctx.audio_dir,
        processor,
        store,
        max_depth=settings.watcher.max_depth,
        max_audio_bytes=settings.max_audio_bytes,
    )
    logger.info("Boot: services ready capabilities=%s", pipeline.capabilities())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.retention.enabled:
            scheduler.start()
        else:
            logger.info("Boot: retention scheduler disabled")
        if settings.watcher.enabled:
            watcher.start()
        else:
            logger.info("Boot: ingestion watcher disabled")
        try:
            yield
        finally:
            if watcher.running:
                watcher.stop()
            if scheduler.running:
                scheduler.stop()
            processor.shutdown(wait=True)
            pipeline.close()
            logger.info("Shutdown complete")

    app = FastAPI(title="CareMemo", version=VERSION, lifespan=lifespan)
    app.state.ctx = ctx
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.processor = processor
    app.state.scheduler = scheduler
    app.state.watcher = watcher

    app.include_router(
        create_conversations_router(
            store,
            processor,
            summarization_service,
            max_audio_bytes=settings.max_audio_bytes,
        )
    )
    logger.info("Boot: conversations router mounted")
    app.include_router(create_cleanup_router(scheduler))
    logger.info("Boot: cleanup router mounted")

    @app.get("/api/health")
    def health() -> dict:
        return {
            "status": "ok",
            "version": VERSION,
            "capabilities": {
                **pipeline.capabilities(),
                "transcriptionTiers": [tier.value for tier in transcription_service.tiers],
                "summarizationTiers": [tier.value for tier in summarization_service.tiers],
            },
            "watcher": watcher.running,
            "retention": scheduler.running,
        }

    logger.info("Boot: create_app complete")
    return app
