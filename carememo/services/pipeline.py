"""Conversation pipeline: transcription, then summary and feature extraction.

``process_conversation`` never raises for provider or audio problems; a
conversation that cannot be processed comes back with status ``failed`` and a
human-readable error. The pipeline performs no storage writes.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional, TypeVar

from carememo.services.errors import (
    ProviderUnavailable,
    SummarizationFailed,
    TranscriptionFailed,
)
from carememo.services.extraction import FeatureExtractor
from carememo.services.models import ConversationResult, ProcessingStatus
from carememo.services.text_analysis import DEFAULT_EMOTION

if TYPE_CHECKING:
    from carememo.services.summarization import SummarizationService
    from carememo.services.transcription import TranscriptionService

T = TypeVar("T")


class ConversationPipeline:
    def __init__(
        self,
        transcription: "TranscriptionService",
        summarization: "SummarizationService",
        extractor: Optional[FeatureExtractor] = None,
        *,
        max_workers: int = 3,
    ) -> None:
        self._transcription = transcription
        self._summarization = summarization
        self._extractor = extractor or FeatureExtractor()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pipeline"
        )
        self._logger = logging.getLogger("carememo.pipeline")

    def capabilities(self) -> dict:
        return {
            "transcription": self._transcription.active_tier.value,
            "summarization": self._summarization.active_tier.value,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _failed(self, error: str, **fields) -> ConversationResult:
        return ConversationResult(status=ProcessingStatus.FAILED, error=error, **fields)

    def _collect(self, future: "Future[T]", default: T, what: str) -> T:
        try:
            return future.result()
        except Exception as exc:
            self._logger.exception("%s failed, using default: %s", what, exc)
            return default

    def process_conversation(
        self, audio_bytes: bytes, filename: str, person_name: str
    ) -> ConversationResult:
        start_time = time.perf_counter()
        self._logger.info(
            "Processing conversation: filename=%s person=%s bytes=%s",
            filename,
            person_name,
            len(audio_bytes),
        )

        try:
            transcription, transcription_tier = self._transcription.transcribe(
                audio_bytes, filename
            )
        except (TranscriptionFailed, ProviderUnavailable) as exc:
            self._logger.warning("Transcription failed for %s: %s", filename, exc)
            return self._failed(f"Transcription failed: {exc}")
        except Exception as exc:
            self._logger.exception("Unexpected transcription error for %s", filename)
            return self._failed(f"Transcription failed: {exc}")

        text = transcription.text
        transcribed = {
            "transcript": text,
            "duration": transcription.duration,
            "duration_estimated": transcription.duration_estimated,
            "language": transcription.language,
            "words": [word.to_dict() for word in transcription.words],
            "transcription_tier": transcription_tier.value,
        }

        # Summary and features only depend on the transcript; join all three before merging.
        summary_future = self._executor.submit(
            self._summarization.summarize, text, person_name, transcription.duration
        )
        keywords_future = self._executor.submit(self._extractor.extract_keywords, text)
        emotions_future = self._executor.submit(self._extractor.analyze_emotions, text)

        keywords = self._collect(keywords_future, [], "Keyword extraction")
        emotions = self._collect(emotions_future, [dict(DEFAULT_EMOTION)], "Emotion analysis")
        try:
            summary, summarization_tier = summary_future.result()
        except (SummarizationFailed, ProviderUnavailable) as exc:
            self._logger.warning("Summarization failed for %s: %s", filename, exc)
            return self._failed(f"Summarization failed: {exc}", **transcribed)
        except Exception as exc:
            self._logger.exception("Unexpected summarization error for %s", filename)
            return self._failed(f"Summarization failed: {exc}", **transcribed)

        result = ConversationResult(
            status=ProcessingStatus.COMPLETED,
            summary=summary.summary,
            key_topics=summary.key_topics,
            emotions=emotions,
            sentiment=summary.sentiment,
            sentiment_score=summary.sentiment_score,
            keywords=keywords,
            important_details=summary.important_details,
            action_items=summary.action_items,
            summarization_tier=summarization_tier.value,
            **transcribed,
        )
        self._logger.info(
            "Conversation processed: filename=%s tiers=%s/%s elapsed=%.2fs",
            filename,
            result.transcription_tier,
            result.summarization_tier,
            time.perf_counter() - start_time,
        )
        return result
