from __future__ import annotations

import logging

from carememo.services.tiering import Tier
from carememo.services.transcription.base import (
    TranscriptionProvider,
    TranscriptionResult,
    estimate_duration,
)

PLACEHOLDER_TEMPLATE = (
    "[Audio transcription placeholder for {filename}] This is a mock transcription "
    "that would be generated from the audio file. In a real implementation, this "
    "would be replaced with actual speech-to-text processing."
)


class FallbackTranscriptionProvider(TranscriptionProvider):
    """Model-free tier: a marked placeholder transcript and a size-based duration estimate."""

    tier = Tier.FALLBACK

    def __init__(self) -> None:
        self._logger = logging.getLogger("carememo.transcription.fallback")

    def transcribe(self, audio_bytes: bytes, filename: str) -> TranscriptionResult:
        self._logger.warning("Using fallback transcription for %s", filename)
        return TranscriptionResult(
            text=PLACEHOLDER_TEMPLATE.format(filename=filename),
            language="en",
            duration=estimate_duration(audio_bytes),
            words=[],
            duration_estimated=True,
        )
