from __future__ import annotations

import logging
import mimetypes

import requests

from carememo.services.errors import ProviderUnavailable, TranscriptionFailed
from carememo.services.tiering import Tier
from carememo.services.transcription.base import (
    TranscriptionProvider,
    TranscriptionResult,
    WordTimestamp,
    estimate_duration,
)


class RemoteTranscriptionProvider(TranscriptionProvider):
    """Speech-to-text over an OpenAI-compatible ``/v1/audio/transcriptions`` endpoint."""

    tier = Tier.REMOTE

    def __init__(
        self, base_url: str, api_key: str, model: str = "whisper-1", timeout: float = 120.0
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._logger = logging.getLogger("carememo.transcription.remote")

    def transcribe(self, audio_bytes: bytes, filename: str) -> TranscriptionResult:
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        try:
            response = requests.post(
                f"{self._base_url}/v1/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                data={
                    "model": self._model,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": "word",
                },
                files={"file": (filename, audio_bytes, content_type)},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailable("Failed to reach transcription service") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"Transcription service error: {response.status_code}")
        if response.status_code != 200:
            raise TranscriptionFailed(
                f"Transcription service rejected {filename}: {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable("Transcription service returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise ProviderUnavailable(
                f"Transcription service returned {type(data).__name__}, expected object"
            )
        raw_words = data.get("words") or []
        if not isinstance(raw_words, list) or not all(isinstance(item, dict) for item in raw_words):
            raise ProviderUnavailable("Transcription service returned malformed word timestamps")

        text = str(data.get("text") or "").strip()
        if not text:
            raise TranscriptionFailed(f"No speech detected in {filename}")

        try:
            words = [
                WordTimestamp(
                    word=str(item.get("word", "")).strip(),
                    start=float(item.get("start", 0.0)),
                    end=float(item.get("end", 0.0)),
                )
                for item in raw_words
            ]
            duration = float(data.get("duration") or 0.0)
        except (TypeError, ValueError) as exc:
            raise ProviderUnavailable("Transcription service returned non-numeric timings") from exc
        self._logger.info("Remote transcription complete: words=%s", len(words))
        return TranscriptionResult(
            text=text,
            language=str(data.get("language") or "en"),
            duration=duration if duration else estimate_duration(audio_bytes),
            words=words,
            duration_estimated=not duration,
        )
