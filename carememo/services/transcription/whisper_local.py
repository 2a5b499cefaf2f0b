from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Optional

# Workaround for tqdm threading issue in huggingface_hub downloads
# This must be set before importing faster_whisper
os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

from faster_whisper import WhisperModel

from carememo.services.errors import ProviderUnavailable, TranscriptionFailed
from carememo.services.tiering import Tier
from carememo.services.transcription.base import (
    TranscriptionProvider,
    TranscriptionResult,
    WordTimestamp,
    estimate_duration,
)


@dataclass(frozen=True)
class WhisperConfig:
    model_size: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    language: Optional[str] = None


class FasterWhisperProvider(TranscriptionProvider):
    tier = Tier.LOCAL

    def __init__(self, config: WhisperConfig, temp_dir: Optional[str] = None) -> None:
        self._config = config
        self._temp_dir = temp_dir
        self._logger = logging.getLogger("carememo.transcription.whisper")
        self._model: Optional[WhisperModel] = None

    def load(self) -> None:
        """Load the model eagerly; used as the availability probe at startup."""
        self._get_model()

    def _get_model(self) -> WhisperModel:
        if self._model is None:
            self._logger.info(
                "Loading whisper model: size=%s device=%s compute_type=%s",
                self._config.model_size,
                self._config.device,
                self._config.compute_type,
            )
            self._model = WhisperModel(
                self._config.model_size,
                device=self._config.device,
                compute_type=self._config.compute_type,
            )
        return self._model

    def transcribe(self, audio_bytes: bytes, filename: str) -> TranscriptionResult:
        start_time = time.perf_counter()
        try:
            model = self._get_model()
        except Exception as exc:
            raise ProviderUnavailable(f"Whisper model unavailable: {exc}") from exc

        _, ext = os.path.splitext(filename)
        if self._temp_dir:
            os.makedirs(self._temp_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(suffix=ext.lower(), dir=self._temp_dir)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(audio_bytes)
            segments_iter, info = model.transcribe(
                temp_path,
                language=self._config.language,
                word_timestamps=True,
            )
            texts: list[str] = []
            words: list[WordTimestamp] = []
            for segment in segments_iter:
                texts.append(segment.text.strip())
                for word in segment.words or []:
                    words.append(
                        WordTimestamp(
                            word=word.word.strip(),
                            start=float(word.start),
                            end=float(word.end),
                        )
                    )
        except (ValueError, OSError) as exc:
            # Decoder errors (corrupt file, unsupported codec) are properties of the audio.
            self._logger.exception("Transcription failed for %s: %s", filename, exc)
            raise TranscriptionFailed(f"Could not decode audio {filename}: {exc}") from exc
        except Exception as exc:
            self._logger.exception("Whisper inference error: %s", exc)
            raise ProviderUnavailable(f"Whisper inference error: {exc}") from exc
        finally:
            try:
                os.remove(temp_path)
            except OSError:
                self._logger.debug("Temp audio already removed: %s", temp_path)

        text = " ".join(t for t in texts if t).strip()
        if not text:
            raise TranscriptionFailed(f"No speech detected in {filename}")

        info_duration = getattr(info, "duration", None)
        self._logger.info(
            "Transcription complete: words=%s elapsed=%.2fs",
            len(words),
            time.perf_counter() - start_time,
        )
        return TranscriptionResult(
            text=text,
            language=getattr(info, "language", None) or self._config.language,
            duration=float(info_duration) if info_duration else estimate_duration(audio_bytes),
            words=words,
            duration_estimated=not info_duration,
        )
