from carememo.services.transcription.base import (
    ASSUMED_BYTE_RATE,
    TranscriptionProvider,
    TranscriptionResult,
    WordTimestamp,
    estimate_duration,
)
from carememo.services.transcription.fallback import FallbackTranscriptionProvider
from carememo.services.transcription.remote import RemoteTranscriptionProvider
from carememo.services.transcription.service import (
    TranscriptionService,
    build_transcription_service,
)
from carememo.services.transcription.whisper_local import FasterWhisperProvider, WhisperConfig

__all__ = [
    "ASSUMED_BYTE_RATE",
    "TranscriptionProvider",
    "TranscriptionResult",
    "WordTimestamp",
    "estimate_duration",
    "FallbackTranscriptionProvider",
    "RemoteTranscriptionProvider",
    "TranscriptionService",
    "build_transcription_service",
    "FasterWhisperProvider",
    "WhisperConfig",
]
