from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from carememo.services.tiering import Tier

# Stand-in throughput for 16 kHz mono audio; durations derived from it are estimates.
ASSUMED_BYTE_RATE = 16000


def estimate_duration(audio_bytes: bytes) -> int:
    """Estimate playback length in seconds from the payload size alone."""
    return round(len(audio_bytes) / ASSUMED_BYTE_RATE)


@dataclass(frozen=True)
class WordTimestamp:
    word: str
    start: float
    end: float

    def to_dict(self) -> dict:
        return {"word": self.word, "start": self.start, "end": self.end}


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    language: Optional[str]
    duration: float
    words: list[WordTimestamp] = field(default_factory=list)
    duration_estimated: bool = True


class TranscriptionProvider(ABC):
    tier: Tier

    @abstractmethod
    def transcribe(self, audio_bytes: bytes, filename: str) -> TranscriptionResult:
        raise NotImplementedError
