from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


SENTIMENTS = ("positive", "negative", "neutral")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    # Older files carry a JavaScript-style "Z" suffix; naive values are UTC.
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class ConversationResult:
    """Output of one pipeline invocation, before it is attached to a user or stored."""

    status: ProcessingStatus
    transcript: str = ""
    summary: str = ""
    key_topics: list[str] = field(default_factory=list)
    emotions: list[dict] = field(default_factory=list)
    sentiment: str = "neutral"
    sentiment_score: float = 0.0
    keywords: list[str] = field(default_factory=list)
    important_details: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    duration: float = 0.0
    duration_estimated: bool = True
    language: Optional[str] = None
    words: list[dict] = field(default_factory=list)
    transcription_tier: Optional[str] = None
    summarization_tier: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ProcessingStatus.COMPLETED


# Attribute name -> key in the persisted JSON object.
_RECORD_KEYS = {
    "id": "id",
    "user_id": "userId",
    "person_name": "personName",
    "timestamp": "timestamp",
    "audio_path": "audioPath",
    "transcript": "transcript",
    "summary": "summary",
    "key_topics": "keyTopics",
    "emotions": "emotions",
    "sentiment": "sentiment",
    "sentiment_score": "sentimentScore",
    "keywords": "keywords",
    "important_details": "importantDetails",
    "action_items": "actionItems",
    "notes": "notes",
    "tags": "tags",
    "duration": "duration",
    "language": "language",
    "processing_status": "processingStatus",
    "processing_error": "processingError",
    "transcription_tier": "transcriptionTier",
    "summarization_tier": "summarizationTier",
    "metadata": "metadata",
}

_STRING_FIELDS = (
    "id",
    "user_id",
    "person_name",
    "timestamp",
    "transcript",
    "summary",
    "sentiment",
    "notes",
    "processing_status",
)
_OPTIONAL_STRING_FIELDS = (
    "audio_path",
    "language",
    "processing_error",
    "transcription_tier",
    "summarization_tier",
)
_STRING_LIST_FIELDS = ("key_topics", "keywords", "important_details", "action_items", "tags")


@dataclass
class ConversationRecord:
    user_id: str
    person_name: str
    id: Optional[str] = None
    timestamp: Optional[str] = None
    audio_path: Optional[str] = None
    transcript: str = ""
    summary: str = ""
    key_topics: list[str] = field(default_factory=list)
    emotions: list[dict] = field(default_factory=list)
    sentiment: str = "neutral"
    sentiment_score: float = 0.0
    keywords: list[str] = field(default_factory=list)
    important_details: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    notes: str = ""
    tags: list[str] = field(default_factory=list)
    duration: float = 0.0
    language: Optional[str] = None
    processing_status: str = ProcessingStatus.COMPLETED.value
    processing_error: Optional[str] = None
    transcription_tier: Optional[str] = None
    summarization_tier: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def created_at(self) -> datetime:
        if not self.timestamp:
            raise ValueError(f"Conversation {self.id} has no timestamp")
        return parse_timestamp(self.timestamp)

    def validate(self) -> None:
        if self.processing_status not in {status.value for status in ProcessingStatus}:
            raise ValueError(f"Unknown processing status: {self.processing_status}")
        if self.processing_status == ProcessingStatus.COMPLETED.value:
            if not self.transcript.strip() or not self.summary.strip():
                raise ValueError("A completed conversation needs a transcript and a summary")
        if self.timestamp:
            parse_timestamp(self.timestamp)

    def to_dict(self) -> dict:
        return {key: getattr(self, attr) for attr, key in _RECORD_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Any) -> "ConversationRecord":
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        for required in ("id", "timestamp"):
            if not data.get(required):
                raise ValueError(f"Missing field: {required}")
        parse_timestamp(str(data["timestamp"]))
        kwargs = {
            attr: data[key] for attr, key in _RECORD_KEYS.items() if data.get(key) is not None
        }
        kwargs.setdefault("user_id", "")
        kwargs.setdefault("person_name", "")
        for attr in _STRING_FIELDS + _OPTIONAL_STRING_FIELDS:
            if attr in kwargs and not isinstance(kwargs[attr], str):
                raise ValueError(f"Field {_RECORD_KEYS[attr]} must be a string")
        for attr in _STRING_LIST_FIELDS:
            value = kwargs.get(attr, [])
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ValueError(f"Field {_RECORD_KEYS[attr]} must be a list of strings")
        emotions = kwargs.get("emotions", [])
        if not isinstance(emotions, list) or not all(isinstance(item, dict) for item in emotions):
            raise ValueError("Field emotions must be a list of objects")
        if not isinstance(kwargs.get("metadata", {}), dict):
            raise ValueError("Field metadata must be an object")
        kwargs["sentiment_score"] = float(kwargs.get("sentiment_score", 0.0) or 0.0)
        kwargs["duration"] = float(kwargs.get("duration", 0.0) or 0.0)
        return cls(**kwargs)

    @classmethod
    def from_result(
        cls,
        result: ConversationResult,
        *,
        user_id: str,
        person_name: str,
        audio_path: Optional[str] = None,
        notes: str = "",
        metadata: Optional[dict] = None,
    ) -> "ConversationRecord":
        return cls(
            user_id=user_id,
            person_name=person_name,
            audio_path=audio_path,
            transcript=result.transcript,
            summary=result.summary,
            key_topics=list(result.key_topics),
            emotions=[dict(item) for item in result.emotions],
            sentiment=result.sentiment,
            sentiment_score=result.sentiment_score,
            keywords=list(result.keywords),
            important_details=list(result.important_details),
            action_items=list(result.action_items),
            notes=notes or "",
            duration=result.duration,
            language=result.language,
            processing_status=result.status.value,
            processing_error=result.error,
            transcription_tier=result.transcription_tier,
            summarization_tier=result.summarization_tier,
            metadata=dict(metadata or {}),
        )
