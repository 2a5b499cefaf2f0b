from datetime import datetime, timezone

import pytest

from carememo.services.conversation_store import ConversationStore
from carememo.services.models import ConversationRecord
from carememo.services.pipeline import ConversationPipeline
from carememo.services.summarization import RuleBasedSummarizationProvider, SummarizationService
from carememo.services.tiering import Tier
from carememo.services.transcription import FallbackTranscriptionProvider, TranscriptionService

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_record(person_name: str = "Alice", **overrides) -> ConversationRecord:
    fields = {
        "user_id": "user1",
        "person_name": person_name,
        "transcript": "We talked about the garden and the tomatoes.",
        "summary": "Talked about the garden.",
    }
    fields.update(overrides)
    return ConversationRecord(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock) -> ConversationStore:
    return ConversationStore(str(tmp_path / "storage"), clock=clock)


@pytest.fixture
def fallback_pipeline():
    transcription = TranscriptionService([(Tier.FALLBACK, FallbackTranscriptionProvider())])
    summarization = SummarizationService([(Tier.FALLBACK, RuleBasedSummarizationProvider())])
    pipeline = ConversationPipeline(transcription, summarization)
    yield pipeline
    pipeline.close()
