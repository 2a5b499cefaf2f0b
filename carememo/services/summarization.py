from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence

from carememo.services.errors import ProviderUnavailable, SummarizationFailed
from carememo.services.llm import (
    LLMProvider,
    LLMProviderError,
    LLMResponseFormatError,
    OllamaProvider,
    OpenAIProvider,
    is_ollama_reachable,
)
from carememo.services.models import SENTIMENTS, ConversationRecord
from carememo.services.text_analysis import (
    fallback_daily_summary,
    raw_text_summary,
    rule_based_summary,
)
from carememo.services.tiering import Tier, TierChain

if TYPE_CHECKING:
    from carememo.config import SummarizationSettings

_logger = logging.getLogger("carememo.summarization")

NO_CONVERSATIONS_SUMMARY = "No conversations were recorded today."


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    key_topics: list[str] = field(default_factory=list)
    sentiment: str = "neutral"
    sentiment_score: float = 0.0
    important_details: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "SummaryResult":
        return cls(
            summary=data["summary"],
            key_topics=list(data.get("key_topics", [])),
            sentiment=data.get("sentiment", "neutral"),
            sentiment_score=float(data.get("sentiment_score", 0.0)),
            important_details=list(data.get("important_details", [])),
            action_items=list(data.get("action_items", [])),
        )


@dataclass(frozen=True)
class DailySummary:
    daily_summary: str
    people_mentioned: list[str] = field(default_factory=list)
    key_topics: list[str] = field(default_factory=list)
    positive_moments: list[str] = field(default_factory=list)
    important_reminders: list[str] = field(default_factory=list)
    overall_sentiment: str = "neutral"

    def to_dict(self) -> dict:
        return {
            "dailySummary": self.daily_summary,
            "peopleMentioned": self.people_mentioned,
            "keyTopics": self.key_topics,
            "positiveMoments": self.positive_moments,
            "importantReminders": self.important_reminders,
            "overallSentiment": self.overall_sentiment,
        }


def _pick(data: dict, *keys: str, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    items: list[str] = []
    for item in value:
        if item is None:
            continue
        if isinstance(item, dict):
            item = item.get("description") or item.get("text") or ""
        text = str(item).strip()
        if text:
            items.append(text)
    return items


def _sentiment(value) -> str:
    text = str(value or "").strip().lower()
    return text if text in SENTIMENTS else "neutral"


def _score(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def normalize_summary(parsed: dict) -> SummaryResult:
    """Coerce a model's JSON reply into a SummaryResult, tolerating camelCase or snake_case keys."""
    return SummaryResult(
        summary=str(_pick(parsed, "summary", default="")).strip(),
        key_topics=_string_list(_pick(parsed, "keyTopics", "key_topics", default=[])),
        sentiment=_sentiment(_pick(parsed, "sentiment")),
        sentiment_score=_score(_pick(parsed, "sentimentScore", "sentiment_score", default=0.0)),
        important_details=_string_list(
            _pick(parsed, "importantDetails", "important_details", default=[])
        ),
        action_items=_string_list(_pick(parsed, "actionItems", "action_items", default=[])),
    )


def normalize_daily_summary(parsed: dict) -> DailySummary:
    return DailySummary(
        daily_summary=str(_pick(parsed, "dailySummary", "daily_summary", default="")).strip(),
        people_mentioned=_string_list(
            _pick(parsed, "peopleMentioned", "people_mentioned", default=[])
        ),
        key_topics=_string_list(_pick(parsed, "keyTopics", "key_topics", default=[])),
        positive_moments=_string_list(
            _pick(parsed, "positiveMoments", "positive_moments", default=[])
        ),
        important_reminders=_string_list(
            _pick(parsed, "importantReminders", "important_reminders", default=[])
        ),
        overall_sentiment=_sentiment(_pick(parsed, "overallSentiment", "overall_sentiment")),
    )


def format_conversations_for_day(conversations: Sequence[ConversationRecord]) -> str:
    return "\n\n".join(
        f"Person: {conv.person_name}\nSummary: {conv.summary}\nTopics: {', '.join(conv.key_topics)}"
        for conv in conversations
    )


def rule_based_daily_summary(conversations: Sequence[ConversationRecord]) -> DailySummary:
    data = fallback_daily_summary(
        [conv.person_name for conv in conversations],
        [conv.key_topics for conv in conversations],
        [conv.sentiment_score for conv in conversations],
        [conv.action_items for conv in conversations],
    )
    return DailySummary(**data)


class SummarizationProvider(ABC):
    tier: Tier

    @abstractmethod
    def summarize(self, transcript: str, person_name: str, duration: float) -> SummaryResult:
        raise NotImplementedError

    @abstractmethod
    def daily_summary(self, conversations: Sequence[ConversationRecord]) -> DailySummary:
        raise NotImplementedError


class LLMSummarizationProvider(SummarizationProvider):
    """Adapts an LLM client to the summarization contract for the local or remote tier."""

    def __init__(self, tier: Tier, llm: LLMProvider) -> None:
        self.tier = tier
        self._llm = llm
        self._logger = logging.getLogger(f"carememo.summarization.{tier.value}")

    def summarize(self, transcript: str, person_name: str, duration: float) -> SummaryResult:
        try:
            parsed = self._llm.summarize_conversation(transcript, person_name, duration)
        except LLMResponseFormatError as exc:
            if not exc.raw_text.strip():
                raise ProviderUnavailable("Model returned an empty reply") from exc
            self._logger.warning("Summary reply was not JSON, keeping raw text")
            return SummaryResult.from_dict(raw_text_summary(exc.raw_text))
        except LLMProviderError as exc:
            raise ProviderUnavailable(str(exc)) from exc

        result = normalize_summary(parsed)
        if not result.summary:
            raise ProviderUnavailable("Model returned an empty summary")
        return result

    def daily_summary(self, conversations: Sequence[ConversationRecord]) -> DailySummary:
        try:
            parsed = self._llm.summarize_day(format_conversations_for_day(conversations))
        except LLMResponseFormatError:
            self._logger.warning("Daily summary reply was not JSON, using rule-based digest")
            return rule_based_daily_summary(conversations)
        except LLMProviderError as exc:
            raise ProviderUnavailable(str(exc)) from exc

        result = normalize_daily_summary(parsed)
        if not result.daily_summary:
            raise ProviderUnavailable("Model returned an empty daily summary")
        return result


class RuleBasedSummarizationProvider(SummarizationProvider):
    tier = Tier.FALLBACK

    def summarize(self, transcript: str, person_name: str, duration: float) -> SummaryResult:
        return SummaryResult.from_dict(rule_based_summary(transcript, person_name))

    def daily_summary(self, conversations: Sequence[ConversationRecord]) -> DailySummary:
        return rule_based_daily_summary(conversations)


class SummarizationService:
    """Tiered conversation and daily summarization.

    The provider list is fixed at construction: Ollama when it answered the
    startup probe, then an OpenAI-compatible endpoint when configured, then the
    rule-based summarizer which always succeeds.
    """

    def __init__(
        self,
        providers: list[tuple[Tier, SummarizationProvider]],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._chain: TierChain[SummarizationProvider] = TierChain(
            "summarization", providers, timeout=timeout
        )

    @property
    def active_tier(self) -> Tier:
        return self._chain.active_tier

    @property
    def tiers(self) -> list[Tier]:
        return self._chain.tiers

    def summarize(
        self, transcript: str, person_name: str, duration: float
    ) -> tuple[SummaryResult, Tier]:
        if not transcript.strip():
            raise SummarizationFailed("Transcript is empty")
        result, tier = self._chain.call(
            lambda provider: provider.summarize(transcript, person_name, duration)
        )
        _logger.info("Summary produced by tier=%s person=%s", tier.value, person_name)
        return result, tier

    def daily_summary(
        self, conversations: Sequence[ConversationRecord]
    ) -> tuple[DailySummary, Tier]:
        if not conversations:
            return DailySummary(daily_summary=NO_CONVERSATIONS_SUMMARY), Tier.FALLBACK
        result, tier = self._chain.call(lambda provider: provider.daily_summary(conversations))
        _logger.info(
            "Daily summary produced by tier=%s conversations=%s", tier.value, len(conversations)
        )
        return result, tier


def build_summarization_service(settings: "SummarizationSettings") -> SummarizationService:
    providers: list[tuple[Tier, SummarizationProvider]] = []

    if settings.ollama_base_url and settings.ollama_model:
        if is_ollama_reachable(settings.ollama_base_url, timeout=settings.probe_timeout_seconds):
            ollama = OllamaProvider(
                base_url=settings.ollama_base_url,
                model=settings.ollama_model,
                timeout=settings.timeout_seconds,
            )
            providers.append((Tier.LOCAL, LLMSummarizationProvider(Tier.LOCAL, ollama)))
    else:
        _logger.warning("Ollama base URL not set, skipping local summarization tier")

    if settings.remote_base_url and settings.remote_api_key:
        remote = OpenAIProvider(
            api_key=settings.remote_api_key,
            model=settings.remote_model,
            base_url=settings.remote_base_url,
            timeout=settings.timeout_seconds,
        )
        providers.append((Tier.REMOTE, LLMSummarizationProvider(Tier.REMOTE, remote)))

    providers.append((Tier.FALLBACK, RuleBasedSummarizationProvider()))
    service = SummarizationService(providers, timeout=settings.timeout_seconds)
    _logger.info("Summarization tiers: %s", ", ".join(tier.value for tier in service.tiers))
    return service
