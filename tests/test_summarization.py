from unittest.mock import Mock

import pytest

from carememo.services.errors import SummarizationFailed
from carememo.services.llm import LLMProvider, LLMProviderError, LLMResponseFormatError
from carememo.services.summarization import (
    NO_CONVERSATIONS_SUMMARY,
    LLMSummarizationProvider,
    RuleBasedSummarizationProvider,
    SummarizationService,
    normalize_summary,
)
from carememo.services.tiering import Tier

from conftest import make_record

TRANSCRIPT = "My daughter visited and we had a wonderful lunch. I need to call the doctor."


def _service(llm) -> SummarizationService:
    return SummarizationService(
        [
            (Tier.LOCAL, LLMSummarizationProvider(Tier.LOCAL, llm)),
            (Tier.FALLBACK, RuleBasedSummarizationProvider()),
        ]
    )


def test_llm_reply_is_normalized():
    llm = Mock(spec=LLMProvider)
    llm.summarize_conversation.return_value = {
        "summary": "Lunch with daughter.",
        "keyTopics": ["family", "food"],
        "importantDetails": ["Daughter visited"],
        "actionItems": ["Call the doctor"],
        "sentiment": "Positive",
        "sentimentScore": "0.7",
    }
    result, tier = _service(llm).summarize(TRANSCRIPT, "Alice", 30)

    assert tier is Tier.LOCAL
    assert result.summary == "Lunch with daughter."
    assert result.key_topics == ["family", "food"]
    assert result.action_items == ["Call the doctor"]
    assert result.sentiment == "positive"
    assert result.sentiment_score == 0.7
    llm.summarize_conversation.assert_called_once_with(TRANSCRIPT, "Alice", 30)


def test_non_json_reply_keeps_raw_text_on_same_tier():
    llm = Mock(spec=LLMProvider)
    llm.summarize_conversation.side_effect = LLMResponseFormatError(
        "Non-JSON response", "Alice had lunch with her daughter."
    )
    result, tier = _service(llm).summarize(TRANSCRIPT, "Alice", 30)

    assert tier is Tier.LOCAL
    assert result.summary == "Alice had lunch with her daughter."
    assert result.key_topics == []
    assert result.sentiment == "neutral"
    assert result.sentiment_score == 0.0


def test_provider_error_demotes_to_rule_based():
    llm = Mock(spec=LLMProvider)
    llm.summarize_conversation.side_effect = LLMProviderError("connection refused")
    result, tier = _service(llm).summarize(TRANSCRIPT, "Alice", 30)

    assert tier is Tier.FALLBACK
    assert result.summary.startswith("Conversation with Alice: ")
    assert "family" in result.key_topics


def test_empty_summary_demotes():
    llm = Mock(spec=LLMProvider)
    llm.summarize_conversation.return_value = {"summary": "   "}
    _, tier = _service(llm).summarize(TRANSCRIPT, "Alice", 30)
    assert tier is Tier.FALLBACK


def test_empty_transcript_fails():
    with pytest.raises(SummarizationFailed):
        _service(Mock(spec=LLMProvider)).summarize("   ", "Alice", 0)


def test_normalize_accepts_snake_case_and_bad_values():
    result = normalize_summary(
        {
            "summary": "ok",
            "key_topics": ["a", "", None],
            "sentiment": "ecstatic",
            "sentiment_score": "n/a",
            "action_items": [{"description": "Buy milk"}],
        }
    )
    assert result.key_topics == ["a"]
    assert result.sentiment == "neutral"
    assert result.sentiment_score == 0.0
    assert result.action_items == ["Buy milk"]


def test_daily_summary_without_conversations():
    summary, tier = _service(Mock(spec=LLMProvider)).daily_summary([])
    assert summary.daily_summary == NO_CONVERSATIONS_SUMMARY
    assert tier is Tier.FALLBACK


def test_daily_summary_non_json_uses_digest():
    llm = Mock(spec=LLMProvider)
    llm.summarize_day.side_effect = LLMResponseFormatError("Non-JSON", "A lovely day.")
    records = [
        make_record("Alice", key_topics=["family"], sentiment_score=0.4),
        make_record("Bob", key_topics=["food"], sentiment_score=0.2),
    ]
    summary, tier = _service(llm).daily_summary(records)

    assert tier is Tier.LOCAL
    assert summary.daily_summary == (
        "You had 2 conversations today with Alice, Bob. "
        "The main topics discussed were family, food."
    )
    assert summary.overall_sentiment == "positive"


def test_daily_summary_from_llm():
    llm = Mock(spec=LLMProvider)
    llm.summarize_day.return_value = {
        "dailySummary": "You saw Alice.",
        "peopleMentioned": ["Alice"],
        "overallSentiment": "positive",
    }
    summary, tier = _service(llm).daily_summary([make_record("Alice")])

    assert tier is Tier.LOCAL
    assert summary.to_dict()["dailySummary"] == "You saw Alice."
    assert summary.people_mentioned == ["Alice"]
    prompt_text = llm.summarize_day.call_args.args[0]
    assert "Person: Alice" in prompt_text
