"""Model-free text analysis used by the fallback tiers.

Everything here is a pure function of its input text: no randomness, no clock,
and every ordered output follows table order or first occurrence so repeated
calls produce identical results.
"""

from __future__ import annotations

import re
import string
from collections import Counter
from typing import Iterable, Optional, Sequence

POSITIVE_WORDS = frozenset(
    ["good", "great", "happy", "love", "wonderful", "amazing", "excellent", "fantastic"]
)
NEGATIVE_WORDS = frozenset(
    ["bad", "sad", "angry", "terrible", "awful", "hate", "disappointed", "frustrated"]
)
SENTIMENT_STEP = 0.1
SENTIMENT_THRESHOLD = 0.1

TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "family": ("family", "mother", "father", "son", "daughter", "brother", "sister"),
    "health": ("health", "doctor", "medicine", "hospital", "pain", "sick"),
    "food": ("food", "eat", "dinner", "lunch", "breakfast", "cook"),
    "weather": ("weather", "rain", "sunny", "cold", "hot", "temperature"),
    "travel": ("travel", "trip", "vacation", "car", "plane", "hotel"),
    "work": ("work", "job", "office", "boss", "colleague", "meeting"),
}
DEFAULT_TOPIC = "general"

EMOTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "happy": ("happy", "joy", "excited", "wonderful", "great", "amazing"),
    "sad": ("sad", "depressed", "upset", "disappointed", "hurt"),
    "angry": ("angry", "mad", "furious", "annoyed", "irritated"),
    "fearful": ("afraid", "scared", "worried", "anxious", "nervous"),
    "surprised": ("surprised", "shocked", "amazed", "unexpected"),
    "neutral": ("okay", "fine", "normal", "alright"),
}
DEFAULT_EMOTION = {"emotion": "neutral", "confidence": 0.8}

KEYWORD_LIMIT = 10
KEYWORD_MIN_LENGTH = 4

_NON_WORD = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def classify_sentiment(score: float) -> str:
    if score > SENTIMENT_THRESHOLD:
        return "positive"
    if score < -SENTIMENT_THRESHOLD:
        return "negative"
    return "neutral"


def score_sentiment(text: str) -> tuple[str, float]:
    """Keyword sentiment: +/-0.1 per sentiment word occurrence, clamped to [-1, 1] at the end."""
    score = 0.0
    for token in text.lower().split():
        word = token.strip(string.punctuation)
        if word in POSITIVE_WORDS:
            score += SENTIMENT_STEP
        elif word in NEGATIVE_WORDS:
            score -= SENTIMENT_STEP
    score = round(max(-1.0, min(1.0, score)), 4)
    return classify_sentiment(score), score


def extract_topics(text: str) -> list[str]:
    lowered = text.lower()
    topics = [
        topic
        for topic, keywords in TOPIC_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]
    return topics or [DEFAULT_TOPIC]


def extract_details(text: str, limit: int = 3) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > 10]
    return sentences[:limit]


def extract_keywords(text: str, limit: int = KEYWORD_LIMIT) -> list[str]:
    words = [
        word
        for word in _NON_WORD.sub("", text.lower()).split()
        if len(word) >= KEYWORD_MIN_LENGTH
    ]
    # Counter keeps first-occurrence order and sorted() is stable, so ties keep it too.
    counts = Counter(words)
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [word for word, _ in ranked[:limit]]


def analyze_emotions(text: str) -> list[dict]:
    lowered = text.lower()
    emotions: list[dict] = []
    for emotion, keywords in EMOTION_KEYWORDS.items():
        count = sum(lowered.count(keyword) for keyword in keywords)
        if count > 0:
            emotions.append({"emotion": emotion, "confidence": min(1.0, count / 5)})
    return emotions or [dict(DEFAULT_EMOTION)]


def rule_based_summary(transcript: str, person_name: str) -> dict:
    sentiment, score = score_sentiment(transcript)
    return {
        "summary": f"Conversation with {person_name}: {truncate(transcript, 150)}",
        "key_topics": extract_topics(transcript),
        "sentiment": sentiment,
        "sentiment_score": score,
        "important_details": extract_details(transcript),
        "action_items": [],
    }


def raw_text_summary(text: str) -> dict:
    """Wrap an unparseable model reply as a summary with no structured fields."""
    return {
        "summary": truncate(text.strip(), 200),
        "key_topics": [],
        "sentiment": "neutral",
        "sentiment_score": 0.0,
        "important_details": [],
        "action_items": [],
    }


def _distinct(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def fallback_daily_summary(
    person_names: Sequence[str],
    topics: Sequence[Sequence[str]],
    scores: Sequence[float],
    action_items: Optional[Sequence[Sequence[str]]] = None,
) -> dict:
    """Daily digest without narrative: who was spoken to and what came up."""
    people = _distinct(person_names)
    unique_topics = _distinct(topic for group in topics for topic in group)
    reminders = _distinct(item for group in (action_items or []) for item in group)
    average = round(sum(scores) / len(scores), 4) if scores else 0.0
    count = len(person_names)
    noun = "conversation" if count == 1 else "conversations"
    return {
        "daily_summary": (
            f"You had {count} {noun} today with {', '.join(people)}. "
            f"The main topics discussed were {', '.join(unique_topics)}."
        ),
        "people_mentioned": people,
        "key_topics": unique_topics,
        "positive_moments": ["Had meaningful conversations"],
        "important_reminders": reminders,
        "overall_sentiment": classify_sentiment(average),
    }
