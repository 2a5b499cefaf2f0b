from __future__ import annotations

import logging

from carememo.services.text_analysis import KEYWORD_LIMIT, analyze_emotions, extract_keywords


class FeatureExtractor:
    """Keyword and emotion features derived from a transcript.

    Both extractions are rule-based for every provider tier, so the same
    transcript always yields the same keywords and emotions.
    """

    def __init__(self, keyword_limit: int = KEYWORD_LIMIT) -> None:
        self._keyword_limit = keyword_limit
        self._logger = logging.getLogger("carememo.extraction")

    def extract_keywords(self, transcript: str) -> list[str]:
        keywords = extract_keywords(transcript, limit=self._keyword_limit)
        self._logger.debug("Extracted keywords=%s", keywords)
        return keywords

    def analyze_emotions(self, transcript: str) -> list[dict]:
        emotions = analyze_emotions(transcript)
        self._logger.debug("Extracted emotions=%s", [e["emotion"] for e in emotions])
        return emotions
