from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional


class LLMProviderError(RuntimeError):
    pass


class LLMResponseFormatError(LLMProviderError):
    """The model answered, but not with the JSON object the prompt asked for."""

    def __init__(self, message: str, raw_text: str) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class LLMProvider(ABC):
    @abstractmethod
    def summarize_conversation(
        self, transcript: str, person_name: str, duration: float
    ) -> dict:
        raise NotImplementedError

    @abstractmethod
    def summarize_day(self, conversations_text: str) -> dict:
        raise NotImplementedError


class BaseLLMProvider(LLMProvider):
    """Base implementation with shared prompts, JSON parsing, and response handling.

    Subclasses only need to implement _call_api() for their specific API client.
    """

    # Shared prompts - single source of truth
    PROMPTS = {
        "conversation_summary": (
            "You are an AI assistant helping dementia care patients remember their "
            "conversations.\n\n"
            "Please analyze this conversation transcript and create a helpful summary:\n\n"
            "Person: {person_name}\n"
            "Duration: {duration} seconds\n"
            'Transcript: "{transcript}"\n\n'
            "Please provide:\n"
            "1. A brief 2-3 sentence summary of what was discussed\n"
            "2. Key topics mentioned\n"
            "3. Emotional tone (positive/negative/neutral)\n"
            "4. Important details the person should remember\n"
            "5. Any action items or follow-ups mentioned\n\n"
            "Format your response as JSON with these fields:\n"
            "{{\n"
            '  "summary": "Brief summary here",\n'
            '  "keyTopics": ["topic1", "topic2"],\n'
            '  "importantDetails": ["detail1", "detail2"],\n'
            '  "actionItems": ["item1", "item2"],\n'
            '  "sentiment": "positive/negative/neutral",\n'
            '  "sentimentScore": -1.0 to 1.0\n'
            "}}"
        ),
        "conversation_summary_system": (
            "You are a helpful AI assistant specialized in creating conversation summaries "
            "for dementia care patients. Be concise, clear, and focus on the most important "
            "information. Always respond with valid JSON."
        ),
        "daily_summary": (
            "You are creating a daily summary for a dementia care patient. Here are their "
            "conversations from today:\n\n"
            "{conversations}\n\n"
            "Please create a comprehensive daily summary that:\n"
            "1. Highlights the most important interactions\n"
            "2. Mentions key people they talked to\n"
            "3. Summarizes main topics discussed\n"
            "4. Notes any positive moments or achievements\n"
            "5. Reminds them of any important information\n\n"
            "Keep it warm, encouraging, and easy to understand. Format as JSON:\n"
            "{{\n"
            '  "dailySummary": "Main summary here",\n'
            '  "peopleMentioned": ["person1", "person2"],\n'
            '  "keyTopics": ["topic1", "topic2"],\n'
            '  "positiveMoments": ["moment1", "moment2"],\n'
            '  "importantReminders": ["reminder1", "reminder2"],\n'
            '  "overallSentiment": "positive/negative/neutral"\n'
            "}}"
        ),
        "daily_summary_system": (
            "You are a compassionate AI assistant creating daily summaries for dementia care "
            "patients. Be warm, encouraging, and focus on positive moments. Always respond "
            "with valid JSON."
        ),
    }

    def __init__(self, logger_name: str = "carememo.llm", timeout: float = 120.0) -> None:
        self._logger = logging.getLogger(logger_name)
        self._timeout = timeout

    @abstractmethod
    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: float = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Make an API call and return the raw response text.

        Args:
            prompt: The user prompt to send
            temperature: Sampling temperature (0.0-1.0)
            timeout: Request timeout in seconds
            system_prompt: Optional system prompt
            json_mode: Request JSON-formatted response if supported
            max_tokens: Optional cap on generated tokens

        Returns:
            The response text content
        """
        raise NotImplementedError

    @staticmethod
    def _strip_markdown_code_blocks(text: str) -> str:
        """Remove markdown code block wrappers from text."""
        text = text.strip()
        if not text.startswith("```"):
            return text

        lines = text.split("\n")
        json_lines = []
        in_block = False
        for line in lines:
            if line.startswith("```"):
                in_block = not in_block
                continue
            json_lines.append(line)
        return "\n".join(json_lines).strip()

    def _parse_json_object(self, content: str, what: str) -> dict:
        text = self._strip_markdown_code_blocks(content)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            self._logger.warning("Non-JSON response for %s: %s", what, text[:200])
            raise LLMResponseFormatError(f"Non-JSON response for {what}", content) from exc
        if not isinstance(parsed, dict):
            self._logger.warning("JSON response for %s is %s, expected object", what, type(parsed).__name__)
            raise LLMResponseFormatError(f"Unexpected JSON shape for {what}", content)
        return parsed

    def summarize_conversation(
        self, transcript: str, person_name: str, duration: float
    ) -> dict:
        prompt = self.PROMPTS["conversation_summary"].format(
            person_name=person_name,
            duration=duration,
            transcript=transcript,
        )
        content = self._call_api(
            prompt,
            temperature=0.3,
            timeout=self._timeout,
            system_prompt=self.PROMPTS["conversation_summary_system"],
            json_mode=True,
            max_tokens=500,
        )
        return self._parse_json_object(content, "conversation summary")

    def summarize_day(self, conversations_text: str) -> dict:
        prompt = self.PROMPTS["daily_summary"].format(conversations=conversations_text)
        content = self._call_api(
            prompt,
            temperature=0.4,
            timeout=self._timeout,
            system_prompt=self.PROMPTS["daily_summary_system"],
            json_mode=True,
            max_tokens=800,
        )
        return self._parse_json_object(content, "daily summary")
