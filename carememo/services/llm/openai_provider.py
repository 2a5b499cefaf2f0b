from __future__ import annotations

from typing import Optional

import requests

from carememo.services.llm.base import BaseLLMProvider, LLMProviderError


class OpenAIProvider(BaseLLMProvider):
    """LLM provider for OpenAI and OpenAI-compatible APIs."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com",
        timeout: float = 120.0,
    ) -> None:
        super().__init__(logger_name="carememo.llm.openai", timeout=timeout)
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: float = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Make a call to the OpenAI API and return the response text."""
        messages = [
            {"role": "system", "content": system_prompt or "You are a helpful assistant."},
            {"role": "user", "content": prompt},
        ]

        request_body: dict = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode:
            request_body["response_format"] = {"type": "json_object"}
        if max_tokens:
            request_body["max_tokens"] = max_tokens

        try:
            response = requests.post(
                f"{self._base_url}/v1/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=request_body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError("Failed to reach OpenAI-compatible endpoint") from exc

        if response.status_code != 200:
            raise LLMProviderError(f"OpenAI error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMProviderError("OpenAI returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise LLMProviderError(f"OpenAI returned {type(data).__name__}, expected object")
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices:
            raise LLMProviderError("OpenAI response missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise LLMProviderError("OpenAI choice has no message object")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise LLMProviderError("OpenAI message content is not a string")
        return content.strip()
