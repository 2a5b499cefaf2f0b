from __future__ import annotations

import logging
from typing import Optional

import requests

from carememo.services.llm.base import BaseLLMProvider, LLMProviderError

_logger = logging.getLogger("carememo.llm.ollama")


def is_ollama_reachable(base_url: str = "http://127.0.0.1:11434", timeout: float = 3.0) -> bool:
    """Return True when an Ollama server answers on ``base_url``.

    Used once at startup to decide whether the local summarization tier exists.
    """
    base_url = base_url.rstrip("/")
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=timeout)
    except requests.RequestException as exc:
        _logger.warning("Ollama not reachable at %s: %s", base_url, exc)
        return False
    if resp.status_code != 200:
        _logger.warning("Ollama at %s answered %s", base_url, resp.status_code)
        return False
    _logger.info("Ollama is running at %s", base_url)
    return True


class OllamaProvider(BaseLLMProvider):
    """LLM provider for local Ollama models."""

    def __init__(self, base_url: str, model: str, timeout: float = 120.0) -> None:
        super().__init__(logger_name="carememo.llm.ollama", timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._model = model

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: float = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Make a call to the Ollama API and return the response text."""
        request_body: dict = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if system_prompt:
            request_body["system"] = system_prompt
        if json_mode:
            request_body["format"] = "json"
        if max_tokens:
            request_body["options"]["num_predict"] = max_tokens

        try:
            response = requests.post(
                f"{self._base_url}/api/generate",
                json=request_body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError("Failed to reach Ollama") from exc

        if response.status_code != 200:
            raise LLMProviderError(f"Ollama error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMProviderError("Ollama returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise LLMProviderError(f"Ollama returned {type(data).__name__}, expected object")
        content = data.get("response") or ""
        if not isinstance(content, str):
            raise LLMProviderError("Ollama response text is not a string")
        return content.strip()
