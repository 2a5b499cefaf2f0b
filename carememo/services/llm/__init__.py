from carememo.services.llm.base import LLMProvider, LLMProviderError, LLMResponseFormatError
from carememo.services.llm.ollama_provider import OllamaProvider, is_ollama_reachable
from carememo.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "LLMProvider",
    "LLMProviderError",
    "LLMResponseFormatError",
    "OllamaProvider",
    "is_ollama_reachable",
    "OpenAIProvider",
]
