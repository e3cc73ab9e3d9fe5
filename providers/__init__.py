"""
Provider abstraction for LLM services.
Allows swapping the completion backend used for note metadata.
"""

from providers.base import LLMProvider
from providers.openai_provider import OpenAIProvider


def get_llm_provider(api_key: str) -> LLMProvider:
    """
    Factory function to get the LLM provider.

    Args:
        api_key: API key for the cloud provider

    Returns:
        LLMProvider instance

    Raises:
        ValueError: If the API key is missing
    """
    if not api_key:
        raise ValueError("API key required for the completion provider")
    return OpenAIProvider(api_key=api_key)


__all__ = [
    "LLMProvider",
    "OpenAIProvider",
    "get_llm_provider",
]
