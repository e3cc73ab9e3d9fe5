"""
OpenAI provider implementation.
Wraps OpenAI's API to conform to our provider interface.
"""

from typing import Any, Optional
from openai import OpenAI
from providers.base import LLMProvider


class OpenAIProvider(LLMProvider):
    """
    OpenAI implementation of LLMProvider.
    Supports GPT-4o family models, including image inputs.
    """

    def __init__(self, api_key: str, client: Optional[OpenAI] = None):
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key
            client: Pre-built client (tests pass a mock here)
        """
        self.client = client or OpenAI(api_key=api_key)

    def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        response_format: Optional[dict] = None,
        **kwargs
    ) -> Any:
        """
        Perform non-streaming chat completion using OpenAI.

        Returns:
            OpenAI ChatCompletion object
        """
        params = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            **kwargs
        }

        if max_tokens is not None:
            params["max_tokens"] = max_tokens

        if response_format is not None:
            params["response_format"] = response_format

        return self.client.chat.completions.create(**params)

    def get_text(self, response: Any) -> Optional[str]:
        choices = getattr(response, "choices", None)
        if not choices:
            return None
        message = getattr(choices[0], "message", None)
        if message is None:
            return None
        return message.content

    def get_usage(self, response: Any) -> tuple[int, int]:
        """
        Extract token usage from OpenAI response.

        Args:
            response: OpenAI ChatCompletion object

        Returns:
            Tuple of (input_tokens, output_tokens)
        """
        if hasattr(response, 'usage') and response.usage:
            return (
                response.usage.prompt_tokens,
                response.usage.completion_tokens
            )
        return (0, 0)

    def supports_vision(self) -> bool:
        """OpenAI chat models accept image_url content parts."""
        return True
