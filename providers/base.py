"""
Abstract base class for LLM providers.
Following the Adapter Pattern to normalize different API interfaces.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class LLMProvider(ABC):
    """
    Abstract base class for chat completion providers.

    The metadata generator talks to this interface only, so tests can hand it
    a fake and another vendor can be plugged in without touching the pipeline.
    """

    @abstractmethod
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
        Perform a non-streaming chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'.
                Content may be a string or a list of content parts
                (text and image_url parts).
            model: Model name (e.g., 'gpt-4o-mini')
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens to generate
            response_format: Structured output request, e.g. {"type": "json_object"}
            **kwargs: Additional provider-specific parameters

        Returns:
            Provider's native response object
        """
        pass

    @abstractmethod
    def get_text(self, response: Any) -> Optional[str]:
        """
        Extract the assistant text from a response.

        Returns:
            The message content, or None if the response carried none
        """
        pass

    @abstractmethod
    def get_usage(self, response: Any) -> tuple[int, int]:
        """
        Extract token usage from a response.

        Args:
            response: Provider's native response object

        Returns:
            Tuple of (input_tokens, output_tokens)
            Returns (0, 0) if usage information is unavailable
        """
        pass

    def supports_vision(self) -> bool:
        """
        Check if this provider accepts image content parts.

        Returns:
            True if images can be attached, False otherwise
        """
        return False
