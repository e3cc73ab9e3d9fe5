"""
Metadata Service

Derives a note title and hashtags from message content using a chat
completion provider.

Retry policy: up to `max_attempts` calls; between failed attempts sleep
`retry_delay * 2 ** (attempt - 1)` seconds. The last failure propagates
as MetadataGenerationError.
"""

import json
import re
import time
from typing import Any, Callable, Optional

import structlog

from config import get_settings
from exceptions import MetadataGenerationError
from models import NoteMetadata
from providers.base import LLMProvider

logger = structlog.get_logger()

MAX_CONTENT_CHARS = 5000
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

PROMPT_TEMPLATE = """Analyze the following content and generate a concise, filesystem-friendly title (max 10 words, avoid special characters like /\\:*?"<>|) and a list of relevant hashtags (e.g., ["#topic1", "#topic2"]).

Content:
\"\"\"
{content}
\"\"\"

Hashtags a.k.a categories should always be in English and start with a # symbol. If companies, products, or people are mentioned, they should be included as hashtags.
Title should be in the same language as the content and should be concise and descriptive.
Respond ONLY with a valid JSON object in the following format:
{{"title": "Your Concise Title", "hashtags": ["#tag1", "#tag2", "#relevantHashtag"]}}"""


def build_prompt(content: str) -> str:
    return PROMPT_TEMPLATE.format(content=content[:MAX_CONTENT_CHARS])


def normalize_hashtags(tags: list) -> list[str]:
    """
    Clean up hashtags returned by the model.

    Non-string entries are dropped, whitespace trimmed and a leading '#'
    added where missing. Order is preserved.

    >>> normalize_hashtags(["tag1", "#tag2", " tag3 ", 4])
    ['#tag1', '#tag2', '#tag3']
    """
    normalized = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if not tag:
            continue
        normalized.append(tag if tag.startswith("#") else f"#{tag}")
    return normalized


def parse_metadata_response(response_text: str) -> NoteMetadata:
    """
    Parse a completion into NoteMetadata.

    Tries a direct JSON parse first, then salvages the outermost {...} block
    (models sometimes wrap the object in prose or code fences).

    Raises:
        ValueError: If no valid object with a string title and list hashtags is found
    """
    try:
        parsed = json.loads(response_text)
    except json.JSONDecodeError:
        match = JSON_OBJECT_PATTERN.search(response_text)
        if not match:
            raise ValueError(f"Response was not valid JSON: {response_text[:200]}")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse extracted JSON: {match.group(0)[:200]}") from e
        logger.warning("metadata_json_extracted", extracted=match.group(0)[:200])

    if not isinstance(parsed, dict):
        raise ValueError("Parsed response is not a JSON object")

    title = parsed.get("title")
    hashtags = parsed.get("hashtags")
    if not isinstance(title, str) or not isinstance(hashtags, list):
        raise ValueError("Parsed response did not match expected format")
    if not title.strip():
        raise ValueError("Parsed response has an empty title")

    return NoteMetadata(title=title, hashtags=normalize_hashtags(hashtags))


class MetadataGenerator:
    """
    Generates NoteMetadata for a piece of content (and optional images).
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: Optional[str] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        temperature: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            provider: Chat completion provider
            model: Model name. If None, uses config settings.
            max_attempts: Total attempts. If None, uses config settings.
            retry_delay: Base backoff delay in seconds. If None, uses config settings.
            temperature: Sampling temperature
            sleep: Sleep function (tests replace it to skip real waiting)
        """
        if model is None or max_attempts is None or retry_delay is None:
            settings = get_settings()
            model = model or settings.openai_model
            max_attempts = max_attempts if max_attempts is not None else settings.metadata_max_retries
            retry_delay = retry_delay if retry_delay is not None else settings.metadata_retry_delay

        self.provider = provider
        self.model = model
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.temperature = temperature
        self._sleep = sleep

    def build_messages(self, content: str, images: Optional[list[str]] = None) -> list[dict[str, Any]]:
        """Single user message: the prompt plus low-detail image parts."""
        parts: list[dict[str, Any]] = [{"type": "text", "text": build_prompt(content)}]
        if images and self.provider.supports_vision():
            for image in images:
                parts.append({
                    "type": "image_url",
                    "image_url": {
                        "url": f"data:image/jpeg;base64,{image}",
                        "detail": "low",
                    },
                })
        return [{"role": "user", "content": parts}]

    def generate(self, content: str, images: Optional[list[str]] = None) -> NoteMetadata:
        """
        Generate a title and hashtags for content.

        Args:
            content: Message text, or a synthetic description of the media
            images: Optional base64-encoded images to attach

        Returns:
            NoteMetadata

        Raises:
            MetadataGenerationError: After all attempts failed
        """
        messages = self.build_messages(content, images)
        logger.debug("metadata_prompt", preview=build_prompt(content)[:100], images=len(images or []))

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.provider.chat_completion(
                    messages,
                    model=self.model,
                    temperature=self.temperature,
                    response_format={"type": "json_object"},
                )
                response_text = self.provider.get_text(response)
                if not response_text:
                    raise ValueError("Completion response text was empty")

                logger.debug("metadata_raw_response", response=response_text)
                metadata = parse_metadata_response(response_text)

                logger.info(
                    "metadata_generated",
                    title=metadata.title,
                    hashtags=metadata.hashtags,
                    attempt=attempt,
                )
                return metadata

            except Exception as e:
                last_error = e
                logger.warning(
                    "metadata_attempt_failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
                if attempt < self.max_attempts:
                    self._sleep(self.retry_delay * (2 ** (attempt - 1)))

        logger.error("metadata_generation_failed", attempts=self.max_attempts, error=str(last_error))
        raise MetadataGenerationError(
            f"Metadata generation failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error
