"""
Tests for services/metadata_service.py

Tests cover:
- Response parsing (direct JSON, salvaged JSON, bad shapes)
- Hashtag normalization
- Retry with exponential backoff
- Prompt construction and image parts
"""

import pytest
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from exceptions import MetadataGenerationError
from providers.base import LLMProvider
from services.metadata_service import (
    MAX_CONTENT_CHARS,
    MetadataGenerator,
    normalize_hashtags,
    parse_metadata_response,
)


class FakeProvider(LLMProvider):
    """Returns queued responses; an Exception in the queue is raised instead."""

    def __init__(self, responses, vision=True):
        self.responses = list(responses)
        self.calls = []
        self.vision = vision

    def chat_completion(self, messages, model, temperature=0.7, max_tokens=None, response_format=None, **kwargs):
        self.calls.append({
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "response_format": response_format,
        })
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get_text(self, response):
        return response

    def get_usage(self, response):
        return (0, 0)

    def supports_vision(self):
        return self.vision


def make_generator(responses, sleeps=None, vision=True):
    provider = FakeProvider(responses, vision=vision)
    generator = MetadataGenerator(
        provider,
        model="gpt-4o-mini",
        max_attempts=3,
        retry_delay=1.0,
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
    )
    return generator, provider


class TestParseMetadataResponse:
    """Test parse_metadata_response"""

    def test_direct_json(self):
        metadata = parse_metadata_response('{"title": "Trip Plan", "hashtags": ["#travel"]}')
        assert metadata.title == "Trip Plan"
        assert metadata.hashtags == ["#travel"]

    def test_json_wrapped_in_prose(self):
        text = 'Sure! Here it is:\n```json\n{"title": "Groceries", "hashtags": ["food"]}\n```'
        metadata = parse_metadata_response(text)
        assert metadata.title == "Groceries"
        assert metadata.hashtags == ["#food"]

    def test_no_json(self):
        with pytest.raises(ValueError):
            parse_metadata_response("I cannot help with that.")

    def test_broken_salvage(self):
        with pytest.raises(ValueError):
            parse_metadata_response("prefix {not: json} suffix")

    @pytest.mark.parametrize("text", [
        '{"title": 5, "hashtags": []}',
        '{"title": "Ok", "hashtags": "#tag"}',
        '{"hashtags": []}',
        '{"title": "   ", "hashtags": []}',
        '["title", "hashtags"]',
    ])
    def test_wrong_shape(self, text):
        with pytest.raises(ValueError):
            parse_metadata_response(text)


class TestNormalizeHashtags:
    """Test normalize_hashtags"""

    def test_prefix_and_trim(self):
        assert normalize_hashtags(["tag1", "#tag2", " tag3 "]) == ["#tag1", "#tag2", "#tag3"]

    def test_drops_non_strings_and_blanks(self):
        assert normalize_hashtags([1, None, "", "  ", "ok"]) == ["#ok"]


class TestMetadataGenerator:
    """Test MetadataGenerator.generate"""

    def test_first_attempt_succeeds(self):
        generator, provider = make_generator(['{"title": "Trip Plan", "hashtags": ["travel", "#Paris"]}'])

        metadata = generator.generate("Book flights to Paris")

        assert metadata.title == "Trip Plan"
        assert metadata.hashtags == ["#travel", "#Paris"]
        assert len(provider.calls) == 1
        assert provider.calls[0]["response_format"] == {"type": "json_object"}
        assert provider.calls[0]["model"] == "gpt-4o-mini"

    def test_retry_with_backoff(self):
        sleeps = []
        generator, provider = make_generator(
            [RuntimeError("rate limited"), "not json", '{"title": "Third Time", "hashtags": []}'],
            sleeps=sleeps,
        )

        metadata = generator.generate("content")

        assert metadata.title == "Third Time"
        assert len(provider.calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_all_attempts_fail(self):
        sleeps = []
        generator, provider = make_generator(
            [RuntimeError("down"), RuntimeError("down"), RuntimeError("still down")],
            sleeps=sleeps,
        )

        with pytest.raises(MetadataGenerationError) as exc_info:
            generator.generate("content")

        assert len(provider.calls) == 3
        assert sleeps == [1.0, 2.0]
        assert "still down" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_empty_completion_is_a_failure(self):
        generator, provider = make_generator([None, "", '{"title": "Late", "hashtags": []}'])
        assert generator.generate("content").title == "Late"
        assert len(provider.calls) == 3

    def test_content_truncated_in_prompt(self):
        generator, provider = make_generator(['{"title": "Long", "hashtags": []}'])
        content = "a" * (MAX_CONTENT_CHARS + 500) + "TAIL"

        generator.generate(content)

        prompt = provider.calls[0]["messages"][0]["content"][0]["text"]
        assert "a" * MAX_CONTENT_CHARS in prompt
        assert "a" * (MAX_CONTENT_CHARS + 1) not in prompt
        assert "TAIL" not in prompt

    def test_images_attached(self):
        generator, provider = make_generator(['{"title": "Photo", "hashtags": []}'])

        generator.generate("Media: photo_1.jpg", images=["QUJD"])

        parts = provider.calls[0]["messages"][0]["content"]
        assert parts[0]["type"] == "text"
        assert parts[1] == {
            "type": "image_url",
            "image_url": {"url": "data:image/jpeg;base64,QUJD", "detail": "low"},
        }

    def test_images_skipped_without_vision(self):
        generator, provider = make_generator(['{"title": "Photo", "hashtags": []}'], vision=False)

        generator.generate("Media: photo_1.jpg", images=["QUJD"])

        parts = provider.calls[0]["messages"][0]["content"]
        assert len(parts) == 1
