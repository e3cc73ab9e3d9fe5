"""
Pydantic models for the ingestion pipeline.

An IngestionTask is built from a Telegram update by the webhook listener,
queued, and consumed exactly once by the task processor.
"""

import base64
from dataclasses import dataclass
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator


FALLBACK_HASHTAGS = ["#uncategorized", "#ai-error"]


class MediaRef(BaseModel):
    """Reference to a file stored on Telegram's side (not the bytes)."""

    model_config = ConfigDict(frozen=True)

    file_id: str = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1)
    mime_type: Optional[str] = None
    kind: Literal["photo", "video", "document"]


class IngestionTask(BaseModel):
    """One inbound message waiting to be turned into a note."""

    model_config = ConfigDict(frozen=True)

    chat_id: int
    message_id: int
    text: Optional[str] = None
    media: Optional[MediaRef] = None
    forward_source_link: Optional[str] = None
    user_id: Optional[int] = None
    username: Optional[str] = None
    message_date: int = Field(..., description="Unix timestamp of the original message")

    def has_content(self) -> bool:
        """True when there is something to save (text or media)."""
        return bool(self.text) or self.media is not None

    def redacted(self) -> dict:
        """Dump for logging, without the Telegram file id."""
        data = self.model_dump()
        if data.get("media"):
            data["media"]["file_id"] = "REDACTED"
        return data


class NoteMetadata(BaseModel):
    """Title and hashtags attached to a note."""

    title: str = Field(..., min_length=1)
    hashtags: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Titles are used as file names; whitespace-only is not allowed."""
        if not v.strip():
            raise ValueError("Title cannot be empty or whitespace")
        return v.strip()

    @classmethod
    def fallback(cls, message_id: int) -> "NoteMetadata":
        """Deterministic metadata used when AI enrichment fails."""
        return cls(
            title=f"Uncategorized Note - {message_id}",
            hashtags=list(FALLBACK_HASHTAGS),
        )


@dataclass
class DownloadedMedia:
    """Bytes of a downloaded attachment, alive for one task only."""
    content: bytes
    file_name: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.content).decode("ascii")


@dataclass
class TaskOutcome:
    """Result of processing one task, recorded for observability."""
    message_id: int
    chat_id: int
    status: str
    duration_ms: float
    error: Optional[str] = None
