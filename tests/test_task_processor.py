"""
Tests for services/task_processor.py

Tests cover:
- Text-only and media pipelines
- Metadata fallback and warning reply
- Fatal failures (download, git) and the single failure reply
- Note formatting (metadata block, embeds, timestamps)
"""

import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from exceptions import GitSyncError, MediaDownloadError, MetadataGenerationError
from models import IngestionTask, MediaRef, NoteMetadata
from services.metadata_service import MetadataGenerator
from services.task_processor import (
    TaskProcessor,
    assemble_note,
    commit_message_for,
    format_metadata_block,
    format_timestamp,
)
from services.vault_service import VaultService

SAVED_AT = datetime(2025, 3, 14, 9, 5, 0, tzinfo=timezone.utc)


def make_task(**overrides):
    values = dict(
        chat_id=555,
        message_id=42,
        text="Buy milk and eggs",
        user_id=555,
        username="alice",
        message_date=1700000000,
    )
    values.update(overrides)
    return IngestionTask(**values)


@pytest.fixture
def vault(tmp_path):
    return VaultService(vault_path=tmp_path, notes_folder="Inbox", assets_folder="assets")


@pytest.fixture
def pipeline(vault):
    """Processor wired to a real vault and mocked collaborators"""
    metadata_generator = Mock()
    metadata_generator.generate.return_value = NoteMetadata(title="Shopping List", hashtags=["#groceries"])
    git_sync = Mock()
    git_sync.commit_and_push.return_value = True
    download_media = Mock(return_value=b"\xff\xd8\xffjpeg-bytes")
    send_reply = Mock()

    processor = TaskProcessor(
        vault=vault,
        metadata_generator=metadata_generator,
        git_sync=git_sync,
        download_media=download_media,
        send_reply=send_reply,
    )
    return processor, metadata_generator, git_sync, download_media, send_reply


def notes_in(vault):
    return sorted(vault.notes_path.glob("*.md")) if vault.notes_path.exists() else []


class TestTextPipeline:
    """Text-only messages"""

    def test_note_written_and_committed(self, pipeline, vault):
        processor, metadata_generator, git_sync, download_media, send_reply = pipeline

        processor.process(make_task())

        note = vault.notes_path / "Shopping List.md"
        content = note.read_text(encoding="utf-8")
        assert content.startswith("Buy milk and eggs\n\n---\nSaved At: ")
        assert "From User: @alice (ID: 555)" in content
        assert "Tags: #groceries" in content

        metadata_generator.generate.assert_called_once_with("Buy milk and eggs", None)
        download_media.assert_not_called()
        git_sync.commit_and_push.assert_called_once_with([note], "Add note: Shopping List")
        send_reply.assert_not_called()

    def test_callable(self, pipeline, vault):
        processor = pipeline[0]
        processor(make_task())
        assert len(notes_in(vault)) == 1

    def test_success_notification_opt_in(self, pipeline, vault):
        processor, _, _, _, send_reply = pipeline
        processor.notify_on_success = True

        processor.process(make_task())

        send_reply.assert_called_once()
        assert "Shopping List" in send_reply.call_args.args[1]

    def test_deferred_publish_is_not_a_failure(self, pipeline, vault):
        processor, _, git_sync, _, send_reply = pipeline
        git_sync.commit_and_push.return_value = False

        processor.process(make_task())

        assert len(notes_in(vault)) == 1
        send_reply.assert_not_called()


class TestMediaPipeline:
    """Messages with attachments"""

    def test_photo_saved_and_embedded(self, pipeline, vault):
        processor, metadata_generator, git_sync, download_media, _ = pipeline
        media = MediaRef(file_id="file-1", file_name="photo_42.jpg", kind="photo")

        with patch("services.vault_service._epoch_millis", return_value=1718000000000):
            processor.process(make_task(text=None, media=media))

        asset = vault.vault_path / "assets" / "1718000000000-photo_42.jpg"
        assert asset.read_bytes() == b"\xff\xd8\xffjpeg-bytes"
        download_media.assert_called_once_with("file-1")

        content, images = metadata_generator.generate.call_args.args
        assert content == "Media: photo_42.jpg"
        assert len(images) == 1

        note = vault.notes_path / "Shopping List.md"
        assert note.read_text().startswith("\n\n![[assets/1718000000000-photo_42.jpg]]\n\n---\n")

        committed = git_sync.commit_and_push.call_args.args[0]
        assert committed == [note, asset]

    def test_caption_used_for_metadata(self, pipeline):
        processor, metadata_generator, _, _, _ = pipeline
        media = MediaRef(file_id="file-1", file_name="photo_42.jpg", kind="photo")

        processor.process(make_task(text="Sunset at the pier", media=media))

        assert metadata_generator.generate.call_args.args[0] == "Sunset at the pier"

    def test_non_image_not_sent_to_ai(self, pipeline):
        processor, metadata_generator, _, _, _ = pipeline
        media = MediaRef(file_id="file-2", file_name="report.pdf", mime_type="application/pdf", kind="document")

        processor.process(make_task(text=None, media=media))

        assert metadata_generator.generate.call_args.args == ("Media: report.pdf", None)

    def test_image_document_sent_to_ai(self, pipeline):
        processor, metadata_generator, _, _, _ = pipeline
        media = MediaRef(file_id="file-3", file_name="scan.png", mime_type="image/png", kind="document")

        processor.process(make_task(text=None, media=media))

        assert metadata_generator.generate.call_args.args[1] is not None

    def test_download_failure(self, pipeline, vault):
        processor, metadata_generator, git_sync, download_media, send_reply = pipeline
        download_media.side_effect = ConnectionError("connection reset")
        media = MediaRef(file_id="file-1", file_name="photo_42.jpg", kind="photo")

        with pytest.raises(MediaDownloadError):
            processor.process(make_task(media=media))

        assert notes_in(vault) == []
        metadata_generator.generate.assert_not_called()
        git_sync.commit_and_push.assert_not_called()
        send_reply.assert_called_once()
        reply = send_reply.call_args.args[1]
        assert reply.startswith("❌ Failed to save note from message 42. Error: ")
        assert "connection reset" in reply


class TestMetadataFallback:
    """AI failures fall back to uncategorized notes"""

    def test_fallback_note(self, pipeline, vault):
        processor, metadata_generator, git_sync, _, send_reply = pipeline
        metadata_generator.generate.side_effect = MetadataGenerationError("quota exceeded")

        processor.process(make_task())

        note = vault.notes_path / "Uncategorized Note - 42.md"
        assert "Tags: #uncategorized #ai-error" in note.read_text()
        git_sync.commit_and_push.assert_called_once_with([note], "Add note: Uncategorized Note - 42")
        send_reply.assert_called_once_with(
            555, "⚠️ Failed to get AI categorization for message 42. Saved as uncategorized."
        )

    def test_fallback_after_real_retries(self, vault):
        provider = Mock()
        provider.supports_vision.return_value = True
        provider.chat_completion.side_effect = RuntimeError("service unavailable")
        generator = MetadataGenerator(provider, model="gpt-4o-mini", max_attempts=3, retry_delay=1.0, sleep=lambda _: None)
        git_sync = Mock()
        git_sync.commit_and_push.return_value = True
        send_reply = Mock()

        processor = TaskProcessor(vault, generator, git_sync, Mock(), send_reply)
        processor.process(make_task(message_id=9))

        assert provider.chat_completion.call_count == 3
        assert (vault.notes_path / "Uncategorized Note - 9.md").exists()
        send_reply.assert_called_once()


class TestFatalFailures:
    """Failures after the note is written"""

    def test_git_failure_keeps_note(self, pipeline, vault):
        processor, _, git_sync, _, send_reply = pipeline
        git_sync.commit_and_push.side_effect = GitSyncError("Git operation failed: push rejected")

        with pytest.raises(GitSyncError):
            processor.process(make_task())

        assert (vault.notes_path / "Shopping List.md").exists()
        send_reply.assert_called_once()
        assert "push rejected" in send_reply.call_args.args[1]

    def test_error_text_truncated_in_reply(self, pipeline):
        processor, _, git_sync, _, send_reply = pipeline
        git_sync.commit_and_push.side_effect = GitSyncError("x" * 300)

        with pytest.raises(GitSyncError):
            processor.process(make_task())

        reply = send_reply.call_args.args[1]
        assert reply == f"❌ Failed to save note from message 42. Error: {'x' * 100}..."

    def test_reply_failure_does_not_mask_error(self, pipeline):
        processor, _, git_sync, _, send_reply = pipeline
        git_sync.commit_and_push.side_effect = GitSyncError("push rejected")
        send_reply.side_effect = RuntimeError("telegram down")

        with pytest.raises(GitSyncError):
            processor.process(make_task())


class TestFormatting:
    """Note and commit formatting helpers"""

    def test_format_timestamp(self):
        assert format_timestamp(SAVED_AT) == "3/14/2025, 9:05:00 AM"
        assert format_timestamp(datetime(2025, 12, 1, 0, 0, 7, tzinfo=timezone.utc)) == "12/1/2025, 12:00:07 AM"
        assert format_timestamp(datetime(2025, 12, 1, 12, 30, 0, tzinfo=timezone.utc)) == "12/1/2025, 12:30:00 PM"
        assert format_timestamp(datetime(2025, 12, 1, 23, 59, 59, tzinfo=timezone.utc)) == "12/1/2025, 11:59:59 PM"

    def test_metadata_block_full(self):
        task = make_task(forward_source_link="https://t.me/news/17", message_date=0)
        block = format_metadata_block(task, ["#a", "#b"], saved_at=SAVED_AT)

        assert block.split("\n") == [
            "Saved At: 3/14/2025, 9:05:00 AM",
            "From User: @alice (ID: 555)",
            "Original Date: 1/1/1970, 12:00:00 AM",
            "Source: https://t.me/news/17",
            "Tags: #a #b",
        ]

    def test_metadata_block_minimal(self):
        task = make_task(user_id=None, username=None, message_date=0)
        block = format_metadata_block(task, [], saved_at=SAVED_AT)

        assert block == "Saved At: 3/14/2025, 9:05:00 AM\nOriginal Date: 1/1/1970, 12:00:00 AM"

    def test_user_without_username(self):
        task = make_task(username=None)
        block = format_metadata_block(task, [], saved_at=SAVED_AT)
        assert "From User: 555" in block

    def test_assemble_note_with_asset(self):
        task = make_task(text="Look")
        metadata = NoteMetadata(title="T", hashtags=[])
        note = assemble_note(task, metadata, "assets\\1-photo.jpg", saved_at=SAVED_AT)
        assert note.startswith("Look\n\n![[assets/1-photo.jpg]]\n\n---\nSaved At: ")

    def test_commit_message(self):
        assert commit_message_for("Short title") == "Add note: Short title"
        long_title = "t" * 60
        assert commit_message_for(long_title) == f"Add note: {'t' * 50}..."
        assert commit_message_for("t" * 50) == f"Add note: {'t' * 50}"
