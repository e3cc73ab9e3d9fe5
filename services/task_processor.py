"""
Task Processor

Turns one IngestionTask into a committed note:

    download media -> save asset -> generate metadata -> save note -> commit + push

Failure policy per step:
- download, asset write, note write, commit/push: fatal to the task. The user
  gets exactly one failure reply and the error is re-raised for the queue.
- metadata generation: falls back to "Uncategorized Note - <id>" and the user
  gets a warning reply; processing continues.

Files already written stay on disk when a later step fails; the git service
keeps them as pending and publishes them with the next successful commit.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import structlog

from exceptions import MediaDownloadError
from models import DownloadedMedia, IngestionTask, MediaRef, NoteMetadata
from services.git_sync_service import GitSyncService
from services.metadata_service import MetadataGenerator
from services.vault_service import VaultService

logger = structlog.get_logger()

COMMIT_TITLE_LIMIT = 50
ERROR_REPLY_LIMIT = 100


def format_timestamp(value: datetime) -> str:
    """UTC, e.g. '3/14/2025, 9:05:00 AM'."""
    value = value.astimezone(timezone.utc)
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{value.month}/{value.day}/{value.year}, {hour}:{value.minute:02d}:{value.second:02d} {meridiem}"


def format_metadata_block(task: IngestionTask, hashtags: List[str], saved_at: Optional[datetime] = None) -> str:
    """Metadata lines appended below the '---' separator, in fixed order."""
    lines = [f"Saved At: {format_timestamp(saved_at or datetime.now(timezone.utc))}"]

    if task.user_id:
        if task.username:
            lines.append(f"From User: @{task.username} (ID: {task.user_id})")
        else:
            lines.append(f"From User: {task.user_id}")

    original = datetime.fromtimestamp(task.message_date, tz=timezone.utc)
    lines.append(f"Original Date: {format_timestamp(original)}")

    if task.forward_source_link:
        lines.append(f"Source: {task.forward_source_link}")
    if hashtags:
        lines.append(f"Tags: {' '.join(hashtags)}")

    return "\n".join(lines)


def assemble_note(
    task: IngestionTask,
    metadata: NoteMetadata,
    asset_path: Optional[str] = None,
    saved_at: Optional[datetime] = None,
) -> str:
    """Body text, optional embedded asset, separator, metadata block."""
    body = task.text or ""
    if asset_path:
        link = asset_path.replace("\\", "/")
        body += f"\n\n![[{link}]]"
    body += f"\n\n---\n{format_metadata_block(task, metadata.hashtags, saved_at)}"
    return body


def commit_message_for(title: str) -> str:
    suffix = "..." if len(title) > COMMIT_TITLE_LIMIT else ""
    return f"Add note: {title[:COMMIT_TITLE_LIMIT]}{suffix}"


def is_image(media: Optional[MediaRef]) -> bool:
    if media is None:
        return False
    return media.kind == "photo" or (media.mime_type or "").startswith("image/")


def describe_for_ai(task: IngestionTask) -> str:
    if task.text:
        return task.text
    return f"Media: {task.media.file_name if task.media else 'attached file'}"


class TaskProcessor:
    """
    Runs the ingestion pipeline for one task at a time.
    """

    def __init__(
        self,
        vault: VaultService,
        metadata_generator: MetadataGenerator,
        git_sync: GitSyncService,
        download_media: Callable[[str], bytes],
        send_reply: Callable[[int, str], None],
        notify_on_success: bool = False,
    ):
        """
        Args:
            vault: Writes notes and assets
            metadata_generator: Produces title and hashtags
            git_sync: Commits and pushes written files
            download_media: Resolves a Telegram file id to bytes
            send_reply: Delivers a text reply to a chat
            notify_on_success: Reply after the note was published
        """
        self.vault = vault
        self.metadata_generator = metadata_generator
        self.git_sync = git_sync
        self.download_media = download_media
        self.send_reply = send_reply
        self.notify_on_success = notify_on_success

    def __call__(self, task: IngestionTask) -> None:
        self.process(task)

    def _reply(self, chat_id: int, text: str) -> None:
        try:
            self.send_reply(chat_id, text)
        except Exception as e:
            logger.error("reply_failed", chat_id=chat_id, error=str(e))

    def _download(self, media: MediaRef) -> DownloadedMedia:
        logger.info("media_downloading", file_name=media.file_name, kind=media.kind)
        try:
            content = self.download_media(media.file_id)
        except MediaDownloadError:
            raise
        except Exception as e:
            raise MediaDownloadError(f"Failed to download media: {e}") from e

        logger.info("media_downloaded", file_name=media.file_name, size_bytes=len(content))
        return DownloadedMedia(content=content, file_name=media.file_name)

    def _generate_metadata(self, task: IngestionTask, downloaded: Optional[DownloadedMedia]) -> NoteMetadata:
        images = [downloaded.base64] if downloaded and is_image(task.media) else None
        try:
            return self.metadata_generator.generate(describe_for_ai(task), images)
        except Exception as e:
            logger.error("metadata_fallback", message_id=task.message_id, error=str(e))
            self._reply(
                task.chat_id,
                f"⚠️ Failed to get AI categorization for message {task.message_id}. Saved as uncategorized.",
            )
            return NoteMetadata.fallback(task.message_id)

    def process(self, task: IngestionTask) -> None:
        """
        Run the pipeline for one task.

        Raises:
            Exception: The first fatal error, after the user was notified
        """
        asset_files: List[Path] = []
        asset_path: Optional[str] = None

        try:
            downloaded = self._download(task.media) if task.media else None

            if downloaded:
                asset_path = self.vault.save_asset(downloaded.content, downloaded.file_name)
                asset_files.append(self.vault.vault_path / asset_path)

            metadata = self._generate_metadata(task, downloaded)

            note_content = assemble_note(task, metadata, asset_path)
            note_path = self.vault.save_note(metadata.title, note_content)
            logger.info("note_saved_locally", path=str(note_path), message_id=task.message_id)

            published = self.git_sync.commit_and_push(
                [note_path, *asset_files],
                commit_message_for(metadata.title),
            )
            if published:
                logger.info("note_published", title=metadata.title, message_id=task.message_id)
                if self.notify_on_success:
                    self._reply(task.chat_id, f"✅ Note \"{metadata.title}\" saved.")
            else:
                logger.warning("note_publish_deferred", title=metadata.title, message_id=task.message_id)

        except Exception as e:
            logger.error("task_failed_notifying", message_id=task.message_id, error=str(e))
            self._reply(
                task.chat_id,
                f"❌ Failed to save note from message {task.message_id}. Error: {str(e)[:ERROR_REPLY_LIMIT]}...",
            )
            raise
