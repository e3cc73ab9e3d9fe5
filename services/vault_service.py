"""
Vault Service - note and asset persistence

This service handles:
- Collision-free note file names derived from titles
- Timestamped asset file names
- Writing note and asset files into the vault folders

Used by: services/task_processor.py
"""

import time
from pathlib import Path
from typing import Optional

import structlog

from config import get_settings
from exceptions import VaultWriteError
from utils.vault_security import sanitize_filename, VaultPathError

logger = structlog.get_logger()

MAX_NAME_ATTEMPTS = 100


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class VaultService:
    """
    Writes notes and assets into the vault.

    Both folders are append-only from the pipeline's point of view: names are
    chosen so that an existing file is never overwritten.
    """

    def __init__(
        self,
        vault_path: Optional[Path] = None,
        notes_folder: Optional[str] = None,
        assets_folder: Optional[str] = None,
    ):
        """
        Initialize the vault service.

        Args:
            vault_path: Optional vault path override. If None, uses config settings.
            notes_folder: Optional notes folder name override.
            assets_folder: Optional assets folder name override.
        """
        if vault_path is None or notes_folder is None or assets_folder is None:
            settings = get_settings()
            vault_path = vault_path or settings.obsidian_vault_path
            notes_folder = notes_folder or settings.notes_folder_name
            assets_folder = assets_folder or settings.assets_folder_name

        self.vault_path = Path(vault_path)
        self.notes_folder = notes_folder
        self.assets_folder = assets_folder

    @property
    def notes_path(self) -> Path:
        return self.vault_path / self.notes_folder

    @property
    def assets_path(self) -> Path:
        return self.vault_path / self.assets_folder

    def save_asset(self, content: bytes, original_name: str) -> str:
        """
        Save an attachment to the vault's assets folder.

        The epoch-millisecond prefix is the only uniqueness guard; no
        collision probe is made.

        Args:
            content: Raw file bytes
            original_name: File name as received (used for stem and extension)

        Returns:
            Vault-relative path with forward slashes, e.g. "assets/1718000000000-photo_42.jpg"

        Raises:
            VaultWriteError: If the file cannot be written
        """
        original = Path(original_name)
        sanitized_base = sanitize_filename(original.stem, is_note=False)
        extension = original.suffix or ".unknown"
        filename = f"{_epoch_millis()}-{sanitized_base}{extension}"
        full_path = self.assets_path / filename

        try:
            logger.info("asset_saving", path=str(full_path), size_bytes=len(content))
            self.assets_path.mkdir(parents=True, exist_ok=True)
            full_path.write_bytes(content)
        except OSError as e:
            logger.error("asset_save_failed", filename=filename, error=str(e))
            raise VaultWriteError(f"Failed to write asset file: {e}") from e

        logger.info("asset_saved", filename=filename)
        return f"{self.assets_folder}/{filename}"

    def get_unique_note_filename(self, title: str) -> str:
        """
        Resolve a free note file name for a title.

        "<title>.md" first, then "<title>-1.md", "<title>-2.md", ...

        Raises:
            VaultPathError: If no free name was found within 100 attempts
        """
        sanitized_title = sanitize_filename(title, is_note=True)
        candidate = f"{sanitized_title}.md"
        counter = 0

        while (self.notes_path / candidate).exists():
            counter += 1
            if counter > MAX_NAME_ATTEMPTS:
                logger.error("note_filename_exhausted", title=sanitized_title, attempts=MAX_NAME_ATTEMPTS)
                raise VaultPathError(f"Failed to find unique filename for {sanitized_title}")
            candidate = f"{sanitized_title}-{counter}.md"

        logger.debug("note_filename_resolved", filename=candidate)
        return candidate

    def save_note(self, title: str, content: str) -> Path:
        """
        Save a note under a unique file name derived from its title.

        Args:
            title: Note title (AI-generated or fallback)
            content: Full markdown body including the metadata block

        Returns:
            Absolute path of the written note

        Raises:
            VaultWriteError: If the file cannot be written
        """
        try:
            filename = self.get_unique_note_filename(title)
        except VaultPathError as e:
            # Every "<title>-n.md" is taken
            filename = f"fallback-note-{_epoch_millis()}.md"
            logger.warning("note_filename_fallback", title=title, filename=filename, error=str(e))

        full_path = self.notes_path / filename

        try:
            logger.info("note_saving", path=str(full_path))
            self.notes_path.mkdir(parents=True, exist_ok=True)
            # Exclusive create: never clobber a note written in between
            with full_path.open("x", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            logger.error("note_save_failed", filename=filename, error=str(e))
            raise VaultWriteError(f"Failed to write note file: {e}") from e

        logger.info("note_saved", filename=filename)
        return full_path
