"""
Vault path utilities.

File name sanitization so AI-generated titles and user-supplied attachment
names are safe on Windows, macOS and Linux, and helpers to keep paths
relative to the vault root.
"""

import re
import time
from pathlib import Path

# Characters rejected by at least one common filesystem
INVALID_FILENAME_CHARS = re.compile(r'[/\\?%*:|"<>]')
DASH_RUN = re.compile(r'-+')

MAX_FILENAME_LENGTH = 100


class VaultPathError(Exception):
    """Raised when a path operation cannot be resolved inside the vault."""
    pass


def sanitize_filename(name: str, is_note: bool = True) -> str:
    """
    Turn an arbitrary string into a file name stem.

    Args:
        name: Proposed name (AI title or original attachment stem)
        is_note: Notes additionally lose a trailing period (Windows rejects it)

    Returns:
        Sanitized name, never empty

    Examples:
        >>> sanitize_filename('Meeting: Q3/Q4 "plan"')
        'Meeting- Q3-Q4 -plan'

        >>> sanitize_filename('///')
        'file-1718000000000'
    """
    sanitized = INVALID_FILENAME_CHARS.sub('-', name or '')
    sanitized = DASH_RUN.sub('-', sanitized)
    sanitized = sanitized.strip('-')
    sanitized = sanitized[:MAX_FILENAME_LENGTH]
    if is_note and sanitized.endswith('.'):
        sanitized = sanitized[:-1]
    if not sanitized:
        sanitized = f"file-{int(time.time() * 1000)}"
    return sanitized


def get_vault_relative_path(vault_root: Path, absolute_path: Path) -> str:
    """
    Get the vault-relative path for an absolute path.

    Args:
        vault_root: Root directory of the vault
        absolute_path: Absolute path within vault

    Returns:
        Relative path as a POSIX string (e.g., "Inbox/Daily Log.md")

    Raises:
        VaultPathError: If absolute_path is not within vault
    """
    try:
        relative = Path(absolute_path).resolve().relative_to(Path(vault_root).resolve())
        return relative.as_posix()
    except ValueError:
        raise VaultPathError(f"Path {absolute_path} is not within vault {vault_root}")
