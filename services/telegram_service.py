# services/telegram_service.py
"""
Telegram Bot API client and update parsing.

The client covers the handful of Bot API methods the bot needs: replies,
file downloads, webhook management and message reactions. parse_update()
turns a raw webhook update into an IngestionTask.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import requests
import structlog

from exceptions import MediaDownloadError, TelegramAPIError
from models import IngestionTask, MediaRef

logger = structlog.get_logger()

TELEGRAM_API_BASE = "https://api.telegram.org"
API_TIMEOUT = 30
DOWNLOAD_TIMEOUT = 120


class TelegramClient:
    """Thin wrapper over the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        api_base: str = TELEGRAM_API_BASE,
        session: Optional[requests.Session] = None,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()

    @property
    def _method_url(self) -> str:
        return f"{self.api_base}/bot{self.token}"

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call a Bot API method and return its `result`.

        Raises:
            TelegramAPIError: On transport errors or ok=false
        """
        url = f"{self._method_url}/{method}"
        try:
            response = self.session.post(url, json=payload or {}, timeout=API_TIMEOUT)
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise TelegramAPIError(f"Telegram {method} failed: {e}") from e

        if not body.get("ok"):
            description = body.get("description") or f"HTTP {response.status_code}"
            raise TelegramAPIError(f"Telegram {method} failed: {description}")
        return body.get("result")

    def send_message(self, chat_id: int | str, text: str) -> None:
        """Send a plain-text message to a chat."""
        self._call("sendMessage", {"chat_id": chat_id, "text": text})

    def set_message_reaction(self, chat_id: int | str, message_id: int, emoji: str = "💯") -> None:
        """React to a message (used to acknowledge receipt)."""
        self._call(
            "setMessageReaction",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "reaction": [{"type": "emoji", "emoji": emoji}],
            },
        )

    def get_file_url(self, file_id: str) -> str:
        """Resolve a file id to a download URL."""
        result = self._call("getFile", {"file_id": file_id})
        file_path = (result or {}).get("file_path")
        if not file_path:
            raise TelegramAPIError(f"Telegram getFile returned no file_path for {file_id}")
        return f"{self.api_base}/file/bot{self.token}/{file_path}"

    def download_file(self, file_id: str) -> bytes:
        """
        Download the bytes behind a file id.

        Raises:
            MediaDownloadError: If the file cannot be resolved or fetched
        """
        try:
            url = self.get_file_url(file_id)
            response = self.session.get(url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except (TelegramAPIError, requests.RequestException) as e:
            raise MediaDownloadError(f"Failed to download media: {e}") from e
        return response.content

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"url": url}
        if secret_token:
            payload["secret_token"] = secret_token
        self._call("setWebhook", payload)

    def get_webhook_info(self) -> Dict[str, Any]:
        return self._call("getWebhookInfo") or {}

    def delete_webhook(self) -> None:
        self._call("deleteWebhook")

    def register_webhook(self, url: str, secret_token: Optional[str] = None) -> Dict[str, Any]:
        """
        Set the webhook and confirm Telegram reports it.

        Raises:
            TelegramAPIError: If Telegram does not report any webhook URL afterwards
        """
        logger.info("webhook_registering", url=url.rsplit("/", 1)[0] + "/<token>")
        self.set_webhook(url, secret_token)
        info = self.get_webhook_info()
        if not info.get("url"):
            raise TelegramAPIError("Webhook URL was not set successfully")
        if info.get("url") != url:
            logger.warning("webhook_url_mismatch")
        logger.info("webhook_registered", pending_updates=info.get("pending_update_count"))
        return info


# ========================================================================
# UPDATE PARSING
# ========================================================================

def _media_from_message(message: Dict[str, Any], text: Optional[str]) -> Optional[MediaRef]:
    message_id = message["message_id"]

    if message.get("photo"):
        # Telegram lists sizes ascending; the last one is the largest
        photo = message["photo"][-1]
        return MediaRef(file_id=photo["file_id"], file_name=f"photo_{message_id}.jpg", kind="photo")

    video = message.get("video")
    if video:
        mime_type = video.get("mime_type")
        extension = mime_type.split("/")[1] if mime_type and "/" in mime_type else "mp4"
        return MediaRef(
            file_id=video["file_id"],
            file_name=f"video_{message_id}_{video['file_id']}.{extension}",
            mime_type=mime_type,
            kind="video",
        )

    document = message.get("document")
    if document:
        mime_type = document.get("mime_type") or ""
        # Documents next to text are only kept when they are images or videos
        if not text or mime_type.startswith(("image/", "video/")):
            return MediaRef(
                file_id=document["file_id"],
                file_name=document.get("file_name") or f"document_{message_id}",
                mime_type=document.get("mime_type"),
                kind="document",
            )
        logger.info("document_ignored_text_present", file_name=document.get("file_name"))

    return None


def _forward_source(message: Dict[str, Any]) -> Optional[str]:
    chat = message.get("forward_from_chat")
    if not chat:
        return None

    chat_type = chat.get("type")
    if chat_type == "channel" and chat.get("username") and chat.get("id"):
        return f"https://t.me/{chat['username']}/{message.get('forward_from_message_id')}"
    if chat_type == "private":
        name = f"{chat.get('first_name') or ''} {chat.get('last_name') or ''}".strip()
        username = f"@{chat['username']}" if chat.get("username") else ""
        return f"Forwarded from {name} ({username or 'private chat'})".strip()
    if chat_type in ("group", "supergroup"):
        return f"Forwarded from group {chat.get('title') or chat.get('id')}"
    return None


def parse_update(update: Dict[str, Any]) -> Optional[IngestionTask]:
    """
    Build an IngestionTask from a Telegram update.

    Returns:
        The task, or None for updates the bot does not handle
        (no message, non-private chats)
    """
    message = update.get("message")
    if not message:
        return None

    chat = message.get("chat") or {}
    if chat.get("type") != "private":
        logger.info("non_private_chat_ignored", chat_id=chat.get("id"), title=chat.get("title"))
        return None

    text = message.get("text") or message.get("caption")
    sender = message.get("from") or {}
    username = sender.get("username") or (
        f"{sender.get('first_name') or ''} {sender.get('last_name') or ''}".strip()
    )

    forward_source_link = _forward_source(message)
    if message.get("forward_from_chat"):
        logger.info("forwarded_message", source=forward_source_link or "Not available")

    return IngestionTask(
        chat_id=chat["id"],
        message_id=message["message_id"],
        text=text,
        media=_media_from_message(message, text),
        forward_source_link=forward_source_link,
        user_id=sender.get("id"),
        username=username or None,
        message_date=message.get("forward_date") or message.get("edit_date") or message["date"],
    )
