"""
Webhook Routes Blueprint

Receives Telegram updates, turns them into ingestion tasks and queues them.
The response is always sent quickly; all heavy lifting happens on the task
queue's worker thread.
"""

import hmac

import structlog
from flask import Blueprint, current_app, jsonify, request

from services.telegram_service import parse_update

logger = structlog.get_logger()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

# Create blueprint
webhook_bp = Blueprint('webhook', __name__)


def _services():
    return current_app.extensions["ingest"]


def _secret_matches(expected: str) -> bool:
    received = request.headers.get(SECRET_HEADER, "")
    return hmac.compare_digest(received.encode(), expected.encode())


@webhook_bp.post("/webhook/<token>")
def telegram_webhook(token: str):
    """Entry point for Telegram updates (the path carries the bot token)"""
    services = _services()
    settings = services.settings

    if not hmac.compare_digest(token.encode(), settings.telegram_bot_token.encode()):
        return jsonify({"error": "Not Found"}), 404

    if settings.webhook_secret_token and not _secret_matches(settings.webhook_secret_token):
        logger.warning("webhook_invalid_secret_token", remote_addr=request.remote_addr)
        return jsonify({"error": "Invalid webhook secret token"}), 403

    update = request.get_json(silent=True) or {}
    logger.debug("webhook_update_received", update_id=update.get("update_id"))

    message = update.get("message") or {}
    user_id = (message.get("from") or {}).get("id")
    if message and not settings.is_user_allowed(user_id):
        logger.warning("unauthorized_user", user_id=user_id)
        if user_id:
            try:
                services.telegram.send_message(user_id, "Please contact the admin to get access.")
            except Exception as e:
                logger.error("unauthorized_reply_failed", user_id=user_id, error=str(e))
        return jsonify({"ok": True})

    try:
        task = parse_update(update)
    except (KeyError, TypeError, ValueError) as e:
        logger.error("update_parse_failed", update_id=update.get("update_id"), error=str(e))
        return jsonify({"ok": True})

    if task is None:
        return jsonify({"ok": True})

    logger.info("message_received", chat_id=task.chat_id, message_id=task.message_id)

    try:
        queued = services.task_queue.enqueue(task)
    except Exception as e:
        logger.error("enqueue_failed", message_id=task.message_id, error=str(e), exc_info=True)
        try:
            services.telegram.send_message(
                task.chat_id,
                f"❌ Sorry, there was an error adding your message {task.message_id} to the queue.",
            )
        except Exception as reply_error:
            logger.error("reply_failed", chat_id=task.chat_id, error=str(reply_error))
        return jsonify({"ok": True})

    if queued:
        try:
            services.telegram.set_message_reaction(task.chat_id, task.message_id)
        except Exception as e:
            logger.warning("reaction_failed", message_id=task.message_id, error=str(e))

    return jsonify({"ok": True})


@webhook_bp.get("/health")
def health():
    """Liveness plus queue, git and task statistics"""
    services = _services()
    return jsonify({
        "status": "ok",
        "queue_length": services.task_queue.length(),
        "git": services.git_sync.get_status(),
        "tasks": services.metrics.summary(),
    }), 200
