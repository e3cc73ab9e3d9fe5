import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional

# ========== CRITICAL: Load environment variables BEFORE any config imports ==========
from dotenv import load_dotenv
load_dotenv()
# ========================================================================================

import structlog
from flask import Flask, jsonify, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from config import Settings, get_settings
from exceptions import GitSyncError, TelegramAPIError
from observability import TaskMetrics, configure_logging, metrics
from providers import get_llm_provider
from routes.webhook_routes import webhook_bp
from services.git_sync_service import GitSyncService
from services.metadata_service import MetadataGenerator
from services.task_processor import TaskProcessor
from services.task_queue import TaskQueue
from services.telegram_service import TelegramClient
from services.vault_service import VaultService

logger = structlog.get_logger()


@dataclass
class IngestServices:
    """Everything the webhook routes and the shutdown path need."""
    settings: Settings
    telegram: TelegramClient
    task_queue: TaskQueue
    git_sync: GitSyncService
    metrics: TaskMetrics


def build_services(settings: Settings) -> IngestServices:
    """Wire the pipeline: vault, metadata, git, processor, queue."""
    telegram = TelegramClient(settings.telegram_bot_token)
    vault = VaultService(
        vault_path=settings.obsidian_vault_path,
        notes_folder=settings.notes_folder_name,
        assets_folder=settings.assets_folder_name,
    )
    metadata_generator = MetadataGenerator(
        get_llm_provider(settings.openai_api_key),
        model=settings.openai_model,
        max_attempts=settings.metadata_max_retries,
        retry_delay=settings.metadata_retry_delay,
    )
    git_sync = GitSyncService(
        repo_path=settings.obsidian_vault_path,
        pull_interval_ms=settings.git_pull_interval_ms,
        initial_pull_delay=settings.git_initial_pull_delay_seconds,
        command_timeout=settings.git_command_timeout,
    )
    processor = TaskProcessor(
        vault=vault,
        metadata_generator=metadata_generator,
        git_sync=git_sync,
        download_media=telegram.download_file,
        send_reply=telegram.send_message,
        notify_on_success=settings.notify_on_success,
    )
    return IngestServices(
        settings=settings,
        telegram=telegram,
        task_queue=TaskQueue(processor, task_metrics=metrics),
        git_sync=git_sync,
        metrics=metrics,
    )


def create_app(settings: Optional[Settings] = None, services: Optional[IngestServices] = None) -> Flask:
    """
    Create the Flask app.

    Args:
        settings: Settings override (defaults to the global settings)
        services: Pre-built services (tests pass mocks here)
    """
    settings = settings or (services.settings if services else get_settings())
    settings.ensure_directories()

    app = Flask(__name__)
    app.extensions["ingest"] = services or build_services(settings)
    app.register_blueprint(webhook_bp)

    @app.errorhandler(404)
    def not_found(error):
        logger.warning("not_found", method=request.method, path=request.path)
        return jsonify({"error": "Not Found"}), 404

    @app.errorhandler(Exception)
    def unhandled_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.name}), error.code
        logger.error(
            "unhandled_error",
            error=str(error),
            path=request.path,
            method=request.method,
            exc_info=True,
        )
        return jsonify({"error": "Internal Server Error"}), 500

    return app


def _install_shutdown_handlers(server, services: IngestServices) -> None:
    """SIGTERM/SIGINT: stop pulling, stop serving, force exit after the grace period."""
    grace = services.settings.shutdown_grace_seconds
    shutting_down = threading.Event()

    def force_exit():
        logger.error("shutdown_timeout_forcing_exit", grace_seconds=grace)
        os._exit(1)

    def handle_signal(signum, frame):
        if shutting_down.is_set():
            return
        shutting_down.set()
        logger.warning("shutdown_signal_received", signal=signal.Signals(signum).name)
        services.git_sync.stop()

        timer = threading.Timer(grace, force_exit)
        timer.daemon = True
        timer.start()

        # serve_forever() runs on this thread; shutdown() must be called from another one
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def main() -> int:
    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging("error")
        logger.error("configuration_invalid", error=str(e))
        return 1

    configure_logging(settings.log_level)

    try:
        app = create_app(settings)
    except (FileNotFoundError, NotADirectoryError) as e:
        logger.error("vault_unavailable", error=str(e))
        return 1

    services: IngestServices = app.extensions["ingest"]

    try:
        services.git_sync.verify_repository()
        services.telegram.register_webhook(settings.server_url, settings.webhook_secret_token)
    except (GitSyncError, TelegramAPIError) as e:
        logger.error("startup_failed", error=str(e))
        return 1

    services.task_queue.start()

    server = make_server("0.0.0.0", settings.port, app, threaded=True)
    _install_shutdown_handlers(server, services)

    logger.info(
        "server_listening",
        port=settings.port,
        vault=str(settings.obsidian_vault_path),
        notes_folder=settings.notes_folder_name,
        assets_folder=settings.assets_folder_name,
    )
    services.git_sync.start()

    server.serve_forever()
    logger.info("http_server_closed")

    try:
        services.telegram.delete_webhook()
        logger.info("webhook_removed")
    except TelegramAPIError as e:
        logger.error("webhook_remove_failed", error=str(e))

    if not services.task_queue.stop(timeout=settings.shutdown_grace_seconds):
        logger.warning("exiting_with_queued_tasks", queue_length=services.task_queue.length())
    return 0


if __name__ == "__main__":
    sys.exit(main())
