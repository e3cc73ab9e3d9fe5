"""
Git Sync Service

Keeps the vault working copy in step with its remote.

This service encapsulates:
- Pull with autostash of local changes (periodic, via APScheduler)
- Commit and push of the files written by one task
- A non-blocking busy guard: a pull and a commit/push never overlap, and a
  caller that finds the guard taken is skipped, not queued
- The pending-publish set: files whose commit/push was skipped or failed,
  swept up by the next successful commit/push
"""

import subprocess
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler

from config import get_settings
from exceptions import GitSyncError
from utils.vault_security import get_vault_relative_path

logger = structlog.get_logger()

AUTOSTASH_PREFIX = "obsidian-bot-autostash"


class GitSyncService:
    """
    Serializes git operations against the vault repository.
    """

    def __init__(
        self,
        repo_path: Optional[Path] = None,
        pull_interval_ms: Optional[int] = None,
        initial_pull_delay: Optional[float] = None,
        command_timeout: Optional[int] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """
        Initialize the git sync service.

        Args:
            repo_path: Vault working copy. If None, uses config settings.
            pull_interval_ms: Periodic pull interval (0 disables). If None, uses config settings.
            initial_pull_delay: Seconds before the first pull after start().
            command_timeout: Timeout in seconds for one git subprocess.
            runner: subprocess.run compatible callable (tests inject a fake)
        """
        if repo_path is None or pull_interval_ms is None or initial_pull_delay is None or command_timeout is None:
            settings = get_settings()
            repo_path = repo_path or settings.obsidian_vault_path
            pull_interval_ms = pull_interval_ms if pull_interval_ms is not None else settings.git_pull_interval_ms
            if initial_pull_delay is None:
                initial_pull_delay = settings.git_initial_pull_delay_seconds
            command_timeout = command_timeout or settings.git_command_timeout

        self.repo_path = Path(repo_path)
        self.pull_interval_ms = pull_interval_ms
        self.initial_pull_delay = initial_pull_delay
        self.command_timeout = command_timeout
        self._runner = runner

        self.scheduler: Optional[BackgroundScheduler] = None
        self.is_running = False

        # Busy guard shared by pull() and commit_and_push()
        self.busy_lock = threading.Lock()

        self._pending_lock = threading.Lock()
        self.pending_files: Dict[Path, None] = {}
        self._needs_push = False

        self.last_pull_time: Optional[datetime] = None
        self.last_push_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

    # ========================================================================
    # GIT PLUMBING
    # ========================================================================

    def _run_git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """
        Run one git command inside the vault.

        Raises:
            GitSyncError: On non-zero exit (when check=True), timeout, or missing git binary
        """
        command = ["git", "-C", str(self.repo_path), *args]
        logger.debug("git_command", args=list(args))
        try:
            result = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GitSyncError(f"git {args[0]} timed out after {self.command_timeout}s") from e
        except FileNotFoundError as e:
            raise GitSyncError("git executable not found in PATH") from e

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise GitSyncError(f"git {args[0]} failed: {stderr or result.returncode}", stderr=stderr)
        return result

    def verify_repository(self) -> None:
        """
        Check that the vault is a git working copy.

        Raises:
            GitSyncError: If it is not (fatal at startup)
        """
        result = self._run_git("rev-parse", "--is-inside-work-tree", check=False)
        if result.returncode != 0 or (result.stdout or "").strip() != "true":
            raise GitSyncError(f"Vault is not a git repository: {self.repo_path}", stderr=result.stderr or "")
        logger.info("git_repository_verified", path=str(self.repo_path))

    def is_busy(self) -> bool:
        return self.busy_lock.locked()

    # ========================================================================
    # PULL
    # ========================================================================

    def pull(self) -> bool:
        """
        Pull from the remote with a merge strategy.

        Local changes are stashed first and popped afterwards. Failures are
        logged and swallowed so the periodic job keeps running.

        Returns:
            True if the pull completed, False if skipped (busy) or failed
        """
        if not self.busy_lock.acquire(blocking=False):
            logger.warning("git_pull_skipped_busy")
            return False

        stash_marker: Optional[str] = None
        try:
            logger.info("git_pull_start", path=str(self.repo_path))

            status = self._run_git("status", "--porcelain").stdout or ""
            if status.strip():
                stash_marker = f"{AUTOSTASH_PREFIX}-{int(time.time() * 1000)}"
                logger.warning("git_local_changes_stashing", marker=stash_marker)
                self._run_git("stash", "push", "-u", "-m", stash_marker)
                logger.info("git_stashed", marker=stash_marker)

            result = self._run_git("pull", "--no-rebase")
            output = (result.stdout or "").strip()
            if "Already up to date" in output:
                logger.info("git_pull_complete", changes=False)
            else:
                logger.info("git_pull_complete", changes=True, summary=output.splitlines()[-1:] or None)

            self.last_pull_time = datetime.utcnow()
            return True

        except Exception as e:
            self.last_error = str(e)
            logger.error(
                "git_pull_failed",
                error=str(e),
                stderr=getattr(e, "stderr", None),
            )
            return False

        finally:
            if stash_marker:
                self._pop_autostash(stash_marker)
            self.busy_lock.release()

    def _find_stash_ref(self, marker: str) -> Optional[str]:
        listing = self._run_git("stash", "list").stdout or ""
        for line in listing.splitlines():
            if marker in line:
                return line.split(":", 1)[0]
        return None

    def _pop_autostash(self, marker: str) -> None:
        """Pop our autostash. Failures are logged only; manual recovery may be needed."""
        try:
            ref = self._find_stash_ref(marker)
            if ref is None:
                logger.warning("git_autostash_not_found", marker=marker)
                return
            logger.info("git_stash_popping", ref=ref)
            self._run_git("stash", "pop", ref)
            logger.info("git_stash_popped", ref=ref)
        except Exception as e:
            logger.error(
                "git_stash_pop_failed",
                marker=marker,
                error=str(e),
                hint="Manual intervention might be required",
            )

    # ========================================================================
    # COMMIT AND PUSH
    # ========================================================================

    def _add_pending(self, files: Iterable[Path]) -> None:
        with self._pending_lock:
            for f in files:
                self.pending_files[Path(f)] = None

    def _snapshot_pending(self) -> List[Path]:
        with self._pending_lock:
            return list(self.pending_files)

    def _clear_pending(self, files: Iterable[Path]) -> None:
        with self._pending_lock:
            for f in files:
                self.pending_files.pop(Path(f), None)

    def commit_and_push(self, file_paths: Iterable[Path], message: str) -> bool:
        """
        Stage exactly the given files (plus pending ones), commit and push.

        Args:
            file_paths: Absolute paths inside the vault
            message: Commit message

        Returns:
            True if committed and pushed (or nothing to commit),
            False if skipped because another git operation was running

        Raises:
            GitSyncError: If any git step fails
        """
        files = [Path(p) for p in file_paths]

        if not self.busy_lock.acquire(blocking=False):
            logger.warning(
                "git_commit_skipped_busy",
                files=[f.name for f in files],
                hint="Changes are saved locally and will be picked up later",
            )
            self._add_pending(files)
            return False

        to_stage = list(files)
        try:
            pending = [p for p in self._snapshot_pending() if p not in files]
            # Pending files deleted since are dropped
            carried = [p for p in pending if p.exists()]
            self._clear_pending(p for p in pending if p not in carried)
            to_stage = files + carried

            logger.info(
                "git_commit_start",
                files=[f.name for f in files],
                carried_pending=len(carried),
            )

            relative_paths = [get_vault_relative_path(self.repo_path, f) for f in to_stage]
            logger.debug("git_staging", paths=relative_paths)
            self._run_git("add", "--", *relative_paths)

            staged = (self._run_git("diff", "--cached", "--name-only").stdout or "").split("\n")
            staged = [s for s in staged if s.strip()]
            if not staged:
                logger.warning("git_nothing_staged")
                if self._needs_push:
                    self._push()
                self._clear_pending(to_stage)
                return True

            logger.info("git_committing", message=message, staged=len(staged))
            self._run_git("commit", "-m", message)
            self._needs_push = True
            self._push()

            self._clear_pending(to_stage)
            return True

        except Exception as e:
            self._add_pending(to_stage)
            self.last_error = str(e)
            logger.error(
                "git_commit_push_failed",
                error=str(e),
                stderr=getattr(e, "stderr", None),
                pending=len(self.pending_files),
            )
            raise GitSyncError(f"Git operation failed: {e}", stderr=getattr(e, "stderr", "") or "") from e

        finally:
            self.busy_lock.release()

    def _push(self) -> None:
        logger.info("git_pushing")
        self._run_git("push")
        self._needs_push = False
        self.last_push_time = datetime.utcnow()
        logger.info("git_push_complete")

    # ========================================================================
    # PERIODIC DRIVER
    # ========================================================================

    def start(self) -> None:
        """
        Start periodic pulling: one pull shortly after startup, then every interval.

        An interval of 0 disables periodic pulling entirely.
        """
        if self.is_running:
            logger.warning("git_periodic_pull_already_running")
            return

        if self.pull_interval_ms <= 0:
            logger.info("git_periodic_pull_disabled")
            return

        interval_seconds = self.pull_interval_ms / 1000
        self.scheduler = BackgroundScheduler()
        self.scheduler.add_job(
            self.pull,
            'date',
            run_date=datetime.now() + timedelta(seconds=self.initial_pull_delay),
            id='git_initial_pull',
            name='Git Initial Pull',
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.pull,
            'interval',
            seconds=interval_seconds,
            id='git_pull_job',
            name='Git Periodic Pull',
            replace_existing=True,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info("git_periodic_pull_started", interval_seconds=interval_seconds)

    def stop(self) -> None:
        """Stop periodic pulling (does not wait for a running pull)."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("git_periodic_pull_stopped")
        self.is_running = False

    def get_status(self) -> Dict[str, Any]:
        return {
            "busy": self.is_busy(),
            "periodic_pull": self.is_running,
            "pending_files": len(self.pending_files),
            "needs_push": self._needs_push,
            "last_pull_time": self.last_pull_time.isoformat() if self.last_pull_time else None,
            "last_push_time": self.last_push_time.isoformat() if self.last_push_time else None,
            "last_error": self.last_error,
        }
