"""Retention sweeps for sandboxes and lock files.

Eligibility is decided by age alone, never by lock state. A sandbox whose
directory mtime is older than the retention window is removed even if a lock
file sits inside it. Keeping the retention window (24h) far above the lock TTL
(30 min) makes that practically unreachable, but it is a heuristic and not a
guarantee.
"""
from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass

from . import config
from .locking import lock_path, now_ms, read_lock
from .workspace import log_sandbox_operation, users_dir


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupReport:
    sandboxes_removed: int
    locks_removed: int


def cleanup_old_sandboxes() -> int:
    """Delete sandboxes whose mtime is older than SANDBOX_MAX_AGE_SECONDS.

    Returns the number of removed sandboxes.
    """
    if config.SANDBOXING_DISABLED:
        return 0

    root = users_dir()
    try:
        children = list(root.iterdir())
    except FileNotFoundError:
        return 0
    except OSError as e:
        log_sandbox_operation("SANDBOX_CLEANUP_ERROR", details=f"Error: {e}", sandbox=root)
        return 0

    now = time.time()
    max_age = config.SANDBOX_MAX_AGE_SECONDS
    cleaned = 0
    for child in children:
        try:
            st = child.stat()
        except OSError as e:
            log_sandbox_operation("SANDBOX_STAT_FAILED", details=f"Error: {e}", sandbox=child)
            continue
        if not child.is_dir():
            continue
        age = now - st.st_mtime
        if age <= max_age:
            continue
        try:
            shutil.rmtree(child)
        except OSError as e:
            log_sandbox_operation("SANDBOX_CLEANUP_FAILED", details=f"Error: {e}", sandbox=child)
            continue
        cleaned += 1
        log_sandbox_operation("SANDBOX_CLEANED", details=f"Age: {round(age / 3600)} hours", sandbox=child)
    return cleaned


def cleanup_stale_locks() -> int:
    """Delete lock files older than the lock TTL (or unreadable) in every sandbox."""
    if config.SANDBOXING_DISABLED:
        return 0

    root = users_dir()
    try:
        children = [c for c in root.iterdir() if c.is_dir()]
    except FileNotFoundError:
        return 0
    except OSError as e:
        log_sandbox_operation("LOCK_CLEANUP_ERROR", details=f"Error: {e}", sandbox=root)
        return 0

    now = now_ms()
    removed = 0
    for sandbox in children:
        path = lock_path(sandbox)
        try:
            record = read_lock(path)
            stale = record.is_expired(now, config.LOCK_TIMEOUT_SECONDS)
        except FileNotFoundError:
            continue
        except (OSError, ValueError):
            stale = True
        if not stale:
            continue
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log_sandbox_operation("LOCK_CLEANUP_FAILED", details=f"Error: {e}", sandbox=sandbox)
            continue
        removed += 1
        log_sandbox_operation("STALE_LOCK_REMOVED", sandbox=sandbox)
    return removed


def initialize_cleanup() -> CleanupReport:
    """Startup hygiene: run both sweeps once. Never raises."""
    try:
        sandboxes = cleanup_old_sandboxes()
    except Exception:
        logger.exception("Sandbox cleanup failed")
        sandboxes = 0
    try:
        locks = cleanup_stale_locks()
    except Exception:
        logger.exception("Stale lock cleanup failed")
        locks = 0
    report = CleanupReport(sandboxes_removed=sandboxes, locks_removed=locks)
    logger.info("Startup cleanup: removed %d sandboxes, %d stale locks", sandboxes, locks)
    return report
