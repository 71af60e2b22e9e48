"""Advisory per-sandbox lock persisted as ``<sandbox>/.lock``.

Independent invocations share no memory, so the lock file is the only record
of "this sandbox is busy". Acquisition never blocks: callers get True/False
and decide for themselves whether to retry.

The file holds ``{"timestamp": <epoch-ms>, "token": <owner>}``. A record older
than the TTL, or one that cannot be parsed, counts as unlocked and is removed
the next time anyone looks at it.
"""
from __future__ import annotations

import json
import math
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from . import config
from .errors import LockConflictError
from .workspace import ensure_user_sandbox, get_user_sandbox, log_sandbox_operation, resolve_token


# Pending auto-expiry timers for locks taken by this process, keyed by lock path.
_expiry_timers: dict[Path, threading.Timer] = {}


@dataclass(frozen=True)
class LockRecord:
    timestamp: int
    token: str

    def is_expired(self, at_ms: int, ttl_seconds: float) -> bool:
        return at_ms - self.timestamp > ttl_seconds * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def lock_path(sandbox: Path) -> Path:
    return sandbox / config.LOCK_FILENAME


def read_lock(path: Path) -> LockRecord:
    """Parse a lock file. Raises FileNotFoundError if absent, ValueError if corrupt."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Lock record must be an object")
    timestamp = raw.get("timestamp")
    token = raw.get("token")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not isinstance(token, str):
        raise ValueError("Lock record is missing timestamp or token")
    if isinstance(timestamp, float) and not math.isfinite(timestamp):
        raise ValueError("Lock record timestamp is not a finite number")
    return LockRecord(timestamp=int(timestamp), token=token)


def _remove_lock(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _check_lock(path: Path) -> bool:
    """Return True if path holds a live lock; heal stale or corrupt records."""
    try:
        record = read_lock(path)
    except FileNotFoundError:
        return False
    except (OSError, ValueError):
        _remove_lock(path)
        return False
    if record.is_expired(now_ms(), config.LOCK_TIMEOUT_SECONDS):
        _remove_lock(path)
        return False
    return True


def is_sandbox_locked(token: Optional[str] = None) -> bool:
    if config.SANDBOXING_DISABLED:
        return False
    return _check_lock(lock_path(get_user_sandbox(token)))


def _expire_lock(path: Path, record: LockRecord) -> None:
    # Only remove the record we wrote; a later acquisition owns whatever is there now.
    try:
        current = read_lock(path)
    except FileNotFoundError:
        return
    except (OSError, ValueError):
        _remove_lock(path)
        log_sandbox_operation("LOCK_AUTO_RELEASED", details="Reason: Lock file corrupted", sandbox=path.parent)
        return
    if current == record:
        _remove_lock(path)
        log_sandbox_operation("LOCK_AUTO_RELEASED", details="Reason: Timeout expired", sandbox=path.parent)


def _schedule_expiry(path: Path, record: LockRecord) -> threading.Timer:
    def _run() -> None:
        try:
            _expire_lock(path, record)
        except OSError as e:
            log_sandbox_operation("LOCK_RELEASE_ERROR", details=f"Error: {e}", sandbox=path.parent)
        finally:
            # A fired timer is finished; a newer acquisition's timer stays registered.
            if _expiry_timers.get(path) is timer:
                _expiry_timers.pop(path, None)

    timer = threading.Timer(config.LOCK_TIMEOUT_SECONDS, _run)
    timer.daemon = True
    previous = _expiry_timers.pop(path, None)
    if previous is not None:
        previous.cancel()
    _expiry_timers[path] = timer
    timer.start()
    return timer


def _cancel_expiry(path: Path) -> None:
    timer = _expiry_timers.pop(path, None)
    if timer is not None:
        timer.cancel()


def acquire_sandbox_lock(token: Optional[str] = None, owner: Optional[str] = None) -> bool:
    if config.SANDBOXING_DISABLED:
        return True

    sandbox = ensure_user_sandbox(token)
    path = lock_path(sandbox)

    if _check_lock(path):
        log_sandbox_operation("LOCK_ACQUIRE_FAILED", details="Reason: Already locked", sandbox=sandbox)
        return False

    record = LockRecord(timestamp=now_ms(), token=owner or resolve_token(token))
    try:
        # O_EXCL: if another invocation wrote a lock between the check and here, it wins.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        log_sandbox_operation("LOCK_ACQUIRE_FAILED", details="Reason: Already locked", sandbox=sandbox)
        return False
    except OSError:
        log_sandbox_operation("LOCK_ACQUIRE_FAILED", details="Reason: Could not write lock file", sandbox=sandbox)
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump({"timestamp": record.timestamp, "token": record.token}, handle)

    log_sandbox_operation(
        "LOCK_ACQUIRED", details=f"Timeout: {config.LOCK_TIMEOUT_SECONDS / 60:g} minutes", sandbox=sandbox
    )
    _schedule_expiry(path, record)
    return True


def release_sandbox_lock(token: Optional[str] = None, owner: Optional[str] = None) -> bool:
    """Release the lock if the caller owns it.

    No lock at all is a successful no-op. Someone else's lock is left alone and
    False is returned.
    """
    if config.SANDBOXING_DISABLED:
        return True

    sandbox = get_user_sandbox(token)
    path = lock_path(sandbox)
    caller = owner or resolve_token(token)

    try:
        record = read_lock(path)
    except FileNotFoundError:
        log_sandbox_operation("LOCK_RELEASE_NOT_NEEDED", details="Reason: No lock file exists", sandbox=sandbox)
        return True
    except (OSError, ValueError):
        _remove_lock(path)
        log_sandbox_operation("LOCK_RELEASED", details="Reason: Lock file corrupted", sandbox=sandbox)
        return True

    if record.token != caller:
        log_sandbox_operation("LOCK_RELEASE_FAILED", details="Reason: Token mismatch", sandbox=sandbox)
        return False

    _remove_lock(path)
    _cancel_expiry(path)
    log_sandbox_operation("LOCK_RELEASED", details="Reason: Manual release", sandbox=sandbox)
    return True


@contextmanager
def sandbox_lock(token: Optional[str] = None, owner: Optional[str] = None) -> Iterator[Path]:
    """Hold the sandbox lock for a multi-step workflow, or raise LockConflictError."""
    if not acquire_sandbox_lock(token, owner=owner):
        raise LockConflictError("Sandbox is locked by another operation; retry later")
    try:
        yield get_user_sandbox(token)
    finally:
        release_sandbox_lock(token, owner=owner)
