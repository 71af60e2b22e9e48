import json
import time

import pytest

from zipline_ingest import config, locking, workspace
from zipline_ingest.errors import LockConflictError


def _lock_file(token=None):
    return locking.lock_path(workspace.get_user_sandbox(token))


def test_acquire_is_exclusive():
    assert locking.acquire_sandbox_lock() is True
    assert locking.is_sandbox_locked() is True
    assert locking.acquire_sandbox_lock() is False


def test_release_then_reacquire():
    assert locking.acquire_sandbox_lock()
    assert locking.release_sandbox_lock() is True
    assert locking.is_sandbox_locked() is False
    assert locking.acquire_sandbox_lock() is True


def test_lock_record_format():
    locking.acquire_sandbox_lock()
    raw = json.loads(_lock_file().read_text())

    assert set(raw) == {"timestamp", "token"}
    assert raw["token"] == config.ZIPLINE_TOKEN
    assert abs(raw["timestamp"] - locking.now_ms()) < 5000


def test_locks_are_per_sandbox():
    assert locking.acquire_sandbox_lock("token-a")
    assert locking.acquire_sandbox_lock("token-b")
    assert not locking.is_sandbox_locked("token-c")


def test_release_without_lock_is_a_noop():
    assert locking.release_sandbox_lock() is True


def test_release_by_other_owner_keeps_lock():
    assert locking.acquire_sandbox_lock(owner="worker-1")
    assert locking.release_sandbox_lock(owner="worker-2") is False
    assert locking.is_sandbox_locked() is True
    assert locking.release_sandbox_lock(owner="worker-1") is True
    assert locking.is_sandbox_locked() is False


def test_stale_lock_counts_as_unlocked_and_is_removed():
    path = _lock_file()
    path.parent.mkdir(parents=True)
    stale = locking.now_ms() - (config.LOCK_TIMEOUT_SECONDS + 1) * 1000
    path.write_text(json.dumps({"timestamp": stale, "token": "someone"}))

    assert locking.is_sandbox_locked() is False
    assert not path.exists()
    assert locking.acquire_sandbox_lock() is True


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        "[]",
        '{"timestamp": "soon", "token": "x"}',
        '{"timestamp": 1}',
        '{"timestamp": 1e400, "token": "x"}',
        '{"timestamp": NaN, "token": "x"}',
    ],
)
def test_corrupt_lock_self_heals(content):
    path = _lock_file()
    path.parent.mkdir(parents=True)
    path.write_text(content)

    assert locking.is_sandbox_locked() is False
    assert not path.exists()


def test_release_removes_corrupt_lock():
    path = _lock_file()
    path.parent.mkdir(parents=True)
    path.write_text("garbage")

    assert locking.release_sandbox_lock() is True
    assert not path.exists()


def test_disabled_sandboxing_makes_locking_a_noop(monkeypatch):
    monkeypatch.setattr(config, "SANDBOXING_DISABLED", True)

    assert locking.acquire_sandbox_lock() is True
    assert locking.acquire_sandbox_lock() is True
    assert locking.is_sandbox_locked() is False
    assert locking.release_sandbox_lock() is True
    assert not (config.TMP_DIR / config.LOCK_FILENAME).exists()


def test_context_manager_releases_on_error():
    with pytest.raises(RuntimeError):
        with locking.sandbox_lock() as sandbox:
            assert sandbox == workspace.get_user_sandbox()
            assert locking.is_sandbox_locked()
            raise RuntimeError("boom")

    assert locking.is_sandbox_locked() is False


def test_context_manager_raises_on_conflict():
    locking.acquire_sandbox_lock(owner="other")
    with pytest.raises(LockConflictError):
        with locking.sandbox_lock():
            pass
    # The conflicting holder's lock is untouched.
    assert locking.is_sandbox_locked() is True


def test_release_cancels_expiry_timer():
    locking.acquire_sandbox_lock()
    path = _lock_file()
    timer = locking._expiry_timers[path]

    locking.release_sandbox_lock()
    assert path not in locking._expiry_timers
    assert timer.finished.is_set()


def test_expiry_timer_removes_lock(monkeypatch):
    monkeypatch.setattr(config, "LOCK_TIMEOUT_SECONDS", 0.05)
    locking.acquire_sandbox_lock()
    path = _lock_file()

    timer = locking._expiry_timers.get(path)
    if timer is not None:
        timer.join(timeout=2)
    assert not path.exists()


def test_expiry_leaves_newer_lock_alone():
    locking.acquire_sandbox_lock()
    path = _lock_file()
    first = locking.read_lock(path)

    newer = {"timestamp": first.timestamp + 1, "token": "new-owner"}
    path.write_text(json.dumps(newer))
    locking._expire_lock(path, first)

    assert path.exists()
    assert locking.read_lock(path).token == "new-owner"


def test_expiry_requires_matching_timestamp():
    locking.acquire_sandbox_lock()
    path = _lock_file()
    first = locking.read_lock(path)

    # Same owner, later acquisition.
    path.write_text(json.dumps({"timestamp": first.timestamp + 10, "token": first.token}))
    locking._expire_lock(path, first)
    assert path.exists()

    path.write_text(json.dumps({"timestamp": first.timestamp, "token": first.token}))
    locking._expire_lock(path, first)
    assert not path.exists()


def test_lock_record_expiry_boundary():
    record = locking.LockRecord(timestamp=1_000, token="t")
    assert not record.is_expired(1_000 + 1800 * 1000, 1800)
    assert record.is_expired(1_000 + 1800 * 1000 + 1, 1800)


def test_fresh_lock_survives_is_locked_check():
    locking.acquire_sandbox_lock()
    time.sleep(0.01)
    assert locking.is_sandbox_locked() is True
    assert _lock_file().exists()


def test_acquire_replaces_non_finite_lock():
    path = _lock_file()
    path.parent.mkdir(parents=True)
    path.write_text('{"timestamp": 1e400, "token": "x"}')

    assert locking.acquire_sandbox_lock() is True
    assert locking.read_lock(path).token == config.ZIPLINE_TOKEN


def test_release_removes_non_finite_lock():
    path = _lock_file()
    path.parent.mkdir(parents=True)
    path.write_text('{"timestamp": 1e400, "token": "x"}')

    assert locking.release_sandbox_lock() is True
    assert not path.exists()


def test_fired_timer_is_unregistered_when_record_changed(monkeypatch):
    monkeypatch.setattr(config, "LOCK_TIMEOUT_SECONDS", 0.2)
    locking.acquire_sandbox_lock()
    path = _lock_file()
    timer = locking._expiry_timers[path]
    first = locking.read_lock(path)
    path.write_text(json.dumps({"timestamp": first.timestamp + 1, "token": "new-owner"}))

    timer.join(timeout=2)
    assert path not in locking._expiry_timers
    assert locking.read_lock(path).token == "new-owner"
