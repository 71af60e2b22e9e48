import json
import logging
import os
import time

from zipline_ingest import config, locking, workspace
from zipline_ingest.cleanup import (
    CleanupReport,
    cleanup_old_sandboxes,
    cleanup_stale_locks,
    initialize_cleanup,
)


DAY = 24 * 60 * 60


def _age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


def _sandbox(token, *, age=0):
    sandbox = workspace.ensure_user_sandbox(token)
    (sandbox / "file.txt").write_text("data")
    if age:
        _age(sandbox, age)
    return sandbox


def _write_lock(sandbox, timestamp, token="owner"):
    (sandbox / config.LOCK_FILENAME).write_text(json.dumps({"timestamp": timestamp, "token": token}))


def test_missing_users_dir_is_not_an_error():
    assert cleanup_old_sandboxes() == 0
    assert cleanup_stale_locks() == 0


def test_removes_only_sandboxes_past_retention():
    old = _sandbox("old-token", age=DAY + 60)
    fresh = _sandbox("fresh-token", age=DAY - 60)

    assert cleanup_old_sandboxes() == 1
    assert not old.exists()
    assert fresh.exists()


def test_ignores_stray_files_in_users_dir():
    _sandbox("token")
    stray = workspace.users_dir() / "stray.txt"
    stray.write_text("x")
    _age(stray, DAY * 2)

    assert cleanup_old_sandboxes() == 0
    assert stray.exists()


def test_old_sandbox_is_removed_even_with_a_fresh_lock():
    sandbox = _sandbox("busy-token")
    _write_lock(sandbox, locking.now_ms())
    _age(sandbox, DAY + 60)

    assert cleanup_old_sandboxes() == 1
    assert not sandbox.exists()


def test_removes_only_stale_locks():
    stale_box = _sandbox("stale-token")
    live_box = _sandbox("live-token")
    corrupt_box = _sandbox("corrupt-token")
    _sandbox("unlocked-token")

    _write_lock(stale_box, locking.now_ms() - (config.LOCK_TIMEOUT_SECONDS + 5) * 1000)
    _write_lock(live_box, locking.now_ms())
    (corrupt_box / config.LOCK_FILENAME).write_text("{broken")

    assert cleanup_stale_locks() == 2
    assert not (stale_box / config.LOCK_FILENAME).exists()
    assert not (corrupt_box / config.LOCK_FILENAME).exists()
    assert (live_box / config.LOCK_FILENAME).exists()


def test_initialize_cleanup_reports_both_sweeps(caplog):
    _sandbox("old-token", age=DAY * 3)
    stale_box = _sandbox("stale-token")
    _write_lock(stale_box, 0)

    with caplog.at_level(logging.INFO, logger="zipline_ingest.cleanup"):
        report = initialize_cleanup()

    assert report == CleanupReport(sandboxes_removed=1, locks_removed=1)
    assert "removed 1 sandboxes, 1 stale locks" in caplog.text


def test_initialize_cleanup_never_raises(monkeypatch):
    def boom():
        raise RuntimeError("disk on fire")

    monkeypatch.setattr("zipline_ingest.cleanup.cleanup_old_sandboxes", boom)
    report = initialize_cleanup()
    assert report.sandboxes_removed == 0


def test_disabled_sandboxing_skips_cleanup(monkeypatch):
    old = _sandbox("old-token", age=DAY * 3)
    monkeypatch.setattr(config, "SANDBOXING_DISABLED", True)

    assert cleanup_old_sandboxes() == 0
    assert cleanup_stale_locks() == 0
    assert old.exists()


def test_non_finite_lock_does_not_stop_the_sweep():
    boxes = [_sandbox(f"token-{i}") for i in range(3)]
    (boxes[0] / config.LOCK_FILENAME).write_text('{"timestamp": 1e400, "token": "x"}')
    (boxes[1] / config.LOCK_FILENAME).write_text('{"timestamp": -Infinity, "token": "x"}')
    _write_lock(boxes[2], 0)

    assert cleanup_stale_locks() == 3
    for box in boxes:
        assert not (box / config.LOCK_FILENAME).exists()
