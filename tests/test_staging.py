import pytest

from zipline_ingest import config
from zipline_ingest.errors import SecretDetectionError
from zipline_ingest.staging import (
    DiskStaged,
    MemoryStaged,
    clear_staged_content,
    stage_file,
    staged_file,
)


@pytest.fixture
def small_threshold(monkeypatch):
    monkeypatch.setattr(config, "MEMORY_STAGING_THRESHOLD", 16)
    return 16


def test_small_file_is_staged_in_memory(tmp_path, small_threshold):
    path = tmp_path / "small.txt"
    path.write_bytes(b"x" * (small_threshold - 1))

    staged = stage_file(path)
    assert isinstance(staged, MemoryStaged)
    assert staged.kind == "memory"
    assert bytes(staged.content) == b"x" * (small_threshold - 1)


def test_file_at_threshold_is_staged_on_disk(tmp_path, small_threshold):
    path = tmp_path / "edge.txt"
    path.write_bytes(b"x" * small_threshold)

    staged = stage_file(path)
    assert isinstance(staged, DiskStaged)
    assert staged.kind == "disk"
    assert staged.path == path


def test_default_threshold_is_five_megabytes():
    assert config.MEMORY_STAGING_THRESHOLD == 5 * 1024 * 1024


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        stage_file(tmp_path / "nope.txt")


def test_secret_in_small_file_is_rejected(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text('api_key = "sk-test-secret-key"')

    with pytest.raises(SecretDetectionError, match="File rejected"):
        stage_file(path)


def test_large_file_is_not_read(tmp_path, small_threshold):
    # Disk staging only references the file; scanning is the caller's job.
    path = tmp_path / "big.txt"
    path.write_text('api_key = "sk-test-secret-key"')

    assert isinstance(stage_file(path), DiskStaged)


def test_clear_zeroes_memory_content(tmp_path):
    path = tmp_path / "small.txt"
    path.write_bytes(b"payload")
    staged = stage_file(path)
    buffer = staged.content

    clear_staged_content(staged)
    assert staged.content is None
    assert bytes(buffer) == b"\x00" * len(b"payload")

    # Idempotent.
    clear_staged_content(staged)
    assert staged.content is None


def test_clear_leaves_disk_file_alone(tmp_path, small_threshold):
    path = tmp_path / "big.txt"
    path.write_bytes(b"y" * 64)
    staged = stage_file(path)

    clear_staged_content(staged)
    assert path.read_bytes() == b"y" * 64


def test_context_manager_clears_on_exit(tmp_path):
    path = tmp_path / "small.txt"
    path.write_bytes(b"payload")

    with staged_file(path) as staged:
        assert bytes(staged.content) == b"payload"
    assert staged.content is None
