import pytest

from zipline_ingest import config, locking


TEST_TOKEN = "test-token-a"


@pytest.fixture(autouse=True)
def sandbox_env(tmp_path, monkeypatch):
    """Point every sandbox at a throwaway root with a known identity secret."""
    root = tmp_path / "zipline_tmp"
    monkeypatch.setattr(config, "TMP_DIR", root)
    monkeypatch.setattr(config, "ZIPLINE_TOKEN", TEST_TOKEN)
    monkeypatch.setattr(config, "SANDBOXING_DISABLED", False)
    yield root
    for timer in list(locking._expiry_timers.values()):
        timer.cancel()
    locking._expiry_timers.clear()
