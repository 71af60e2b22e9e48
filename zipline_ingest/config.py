from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


# Identity secret used when a caller does not pass one explicitly.
ZIPLINE_TOKEN = os.environ.get("ZIPLINE_TOKEN", "")

# Single-tenant escape hatch: every caller shares TMP_DIR and locking/GC are no-ops.
SANDBOXING_DISABLED = os.environ.get("ZIPLINE_DISABLE_SANDBOXING", "").strip().lower() == "true"

# Root directory for all sandboxes.
# Default: ~/.zipline_tmp. Override with env var ZIPLINE_TMP_DIR.
_root_raw = os.environ.get("ZIPLINE_TMP_DIR")
if _root_raw and _root_raw.strip():
    TMP_DIR = Path(_root_raw).expanduser()
else:
    TMP_DIR = Path.home() / ".zipline_tmp"

USERS_SUBDIR = "users"
LOCK_FILENAME = ".lock"
SANDBOX_DIR_MODE = 0o700

# Files strictly below this size are staged in memory; the rest are referenced on disk.
MEMORY_STAGING_THRESHOLD = _env_int("ZIPLINE_MEMORY_STAGING_THRESHOLD", 5 * 1024 * 1024)  # 5MB

# Cap for reading sandbox files back to the caller.
TMP_MAX_READ_SIZE = _env_int("ZIPLINE_TMP_MAX_READ_SIZE", 1024 * 1024)  # 1MB

# Lock TTL. Must stay well below SANDBOX_MAX_AGE_SECONDS.
LOCK_TIMEOUT_SECONDS = _env_int("ZIPLINE_LOCK_TIMEOUT_SECONDS", 30 * 60)

# Sandboxes untouched for longer than this are removed by the cleanup sweep.
SANDBOX_MAX_AGE_SECONDS = _env_int("ZIPLINE_SANDBOX_MAX_AGE_SECONDS", 24 * 60 * 60)

# How often the server re-runs the cleanup sweep.
CLEANUP_INTERVAL_SECONDS = _env_int("ZIPLINE_CLEANUP_INTERVAL_SECONDS", 600)

# Download limits.
DOWNLOAD_TIMEOUT_MS = _env_int("ZIPLINE_DOWNLOAD_TIMEOUT_MS", 30_000)
DOWNLOAD_MAX_BYTES = _env_int("ZIPLINE_DOWNLOAD_MAX_BYTES", 100 * 1024 * 1024)  # 100MB
DOWNLOAD_USER_AGENT = "zipline-ingest/1.1 (+sandbox downloader)"

# Prefix read for magic-byte sniffing.
SNIFF_BYTES = 4100

DEFAULT_ALLOWED_EXTENSIONS = (
    ".txt",
    ".md",
    ".gpx",
    ".html",
    ".htm",
    ".json",
    ".xml",
    ".csv",
    ".js",
    ".ts",
    ".css",
    ".py",
    ".sh",
    ".yaml",
    ".yml",
    ".toml",
    # Common video files
    ".mp4",
    ".mkv",
    ".webm",
    ".avi",
    # Common web image types
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".webp",
    ".svg",
)

_exts_raw = os.environ.get("ZIPLINE_ALLOWED_EXTENSIONS")
if _exts_raw and _exts_raw.strip():
    ALLOWED_EXTENSIONS = frozenset(
        (e if e.startswith(".") else f".{e}").lower()
        for e in (p.strip() for p in _exts_raw.split(","))
        if e
    )
else:
    ALLOWED_EXTENSIONS = frozenset(DEFAULT_ALLOWED_EXTENSIONS)

LOG_LEVEL = os.environ.get("ZIPLINE_LOG_LEVEL", "INFO").upper()
