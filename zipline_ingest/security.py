from __future__ import annotations

import os
import posixpath
import re
from pathlib import Path
from typing import Optional

from .errors import SandboxPathError


_WINDOWS_ABSOLUTE_RE = re.compile(r"^[A-Za-z]:[\\/]")

FILENAME_RULES = (
    "Filenames must not include path separators, dot segments, or be empty. "
    "Only bare filenames in ~/.zipline_tmp are allowed."
)


def validate_filename(filename: Optional[str]) -> Optional[str]:
    """Check a bare filename. Returns the rejection message, or None if it is fine.

    Stricter than sanitize_path(): no subdirectories and no dot-files.
    """
    if (
        not isinstance(filename, str)
        or not filename
        or "/" in filename
        or "\\" in filename
        or "\0" in filename
        or ".." in filename
        or filename.startswith(".")
        or os.path.isabs(filename)
    ):
        return FILENAME_RULES
    return None


def _validate_path_input(input_path: object) -> str:
    if input_path is None:
        raise SandboxPathError("Path cannot be null or undefined")
    if not isinstance(input_path, str):
        raise SandboxPathError("Path must be a string")
    trimmed = input_path.strip()
    if not trimmed:
        raise SandboxPathError("Path cannot be empty or whitespace-only")
    if "\0" in trimmed:
        raise SandboxPathError("Path contains null bytes")
    return trimmed


def _is_within(candidate: str, root: str) -> bool:
    return candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep)


def sanitize_path(input_path: Optional[str], sandbox_root: Path | str) -> Path:
    """Resolve a relative path inside sandbox_root.

    Nested subdirectories and dot-files are allowed. Absolute paths (POSIX or
    drive-letter) and anything that lands outside the root after normalization
    raise SandboxPathError.
    """
    trimmed = _validate_path_input(input_path)

    if _WINDOWS_ABSOLUTE_RE.match(trimmed):
        raise SandboxPathError(f"Absolute Windows paths are not allowed: {input_path}")

    normalized = trimmed.replace("\\", "/")
    if normalized.startswith("/"):
        raise SandboxPathError(f"Absolute paths are not allowed: {input_path}")

    root = os.path.normpath(os.path.abspath(str(sandbox_root)))
    candidate = os.path.normpath(os.path.join(root, *normalized.split("/")))
    if not _is_within(candidate, root) or candidate == root:
        raise SandboxPathError(f"Path traversal attempt detected: {input_path}")

    # Symlinks inside the sandbox must not lead back out of it.
    resolved = os.path.realpath(candidate)
    if not _is_within(resolved, os.path.realpath(root)):
        raise SandboxPathError(f"Path traversal attempt detected: {input_path}")

    return Path(candidate)


def validate_sandbox_path(test_path: Optional[str], sandbox_root: Path | str) -> bool:
    """Non-raising check that an absolute path already sits under sandbox_root."""
    if not isinstance(test_path, str):
        return False
    trimmed = test_path.strip()
    if not trimmed or "\0" in trimmed:
        return False
    normalized = posixpath.normpath(trimmed.replace("\\", "/"))
    root = posixpath.normpath(str(sandbox_root).replace("\\", "/"))
    return normalized == root or normalized.startswith(root.rstrip("/") + "/")
