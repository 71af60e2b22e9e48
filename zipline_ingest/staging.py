"""Stage local files for transmission.

Small files are read into memory and scanned for secrets before anyone sees
the bytes. Files at or above MEMORY_STAGING_THRESHOLD are never read here;
the caller gets a reference to the path instead, which keeps memory use
independent of file size.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Literal, Optional, Union

from . import config
from .errors import SecretDetectionError
from .secret_scan import validate_bytes_for_secrets
from .workspace import format_file_size, log_sandbox_operation


@dataclass
class MemoryStaged:
    content: Optional[bytearray]
    path: Path
    kind: Literal["memory"] = "memory"


@dataclass(frozen=True)
class DiskStaged:
    path: Path
    kind: Literal["disk"] = "disk"


StagedContent = Union[MemoryStaged, DiskStaged]


def stage_file(path: Union[str, Path]) -> StagedContent:
    """Stage path in memory (size < threshold) or on disk (size >= threshold).

    Raises FileNotFoundError for a missing file and SecretDetectionError when a
    memory-staged file looks like it contains credentials.
    """
    source = Path(path)
    size = source.stat().st_size

    if size >= config.MEMORY_STAGING_THRESHOLD:
        return DiskStaged(path=source)

    content = bytearray(source.read_bytes())
    try:
        validate_bytes_for_secrets(content)
    except SecretDetectionError as e:
        _zero(content)
        log_sandbox_operation(
            "FILE_STAGE_REJECTED", source.name, f"Reason: {e.secret_type} ({format_file_size(size)})", sandbox=source.parent
        )
        raise
    return MemoryStaged(content=content, path=source)


def _zero(buf: bytearray) -> None:
    buf[:] = bytes(len(buf))


def clear_staged_content(staged: StagedContent) -> None:
    """Drop in-memory content. Disk-staged files are the caller's and are left alone."""
    if isinstance(staged, MemoryStaged):
        if staged.content is not None:
            _zero(staged.content)
        staged.content = None


@contextmanager
def staged_file(path: Union[str, Path]) -> Iterator[StagedContent]:
    staged = stage_file(path)
    try:
        yield staged
    finally:
        clear_staged_content(staged)
