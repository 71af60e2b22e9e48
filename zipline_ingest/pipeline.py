"""Pipeline boundary.

Every operation here returns an Outcome instead of raising, so nothing that
goes wrong inside the sandbox can take down the host process. The calling
layer decides how to present the result.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from . import config, workspace
from .cleanup import initialize_cleanup
from .download import download_external_url
from .errors import Outcome, UnsupportedFileTypeError, outcome_from_error
from .locking import acquire_sandbox_lock, is_sandbox_locked, release_sandbox_lock, sandbox_lock
from .secret_scan import validate_file_for_secrets
from .staging import DiskStaged, staged_file
from .verification import expected_mime_for, verify_downloaded_file


logger = logging.getLogger(__name__)


async def download_external_url_tool(
    url: str,
    token: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    max_file_size_bytes: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Outcome:
    """Download into the sandbox, then verify. Holds the sandbox lock for both steps."""
    try:
        with sandbox_lock(token):
            path = await download_external_url(
                url,
                token=token,
                timeout_ms=timeout_ms,
                max_bytes=max_file_size_bytes,
                client=client,
            )
            verified = await asyncio.to_thread(verify_downloaded_file, path)
    except Exception as e:
        logger.error("Download failed: %s", e)
        return outcome_from_error(e)

    return Outcome(
        ok=True,
        message="DOWNLOAD COMPLETE",
        path=str(verified.path),
        data={"mime_type": verified.mime_type, "size": verified.size},
    )


def prepare_upload(file_path: str) -> Outcome:
    """Check a local file is fit to send: allowed extension, no secrets.

    The staged content is cleared before returning; this only reports how the
    file would be staged.
    """
    try:
        source = Path(file_path)
        ext = source.suffix.lower()
        if ext not in config.ALLOWED_EXTENSIONS:
            supported = ", ".join(sorted(config.ALLOWED_EXTENSIONS))
            raise UnsupportedFileTypeError(f"File type {ext or 'none'} not supported. Supported types: {supported}")

        with staged_file(source) as staged:
            if isinstance(staged, DiskStaged):
                validate_file_for_secrets(staged.path)
                size = staged.path.stat().st_size
            else:
                size = len(staged.content or b"")
            staging = staged.kind
    except Exception as e:
        logger.error("Upload preparation failed: %s", e)
        return outcome_from_error(e)

    return Outcome(
        ok=True,
        message=f"Ready for upload: {source.name}",
        path=str(source),
        data={
            "staging": staging,
            "size": size,
            "formatted_size": workspace.format_file_size(size),
            "mime_type": expected_mime_for(source) or "application/octet-stream",
        },
    )


def validate_file(file_path: str) -> Outcome:
    try:
        source = Path(file_path)
        if source.exists() and not source.is_file():
            return Outcome(ok=False, kind="not_found", message=f"Not a regular file: {file_path}")
        size = source.stat().st_size
    except Exception as e:
        return outcome_from_error(e)

    ext = source.suffix.lower()
    supported = ext in config.ALLOWED_EXTENSIONS
    return Outcome(
        ok=True,
        message="Ready for upload" if supported else "File type not supported",
        path=str(source),
        data={
            "name": source.name,
            "size": size,
            "formatted_size": workspace.format_file_size(size),
            "extension": ext or None,
            "supported": supported,
            "supported_extensions": sorted(config.ALLOWED_EXTENSIONS),
        },
    )


def list_sandbox_files(token: Optional[str] = None) -> Outcome:
    try:
        files = workspace.list_files(token)
    except Exception as e:
        return outcome_from_error(e)
    return Outcome(ok=True, data={"files": [{"name": f.name, "size": f.size} for f in files]})


def create_sandbox_file(filename: str, content: str = "", token: Optional[str] = None) -> Outcome:
    try:
        path = workspace.write_file(filename, content, token)
        size = path.stat().st_size
    except Exception as e:
        return outcome_from_error(e)
    return Outcome(ok=True, message=f"Created/Overwritten: {filename}", path=str(path), data={"size": size})


def read_sandbox_file(filename: str, token: Optional[str] = None) -> Outcome:
    try:
        content = workspace.read_file(filename, token)
        path = workspace.resolve_sandbox_path(filename, token)
    except Exception as e:
        return outcome_from_error(e)
    return Outcome(ok=True, path=str(path), data={"content": content})


def sandbox_file_path(filename: str, token: Optional[str] = None) -> Outcome:
    try:
        path = workspace.file_path(filename, token)
    except Exception as e:
        return outcome_from_error(e)
    return Outcome(ok=True, path=str(path))


def delete_sandbox_file(filename: str, token: Optional[str] = None) -> Outcome:
    try:
        deleted = workspace.delete_file(filename, token)
    except Exception as e:
        return outcome_from_error(e)
    if not deleted:
        return Outcome(ok=False, kind="not_found", message=f"File not found: {filename}")
    return Outcome(ok=True, message=f"Deleted: {filename}")


def lock_sandbox(token: Optional[str] = None) -> Outcome:
    try:
        acquired = acquire_sandbox_lock(token)
    except Exception as e:
        return outcome_from_error(e)
    if not acquired:
        return Outcome(ok=False, kind="lock_conflict", message="Sandbox is already locked")
    return Outcome(ok=True, message="Sandbox locked")


def unlock_sandbox(token: Optional[str] = None) -> Outcome:
    try:
        released = release_sandbox_lock(token)
    except Exception as e:
        return outcome_from_error(e)
    if not released:
        return Outcome(ok=False, kind="lock_not_owned", message="Sandbox lock is held by another owner")
    return Outcome(ok=True, message="Sandbox unlocked")


def sandbox_lock_status(token: Optional[str] = None) -> Outcome:
    try:
        locked = is_sandbox_locked(token)
    except Exception as e:
        return outcome_from_error(e)
    return Outcome(ok=True, data={"locked": locked})


def run_cleanup() -> Outcome:
    report = initialize_cleanup()
    return Outcome(
        ok=True,
        data={"sandboxes_removed": report.sandboxes_removed, "locks_removed": report.locks_removed},
    )
