"""Download remote URLs into the caller's sandbox.

URLs are attacker-controlled: they never get to pick an unsafe filename, never
get to write more than the byte budget, and never leave a partial file behind
when anything goes wrong.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlsplit

import httpx

from . import config
from .errors import (
    DownloadError,
    DownloadTimeoutError,
    DownloadTooLargeError,
    HttpStatusError,
    IngestError,
    InvalidUrlError,
)
from .locking import now_ms
from .security import sanitize_path, validate_filename
from .workspace import ensure_user_sandbox, format_file_size, log_sandbox_operation


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def parse_download_url(url: Optional[str]) -> str:
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrlError("Invalid URL")
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        raise InvalidUrlError("Invalid URL")
    if parts.scheme.lower() not in ("http", "https"):
        raise InvalidUrlError(f"Invalid URL: unsupported scheme '{parts.scheme or 'none'}'")
    if not parts.hostname:
        raise InvalidUrlError("Invalid URL: missing host")
    return url.strip()


def filename_from_url(url: str) -> str:
    """Last path segment of the URL, or download-<epoch-ms> if that is not a safe bare name."""
    name = unquote(posixpath.basename(urlsplit(url).path))
    if validate_filename(name) is not None:
        return f"download-{now_ms()}"
    return name


def _declared_length(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


async def _fetch(url: str, max_bytes: int, timeout_s: float, client: Optional[httpx.AsyncClient]) -> bytes:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout_s,
            headers={"User-Agent": config.DOWNLOAD_USER_AGENT},
        )
    try:
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise HttpStatusError(response.status_code, response.reason_phrase)

            declared = _declared_length(response)
            if declared is not None and declared > max_bytes:
                raise DownloadTooLargeError(declared, max_bytes)

            # Content-Length can lie or be absent (chunked), so count what actually arrives.
            buf = bytearray()
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise DownloadTooLargeError(len(buf), max_bytes)
            return bytes(buf)
    finally:
        if owns_client:
            await client.aclose()


def _discard_partial(target: Path) -> None:
    try:
        target.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial download %s: %s", target.name, e)


def _translate(exc: Exception) -> Exception:
    if isinstance(exc, IngestError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return DownloadTimeoutError("Request aborted or timeout exceeded")
    if isinstance(exc, httpx.HTTPError):
        return DownloadError(f"Network error: {exc}")
    return exc


async def download_external_url(
    url: str,
    *,
    token: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    max_bytes: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Path:
    """Download url into the caller's sandbox and return the absolute local path.

    The whole request, body included, runs under a timeout_ms deadline. On any
    failure the target path is removed before the error propagates.
    """
    url = parse_download_url(url)
    timeout_s = (config.DOWNLOAD_TIMEOUT_MS if timeout_ms is None else timeout_ms) / 1000
    budget = config.DOWNLOAD_MAX_BYTES if max_bytes is None else max_bytes

    sandbox = ensure_user_sandbox(token)
    filename = filename_from_url(url)
    target = sanitize_path(filename, sandbox)

    try:
        data = await asyncio.wait_for(_fetch(url, budget, timeout_s, client), timeout=timeout_s)
        # Large bodies are written off the event loop.
        await asyncio.to_thread(target.write_bytes, data)
    except asyncio.CancelledError:
        _discard_partial(target)
        raise
    except Exception as exc:
        _discard_partial(target)
        err = _translate(exc)
        log_sandbox_operation("FILE_DOWNLOAD_FAILED", filename, f"Error: {err}", sandbox=sandbox)
        if err is exc:
            raise
        raise err from exc

    log_sandbox_operation("FILE_DOWNLOADED", filename, f"Size: {format_file_size(len(data))}", sandbox=sandbox)
    return target
