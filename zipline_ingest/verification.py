from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Optional, Union

import puremagic

from . import config
from .errors import MimeMismatchError, SecretDetectionError, UnsupportedFileTypeError
from .secret_scan import validate_file_for_secrets
from .workspace import format_file_size, log_sandbox_operation


@dataclass(frozen=True)
class VerifiedFile:
    path: Path
    mime_type: str
    size: int


OCTET_STREAM = "application/octet-stream"

EXTENSION_MIME_TYPES = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".gpx": "application/gpx+xml",
    ".html": "text/html",
    ".htm": "text/html",
    ".json": "application/json",
    ".xml": "application/xml",
    ".csv": "text/csv",
    ".js": "text/javascript",
    ".ts": "text/typescript",
    ".css": "text/css",
    ".py": "text/x-python",
    ".sh": "application/x-sh",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
    ".toml": "application/toml",
    ".mp4": "video/mp4",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}

TEXT_LIKE_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/gpx+xml",
    "application/x-sh",
    "application/yaml",
    "application/toml",
    "application/javascript",
    "image/svg+xml",
}

EXECUTABLE_MIME_TYPES = {
    "application/x-msdownload",
    "application/x-executable",
    "application/x-mach-binary",
    "application/x-dosexec",
    "application/x-sharedlib",
    "application/vnd.microsoft.portable-executable",
}

_EQUIVALENT_GROUPS = (
    {"video/webm", "video/x-matroska"},
    {"video/mp4", "video/quicktime"},
)


def _looks_textual(sample: bytes) -> bool:
    if b"\x00" in sample:
        return False
    # The prefix may end in the middle of a multi-byte character.
    for cut in range(min(4, len(sample))):
        try:
            sample[: len(sample) - cut].decode("utf-8")
            return True
        except UnicodeDecodeError:
            continue
    return False


def _signature_mime(sample: bytes) -> Optional[str]:
    # Signatures this module must classify deterministically, executables included.
    if sample.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if sample.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if sample.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if sample.startswith(b"BM") and len(sample) >= 14 and sample[6:10] == b"\x00\x00\x00\x00":
        return "image/bmp"
    if sample.startswith(b"RIFF") and len(sample) >= 12:
        fourcc = sample[8:12]
        if fourcc == b"WEBP":
            return "image/webp"
        if fourcc == b"AVI ":
            return "video/x-msvideo"
        if fourcc == b"WAVE":
            return "audio/wav"
    if sample[4:8] == b"ftyp":
        brand = sample[8:12]
        if brand == b"qt  ":
            return "video/quicktime"
        if brand in (b"M4A ", b"M4B "):
            return "audio/mp4"
        return "video/mp4"
    if sample.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm" if b"webm" in sample[:64] else "video/x-matroska"
    if sample.startswith(b"%PDF-"):
        return "application/pdf"
    if sample.startswith((b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")):
        return "application/zip"
    if sample.startswith(b"\x1f\x8b"):
        return "application/gzip"
    if sample.startswith(b"\x7fELF"):
        return "application/x-executable"
    if sample[:4] in (b"\xfe\xed\xfa\xce", b"\xfe\xed\xfa\xcf", b"\xce\xfa\xed\xfe", b"\xcf\xfa\xed\xfe"):
        return "application/x-mach-binary"

    if _looks_textual(sample):
        stripped = sample.lstrip(b"\xef\xbb\xbf \t\r\n")
        head = stripped[:512].lower()
        if sample.startswith(b"#!"):
            return "application/x-sh"
        if stripped.startswith((b"{", b"[")):
            return "application/json"
        if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
            return "image/svg+xml"
        if head.startswith(b"<?xml"):
            return "application/xml"
        return "text/plain"

    if sample.startswith(b"MZ"):
        return "application/x-msdownload"
    return None


def _library_mime(sample: bytes) -> Optional[str]:
    try:
        matches = puremagic.magic_string(sample)
    except (puremagic.PureError, ValueError):
        return None
    for match in matches:
        if match.mime_type:
            return match.mime_type.lower()
        guessed, _ = mimetypes.guess_type(f"file{match.extension}")
        if guessed:
            return guessed
    return None


def sniff_mime(sample: bytes) -> Optional[str]:
    """Classify content by its leading bytes. None means there was nothing to read.

    Known signatures and text are decided locally; other binaries go to puremagic.
    """
    if not sample:
        return None
    return _signature_mime(sample) or _library_mime(sample) or OCTET_STREAM


def expected_mime_for(path: Union[str, Path]) -> Optional[str]:
    ext = Path(path).suffix.lower()
    if ext in EXTENSION_MIME_TYPES:
        return EXTENSION_MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(f"file{ext}")
    return guessed


def is_text_like(mime: str) -> bool:
    return mime.startswith("text/") or mime in TEXT_LIKE_MIME_TYPES


def mimes_compatible(sniffed: Optional[str], expected: Optional[str]) -> bool:
    if sniffed in EXECUTABLE_MIME_TYPES:
        return sniffed == expected
    if expected is None:
        return True
    if sniffed is None:
        # Empty file: only plausible for text formats.
        return is_text_like(expected)
    if sniffed == expected:
        return True
    if is_text_like(sniffed):
        return is_text_like(expected)
    return any(sniffed in group and expected in group for group in _EQUIVALENT_GROUPS)


def _reject(path: Path, err: Exception) -> NoReturn:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log_sandbox_operation("FILE_REJECT_CLEANUP_FAILED", path.name, f"Error: {e}", sandbox=path.parent)
    log_sandbox_operation("FILE_REJECTED", path.name, f"Reason: {err}", sandbox=path.parent)
    raise err


def verify_downloaded_file(path: Union[str, Path]) -> VerifiedFile:
    """Accept a downloaded file only if its real format matches its name.

    Checks, in order: extension allow-list, sniffed type against the type the
    extension implies, secret scan. Any rejection deletes the file first.
    """
    target = Path(path)
    ext = target.suffix.lower()

    if ext not in config.ALLOWED_EXTENSIONS:
        supported = ", ".join(sorted(config.ALLOWED_EXTENSIONS))
        _reject(target, UnsupportedFileTypeError(f"Unsupported file type: {ext or 'none'}. Supported types: {supported}"))

    try:
        with target.open("rb") as fh:
            sample = fh.read(config.SNIFF_BYTES)
        size = target.stat().st_size
    except OSError as e:
        _reject(target, e)

    sniffed = sniff_mime(sample)
    expected = expected_mime_for(target)
    if not mimes_compatible(sniffed, expected):
        _reject(target, MimeMismatchError(sniffed or "empty", expected or OCTET_STREAM))

    try:
        validate_file_for_secrets(target)
    except (SecretDetectionError, OSError) as e:
        _reject(target, e)

    mime_type = expected or sniffed or OCTET_STREAM
    log_sandbox_operation("FILE_VERIFIED", target.name, f"Type: {mime_type} Size: {format_file_size(size)}", sandbox=target.parent)
    return VerifiedFile(path=target, mime_type=mime_type, size=size)
