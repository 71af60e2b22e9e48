"""Error taxonomy for the ingestion pipeline.

Every error carries a short machine-readable ``kind`` next to its message so the
calling layer can branch on it without parsing text.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel


class IngestError(Exception):
    kind = "ingest"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(IngestError):
    kind = "configuration"


class SandboxPathError(IngestError):
    kind = "path"


class LockConflictError(IngestError):
    kind = "lock_conflict"


class FileTooLargeError(IngestError):
    kind = "file_too_large"


class DownloadError(IngestError):
    kind = "download"


class InvalidUrlError(DownloadError):
    kind = "invalid_url"


class HttpStatusError(DownloadError):
    kind = "http_status"

    def __init__(self, status_code: int, reason: str = "") -> None:
        text = f"HTTP {status_code}"
        if reason:
            text = f"{text} {reason}"
        super().__init__(text)
        self.status_code = status_code


class DownloadTooLargeError(DownloadError):
    kind = "too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"File size {size} bytes exceeds the maximum allowed size of {limit} bytes")
        self.size = size
        self.limit = limit


class DownloadTimeoutError(DownloadError):
    kind = "timeout"


class SecretDetectionError(IngestError):
    kind = "secret_detected"

    def __init__(self, message: str, secret_type: str, pattern_sample: str) -> None:
        super().__init__(message)
        self.secret_type = secret_type
        self.pattern_sample = pattern_sample


class ContentVerificationError(IngestError):
    kind = "content_verification"


class UnsupportedFileTypeError(ContentVerificationError):
    kind = "unsupported_type"


class MimeMismatchError(ContentVerificationError):
    kind = "mime_mismatch"

    def __init__(self, detected: str, expected: str) -> None:
        super().__init__(f"MIME type mismatch: content is {detected} but extension implies {expected}")
        self.detected = detected
        self.expected = expected


class Outcome(BaseModel):
    """What every pipeline operation hands back to the calling layer."""

    ok: bool
    kind: str = "ok"
    message: str = ""
    path: Optional[str] = None
    data: dict[str, Any] = {}


def outcome_from_error(exc: BaseException) -> Outcome:
    if isinstance(exc, IngestError):
        data: dict[str, Any] = {}
        if isinstance(exc, SecretDetectionError):
            data = {"secret_type": exc.secret_type, "pattern_sample": exc.pattern_sample}
        elif isinstance(exc, HttpStatusError):
            data = {"status_code": exc.status_code}
        elif isinstance(exc, DownloadTooLargeError):
            data = {"size": exc.size, "limit": exc.limit}
        return Outcome(ok=False, kind=exc.kind, message=exc.message, data=data)
    if isinstance(exc, FileNotFoundError):
        return Outcome(ok=False, kind="not_found", message=f"File not found: {exc.filename or exc}")
    if isinstance(exc, IsADirectoryError):
        return Outcome(ok=False, kind="not_found", message=f"Not a regular file: {exc.filename or exc}")
    if isinstance(exc, PermissionError):
        return Outcome(ok=False, kind="permission", message="Permission denied")
    return Outcome(ok=False, kind="internal", message=str(exc) or exc.__class__.__name__)
