from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import config
from .errors import ConfigurationError, FileTooLargeError, SandboxPathError
from .security import sanitize_path, validate_filename


logger = logging.getLogger(__name__)

_USER_HASH_RE = re.compile(r"/users/[^/]+$")


@dataclass(frozen=True)
class SandboxFile:
    name: str
    size: int


def resolve_token(token: Optional[str]) -> str:
    secret = token if token is not None else config.ZIPLINE_TOKEN
    if not secret:
        raise ConfigurationError("ZIPLINE_TOKEN is required for sandbox functionality")
    return secret


def sandbox_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def users_dir() -> Path:
    return Path(config.TMP_DIR) / config.USERS_SUBDIR


def get_user_sandbox(token: Optional[str] = None) -> Path:
    """Return the sandbox root for an identity secret.

    The directory name is the SHA-256 of the secret, so the same secret always
    lands in the same place and the name does not reveal the secret.
    """
    secret = resolve_token(token)
    if config.SANDBOXING_DISABLED:
        return Path(config.TMP_DIR)
    return users_dir() / sandbox_hash(secret)


def ensure_user_sandbox(token: Optional[str] = None) -> Path:
    sandbox = get_user_sandbox(token)
    sandbox.mkdir(parents=True, exist_ok=True, mode=config.SANDBOX_DIR_MODE)
    if not config.SANDBOXING_DISABLED:
        # mkdir's mode is filtered by umask and ignored for existing dirs.
        os.chmod(sandbox, config.SANDBOX_DIR_MODE)
    return sandbox


def resolve_sandbox_path(filename: Optional[str], token: Optional[str] = None) -> Path:
    return sanitize_path(filename, get_user_sandbox(token))


def log_sandbox_operation(
    operation: str,
    filename: Optional[str] = None,
    details: Optional[str] = None,
    sandbox: Optional[Path] = None,
) -> None:
    """Audit log for sandbox activity. The per-user hash is never written out."""
    if sandbox is None:
        try:
            sandbox = get_user_sandbox()
        except ConfigurationError:
            sandbox = Path(config.TMP_DIR)
    sanitized = _USER_HASH_RE.sub("/users/[HASH]", Path(sandbox).as_posix())

    message = f"SANDBOX_OPERATION: {operation}"
    if filename:
        message += f" - {filename}"
    message += f" - Path: {sanitized}"
    if details:
        message += f" - {details}"
    logger.info(message)


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} bytes"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _checked_name(filename: Optional[str]) -> str:
    err = validate_filename(filename)
    if err:
        raise SandboxPathError(err)
    return filename  # type: ignore[return-value]


def list_files(token: Optional[str] = None) -> list[SandboxFile]:
    sandbox = ensure_user_sandbox(token)
    files = [
        SandboxFile(name=entry.name, size=entry.stat().st_size)
        for entry in sorted(sandbox.iterdir())
        if entry.is_file() and entry.name != config.LOCK_FILENAME
    ]
    log_sandbox_operation("FILE_LIST", details=f"Files: {len(files)}", sandbox=sandbox)
    return files


def write_file(filename: str, content: str = "", token: Optional[str] = None) -> Path:
    """Create or overwrite a bare-named file in the sandbox."""
    name = _checked_name(filename)
    sandbox = ensure_user_sandbox(token)
    path = sanitize_path(name, sandbox)
    path.write_text(content or "", encoding="utf-8")
    size = path.stat().st_size
    log_sandbox_operation("FILE_CREATED", name, f"Size: {format_file_size(size)}", sandbox=sandbox)
    return path


def read_file(filename: str, token: Optional[str] = None) -> str:
    name = _checked_name(filename)
    sandbox = ensure_user_sandbox(token)
    path = sanitize_path(name, sandbox)
    size = path.stat().st_size
    if size > config.TMP_MAX_READ_SIZE:
        log_sandbox_operation(
            "FILE_READ_FAILED", name, f"Reason: File too large ({format_file_size(size)})", sandbox=sandbox
        )
        raise FileTooLargeError(
            f"File too large ({format_file_size(size)}). "
            f"Max allowed: {format_file_size(config.TMP_MAX_READ_SIZE)}."
        )
    data = path.read_text(encoding="utf-8")
    log_sandbox_operation("FILE_READ", name, f"Size: {format_file_size(size)}", sandbox=sandbox)
    return data


def file_path(filename: str, token: Optional[str] = None) -> Path:
    name = _checked_name(filename)
    path = resolve_sandbox_path(name, token)
    log_sandbox_operation("FILE_PATH", name, sandbox=path.parent)
    return path


def delete_file(filename: str, token: Optional[str] = None) -> bool:
    name = _checked_name(filename)
    sandbox = get_user_sandbox(token)
    path = sanitize_path(name, sandbox)
    if not path.is_file():
        return False
    path.unlink()
    log_sandbox_operation("FILE_DELETED", name, sandbox=sandbox)
    return True
