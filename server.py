from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from zipline_ingest import config, pipeline
from zipline_ingest.cleanup import initialize_cleanup
from zipline_ingest.errors import Outcome


logger = logging.getLogger(__name__)


class DownloadRequest(BaseModel):
    url: str
    timeout_ms: Optional[int] = None
    max_file_size_bytes: Optional[int] = None


class FilePathRequest(BaseModel):
    file_path: str


class SandboxFileRequest(BaseModel):
    filename: str
    content: str = ""


_STATUS_BY_KIND = {
    "configuration": 401,
    "path": 400,
    "invalid_url": 400,
    "permission": 403,
    "not_found": 404,
    "lock_conflict": 409,
    "lock_not_owned": 409,
    "too_large": 413,
    "file_too_large": 413,
    "unsupported_type": 415,
    "mime_mismatch": 415,
    "secret_detected": 422,
    "http_status": 502,
    "download": 502,
    "timeout": 504,
}


def _respond(outcome: Outcome) -> JSONResponse:
    status = 200 if outcome.ok else _STATUS_BY_KIND.get(outcome.kind, 500)
    return JSONResponse(outcome.model_dump(), status_code=status)


def _token(authorization: Optional[str]) -> Optional[str]:
    # Falls back to ZIPLINE_TOKEN when the caller sends no credentials.
    if not authorization or not authorization.strip():
        return None
    value = authorization.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


async def _cleanup_worker() -> None:
    # Periodically sweep expired sandboxes and stale locks.
    while True:
        await asyncio.sleep(max(30, config.CLEANUP_INTERVAL_SECONDS))
        try:
            initialize_cleanup()
        except Exception:
            logger.exception("Periodic cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Run a cleanup pass at startup, then start the periodic cleanup task.
    initialize_cleanup()

    task = asyncio.create_task(_cleanup_worker())
    app.state._cleanup_task = task
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(lifespan=lifespan)


@app.post("/api/download")
async def download(payload: DownloadRequest, authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    outcome = await pipeline.download_external_url_tool(
        payload.url,
        token=_token(authorization),
        timeout_ms=payload.timeout_ms,
        max_file_size_bytes=payload.max_file_size_bytes,
    )
    return _respond(outcome)


@app.post("/api/upload/prepare")
async def prepare_upload(payload: FilePathRequest) -> JSONResponse:
    return _respond(pipeline.prepare_upload(payload.file_path))


@app.post("/api/files/validate")
async def validate_file(payload: FilePathRequest) -> JSONResponse:
    return _respond(pipeline.validate_file(payload.file_path))


@app.get("/api/sandbox/files")
async def list_files(authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.list_sandbox_files(_token(authorization)))


@app.post("/api/sandbox/files")
async def create_file(payload: SandboxFileRequest, authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.create_sandbox_file(payload.filename, payload.content, _token(authorization)))


@app.get("/api/sandbox/files/{filename}")
async def read_file(filename: str, authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.read_sandbox_file(filename, _token(authorization)))


@app.get("/api/sandbox/files/{filename}/path")
async def file_path(filename: str, authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.sandbox_file_path(filename, _token(authorization)))


@app.delete("/api/sandbox/files/{filename}")
async def delete_file(filename: str, authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.delete_sandbox_file(filename, _token(authorization)))


@app.get("/api/sandbox/lock")
async def lock_status(authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.sandbox_lock_status(_token(authorization)))


@app.post("/api/sandbox/lock")
async def lock(authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.lock_sandbox(_token(authorization)))


@app.delete("/api/sandbox/lock")
async def unlock(authorization: Optional[str] = Header(default=None)) -> JSONResponse:
    return _respond(pipeline.unlock_sandbox(_token(authorization)))


def _require_localhost(request: Request) -> None:
    # These endpoints are destructive; restrict to local use.
    host = getattr(request.client, "host", "") if request.client else ""
    if host not in {"127.0.0.1", "::1", "localhost"}:
        raise HTTPException(status_code=403, detail="Forbidden")


@app.post("/api/sandbox/cleanup")
async def cleanup(request: Request) -> JSONResponse:
    _require_localhost(request)
    return _respond(pipeline.run_cleanup())


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
