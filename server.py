"""FastAPI front for yt-download-mp3.

This service exposes two endpoints:
- GET  /health   : liveness plus service version
- POST /download : streams a mono 16 kHz 32 kbps MP3 of the given video URL

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8080
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Optional

import anyio
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send
from yt_dlp.version import __version__ as YT_DLP_VERSION

from audio_pipeline import (
    FALLBACK_NAME,
    ByteConduit,
    PipelineError,
    TitleProbeError,
    env_float,
    fetch_title,
    produce_mp3,
    sanitize_filename,
)

__version__ = "1.1.1"

LOG_LEVEL = getattr(logging, (os.getenv("LOG_LEVEL") or "INFO").upper(), logging.INFO)

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVEL),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()

# Small on purpose: we hold headers until this much (or EOF) has arrived.
PEEK_SIZE = 4096
STREAM_CHUNK_SIZE = 1024 * 64
# The body is one small JSON object; slow-trickling clients get a 408.
READ_TIMEOUT = env_float("READ_TIMEOUT_SECONDS", 15.0)

app = FastAPI(title="yt-download-mp3", version=__version__)


class JSONLineResponse(JSONResponse):
    """Compact JSON with a trailing newline, like a streaming JSON encoder."""

    def render(self, content: Any) -> bytes:
        return super().render(content) + b"\n"


class DownloadRequest(BaseModel):
    url: str = ""


def error_response(status_code: int, message: str, url: Optional[str] = None) -> JSONLineResponse:
    payload: Dict[str, str] = {"error": message}
    if url:
        payload["url"] = url
    return JSONLineResponse(payload, status_code=status_code)


def parse_download_request(body: bytes) -> DownloadRequest:
    """Decode the request body; raises ValueError for anything but an object with a string url."""
    payload = json.loads(body)
    if payload is None:
        return DownloadRequest()
    if not isinstance(payload, dict):
        raise ValueError("JSON body must be an object")
    try:
        return DownloadRequest.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


async def stop_producer(conduit: ByteConduit, producer: "asyncio.Task[Optional[PipelineError]]") -> None:
    """Close our end of the conduit and wait until both children are reaped."""
    conduit.close_reader()
    if not producer.done():
        producer.cancel()
    # Shielded so a disconnect-driven cancel cannot skip the reap.
    with anyio.CancelScope(shield=True):
        await asyncio.gather(producer, return_exceptions=True)


class AudioStreamResponse(StreamingResponse):
    """StreamingResponse that always tears the pipeline down once it is done.

    Headers are already committed when a client write fails, so the failure
    is logged rather than raised.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        filename: str,
        url: str,
        conduit: ByteConduit,
        producer: "asyncio.Task[Optional[PipelineError]]",
    ) -> None:
        super().__init__(
            content,
            media_type="audio/mpeg",
            headers={
                "Content-Disposition": f'attachment; filename="{filename}"',
                "X-Content-Type-Options": "nosniff",
            },
        )
        self.url = url
        self.conduit = conduit
        self.producer = producer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (OSError, ClientDisconnect) as exc:
            logger.warning("client_write_failed", url=self.url, error=str(exc) or type(exc).__name__)
        finally:
            if not self.producer.done():
                logger.warning("download_aborted", url=self.url)
            await stop_producer(self.conduit, self.producer)


async def _stream_audio(first_chunk: bytes, conduit: ByteConduit, url: str, filename: str) -> AsyncIterator[bytes]:
    yield first_chunk
    try:
        while True:
            chunk = await conduit.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    except PipelineError as exc:
        # Status is already 200; all we can do is cut the body short.
        logger.error("stream_truncated", url=url, filename=filename, error=str(exc))
        return
    logger.info("download_complete", url=url, filename=filename)


@app.get("/health")
async def health() -> JSONLineResponse:
    return JSONLineResponse({"status": "ok", "version": __version__})


@app.exception_handler(StarletteHTTPException)
async def method_not_allowed_handler(request: Request, exc: StarletteHTTPException):
    # Covers every non-POST method on /download, including ones nobody routes.
    if exc.status_code == 405 and request.url.path == "/download":
        return error_response(405, "method not allowed, use POST")
    return await http_exception_handler(request, exc)


@app.post("/download")
async def download(request: Request):
    """Stream an MP3 rendition of the posted video URL.

    The first chunk of audio is awaited before any header is sent, so a
    pipeline that fails up front still gets a proper JSON error.
    """
    try:
        with anyio.fail_after(READ_TIMEOUT):
            body = await request.body()
    except TimeoutError:
        logger.warning("request_read_timeout", timeout=READ_TIMEOUT)
        return error_response(408, "timed out reading request body")

    try:
        req = parse_download_request(body)
    except ValueError:
        return error_response(400, "invalid JSON body")

    if req.url == "":
        return error_response(400, "missing required field: url")

    url = req.url
    logger.info("download_request", url=url)

    try:
        title = await fetch_title(url)
    except TitleProbeError as exc:
        logger.warning("title_fetch_failed", url=url, error=str(exc), fallback=FALLBACK_NAME)
        title = FALLBACK_NAME

    filename = sanitize_filename(title) + ".mp3"

    conduit = ByteConduit()
    producer = asyncio.create_task(produce_mp3(url, conduit))

    try:
        first_chunk = await conduit.read(PEEK_SIZE)
    except PipelineError:
        first_chunk = b""
    except BaseException:
        await stop_producer(conduit, producer)
        raise

    if not first_chunk:
        # Nothing came out, so headers are still ours to choose.
        conduit.close_reader()
        stream_error = await producer
        message = str(stream_error) if stream_error is not None else "download produced no output"
        logger.error("download_failed", url=url, error=message)
        return error_response(500, message, url)

    return AudioStreamResponse(
        _stream_audio(first_chunk, conduit, url, filename),
        filename=filename,
        url=url,
        conduit=conduit,
        producer=producer,
    )


if __name__ == "__main__":
    port = int(os.getenv("PORT") or "8080")
    host = os.getenv("HOST") or "0.0.0.0"
    logger.info(
        "server_starting",
        version=__version__,
        port=port,
        yt_dlp=YT_DLP_VERSION,
    )
    uvicorn.run(
        "server:app",
        host=host,
        port=port,
        # READ_TIMEOUT bounds the body read and PIPELINE_TIMEOUT_SECONDS the stream.
        timeout_keep_alive=60,
        timeout_graceful_shutdown=30,
    )
