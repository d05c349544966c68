"""yt-dlp -> ffmpeg streaming pipeline used by the download endpoint.

Two child processes are wired together without touching the disk:

    yt-dlp (bestaudio container) -> ffmpeg (mono / 16 kHz / 32 kbps MP3) -> sink

The sink is a ByteConduit that the HTTP layer reads from.
"""
from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import unicodedata
from typing import List, Optional

import structlog

logger = structlog.get_logger()


def env_float(name: str, default: float, minimum: float = 0.1) -> float:
    try:
        return max(float(os.getenv(name, "") or default), minimum)
    except ValueError:
        return default


YT_DLP_BIN = os.getenv("YT_DLP_BIN", "yt-dlp") or "yt-dlp"
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg") or "ffmpeg"
PIPELINE_TIMEOUT = env_float("PIPELINE_TIMEOUT_SECONDS", 600.0)
TITLE_TIMEOUT = env_float("TITLE_TIMEOUT_SECONDS", 30.0)

FALLBACK_NAME = "audio"
CHUNK_SIZE = 1024 * 64
CONDUIT_LIMIT = 1024 * 64
STDERR_TAIL_BYTES = 1024 * 8

# Allowed in addition to Unicode letters and digits.
_SAFE_PUNCTUATION = frozenset(" -_.()[]")


class PipelineError(Exception):
    """Base class for failures surfaced to the download caller."""

    kind = "pipeline"


class TitleProbeError(PipelineError):
    kind = "title_probe"


class ProcessStartError(PipelineError):
    kind = "start"


class ExtractorError(PipelineError):
    kind = "extractor"


class TranscoderError(PipelineError):
    kind = "transcoder"


class PipelineTimeoutError(PipelineError):
    kind = "timeout"


class PipelineCancelledError(PipelineError):
    kind = "cancelled"


class SinkClosedError(PipelineError):
    kind = "sink"


class ConduitClosedError(Exception):
    """Raised on a write after either side of a ByteConduit has closed."""


def sanitize_filename(name: str) -> str:
    """Return a Content-Disposition safe token for ``name`` (never empty)."""
    safe = "".join(
        ch if _is_safe_char(ch) else "_"
        for ch in name
    ).strip()
    return safe or FALLBACK_NAME


def _is_safe_char(ch: str) -> bool:
    if ch in _SAFE_PUNCTUATION:
        return True
    category = unicodedata.category(ch)
    # L* is any letter, Nd a decimal digit.
    return category.startswith("L") or category == "Nd"


class ByteConduit:
    """In-process single-producer / single-consumer byte stream.

    The producer closes the conduit with an optional error; once the buffer
    drains, readers see ``b""`` on a clean close or the error raised.
    """

    def __init__(self, limit: int = CONDUIT_LIMIT) -> None:
        self._buffer = bytearray()
        self._limit = limit
        self._eof = False
        self._error: Optional[BaseException] = None
        self._reader_closed = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

    @property
    def closed(self) -> bool:
        return self._eof or self._reader_closed

    async def write(self, data: bytes) -> None:
        while True:
            if self._reader_closed:
                raise ConduitClosedError("conduit reader is closed")
            if self._eof:
                raise ConduitClosedError("write to closed conduit")
            if len(self._buffer) < self._limit:
                break
            self._writable.clear()
            await self._writable.wait()
        if data:
            self._buffer.extend(data)
            self._readable.set()

    async def read(self, n: int = -1) -> bytes:
        while not self._buffer:
            if self._reader_closed:
                raise ConduitClosedError("read from closed conduit")
            if self._eof:
                if self._error is not None:
                    raise self._error
                return b""
            self._readable.clear()
            await self._readable.wait()

        if n < 0 or n >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:n])
            del self._buffer[:n]
        self._writable.set()
        return data

    def close(self, error: Optional[BaseException] = None) -> None:
        """Close the write side; a second close is ignored."""
        if self._eof:
            return
        self._eof = True
        self._error = error
        self._readable.set()
        self._writable.set()

    def close_reader(self) -> None:
        self._reader_closed = True
        self._buffer.clear()
        self._readable.set()
        self._writable.set()


class _OutputTail:
    """Keeps the last few KiB a child wrote to one of its pipes."""

    def __init__(self, limit: int = STDERR_TAIL_BYTES) -> None:
        self._data = bytearray()
        self._limit = limit

    def feed(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        if len(self._data) > self._limit:
            del self._data[: len(self._data) - self._limit]

    def text(self) -> str:
        return self._data.decode("utf-8", "ignore").strip()


def title_command(url: str) -> List[str]:
    return [YT_DLP_BIN, "--no-playlist", "--print", "%(title)s", "--no-warnings", url]


def extractor_command(url: str) -> List[str]:
    # No -x: yt-dlp's own post-processor ignores our audio settings with -o -.
    return [YT_DLP_BIN, "--no-playlist", "-f", "bestaudio", "--no-warnings", "-o", "-", url]


def transcoder_command() -> List[str]:
    return [
        FFMPEG_BIN,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        "pipe:0",
        "-ac",
        "1",
        "-ar",
        "16000",
        "-b:a",
        "32k",
        "-f",
        "mp3",
        "pipe:1",
    ]


async def _spawn(cmd: List[str], stdin: int) -> asyncio.subprocess.Process:
    # Own session so a kill also takes down anything the tool forked.
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=stdin,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )


def _kill(procs: List[asyncio.subprocess.Process]) -> None:
    for proc in procs:
        if proc.returncode is not None:
            continue
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()


async def _reap(proc: asyncio.subprocess.Process, stderr: Optional[_OutputTail] = None) -> None:
    """Kill ``proc`` if needed and wait for it, pipes included.

    Anything still unread on stderr is fed to ``stderr`` when given.
    """
    _kill([proc])
    # wait() only returns once the pipes hit EOF, so read whatever is left.
    for stream, tail in ((proc.stdout, None), (proc.stderr, stderr)):
        if stream is None:
            continue
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            if tail is not None:
                tail.feed(chunk)
    await proc.wait()


async def fetch_title(url: str, timeout: Optional[float] = None) -> str:
    """Ask yt-dlp for the video title without downloading the media.

    Raises TitleProbeError on a start failure, non-zero exit or timeout;
    callers fall back to ``FALLBACK_NAME``.
    """
    timeout = TITLE_TIMEOUT if timeout is None else timeout
    try:
        proc = await _spawn(title_command(url), asyncio.subprocess.DEVNULL)
    except OSError as exc:
        raise TitleProbeError(f"yt-dlp title fetch failed: {exc}") from exc

    # Tails are filled as data arrives so a timeout still has the stderr so far.
    out = _OutputTail(CHUNK_SIZE)
    err = _OutputTail()
    try:
        try:
            await asyncio.wait_for(_communicate(proc, out, err), timeout)
        except asyncio.TimeoutError as exc:
            await _reap(proc, err)
            raise TitleProbeError(
                f"yt-dlp title fetch timed out after {timeout:g}s; stderr: {err.text()}"
            ) from exc
    finally:
        await _reap(proc)

    if proc.returncode != 0:
        raise TitleProbeError(
            f"yt-dlp title fetch failed: exit status {proc.returncode}; stderr: {err.text()}"
        )
    return out.text()


async def _communicate(proc: asyncio.subprocess.Process, out: _OutputTail, err: _OutputTail) -> None:
    await asyncio.gather(_collect(proc.stdout, out), _collect(proc.stderr, err))
    await proc.wait()


async def _collect(stream: asyncio.StreamReader, tail: _OutputTail) -> None:
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            return
        tail.feed(chunk)


async def _pump(source: asyncio.StreamReader, dest: asyncio.StreamWriter) -> None:
    """Copy extractor stdout into transcoder stdin until the extractor hits EOF."""
    broken = False
    while True:
        chunk = await source.read(CHUNK_SIZE)
        if not chunk:
            return
        if broken:
            # ffmpeg stopped reading; keep draining so yt-dlp can exit.
            continue
        try:
            dest.write(chunk)
            await dest.drain()
        except ConnectionError:
            broken = True


async def _deliver(
    source: asyncio.StreamReader,
    sink: ByteConduit,
    procs: List[asyncio.subprocess.Process],
) -> None:
    while True:
        chunk = await source.read(CHUNK_SIZE)
        if not chunk:
            return
        try:
            await sink.write(chunk)
        except ConduitClosedError:
            _kill(procs)
            raise


async def _close_stdin(writer: asyncio.StreamWriter) -> None:
    writer.close()
    # ffmpeg may already be gone when yt-dlp failed.
    with contextlib.suppress(ConnectionError):
        await writer.wait_closed()


async def _run_pipeline(url: str, sink: ByteConduit) -> None:
    try:
        extractor = await _spawn(extractor_command(url), asyncio.subprocess.DEVNULL)
    except OSError as exc:
        raise ProcessStartError(f"could not start yt-dlp: {exc}") from exc

    try:
        transcoder = await _spawn(transcoder_command(), asyncio.subprocess.PIPE)
    except OSError as exc:
        await _reap(extractor)
        raise ProcessStartError(f"could not start ffmpeg: {exc}") from exc

    procs = [extractor, transcoder]
    extractor_stderr = _OutputTail()
    transcoder_stderr = _OutputTail()
    pump = asyncio.ensure_future(_pump(extractor.stdout, transcoder.stdin))
    deliver = asyncio.ensure_future(_deliver(transcoder.stdout, sink, procs))
    drains = [
        asyncio.ensure_future(_collect(extractor.stderr, extractor_stderr)),
        asyncio.ensure_future(_collect(transcoder.stderr, transcoder_stderr)),
    ]
    tasks = [pump, deliver] + drains

    try:
        # Order matters: ffmpeg must not see EOF before yt-dlp has finished
        # writing, and must see it once yt-dlp is done or it blocks forever.
        await pump
        extractor_code = await extractor.wait()
        await _close_stdin(transcoder.stdin)

        transcoder_code = await transcoder.wait()
        try:
            await deliver
        except ConduitClosedError as exc:
            raise SinkClosedError(f"audio sink closed mid-stream: {exc}") from exc
        await asyncio.gather(*drains)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for proc in procs:
            await _reap(proc)

    if extractor_code != 0:
        raise ExtractorError(
            f"yt-dlp failed: exit status {extractor_code}; stderr: {extractor_stderr.text()}"
        )
    if transcoder_code != 0:
        raise TranscoderError(
            f"ffmpeg failed: exit status {transcoder_code}; stderr: {transcoder_stderr.text()}"
        )


async def stream_mp3(url: str, sink: ByteConduit, timeout: Optional[float] = None) -> None:
    """Download the best audio for ``url`` and write Whisper-sized MP3 into ``sink``.

    Audio is mono, 16 kHz, 32 kbps CBR: roughly 2.4 MB per 10 minutes, which
    keeps a 100 minute video under a 25 MB transcription upload limit.

    Both children are reaped before this returns, whatever the outcome.
    The sink is left open; closing it is the caller's job.
    """
    timeout = PIPELINE_TIMEOUT if timeout is None else timeout
    try:
        await asyncio.wait_for(_run_pipeline(url, sink), timeout)
    except asyncio.TimeoutError as exc:
        raise PipelineTimeoutError(
            f"download exceeded the {timeout:g}s pipeline deadline"
        ) from exc


async def produce_mp3(url: str, sink: ByteConduit) -> Optional[PipelineError]:
    """Run stream_mp3 and close ``sink`` with its outcome.

    Returns the pipeline error (or None) so the reader can surface it after
    observing an empty stream.
    """
    try:
        await stream_mp3(url, sink)
    except PipelineError as exc:
        sink.close(exc)
        return exc
    except asyncio.CancelledError:
        sink.close(PipelineCancelledError("download was cancelled"))
        raise
    except Exception as exc:
        logger.exception("pipeline_crashed", url=url)
        error = PipelineError(f"pipeline crashed: {exc}")
        sink.close(error)
        return error
    sink.close()
    return None
