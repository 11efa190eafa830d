from __future__ import annotations

"""
Log/Exec Streaming Bridge.

Log side: the Engine multiplexes stdout and stderr of non-tty objects into one
byte stream of frames:

    [stream_type:1][0x00 0x00 0x00][payload_length:4, big-endian][payload]

where stream_type is 0 (stdin), 1 (stdout) or 2 (stderr). Frames are cut at
arbitrary chunk boundaries, and lines at arbitrary frame boundaries, so both
are reassembled incrementally. A stream that does not start with a plausible
header (tty objects) is passed through as stdout.

Exec side: ``bridge_exec`` pumps bytes between a caller channel and an
interactive exec session and closes the session as soon as either direction
ends or fails.
"""

import asyncio
import json
import logging
import struct
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from hydra_server.app.workspaces.runtime import ExecSession, LogStream

logger = logging.getLogger("hydra_workspaces")

__all__ = [
    "LogEvent",
    "FrameDemuxer",
    "LineAssembler",
    "demux_output",
    "collect_output",
    "aiter_from_sync_iter",
    "stream_log_events",
    "format_sse",
    "bridge_exec",
]

_HEADER_LEN = 8
_STREAMS = {0: "stdin", 1: "stdout", 2: "stderr"}


@dataclass(frozen=True)
class LogEvent:
    stream: str
    line: str

    def to_dict(self) -> Dict[str, str]:
        return {"stream": self.stream, "line": self.line}


def _sniff_framing(buf: bytes) -> Optional[bool]:
    """
    True when ``buf`` cannot start a frame header, False once a full
    4-byte header prefix is seen, None while still undecided.
    """
    if buf[0] not in _STREAMS:
        return True
    if any(buf[1:4]):
        return True
    return False if len(buf) >= 4 else None


class FrameDemuxer:
    """
    Incremental parser turning raw chunks into (stream, payload) pairs.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self._raw: Optional[bool] = None

    @property
    def raw(self) -> Optional[bool]:
        return self._raw

    def feed(self, chunk: bytes) -> List[Tuple[str, bytes]]:
        if not chunk:
            return []
        self._buf += chunk
        if self._raw is None:
            self._raw = _sniff_framing(bytes(self._buf[:4]))
            if self._raw is None:
                return []
        if self._raw:
            data = bytes(self._buf)
            self._buf.clear()
            return [("stdout", data)]

        frames: List[Tuple[str, bytes]] = []
        while len(self._buf) >= _HEADER_LEN:
            (length,) = struct.unpack(">I", bytes(self._buf[4:_HEADER_LEN]))
            end = _HEADER_LEN + length
            if len(self._buf) < end:
                break
            stream = _STREAMS.get(self._buf[0], "stdout")
            frames.append((stream, bytes(self._buf[_HEADER_LEN:end])))
            del self._buf[:end]
        return frames

    def flush(self) -> List[Tuple[str, bytes]]:
        """
        Emit whatever is left once the source has ended.
        """
        if not self._buf:
            return []
        leftover = bytes(self._buf)
        self._buf.clear()
        if self._raw is False:
            # Truncated frame: keep the partial payload.
            if len(leftover) <= _HEADER_LEN:
                return []
            return [(_STREAMS.get(leftover[0], "stdout"), leftover[_HEADER_LEN:])]
        return [("stdout", leftover)]


class LineAssembler:
    """
    Per-stream line buffering; payloads may split lines anywhere.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, bytearray] = {}

    def feed(self, stream: str, payload: bytes) -> List[LogEvent]:
        buf = self._pending.setdefault(stream, bytearray())
        buf += payload
        events: List[LogEvent] = []
        while True:
            idx = buf.find(b"\n")
            if idx < 0:
                break
            raw_line = bytes(buf[:idx]).rstrip(b"\r")
            del buf[: idx + 1]
            events.append(LogEvent(stream=stream, line=raw_line.decode("utf-8", errors="replace")))
        return events

    def flush(self) -> List[LogEvent]:
        events: List[LogEvent] = []
        for stream, buf in self._pending.items():
            if buf:
                events.append(LogEvent(stream=stream, line=bytes(buf).rstrip(b"\r").decode("utf-8", errors="replace")))
                buf.clear()
        return events


def demux_output(chunks: Iterable[bytes]) -> Dict[str, bytes]:
    """
    Collect a finished stream into raw bytes per stream name.
    """
    demux = FrameDemuxer()
    out: Dict[str, bytearray] = {}
    for chunk in chunks:
        for stream, payload in demux.feed(chunk):
            out.setdefault(stream, bytearray()).extend(payload)
    for stream, payload in demux.flush():
        out.setdefault(stream, bytearray()).extend(payload)
    return {k: bytes(v) for k, v in out.items()}


async def aiter_from_sync_iter(stream: Iterable[bytes]) -> AsyncIterator[bytes]:
    """
    Adapt a blocking iterable of bytes into an async iterator of bytes.

    Each ``next()`` runs in a worker thread so a follow-mode Engine stream
    never blocks the event loop. Empty chunks are skipped.
    """
    it = iter(stream)
    sentinel = object()
    while True:
        chunk = await asyncio.to_thread(next, it, sentinel)
        if chunk is sentinel:
            return
        if chunk:
            yield bytes(chunk)  # type: ignore[arg-type]


async def collect_output(stream: LogStream) -> Dict[str, bytes]:
    """
    Drain a finished (non-follow) stream into raw bytes per stream name.
    """
    try:
        chunks = [chunk async for chunk in aiter_from_sync_iter(stream)]
    finally:
        stream.close()
    return demux_output(chunks)


async def stream_log_events(stream: LogStream) -> AsyncIterator[LogEvent]:
    """
    Lazily turn a raw log stream into line events.

    The underlying subscription is released when the source ends, when the
    consumer stops iterating, or when the consuming task is cancelled.
    """
    demux = FrameDemuxer()
    lines = LineAssembler()
    try:
        async for chunk in aiter_from_sync_iter(stream):
            for name, payload in demux.feed(chunk):
                for event in lines.feed(name, payload):
                    yield event
        for name, payload in demux.flush():
            for event in lines.feed(name, payload):
                yield event
        for event in lines.flush():
            yield event
    finally:
        stream.close()


def format_sse(data: Dict[str, object], event: Optional[str] = None) -> str:
    """
    Serialize one server-sent event.
    """
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


async def bridge_exec(
    session: ExecSession,
    receive: Callable[[], Awaitable[Optional[bytes]]],
    send: Callable[[bytes], Awaitable[None]],
) -> None:
    """
    Pump bytes both ways between a caller channel and an exec session.

    ``receive`` returns the next inbound chunk or None once the caller has
    gone; ``send`` delivers shell output to the caller. Whichever direction
    finishes (or fails) first ends the bridge, and the session is always
    closed on the way out.
    """

    async def inbound() -> None:
        while True:
            data = await receive()
            if data is None:
                return
            if data:
                await session.send(data)

    async def outbound() -> None:
        while True:
            data = await session.recv()
            if not data:
                return
            await send(data)

    tasks = [asyncio.create_task(inbound()), asyncio.create_task(outbound())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.info("Exec bridge for %s ended with error: %s", session.exec_id, task.exception())
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await session.close()
