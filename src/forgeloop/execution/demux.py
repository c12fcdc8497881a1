"""Demultiplexer for the Docker attach/exec stream framing.

When a container runs without a TTY, Docker interleaves stdout and stderr on
one connection. Each frame starts with an 8-byte header::

    [stream, 0, 0, 0, size_be32...]

where ``stream`` is 0 (stdin), 1 (stdout) or 2 (stderr) and the last four
bytes are the big-endian payload length.
"""

from __future__ import annotations

import struct

HEADER_SIZE = 8
STDIN = 0
STDOUT = 1
STDERR = 2

_HEADER = struct.Struct(">BxxxL")


class StreamDemuxer:
    """Incrementally splits a multiplexed stream into stdout and stderr."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._stdout = bytearray()
        self._stderr = bytearray()

    def feed(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        while len(self._buffer) >= HEADER_SIZE:
            stream, size = _HEADER.unpack_from(self._buffer)
            if len(self._buffer) < HEADER_SIZE + size:
                break
            payload = bytes(self._buffer[HEADER_SIZE:HEADER_SIZE + size])
            del self._buffer[:HEADER_SIZE + size]
            if stream == STDERR:
                self._stderr.extend(payload)
            else:
                self._stdout.extend(payload)

    def close(self) -> None:
        """Flush a truncated trailing frame, if any, into stdout."""
        if len(self._buffer) > HEADER_SIZE:
            stream = self._buffer[0]
            payload = bytes(self._buffer[HEADER_SIZE:])
            (self._stderr if stream == STDERR else self._stdout).extend(payload)
        self._buffer.clear()

    @property
    def stdout(self) -> str:
        return self._stdout.decode(errors="replace")

    @property
    def stderr(self) -> str:
        return self._stderr.decode(errors="replace")


def demux(data: bytes) -> tuple[str, str]:
    """Split a complete multiplexed buffer into ``(stdout, stderr)``."""
    demuxer = StreamDemuxer()
    demuxer.feed(data)
    demuxer.close()
    return demuxer.stdout, demuxer.stderr


def frame(stream: int, payload: bytes) -> bytes:
    """Build one frame; used by tests and fake runtimes."""
    return _HEADER.pack(stream, len(payload)) + payload
