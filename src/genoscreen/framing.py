"""
Byte-exact framing over a connection.

Text lines (commands, metadata) and raw payload bytes arrive interleaved on
the same stream. `FramedReader` owns the single receive buffer for the
connection; `read_line` and `read_exactly`/`copy_exactly` both consume from
it, so bytes pulled in while looking for a newline are still there when the
payload is read.
"""

from __future__ import annotations

import socket
import time
import typing

RECV_SIZE = 65536
MAX_LINE_LENGTH = 65536


class IncompleteReadError(EOFError):
    """The stream ended before the announced number of bytes arrived."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Expected {expected} bytes, stream ended after {received}")
        self.expected = expected
        self.received = received


class LineTooLongError(ValueError):
    """A request line exceeded the configured maximum without a newline."""


class FramedReader:
    def __init__(
        self,
        read: typing.Callable[[int], bytes],
        max_line_length: int = MAX_LINE_LENGTH,
        set_timeout: typing.Callable[[float | None], None] | None = None,
        default_timeout: float | None = None,
    ):
        self._read = read
        self._buffer = bytearray()
        self._eof = False
        self.max_line_length = max_line_length
        self._set_timeout = set_timeout
        self._default_timeout = default_timeout
        self._deadline: float | None = None

    @classmethod
    def from_socket(cls, sock: socket.socket, **kwargs) -> "FramedReader":
        return cls(sock.recv, set_timeout=sock.settimeout, default_timeout=sock.gettimeout(), **kwargs)

    @classmethod
    def from_stream(cls, stream: typing.BinaryIO, **kwargs) -> "FramedReader":
        return cls(stream.read, **kwargs)

    def set_deadline(self, seconds: float | None) -> None:
        """
        Bound the total time the following reads may spend waiting, however
        the bytes trickle in. None or 0 removes the bound.
        """
        self._deadline = time.monotonic() + seconds if seconds else None

    def _fill(self) -> bool:
        """Pull one chunk into the buffer; False at end of stream."""
        if self._eof:
            return False
        if self._deadline is None:
            chunk = self._read(RECV_SIZE)
        else:
            chunk = self._read_before_deadline()
        if not chunk:
            self._eof = True
            return False
        self._buffer.extend(chunk)
        return True

    def _read_before_deadline(self) -> bytes:
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("Read deadline expired")
        if self._set_timeout is None:
            return self._read(RECV_SIZE)
        if self._default_timeout is not None:
            remaining = min(remaining, self._default_timeout)
        self._set_timeout(remaining)
        try:
            return self._read(RECV_SIZE)
        finally:
            self._set_timeout(self._default_timeout)

    def read_line(self) -> str | None:
        """
        Next UTF-8 line without its terminator ('\\n' or '\\r\\n').
        A final unterminated line is returned as-is; None means end of stream.
        """
        start = 0
        while True:
            idx = self._buffer.find(b"\n", start)
            if idx > self.max_line_length:
                raise LineTooLongError(f"Line exceeds {self.max_line_length} bytes")
            if idx >= 0:
                raw = bytes(self._buffer[:idx])
                del self._buffer[: idx + 1]
                break
            if len(self._buffer) > self.max_line_length:
                raise LineTooLongError(f"Line exceeds {self.max_line_length} bytes")
            start = len(self._buffer)
            if not self._fill():
                if not self._buffer:
                    return None
                raw = bytes(self._buffer)
                self._buffer.clear()
                break
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        return raw.decode("utf-8", errors="replace")

    def read_exactly(self, n: int) -> bytes:
        """Exactly `n` raw bytes; raises IncompleteReadError on early end of stream."""
        if n < 0:
            raise ValueError(f"Negative read size: {n}")
        while len(self._buffer) < n:
            if not self._fill():
                raise IncompleteReadError(n, len(self._buffer))
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    def copy_exactly(self, n: int, sink: typing.BinaryIO) -> int:
        """
        Stream exactly `n` raw bytes into `sink` without holding them all in
        memory. Returns `n`; raises IncompleteReadError on early end of stream.
        """
        if n < 0:
            raise ValueError(f"Negative read size: {n}")
        remaining = n
        while remaining > 0:
            if not self._buffer and not self._fill():
                raise IncompleteReadError(n, n - remaining)
            take = min(remaining, len(self._buffer))
            sink.write(self._buffer[:take])
            del self._buffer[:take]
            remaining -= take
        return n


class ResponseWriter:
    """Writes newline-terminated UTF-8 response lines."""

    def __init__(self, write: typing.Callable[[bytes], typing.Any]):
        self._write = write

    @classmethod
    def from_socket(cls, sock: socket.socket) -> "ResponseWriter":
        return cls(sock.sendall)

    @classmethod
    def from_stream(cls, stream: typing.BinaryIO) -> "ResponseWriter":
        return cls(stream.write)

    def send_line(self, text: str) -> None:
        self._write(text.encode("utf-8") + b"\n")

    def send_lines(self, lines: typing.Iterable[str]) -> None:
        payload = "".join(f"{line}\n" for line in lines)
        if payload:
            self._write(payload.encode("utf-8"))

    def send_error(self, code: int, reason: str) -> None:
        self.send_line(f"ERROR {code} {reason}")
