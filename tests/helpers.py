from __future__ import annotations

import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


def force_bytes(val: str | bytes) -> bytes:
    if isinstance(val, str):
        val = val.encode(sys.getfilesystemencoding())

    return val


def make_part(
    name: str,
    data: str | bytes,
    file_name: str | None = None,
    content_type: str | None = None,
) -> tuple[str, bytes, str | None, str | None]:
    return (name, force_bytes(data), file_name, content_type)


def make_body(parts: Iterable[tuple[str, bytes, str | None, str | None]], boundary: str = "boundary") -> bytes:
    """
    Build a multipart/form-data body from ``(name, data, file_name,
    content_type)`` tuples, as a browser would send it.
    """
    out = []
    for name, data, file_name, content_type in parts:
        disposition = f'form-data; name="{name}"'
        if file_name is not None:
            disposition += f'; filename="{file_name}"'

        out.append(b"--" + boundary.encode("latin-1") + b"\r\n")
        out.append(b"Content-Disposition: " + disposition.encode("utf-8") + b"\r\n")
        if content_type is not None:
            out.append(b"Content-Type: " + content_type.encode("latin-1") + b"\r\n")
        out.append(b"\r\n")
        out.append(data)
        out.append(b"\r\n")

    out.append(b"--" + boundary.encode("latin-1") + b"--\r\n")
    return b"".join(out)


class SlowStream:
    """A readable that hands out at most ``step`` bytes per read."""

    def __init__(self, data: bytes, step: int = 1) -> None:
        self.data = data
        self.step = step
        self.pos = 0
        self.reads = 0

    def read(self, size: int = -1) -> bytes:
        self.reads += 1
        if size < 0:
            size = len(self.data)
        size = min(size, self.step)
        chunk = self.data[self.pos : self.pos + size]
        self.pos += len(chunk)
        return chunk


class BrokenStream:
    """A readable that fails with an OSError after ``fail_after`` bytes."""

    def __init__(self, data: bytes, fail_after: int) -> None:
        self.data = data
        self.fail_after = fail_after
        self.pos = 0

    def read(self, size: int = -1) -> bytes:
        if self.pos >= self.fail_after:
            raise ConnectionResetError("Connection reset by peer")
        if size < 0:
            size = len(self.data)
        size = min(size, self.fail_after - self.pos)
        chunk = self.data[self.pos : self.pos + size]
        self.pos += len(chunk)
        return chunk
