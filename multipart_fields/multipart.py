from __future__ import annotations

import logging
from collections import deque
from email.message import Message
from email.utils import collapse_rfc2231_value
from enum import IntEnum
from numbers import Number
from typing import TYPE_CHECKING, cast

from .exceptions import FormIOError, MultipartParseError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterator
    from typing import Any, Literal, Protocol, TypeAlias, TypedDict

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    class MultipartCallbacks(TypedDict, total=False):
        on_part_begin: Callable[[], None]
        on_part_data: Callable[[bytes, int, int], None]
        on_part_end: Callable[[], None]
        on_header_field: Callable[[bytes, int, int], None]
        on_header_value: Callable[[bytes, int, int], None]
        on_header_end: Callable[[], None]
        on_headers_finished: Callable[[], None]
        on_end: Callable[[], None]

    CallbackName: TypeAlias = Literal[
        "part_begin",
        "part_data",
        "part_end",
        "header_field",
        "header_value",
        "header_end",
        "headers_finished",
        "end",
    ]


class MultipartState(IntEnum):
    """Multipart parser states.

    These are used to keep track of the state of the parser, and are used to
    determine what to do when new data is encountered.
    """

    START = 0
    AFTER_BOUNDARY = 1
    HEADER = 2
    PART_DATA = 3
    END = 4


CRLF = b"\r\n"
SPACE = b" "[0]
HTAB = b"\t"[0]

# fmt: off
# Header field names are HTTP tokens (RFC 7230 3.2.6).
TOKEN_CHARS_SET = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"abcdefghijklmnopqrstuvwxyz"
    b"0123456789"
    b"!#$%&'*+-.^_`|~")
# fmt: on

# Marks the end of the current part in the reader's event queue.
_PART_END = object()


def parse_options_header(value: str | bytes | None) -> tuple[str, dict[str, str]]:
    """
    Parses a Content-Type or Content-Disposition header into a value in the
    following format:
        (content_type, {parameters})

    The value is lower-cased, as are the parameter names.  Parameter values
    are unquoted, and RFC 2231 encoded values are decoded.
    """
    if not value:
        return ("", {})

    if isinstance(value, bytes):
        value = value.decode("latin-1")

    # If we have no options, return the string as-is.
    if ";" not in value:
        return (value.lower().strip(), {})

    # The email module still handles the legacy header format best (PEP 594).
    message = Message()
    message["content-type"] = value
    params = message.get_params()
    assert params, "At least the content type value should be present"
    ctype = params.pop(0)[0].lower().strip()
    options: dict[str, str] = {}
    for key, param_value in params:
        if isinstance(param_value, tuple):
            param_value = collapse_rfc2231_value(param_value)

        # If the value is a filename, we need to fix a bug on IE6 that sends
        # the full file path instead of the filename.
        if key == "filename":
            if param_value[1:3] == ":\\" or param_value[:2] == "\\\\":
                param_value = param_value.split("\\")[-1]

        options[key] = param_value
    return ctype, options


def parse_mime_type(value: str | bytes | None) -> tuple[str, str] | None:
    """
    Parses a media type such as ``text/plain; charset=utf-8`` into a
    ``(type, subtype)`` pair.  Returns None if the value isn't a media type.
    """
    ctype, _ = parse_options_header(value)
    if "/" not in ctype:
        return None

    major, minor = ctype.split("/", 1)
    major = major.strip()
    minor = minor.strip()
    if not major or not minor:
        return None
    return major, minor


def _decode_header(data: bytes) -> str:
    # Browsers send raw UTF-8 in multipart headers.
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


class BaseParser:
    """
    This class implements some helpful methods for parsers.  Currently, it
    just implements the callback logic in a central location.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self.callbacks: MultipartCallbacks = {}

    def callback(
        self, name: CallbackName, data: bytes | None = None, start: int | None = None, end: int | None = None
    ) -> None:
        """
        This function calls a provided callback with some data.  Data
        callbacks are skipped when the given slice is empty.
        """
        on_name = "on_" + name
        func = self.callbacks.get(on_name)
        if func is None:
            return
        func = cast("Callable[..., Any]", func)

        # Depending on whether we're given a buffer...
        if data is not None:
            # Don't do anything if we have start == end.
            if start is not None and start == end:
                return

            self.logger.debug("Calling %s with data[%d:%d]", on_name, start, end)
            func(data, start, end)
        else:
            self.logger.debug("Calling %s with no data", on_name)
            func()

    def set_callback(self, name: CallbackName, new_func: Callable[..., Any] | None) -> None:
        """
        Update the function for a callback.  Removes from the callbacks dict
        if new_func is None.
        """
        if new_func is None:
            self.callbacks.pop("on_" + name, None)  # type: ignore[misc]
        else:
            self.callbacks["on_" + name] = new_func  # type: ignore[literal-required]

    def finalize(self) -> None:
        pass  # pragma: no cover

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__


class MultipartParser(BaseParser):
    """
    This class implements a push parser for a multipart/form-data message.
    Data is given to :meth:`write` in arbitrary chunks, and callbacks are
    called as parts, headers and part data are found.

    Valid callbacks (* indicates given data):
        - on_part_begin
        - on_part_data              *
        - on_part_end
        - on_header_field           *
        - on_header_value           *
        - on_header_end
        - on_headers_finished
        - on_end

    :param boundary: The multipart boundary, without the leading hyphens.
    :param callbacks: A dictionary of callbacks.
    :param max_size: The maximum number of bytes accepted by this parser.
    :param max_header_size: The maximum length of a single header line.
    """

    def __init__(
        self,
        boundary: bytes | str,
        callbacks: MultipartCallbacks = {},
        max_size: float = float("inf"),
        max_header_size: int = 8192,
    ) -> None:
        super().__init__()
        self.state = MultipartState.START
        self.callbacks = callbacks

        if not isinstance(max_size, Number) or max_size < 1:
            raise ValueError("max_size must be a positive number, not %r" % max_size)
        self.max_size = max_size
        self.max_header_size = max_header_size
        self._current_size = 0

        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        if not boundary:
            raise ValueError("boundary must not be empty")

        # The first delimiter may be at the very start of the body; every
        # later one is preceded by the CRLF that ends the previous part.
        self.boundary = b"--" + boundary
        self.delimiter = CRLF + self.boundary

        # Unprocessed data, carried over between calls to write().
        self._buffer = bytearray()

        # True until the first bytes of the body have been looked at.
        self._at_body_start = True

    def write(self, data: bytes) -> int:
        """
        Write some data to the parser, which will perform size verification,
        parse into either headers or part data, and then call the
        corresponding callbacks.  Returns the number of bytes processed.
        """
        data_len = len(data)
        if self._current_size + data_len > self.max_size:
            msg = "Body exceeds the maximum size of %d bytes" % self.max_size
            self.logger.warning(msg)
            e = MultipartParseError(msg)
            e.offset = int(self.max_size - self._current_size)
            raise e

        self._current_size += data_len
        self._buffer += data
        self._internal_write()
        return data_len

    def _fail(self, msg: str, offset: int) -> MultipartParseError:
        self.logger.warning(msg)
        e = MultipartParseError(msg)
        e.offset = offset
        return e

    def _internal_write(self) -> None:
        buf = self._buffer
        pos = 0

        while True:
            state = self.state

            if state == MultipartState.START:
                if self._at_body_start:
                    # Only the very first boundary may appear without a
                    # preceding CRLF.
                    if len(buf) - pos < len(self.boundary) and self.boundary.startswith(bytes(buf[pos:])):
                        break
                    self._at_body_start = False
                    if buf.startswith(self.boundary, pos):
                        pos += len(self.boundary)
                        self.state = MultipartState.AFTER_BOUNDARY
                        continue

                # Anything else in front of the first boundary is preamble,
                # where a boundary only counts at the start of a line.
                idx = buf.find(self.delimiter, pos)
                if idx < 0:
                    # Keep what could be the start of a split delimiter.
                    pos = max(pos, len(buf) - len(self.delimiter) + 1)
                    break

                pos = idx + len(self.delimiter)
                self.state = MultipartState.AFTER_BOUNDARY

            elif state == MultipartState.AFTER_BOUNDARY:
                # A boundary is followed by either CRLF (another part) or two
                # hyphens (the end of the body).
                if len(buf) - pos < 2:
                    break

                tail = bytes(buf[pos : pos + 2])
                if tail == CRLF:
                    pos += 2
                    self.callback("part_begin")
                    self.state = MultipartState.HEADER
                elif tail == b"--":
                    pos += 2
                    self.state = MultipartState.END
                else:
                    raise self._fail("Did not find CRLF or -- after boundary (%d)" % pos, pos)

            elif state == MultipartState.HEADER:
                idx = buf.find(CRLF, pos)
                if idx < 0:
                    if len(buf) - pos > self.max_header_size:
                        raise self._fail("Header line exceeds %d bytes" % self.max_header_size, pos)
                    break

                if idx - pos > self.max_header_size:
                    raise self._fail("Header line exceeds %d bytes" % self.max_header_size, pos)

                # An empty line ends the headers.
                if idx == pos:
                    pos += 2
                    self.callback("headers_finished")
                    self.state = MultipartState.PART_DATA
                    continue

                line = bytes(buf[pos:idx])
                colon = line.find(b":")
                if colon <= 0:
                    raise self._fail("Malformed header line at %d" % pos, pos)

                for i in range(colon):
                    if line[i] not in TOKEN_CHARS_SET:
                        raise self._fail("Found invalid character %r in header at %d" % (line[i], pos + i), pos + i)

                # Strip optional whitespace around the value.
                start = colon + 1
                end = len(line)
                while start < end and line[start] in (SPACE, HTAB):
                    start += 1
                while end > start and line[end - 1] in (SPACE, HTAB):
                    end -= 1

                self.callback("header_field", line, 0, colon)
                self.callback("header_value", line, start, end)
                self.callback("header_end")
                pos = idx + 2

            elif state == MultipartState.PART_DATA:
                idx = buf.find(self.delimiter, pos)
                if idx < 0:
                    # Everything but a possible partial delimiter is data.
                    end = max(pos, len(buf) - len(self.delimiter) + 1)
                    self.callback("part_data", buf, pos, end)
                    pos = end
                    break

                after = idx + len(self.delimiter)
                if len(buf) - after < 2:
                    # We can't tell yet whether this is a real delimiter.
                    self.callback("part_data", buf, pos, idx)
                    pos = idx
                    break

                tail = bytes(buf[after : after + 2])
                if tail == CRLF or tail == b"--":
                    self.callback("part_data", buf, pos, idx)
                    self.callback("part_end")
                    pos = after
                    self.state = MultipartState.AFTER_BOUNDARY
                else:
                    # Not a delimiter after all, so its first byte is data.
                    self.callback("part_data", buf, pos, idx + 1)
                    pos = idx + 1

            else:
                # Epilogue data after the final boundary is ignored.
                pos = len(buf)
                break

        del buf[:pos]

    def finalize(self) -> None:
        """
        Finalize this parser, which signals that we are finished parsing.
        Raises a MultipartParseError if the body ended before its closing
        boundary.
        """
        if self.state != MultipartState.END:
            raise self._fail("Unexpected end of multipart body", len(self._buffer))
        self.callback("end")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r}, state={self.state!r})"


class Entry:
    """
    One part of a multipart body, as handed out by :class:`EntryReader`.  The
    headers are available right away; the body is read with :meth:`read`,
    which returns an empty bytes object once the part is exhausted.
    """

    def __init__(self, reader: EntryReader, headers: dict[str, str]) -> None:
        self._reader = reader
        self.headers = headers
        self.finished = False
        self.bytes_read = 0

        disposition, options = parse_options_header(headers.get("content-disposition"))
        if disposition != "form-data" or "name" not in options:
            raise MultipartParseError("Part without a form-data Content-Disposition name: %r" % headers)

        self.disposition = disposition
        self.name = options["name"]
        self.file_name = options.get("filename")

        ctype, _ = parse_options_header(headers.get("content-type"))
        self.content_type = ctype or None

    def read(self) -> bytes:
        """Return the next chunk of this part's body, or b"" at its end."""
        return self._reader.read_chunk(self)

    def drain(self) -> int:
        """Read and discard the rest of this part.  Returns the bytes skipped."""
        skipped = 0
        for chunk in self:
            skipped += len(chunk)
        return skipped

    def __iter__(self) -> Iterator[bytes]:
        while chunk := self.read():
            yield chunk

    def __repr__(self) -> str:
        return "%s(name=%r, file_name=%r, content_type=%r)" % (
            self.__class__.__name__,
            self.name,
            self.file_name,
            self.content_type,
        )


class EntryReader:
    """
    This class turns a readable byte stream into a sequence of
    :class:`Entry` objects, pulling data through a :class:`MultipartParser`
    as the entries are read.  Each entry must be exhausted before the next
    one becomes available; :meth:`read_entry` drains the current entry for
    you.

    Errors raised by the stream's ``read()`` are re-raised as
    :class:`FormIOError`, and malformed bodies raise
    :class:`MultipartParseError`.
    """

    def __init__(
        self,
        stream: SupportsRead,
        boundary: bytes | str,
        chunk_size: int = 65536,
        content_length: int | None = None,
        max_size: float = float("inf"),
        max_header_size: int = 8192,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self._stream = stream
        self.chunk_size = chunk_size
        self.content_length = content_length
        self.bytes_received = 0

        self._events: deque[Any] = deque()
        self._current: Entry | None = None
        self._eof = False
        self._failed = False

        header_name: list[bytes] = []
        header_value: list[bytes] = []
        headers: dict[str, str] = {}

        def on_part_begin() -> None:
            headers.clear()

        def on_header_field(data: bytes, start: int, end: int) -> None:
            header_name.append(data[start:end])

        def on_header_value(data: bytes, start: int, end: int) -> None:
            header_value.append(data[start:end])

        def on_header_end() -> None:
            name = _decode_header(b"".join(header_name)).lower()
            headers[name] = _decode_header(b"".join(header_value))
            del header_name[:]
            del header_value[:]

        def on_headers_finished() -> None:
            self._events.append(Entry(self, dict(headers)))

        def on_part_data(data: bytes, start: int, end: int) -> None:
            self._events.append(bytes(data[start:end]))

        def on_part_end() -> None:
            self._events.append(_PART_END)

        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_header_field": on_header_field,
                "on_header_value": on_header_value,
                "on_header_end": on_header_end,
                "on_headers_finished": on_headers_finished,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
            },
            max_size=max_size,
            max_header_size=max_header_size,
        )

    def _pump(self) -> None:
        try:
            self._feed()
        except BaseException:
            self._failed = True
            raise

    def _feed(self) -> None:
        if self.content_length is not None:
            max_readable = min(self.content_length - self.bytes_received, self.chunk_size)
        else:
            max_readable = self.chunk_size

        chunk = b""
        if max_readable > 0:
            try:
                chunk = self._stream.read(max_readable)
            except (OSError, ValueError) as err:
                # Closed file objects raise ValueError.
                self.logger.warning("Error reading the body stream: %r", err)
                raise FormIOError("Error reading the body stream: %s" % err) from err

        if not chunk:
            self._eof = True
            self._parser.finalize()
            return

        self.bytes_received += len(chunk)
        self._parser.write(chunk)

    def read_entry(self) -> Entry | None:
        """
        Return the next entry of the body, or None once the closing boundary
        has been read.
        """
        if self._current is not None and not self._current.finished:
            self._current.drain()
        self._current = None

        while True:
            while self._events:
                event = self._events.popleft()
                if isinstance(event, Entry):
                    self._current = event
                    self.logger.debug("Read entry %r", event)
                    return event

            if self._eof:
                return None
            self._pump()

    def read_chunk(self, entry: Entry) -> bytes:
        if entry.finished:
            return b""
        if entry is not self._current:
            raise ValueError("%r is not the current entry" % entry)

        while True:
            if self._events:
                event = self._events[0]
                if event is _PART_END:
                    self._events.popleft()
                    entry.finished = True
                    return b""
                if isinstance(event, bytes):
                    self._events.popleft()
                    entry.bytes_read += len(event)
                    return event
                raise MultipartParseError("Found a new part before the end of %r" % entry)

            if self._eof:
                raise MultipartParseError("Unexpected end of multipart body")
            self._pump()

    def drain(self) -> int:
        """
        Read and discard every remaining entry, leaving the underlying stream
        fully consumed.  Returns the number of entries skipped.  Does nothing
        if the reader has already failed.
        """
        skipped = 0
        while not self._failed and self.read_entry() is not None:
            skipped += 1
        return skipped

    def __iter__(self) -> Iterator[Entry]:
        while (entry := self.read_entry()) is not None:
            yield entry

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parser={self._parser!r}, bytes_received={self.bytes_received})"
