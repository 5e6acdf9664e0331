from __future__ import annotations

import abc
import logging
import os
import shutil
import tempfile
from typing import TYPE_CHECKING

from .exceptions import (
    BoundaryMissingError,
    FieldTooLargeError,
    FieldTypeRejectedError,
    FileError,
    FormParserError,
    NotFormDataError,
    TextEncodingError,
)
from .multipart import EntryReader, parse_options_header
from .rules import FieldKind, RuleRegistry
from .tempfiles import TempFileManager

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable, Mapping
    from io import BufferedReader
    from typing import Any, TypedDict

    from .multipart import Entry, SupportsRead
    from .rules import FieldRule

    class FormParserConfig(TypedDict):
        UPLOAD_DIR: str | os.PathLike[str] | None
        UPLOAD_PREFIX: str
        CHUNK_SIZE: int
        MAX_BODY_SIZE: float
        MAX_HEADER_SIZE: int


class FieldValue(abc.ABC):
    """
    Abstract base class for a decoded field.  ``content_type`` is the
    declared media type (``"type/subtype"``, lower-cased) or None, and
    ``file_name`` is the declared file name or None if the part had none.
    """

    def __init__(self, content_type: str | None = None, file_name: str | None = None) -> None:
        self.content_type = content_type
        self.file_name = file_name

    @property
    @abc.abstractmethod
    def size(self) -> int:
        """The number of bytes (characters for text) of the value."""

    def _key(self) -> tuple[Any, ...]:
        return (self.content_type, self.file_name)

    def __eq__(self, other: object) -> bool:
        if type(other) is type(self):
            return self._key() == other._key()  # type: ignore[attr-defined]
        return NotImplemented


class TextValue(FieldValue):
    def __init__(self, text: str, content_type: str | None = None, file_name: str | None = None) -> None:
        super().__init__(content_type, file_name)
        self.text = text

    @property
    def size(self) -> int:
        return len(self.text)

    def _key(self) -> tuple[Any, ...]:
        return (self.text, self.content_type, self.file_name)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        if len(self.text) > 97:
            # We get the repr, and then insert three dots before the final
            # quote.
            v = repr(self.text[:97])[:-1] + "...'"
        else:
            v = repr(self.text)
        return f"{self.__class__.__name__}(text={v}, content_type={self.content_type!r}, file_name={self.file_name!r})"


class RawValue(FieldValue):
    def __init__(self, data: bytes, content_type: str | None = None, file_name: str | None = None) -> None:
        super().__init__(content_type, file_name)
        self.data = data

    @property
    def size(self) -> int:
        return len(self.data)

    def _key(self) -> tuple[Any, ...]:
        return (self.data, self.content_type, self.file_name)

    def __bytes__(self) -> bytes:
        return self.data

    def __repr__(self) -> str:
        if len(self.data) > 97:
            v = repr(self.data[:97])[:-1] + "...'"
        else:
            v = repr(self.data)
        return f"{self.__class__.__name__}(data={v}, content_type={self.content_type!r}, file_name={self.file_name!r})"


class FileValue(FieldValue):
    """
    A file field streamed to disk.  The file at ``path`` belongs to the
    :class:`ParseResult` holding this value, and is deleted along with it,
    until the value is taken out of the result.
    """

    def __init__(
        self, path: str, size: int = 0, content_type: str | None = None, file_name: str | None = None
    ) -> None:
        super().__init__(content_type, file_name)
        self.path = path
        self._size = size

    @property
    def size(self) -> int:
        return self._size

    def open(self) -> BufferedReader:
        return open(self.path, "rb")

    def read_bytes(self) -> bytes:
        with self.open() as f:
            return f.read()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def persist(self, dest: str | os.PathLike[str]) -> str:
        """
        Move the file to ``dest`` (a file path or an existing directory) and
        return its new path.  Only call this on a value taken out of its
        :class:`ParseResult`, see :meth:`ParseResult.persist_file`.
        """
        try:
            new_path = shutil.move(self.path, os.fspath(dest))
        except OSError as err:
            raise FileError("Error moving %r to %r" % (self.path, dest)) from err

        self.path = os.fspath(new_path)
        return self.path

    def _key(self) -> tuple[Any, ...]:
        return (self.path, self.content_type, self.file_name)

    def __fspath__(self) -> str:
        return self.path

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(path={self.path!r}, size={self._size}, "
            f"content_type={self.content_type!r}, file_name={self.file_name!r})"
        )


class ParseResult:
    """
    The fields decoded from one multipart body, in three mappings from field
    name to the values of that name, in the order they arrived.

    The result owns the files of every :class:`FileValue` still in
    ``files``.  They are deleted by :meth:`dispose` (also called by
    :meth:`close`, at the end of a ``with`` block, and as a last resort when
    the result is garbage collected).  To keep a file, take its value out of
    the result first, either with :meth:`take_file` / :meth:`take_files` or
    by removing it from ``files`` yourself.
    """

    def __init__(
        self,
        texts: dict[str, list[TextValue]] | None = None,
        raw: dict[str, list[RawValue]] | None = None,
        files: dict[str, list[FileValue]] | None = None,
        file_manager: TempFileManager | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.texts: dict[str, list[TextValue]] = texts if texts is not None else {}
        self.raw: dict[str, list[RawValue]] = raw if raw is not None else {}
        self.files: dict[str, list[FileValue]] = files if files is not None else {}
        self._file_manager = file_manager if file_manager is not None else TempFileManager()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def get_text(self, name: str, default: str | None = None) -> str | None:
        """Return the text of the first ``name`` field, or ``default``."""
        values = self.texts.get(name)
        if not values:
            return default
        return values[0].text

    def get_texts(self, name: str) -> list[str]:
        return [v.text for v in self.texts.get(name, [])]

    def get_raw(self, name: str, default: bytes | None = None) -> bytes | None:
        """Return the data of the first ``name`` field, or ``default``."""
        values = self.raw.get(name)
        if not values:
            return default
        return values[0].data

    def get_file(self, name: str) -> FileValue | None:
        """Return the first ``name`` file, which stays owned by the result."""
        values = self.files.get(name)
        if not values:
            return None
        return values[0]

    def take_file(self, name: str, index: int = 0) -> FileValue:
        """
        Remove a file from the result and hand its ownership to the caller,
        who becomes responsible for deleting it.  Raises KeyError if there is
        no file under ``name`` and IndexError if ``index`` is out of range.
        """
        values = self.files[name]
        value = values.pop(index)
        if not values:
            del self.files[name]
        self._file_manager.release(value.path)
        return value

    def take_files(self, name: str) -> list[FileValue]:
        """Like :meth:`take_file`, for every file under ``name``."""
        values = self.files.pop(name, [])
        for value in values:
            self._file_manager.release(value.path)
        return values

    def persist_file(self, name: str, dest: str | os.PathLike[str], index: int = 0) -> FileValue:
        """
        Take a file out of the result with :meth:`take_file` and move it to
        ``dest``.  The returned value points at the new location.  If the
        move fails, the file is put back under the result's ownership.
        """
        value = self.take_file(name, index)
        try:
            value.persist(dest)
        except FileError:
            self.files.setdefault(name, []).insert(index, value)
            raise

        self.logger.debug("Persisted file %r to %r", name, value.path)
        return value

    def dispose(self) -> None:
        """Delete the files still held by this result.  Safe to call twice."""
        if self._disposed:
            return
        self._disposed = True

        for values in self.files.values():
            for value in values:
                self._file_manager.delete(value.path)
        self.files.clear()

    close = dispose

    def __enter__(self) -> ParseResult:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def __del__(self) -> None:
        if not getattr(self, "_disposed", True):
            self.dispose()

    def __len__(self) -> int:
        return sum(len(v) for m in (self.texts, self.raw, self.files) for v in m.values())

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(texts={self.texts!r}, raw={self.raw!r}, files={self.files!r})"


class FormOptions:
    """
    Reusable parse settings: the allowed fields and the directory that file
    fields are written to.  Each parse works on fresh copies of the rules, so
    one instance can serve any number of requests.

    :param allowed_fields: The field rules, in registration order.
    :param temporary_dir: An existing directory for uploaded files.  Defaults
                          to the system's temporary directory.
    """

    def __init__(
        self,
        allowed_fields: Iterable[FieldRule] = (),
        temporary_dir: str | os.PathLike[str] | None = None,
    ) -> None:
        self.allowed_fields: list[FieldRule] = list(allowed_fields)
        self.temporary_dir = temporary_dir if temporary_dir is not None else tempfile.gettempdir()

    def registry(self) -> RuleRegistry:
        return RuleRegistry(rule.copy() for rule in self.allowed_fields).prepare()

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(allowed_fields={self.allowed_fields!r}, "
            f"temporary_dir={self.temporary_dir!r})"
        )


class FormParser:
    """
    This class decodes a multipart/form-data body according to a set of field
    rules.  Each entry of the body is matched by name against the rules;
    unregistered entries are skipped, and matched ones are checked against
    their rule's content types and size limit and decoded as text, raw bytes
    or a file on disk.

    Parsing is fail-fast: the first error stops the parse, deletes every file
    it created, reads the rest of the body and is raised.  No partial result
    is ever returned.

    :param content_type: The request's Content-Type header.  It must be
                         ``multipart/form-data`` with a ``boundary``.
    :param rules: A :class:`RuleRegistry` (used up by the parse), a
                  :class:`FormOptions`, or an iterable of field rules.
    :param config: A dictionary of configuration values, see
                   :attr:`DEFAULT_CONFIG`.
    """

    #: This is the default configuration for our form parser.
    #: Note: all file sizes should be in bytes.
    DEFAULT_CONFIG: FormParserConfig = {
        "UPLOAD_DIR": None,
        "UPLOAD_PREFIX": "py-",
        "CHUNK_SIZE": 64 * 1024,
        "MAX_BODY_SIZE": float("inf"),
        "MAX_HEADER_SIZE": 8 * 1024,
    }

    def __init__(
        self,
        content_type: str | bytes | None,
        rules: RuleRegistry | FormOptions | Iterable[FieldRule],
        config: dict[Any, Any] = {},
    ) -> None:
        self.logger = logging.getLogger(__name__)

        self.config: FormParserConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)  # type: ignore[typeddict-item]

        ctype, params = parse_options_header(content_type)
        if ctype != "multipart/form-data":
            self.logger.warning("Unknown Content-Type: %r", content_type)
            raise NotFormDataError(ctype or None)

        boundary = params.get("boundary")
        if not boundary:
            self.logger.error("No boundary given")
            raise BoundaryMissingError()

        self.content_type = ctype
        self.boundary = boundary

        upload_dir = self.config["UPLOAD_DIR"]
        if isinstance(rules, FormOptions):
            registry = rules.registry()
            if upload_dir is None:
                upload_dir = rules.temporary_dir
        elif isinstance(rules, RuleRegistry):
            registry = rules.prepare()
        else:
            registry = RuleRegistry(rules).prepare()

        self.registry = registry
        self.upload_dir = upload_dir

    def parse(self, stream: SupportsRead, content_length: int | None = None) -> ParseResult:
        """
        Read the whole body from ``stream`` and return the decoded fields.

        :param stream: Anything with a ``read(size)`` method returning bytes.
        :param content_length: If given, read at most this many bytes.
        :raises FormParserError: One of its subclasses, on the first problem.
        """
        self.registry.mark_used()

        reader = EntryReader(
            stream,
            self.boundary,
            chunk_size=self.config["CHUNK_SIZE"],
            content_length=content_length,
            max_size=self.config["MAX_BODY_SIZE"],
            max_header_size=self.config["MAX_HEADER_SIZE"],
        )
        files = TempFileManager(self.upload_dir, prefix=self.config["UPLOAD_PREFIX"])
        collected: dict[FieldKind, dict[str, list[Any]]] = {kind: {} for kind in FieldKind}

        try:
            for entry in reader:
                self._handle_entry(entry, collected, files)
        except FormParserError:
            self._abort(reader, files)
            raise
        except BaseException:
            # Don't keep reading the body on KeyboardInterrupt and the like.
            files.dispose()
            raise

        result = ParseResult(
            texts=collected[FieldKind.TEXT],
            raw=collected[FieldKind.RAW],
            files=collected[FieldKind.FILE],
            file_manager=files,
        )
        self.logger.info(
            "Parsed %d text, %d raw and %d file fields from %d bytes",
            sum(map(len, result.texts.values())),
            sum(map(len, result.raw.values())),
            sum(map(len, result.files.values())),
            reader.bytes_received,
        )
        return result

    def _handle_entry(
        self, entry: Entry, collected: dict[FieldKind, dict[str, list[Any]]], files: TempFileManager
    ) -> None:
        rule = self.registry.match(entry.name)
        if rule is None:
            self.logger.debug("Skipping unregistered field %r", entry.name)
            entry.drain()
            return

        type_matched = rule.accepts_content_type(entry.content_type)

        # Browsers send an unfilled <input type="file"> as a part with an
        # empty file name and no data.
        maybe_empty_input = entry.file_name == ""

        if not type_matched and not maybe_empty_input:
            self.logger.warning("Rejecting content type %r of field %r", entry.content_type, entry.name)
            raise FieldTypeRejectedError(entry.name, entry.content_type)

        value = self._decode(entry, rule, files)

        if maybe_empty_input and value.size == 0:
            self.logger.debug("Ignoring empty file input %r", entry.name)
            if isinstance(value, FileValue):
                files.delete(value.path)
            return

        if not type_matched:
            self.logger.warning("Rejecting content type %r of field %r", entry.content_type, entry.name)
            raise FieldTypeRejectedError(entry.name, entry.content_type)

        collected[rule.kind].setdefault(entry.name, []).append(value)
        self.registry.consume(rule)

    def _decode(self, entry: Entry, rule: FieldRule, files: TempFileManager) -> FieldValue:
        if rule.kind is FieldKind.FILE:
            return self._write_to_disk(entry, rule, files)

        data = self._read_into_memory(entry, rule)
        if rule.kind is FieldKind.RAW:
            return RawValue(data, entry.content_type, entry.file_name)

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as err:
            self.logger.warning("Field %r is not valid UTF-8", entry.name)
            raise TextEncodingError(entry.name, str(err)) from err
        return TextValue(text, entry.content_type, entry.file_name)

    def _read_into_memory(self, entry: Entry, rule: FieldRule) -> bytes:
        buffer = bytearray()
        for chunk in entry:
            if len(buffer) + len(chunk) > rule.size_limit:
                self.logger.warning("Field %r exceeds its size limit of %d bytes", entry.name, rule.size_limit)
                raise FieldTooLargeError(entry.name, rule.size_limit)
            buffer += chunk
        return bytes(buffer)

    def _write_to_disk(self, entry: Entry, rule: FieldRule, files: TempFileManager) -> FileValue:
        path, fileobj = files.create()
        written = 0
        try:
            with fileobj:
                for chunk in entry:
                    written += len(chunk)
                    if written > rule.size_limit:
                        self.logger.warning(
                            "Field %r exceeds its size limit of %d bytes", entry.name, rule.size_limit
                        )
                        raise FieldTooLargeError(entry.name, rule.size_limit)
                    fileobj.write(chunk)
        except FormParserError:
            files.delete(path)
            raise
        except OSError as err:
            files.delete(path)
            self.logger.exception("Error writing temporary file")
            raise FileError("Error writing temporary file: %r" % path) from err

        self.logger.debug("Wrote %d bytes of field %r to %r", written, entry.name, path)
        return FileValue(path, written, entry.content_type, entry.file_name)

    def _abort(self, reader: EntryReader, files: TempFileManager) -> None:
        files.dispose()
        try:
            reader.drain()
        except FormParserError as err:
            # The error that aborted the parse is the one worth raising.
            self.logger.debug("Error while skipping the rest of the body: %r", err)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(content_type={self.content_type!r}, registry={self.registry!r})"


def create_form_parser(
    headers: Mapping[str, str | bytes],
    rules: RuleRegistry | FormOptions | Iterable[FieldRule],
    config: dict[Any, Any] = {},
) -> FormParser:
    """
    This function is a helper function to aid in creating a FormParser
    instances.  Given a dictionary-like headers object, it will determine
    the correct information needed, instantiate a FormParser with the
    appropriate values and given rules, and return it.

    :param headers: A dictionary-like object of HTTP headers.  The only
                    required header is Content-Type.
    :param rules: The field rules, see :class:`FormParser`.
    :param config: Configuration variables to pass to the FormParser.
    """
    content_type = headers.get("Content-Type")
    if content_type is None:
        content_type = headers.get("content-type")
    if content_type is None:
        logging.getLogger(__name__).warning("No Content-Type header given")
        raise NotFormDataError(None)

    return FormParser(content_type, rules, config=config)


def parse_form(
    headers: Mapping[str, str | bytes],
    input_stream: SupportsRead,
    rules: RuleRegistry | FormOptions | Iterable[FieldRule],
    config: dict[Any, Any] = {},
) -> ParseResult:
    """
    This function is useful if you just want to parse a request body,
    without too much work.  Pass it a dictionary-like object of the request's
    headers, a file-like object for the input stream and the field rules.
    The Content-Length header, if present, bounds how much is read.

    :param headers: A dictionary-like object of HTTP headers.
    :param input_stream: A file-like object that represents the request body.
    :param rules: The field rules, see :class:`FormParser`.
    :param config: Configuration variables to pass to the FormParser.
    """
    parser = create_form_parser(headers, rules, config=config)

    content_length: int | str | bytes | None = headers.get("Content-Length")
    if content_length is None:
        content_length = headers.get("content-length")
    if content_length is not None:
        content_length = int(content_length)

    return parser.parse(input_stream, content_length=content_length)
