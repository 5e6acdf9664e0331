__version__ = "0.1.0"

from .exceptions import (
    BoundaryMissingError,
    FieldError,
    FieldTooLargeError,
    FieldTypeRejectedError,
    FileError,
    FormIOError,
    FormParserError,
    MultipartParseError,
    NotFormDataError,
    TextEncodingError,
)
from .form import (
    FileValue,
    FormOptions,
    FormParser,
    ParseResult,
    RawValue,
    TextValue,
    create_form_parser,
    parse_form,
)
from .multipart import Entry, EntryReader, MultipartParser, parse_mime_type, parse_options_header
from .rules import FieldKind, FieldRule, Repetition, RuleRegistry, content_type_matches
from .tempfiles import TempFileManager

__all__ = (
    "BoundaryMissingError",
    "Entry",
    "EntryReader",
    "FieldError",
    "FieldKind",
    "FieldRule",
    "FieldTooLargeError",
    "FieldTypeRejectedError",
    "FileError",
    "FileValue",
    "FormIOError",
    "FormOptions",
    "FormParser",
    "FormParserError",
    "MultipartParseError",
    "MultipartParser",
    "NotFormDataError",
    "ParseResult",
    "RawValue",
    "Repetition",
    "RuleRegistry",
    "TempFileManager",
    "TextEncodingError",
    "TextValue",
    "content_type_matches",
    "create_form_parser",
    "parse_form",
    "parse_mime_type",
    "parse_options_header",
)
