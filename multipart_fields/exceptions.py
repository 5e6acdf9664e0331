from __future__ import annotations


class FormParserError(ValueError):
    """Base error class for our form parser."""

    #: Short name of the failure kind, for mapping onto protocol responses.
    error_kind = "FormParserError"


class NotFormDataError(FormParserError):
    """Raised when the declared content type is not ``multipart/form-data``."""

    error_kind = "NotFormData"

    def __init__(self, content_type: str | None = None) -> None:
        super().__init__(f"The content type is not multipart/form-data: {content_type!r}")
        self.content_type = content_type


class BoundaryMissingError(FormParserError):
    """Raised when the content type carries no ``boundary`` parameter."""

    error_kind = "BoundaryMissing"

    def __init__(self, message: str = "No boundary given in the content type") -> None:
        super().__init__(message)


class FormIOError(FormParserError, OSError):
    """This exception (or a subclass) is raised when reading the body stream or
    touching the filesystem fails.
    """

    error_kind = "IOFailure"


class FileError(FormIOError):
    """Exception class for problems with temporary files."""


class MultipartParseError(FormIOError):
    """This is a specific error that is raised when the MultipartParser detects
    an error while parsing, including a body that ends before its closing
    boundary.
    """

    #: This is the offset in the input data chunk (*NOT* the overall stream) in
    #: which the parse error occured.  It will be -1 if not specified.
    offset = -1


class FieldError(FormParserError):
    """Base class for errors tied to one named field."""

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(message)
        self.field_name = field_name


class TextEncodingError(FieldError):
    """Raised when a text field does not contain valid UTF-8."""

    error_kind = "TextEncodingFailure"

    def __init__(self, field_name: str, reason: str = "") -> None:
        message = f"The data of field {field_name!r} is not valid UTF-8"
        if reason:
            message += f": {reason}"
        super().__init__(field_name, message)


class FieldTooLargeError(FieldError):
    """Raised when a field's data exceeds the size limit of its rule."""

    error_kind = "FieldTooLarge"

    def __init__(self, field_name: str, size_limit: int | None = None) -> None:
        super().__init__(field_name, f"The data of field {field_name!r} is too large")
        self.size_limit = size_limit


class FieldTypeRejectedError(FieldError):
    """Raised when a field's declared content type matches none of its rule's
    filters.
    """

    error_kind = "FieldTypeRejected"

    def __init__(self, field_name: str, content_type: str | None = None) -> None:
        super().__init__(field_name, f"The data type of field {field_name!r} is incorrect: {content_type!r}")
        self.content_type = content_type
