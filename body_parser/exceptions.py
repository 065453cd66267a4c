from __future__ import annotations

from http import HTTPStatus
from typing import Any


class BodyParserError(ValueError):
    """Base error class for our body parser."""


class ConfigurationError(BodyParserError):
    """This exception is raised while the middleware is being constructed, when
    the parser configurations, buffer encodings or decompressors supplied do
    not fit together.
    """


class ParseError(BodyParserError):
    """This exception (or a subclass) is raised when there is an error while
    parsing something.

    Parser functions may set `status` and `type` on the instance, those values
    take precedence over the defaults used when the error is reported.
    """

    #: This is the offset in the input data chunk (*NOT* the overall stream) in
    #: which the parse error occurred.  It will be -1 if not specified.
    offset = -1

    status: int | None = None
    type: str | None = None


class QuerystringParseError(ParseError):
    """This is a specific error that is raised when the QuerystringParser
    detects an error while parsing.
    """


class MediaTypeError(ParseError):
    """Raised when a `Content-Type` header is missing or can not be parsed."""


class DecompressionError(ParseError):
    """This exception is raised by the decompressing decoders when the stream
    is malformed (`Z_DATA_ERROR`) or truncated (`Z_BUF_ERROR`).
    """

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class HTTPError(BodyParserError):
    """The error handed to the `next` function of the middleware.

    It always carries a numeric `status`, a human readable `message` and a
    machine readable `type`.  Extra keyword arguments (e.g. `limit`,
    `received`, `charset`, `body`) are stored as attributes.
    """

    def __init__(self, status: int, message: str | None = None, **props: Any) -> None:
        if message is None:
            message = HTTPStatus(status).phrase
        super().__init__(message)
        self.status = status
        self.status_code = status
        self.message = message
        self.expose = status < 500
        self.type: str | None = None
        for key, value in props.items():
            setattr(self, key, value)

    def __repr__(self) -> str:
        return "%s(status=%r, message=%r, type=%r)" % (self.__class__.__name__, self.status, self.message, self.type)


def create_error(status: int, error: str | BaseException | None = None, **props: Any) -> HTTPError:
    """Create an :class:`HTTPError`.

    When `error` is already an :class:`HTTPError` it is returned unchanged.
    Any other exception is wrapped, keeping its message and the `status` /
    `type` attributes it may carry.
    """
    if isinstance(error, HTTPError):
        return error

    if isinstance(error, BaseException):
        status = getattr(error, "status", None) or status
        err_type = getattr(error, "type", None)
        if err_type is not None:
            props["type"] = err_type
        http_error = HTTPError(status, str(error), **props)
        http_error.__cause__ = error
        return http_error

    return HTTPError(status, error, **props)
