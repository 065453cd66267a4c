from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import msgspec

from .base import BaseParser
from .buffer_encoding import (
    ChunkedBufferEncoder,
    get_available_buffer_encodings,
    get_encoding_variations,
    match_charset_encoding,
)
from .configuration import join_parser_configurations
from .decoders import get_available_decompressors, match_content_encoding
from .exceptions import ConfigurationError, MediaTypeError, ParseError, create_error
from .media_types import match_any_type, parse_content_type

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping, Sequence
    from typing import Any, Protocol, TypeAlias, TypedDict

    from .buffer_encoding import BufferEncoder
    from .configuration import ParserConfigurations, PatchedParser
    from .decoders import DecompressorFactory
    from .media_types import MediaType

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    class Request(Protocol):
        headers: Mapping[str, str]
        method: str
        body: Any
        stream: SupportsRead

    Done: TypeAlias = "Callable[..., None]"
    Next: TypeAlias = "Callable[..., None]"

    class BodyParserConfig(TypedDict, total=False):
        DEFAULT_LIMIT: int | float | str
        INFLATE: bool | str | list[str]
        REQUIRE_CONTENT_LENGTH: bool
        DEFAULT_CONTENT_TYPE: str | bool | None


# Get logger for this module.
logger = logging.getLogger(__name__)

# Requests with these methods never carry a body we want to parse.
BODILESS_METHODS = ("GET", "DELETE")


class _Receiver:
    """Hands the (decompressed) chunks that the decompressor writes to the
    body parser as they are produced.  Nothing is consumed once the request is
    complete, which stops the decompressor.
    """

    def __init__(self, parser: RawBodyParser) -> None:
        self.parser = parser

    def write(self, data: bytes) -> int:
        if self.parser.complete:
            return 0
        self.parser._on_data(data)
        return len(data)

    def finalize(self) -> None:
        pass


class RawBodyParser(BaseParser):
    """The state machine that reads the body of one request.

    The body is pushed in with :meth:`write` and :meth:`finalize` (or read
    from a stream with :meth:`run`).  It is decompressed, counted against the
    limit, decoded to text if a charset applies, parsed and finally verified.
    The result is delivered to `callback` exactly once, as
    ``callback(error)`` or ``callback(None, body)``.

    Once the callback has been called every further event is ignored.

    Args:
        request: The request, handed to the verify function.
        response: The response, handed to the verify function.
        callback: The completion callback.
        decompressors: The available decompressor factories.
        decompressor_names: The names of the available decompressors.
        parse_configuration: The resolved configuration for this request.
        content_length: The declared `Content-Length`, if any.
        content_encoding: The (lower-cased) `Content-Encoding`.
        default_encoding: The charset of the body, None for binary bodies.
        limit: The maximum number of (decompressed) bytes, None for no limit.
        buffer_encoder: The buffer encoder for `default_encoding`, if any.
    """

    def __init__(
        self,
        request: Request,
        response: Any,
        callback: Done,
        decompressors: Mapping[str, DecompressorFactory],
        decompressor_names: Sequence[str],
        parse_configuration: PatchedParser,
        content_length: int | None,
        content_encoding: str,
        default_encoding: str | None,
        limit: int | float | None,
        buffer_encoder: BufferEncoder | None,
    ) -> None:
        super().__init__()
        self.request = request
        self.response = response
        self.on_complete = callback
        self.decompressors = decompressors
        self.decompressor_names = decompressor_names
        self.parse_configuration = parse_configuration
        self.content_length = content_length
        self.content_encoding = content_encoding
        self.default_encoding = default_encoding
        self.limit = limit
        self.buffer_encoder = buffer_encoder

        self.complete = False
        self.received = 0
        self.chunks: list[Any] = []
        self.verify_buffer: list[bytes] = []

        self.chunked = isinstance(buffer_encoder, ChunkedBufferEncoder)
        self.decoder = buffer_encoder.decoder() if isinstance(buffer_encoder, ChunkedBufferEncoder) else None

        self._receiver = _Receiver(self)
        self._sync = True
        self._deferred: tuple[Exception | None, Any] | None = None
        try:
            self.stream = self._decompress_stream()
        except Exception as e:
            self.stream = self._receiver
            self.done(
                create_error(
                    getattr(e, "status", None) or 415,
                    "Decompression failed: %s" % e,
                    content_encoding=content_encoding,
                    type=getattr(e, "type", None) or "decompression.failed",
                )
            )
        self._sync = False

        if self._deferred is not None:
            self._schedule(*self._deferred)

    def _decompress_stream(self) -> Any:
        if self.content_encoding == "identity" and "identity" in self.decompressor_names:
            return self._receiver
        elif self.content_encoding != "identity":
            return self.decompressors[self.content_encoding](self._receiver)

        e = ParseError("server does not allow uncompressed requests.")
        e.type = "unsupported.content.encoding"
        raise e

    def _schedule(self, err: Exception | None, result: Any) -> None:
        # Completion during construction goes to the next turn of a running
        # event loop; without one it is delivered once construction is done.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._invoke_callback(err, result)
        else:
            loop.call_soon(self._invoke_callback, err, result)

    def done(self, err: Exception | None, result: Any = None) -> None:
        """Mark this request as complete and deliver the result."""
        self.complete = True
        if self._sync:
            self._deferred = (err, result)
        else:
            self._invoke_callback(err, result)

    def _invoke_callback(self, err: Exception | None, result: Any) -> None:
        if err is not None:
            self.logger.debug("Calling completion callback with error %r", err)
            self.on_complete(err)
        else:
            self.logger.debug("Calling completion callback with a body of type %s", type(result).__name__)
            self.on_complete(None, result)

    def write(self, data: bytes) -> int:
        """Write a chunk of the raw (possibly compressed) body.

        Args:
            data: The data to write.

        Returns:
            The number of bytes consumed, always the length of `data`.
        """
        if self.complete:
            return len(data)

        try:
            self.stream.write(data)
        except Exception as e:
            self._on_end(e)
        return len(data)

    def finalize(self) -> None:
        """Signal the end of the body.  This parses the body and calls the
        completion callback, unless that already happened.
        """
        if self.complete:
            return

        try:
            self.stream.finalize()
        except Exception as e:
            self._on_end(e)
            return
        self._on_end(None)

    def abort(self) -> None:
        """Signal that the client aborted the request."""
        if self.complete:
            return
        self.logger.warning("Request aborted after %d bytes", self.received)
        self.done(create_error(400, "request aborted", code="ECONNABORTED", type="request.aborted"))

    def error(self, err: Exception) -> None:
        """Signal an error of the underlying stream."""
        self._on_end(err)

    def close(self) -> None:
        """Discard everything buffered for this request."""
        self.chunks.clear()
        self.verify_buffer.clear()
        if self.stream is not self._receiver and hasattr(self.stream, "close"):
            self.stream.close()

    def run(self, stream: SupportsRead, chunk_size: int = 1048576) -> None:
        """Read the body from `stream` and feed it to this parser.

        At most `content_length` bytes are read when it is known.  The stream
        is read to its end even after the request has failed, so that the
        connection is not left with unread data.

        Args:
            stream: The request body stream.
            chunk_size: The maximum number of bytes to read at once.
        """
        content_length = self.content_length if self.content_length is not None else float("inf")
        bytes_read = 0

        try:
            while True:
                max_readable = int(min(content_length - bytes_read, chunk_size))
                try:
                    buff = stream.read(max_readable)
                except (ConnectionAbortedError, ConnectionResetError):
                    self.abort()
                    return
                except Exception as e:
                    self.error(e)
                    return

                self.write(buff)
                bytes_read += len(buff)

                if len(buff) != max_readable or bytes_read == content_length:
                    break

            self.finalize()
        finally:
            self.close()

    def _on_data(self, chunk: bytes) -> None:
        if self.complete:
            return
        self.received += len(chunk)

        if self.limit is not None and self.received > self.limit:
            self.logger.warning("Request body exceeds the limit of %s bytes", self.limit)
            self.done(
                create_error(
                    413, "request entity too large", limit=self.limit, received=self.received, type="entity.too.large"
                )
            )
            return
        self.chunks.append(self.decoder.decode(chunk) if self.decoder is not None else chunk)
        if self.chunked and "verify" in self.parse_configuration:
            self.verify_buffer.append(chunk)

    def _on_end(self, err: Exception | None) -> None:
        if self.complete:
            return

        code = getattr(err, "code", None)
        if code == "Z_DATA_ERROR":
            self.logger.warning("Decompression failed: %s", err)
            self.done(
                create_error(
                    400, "incorrect header check", limit=self.limit, received=self.received, type="header.check"
                )
            )
            return
        if code == "Z_BUF_ERROR":
            self.logger.warning("Decompression failed: %s", err)
            self.done(
                create_error(
                    400, "unexpected end of file", limit=self.limit, received=self.received, type="end.of.file"
                )
            )
            return
        if err is not None:
            self.done(err)
            return

        if (
            self.content_length is not None
            and self.received != self.content_length
            and self.content_encoding == "identity"
        ):
            self.done(
                create_error(
                    400,
                    "request size did not match content length",
                    expected=self.content_length,
                    length=self.content_length,
                    received=self.received,
                    type="request.size.invalid",
                )
            )
            return

        if self.decoder is not None:
            self.chunks.append(self.decoder.decode(b"", final=True))
        if self.received == 0:
            self.done(None, self.parse_configuration.get("empty_response"))
            return

        encoder = self.buffer_encoder
        if isinstance(encoder, ChunkedBufferEncoder):
            buffer = encoder.reduce(self.chunks)
        else:
            buffer = b"".join(self.chunks)

        if self.parse_configuration.get("encodings") and encoder is not None and not self.chunked:
            decoded = encoder.transform(buffer)  # type: ignore[union-attr]
        else:
            decoded = buffer

        parser = self.parse_configuration.get("parser")
        try:
            body = parser(decoded) if parser is not None else decoded
        except Exception as e:
            self.logger.warning("Parsing the request body failed: %s", e)
            error = create_error(
                getattr(e, "status", None) or 400,
                "Parse error: %s" % e,
                body=decoded,
                type=getattr(e, "type", None) or "entity.parse.failed",
            )
            error.__cause__ = e
            self.done(error)
            return

        verify = self.parse_configuration.get("verify")
        if verify is not None:
            try:
                verify(
                    self.request,
                    self.response,
                    b"".join(self.verify_buffer) if self.chunked else buffer,
                    body,
                    self.default_encoding,
                )
                self.verify_buffer.clear()
            except Exception as e:
                self.logger.warning("Verifying the request body failed: %s", e)
                error = create_error(
                    getattr(e, "status", None) or 403,
                    "Verify function did not match: %s" % e,
                    body=body if isinstance(body, str) else msgspec.json.encode(body, enc_hook=repr).decode(),
                    type=getattr(e, "type", None) or "entity.verify.failed",
                )
                error.__cause__ = e
                self.done(error)
                return

        self.done(None, body)

    def __repr__(self) -> str:
        return "%s(content_encoding=%r, default_encoding=%r, limit=%r)" % (
            self.__class__.__name__,
            self.content_encoding,
            self.default_encoding,
            self.limit,
        )


def _unavailable_message(name: str, scopes: Sequence[str] = ()) -> str:
    scope = " for this %s" % " and ".join("'%s'" % s for s in scopes) if scopes else ""
    return "Specified '%s' is not available%s on this server." % (name, scope)


def _parse_content_length(value: str | None) -> int | None:
    # Missing, unparsable and zero lengths all count as not given.
    if value is None:
        return None
    try:
        return int(value) or None
    except ValueError:
        return None


class MediaTypeParser:
    """Picks the parser configuration for a request and reads its body.

    Calling an instance with ``(request, response, callback)`` checks the
    headers against the configurations: the media type first, then the
    charset, then the content encoding.  Failures are reported through the
    callback.  Bodiless requests complete right away with the configured
    empty response.

    Args:
        parsers: The resolved parser configurations.
        decompressors: The available decompressor factories.
        decompressor_names: The names of the available decompressors.
        buffer_encodings: The available buffer encoders by charset name.
        buffer_encoding_names: The names of the available charsets.
        require_content_length: Whether `Content-Length` is mandatory.
        default_content_type_encoding: The charset used for requests without
            a `Content-Type`.
        default_content_type: The media type used for requests without a
            `Content-Type`.
        chunk_size: The maximum number of bytes read from the stream at once.
    """

    def __init__(
        self,
        parsers: Sequence[PatchedParser],
        decompressors: Mapping[str, DecompressorFactory],
        decompressor_names: Sequence[str],
        buffer_encodings: Mapping[str, BufferEncoder],
        buffer_encoding_names: Sequence[str],
        require_content_length: bool,
        default_content_type_encoding: str | None,
        default_content_type: MediaType | None = None,
        chunk_size: int = 1048576,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.parsers = parsers
        self.decompressors = decompressors
        self.decompressor_names = decompressor_names
        self.buffer_encodings = buffer_encodings
        self.buffer_encoding_names = buffer_encoding_names
        self.require_content_length = require_content_length
        self.default_content_type_encoding = default_content_type_encoding
        self.default_content_type = default_content_type
        self.chunk_size = chunk_size

    def __call__(self, request: Request, response: Any, callback: Done) -> None:
        request._body = True  # type: ignore[attr-defined]

        headers = getattr(request, "headers", None)
        if headers is None:  # pragma: no cover
            callback(create_error(400, "Request Headers not set"))
            return

        content_encoding = (headers.get("content-encoding") or "").lower() or "identity"
        content_length = _parse_content_length(headers.get("content-length"))
        transfer_encoding = headers.get("transfer-encoding")
        method = (request.method or "").upper()

        if content_length is None and self.require_content_length:
            callback(
                create_error(
                    411,
                    "Header 'Content-Length' not specified but required by configuration.",
                    type="contentLength.missing",
                )
            )
            return

        content_type = headers.get("content-type")
        parameters: dict[str, str] | None
        media_type: MediaType
        if content_type is None and self.default_content_type is not None:
            media_type, parameters = self.default_content_type, None
        else:
            try:
                media_type, parameters = parse_content_type(content_type)
            except MediaTypeError as e:
                if method in BODILESS_METHODS:
                    callback(None)
                    return
                self.logger.warning("Invalid Content-Type header: %r", content_type)
                callback(
                    create_error(
                        400, "%s: %s" % (e, content_type), media_type=content_type, type="mediaType.invalid"
                    )
                )
                return

        allowed_media_type_parsers = [
            parser for parser in self.parsers if match_any_type(parser["matcher"], media_type)
        ]
        if not allowed_media_type_parsers:
            self.logger.warning("Unsupported media type %s/%s", *media_type)
            callback(create_error(415, "Unsupported Media Type", media_type=media_type, type="mediaType.unsupported"))
            return

        if parameters is not None:
            charset = parameters.get("charset")
            encoding = charset.lower() if charset else None
        else:
            encoding = self.default_content_type_encoding

        allowed_charset_parsers = [
            parser
            for parser in allowed_media_type_parsers
            if match_charset_encoding(
                parser.get("encodings"), encoding, self.buffer_encoding_names, parser.get("default_encoding")
            )
        ]
        if not allowed_charset_parsers:
            self.logger.warning("Unsupported charset %r", encoding)
            if not encoding:
                message = (
                    "Default charset is not set for this 'Media-Type'. "
                    "Please provide the 'charset' for this 'Media-Type'"
                )
            elif encoding in self.buffer_encoding_names:
                message = _unavailable_message("charset=%s" % encoding, ["Media-Type"])
            else:
                message = _unavailable_message("charset=%s" % encoding)
            callback(create_error(415, message, charset=encoding, type="charset.unsupported"))
            return

        parse_configuration = next(
            (
                parser
                for parser in allowed_charset_parsers
                if match_content_encoding(content_encoding, parser["inflate"], self.decompressor_names)
            ),
            None,
        )

        if (transfer_encoding is None and content_length is None) or method in BODILESS_METHODS:
            self.logger.debug("Request has no body")
            callback(None, parse_configuration.get("empty_response") if parse_configuration is not None else None)
            return

        if parse_configuration is None:
            self.logger.warning("Unsupported content encoding %r", content_encoding)
            name = "Content-Encoding: %s" % content_encoding
            if content_encoding in self.decompressor_names:
                message = _unavailable_message(name, ["Media-Type", "charset"])
            else:
                message = _unavailable_message(name)
            callback(create_error(415, message, content_encoding=content_encoding, type="encoding.unsupported"))
            return

        default_encoding = encoding or parse_configuration.get("default_encoding")
        buffer_encoder = self.buffer_encodings.get(default_encoding) if default_encoding else None
        self.logger.debug(
            "Reading body with content encoding %r and charset %r", content_encoding, default_encoding
        )

        raw_body_parser = RawBodyParser(
            request,
            response,
            callback,
            self.decompressors,
            self.decompressor_names,
            parse_configuration,
            content_length,
            content_encoding,
            default_encoding,
            parse_configuration.get("limit"),
            buffer_encoder,
        )
        raw_body_parser.run(request.stream, self.chunk_size)


def read_stream_callback(next: Next, request: Request) -> Done:
    """Create the completion callback that hands the result of a request to
    the `next` function of the middleware chain.
    """

    def callback(error: Exception | None, body: Any = None) -> None:
        if error is not None:
            next(create_error(400, error))
            return
        if body is not None:
            request.body = body
        next()

    return callback


class BodyParser:
    """The body parser middleware.  Call an instance with
    ``(request, response, next)``.

    All configurations are checked when the middleware is created, a
    :class:`~body_parser.exceptions.ConfigurationError` is raised for any
    problem.

    Args:
        config: Global options, see :attr:`DEFAULT_CONFIG`.
        parser_configurations: A parser configuration, a default media type
            name or a list of any of these.  The default media types when
            None.
        buffer_encodings: Additional buffer encoders for charsets.
        decompressors: Additional decompressor factories by content encoding.
    """

    #: This is the default configuration for our body parser.  Individual
    #: parser configurations may override everything but the default content
    #: type.
    #:
    #: | Key                    | Type             | Default    | Description                                       |
    #: |------------------------|------------------|------------|---------------------------------------------------|
    #: | DEFAULT_LIMIT          | int, float, str  | "20kb"     | The maximum size of a (decompressed) body.        |
    #: | INFLATE                | bool, str, list  | "identity" | The content encodings accepted, True for all.     |
    #: | REQUIRE_CONTENT_LENGTH | bool             | False      | Whether `Content-Length` is mandatory.            |
    #: | DEFAULT_CONTENT_TYPE   | str, None        | None       | The media type of requests without `Content-Type`. |
    DEFAULT_CONFIG: BodyParserConfig = {
        "DEFAULT_LIMIT": "20kb",
        "INFLATE": "identity",
        "REQUIRE_CONTENT_LENGTH": False,
        "DEFAULT_CONTENT_TYPE": None,
    }

    def __init__(
        self,
        config: BodyParserConfig = {},
        parser_configurations: ParserConfigurations | None = None,
        buffer_encodings: Sequence[BufferEncoder] | None = None,
        decompressors: Mapping[str, DecompressorFactory] | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)

        self.config: BodyParserConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)

        require_content_length = bool(self.config["REQUIRE_CONTENT_LENGTH"])
        default_content_type = self.config["DEFAULT_CONTENT_TYPE"] or None

        variations, native_variations = get_encoding_variations(buffer_encodings)
        self.parsers = join_parser_configurations(
            parser_configurations,
            self.config["DEFAULT_LIMIT"],
            self.config["INFLATE"],
            variations,
            require_content_length,
        )
        decompressors, decompressor_names = get_available_decompressors(self.parsers, decompressors)
        encoders, encoder_names = get_available_buffer_encodings(
            self.parsers, variations, native_variations, buffer_encodings
        )

        media_type: MediaType | None = None
        default_content_type_encoding = None
        if default_content_type:
            parts = str(default_content_type).split("/")
            if len(parts) != 2:
                raise ConfigurationError("The specified default content type '%s' is invalid." % default_content_type)
            media_type = (parts[0], parts[1])
            default_parser = next(
                (parser for parser in self.parsers if match_any_type(parser["matcher"], media_type)), None
            )
            if default_parser is None:
                raise ConfigurationError(
                    "The specified default content type '%s' does not match any parser configuration"
                    % default_content_type
                )
            default_content_type_encoding = default_parser.get("default_encoding")

        self.media_type_parser = MediaTypeParser(
            self.parsers,
            decompressors,
            decompressor_names,
            encoders,
            encoder_names,
            require_content_length,
            default_content_type_encoding,
            media_type,
        )

    def __call__(self, request: Request, response: Any, next: Next) -> None:
        if getattr(request, "_body", False):
            self.logger.debug("Request body was already read")
            next()
            return

        self.media_type_parser(request, response, read_stream_callback(next, request))

    def __repr__(self) -> str:
        return "%s(parsers=%d)" % (self.__class__.__name__, len(self.parsers))


def create_body_parser(
    config: BodyParserConfig = {},
    parser_configurations: ParserConfigurations | None = None,
    buffer_encodings: Sequence[BufferEncoder] | None = None,
    decompressors: Mapping[str, DecompressorFactory] | None = None,
) -> BodyParser:
    """This function is a helper function to aid in creating a BodyParser
    instance.

    Args:
        config: Global options, see :attr:`BodyParser.DEFAULT_CONFIG`.
        parser_configurations: The parser configurations.
        buffer_encodings: Additional buffer encoders.
        decompressors: Additional decompressor factories.

    Returns:
        A BodyParser instance.
    """
    return BodyParser(config, parser_configurations, buffer_encodings, decompressors)


def _pinned_config(config: BodyParserConfig, media_type: str) -> BodyParserConfig:
    config = dict(config)  # type: ignore[assignment]
    if config.get("DEFAULT_CONTENT_TYPE") is True:
        config["DEFAULT_CONTENT_TYPE"] = media_type
    return config


def json_parser(
    config: BodyParserConfig = {},
    buffer_encodings: Sequence[BufferEncoder] | None = None,
    decompressors: Mapping[str, DecompressorFactory] | None = None,
) -> BodyParser:
    """Body parser for `application/json` only.  ``DEFAULT_CONTENT_TYPE=True``
    treats requests without `Content-Type` as JSON.
    """
    media_type = "application/json"
    return BodyParser(_pinned_config(config, media_type), media_type, buffer_encodings, decompressors)


def urlencoded_parser(
    config: BodyParserConfig = {},
    buffer_encodings: Sequence[BufferEncoder] | None = None,
    decompressors: Mapping[str, DecompressorFactory] | None = None,
) -> BodyParser:
    """Body parser for `application/x-www-form-urlencoded` only."""
    media_type = "application/x-www-form-urlencoded"
    return BodyParser(_pinned_config(config, media_type), media_type, buffer_encodings, decompressors)


def text_parser(
    config: BodyParserConfig = {},
    buffer_encodings: Sequence[BufferEncoder] | None = None,
    decompressors: Mapping[str, DecompressorFactory] | None = None,
) -> BodyParser:
    """Body parser for `text/plain` only."""
    media_type = "text/plain"
    return BodyParser(_pinned_config(config, media_type), media_type, buffer_encodings, decompressors)


def raw_parser(
    config: BodyParserConfig = {},
    decompressors: Mapping[str, DecompressorFactory] | None = None,
) -> BodyParser:
    """Body parser for `application/octet-stream` only.  The body is handed
    on as bytes.
    """
    media_type = "application/octet-stream"
    return BodyParser(_pinned_config(config, media_type), media_type, None, decompressors)
