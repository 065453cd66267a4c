from __future__ import annotations

import logging
import zlib
from typing import TYPE_CHECKING

import brotli

from .exceptions import ConfigurationError, DecompressionError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping, Sequence
    from typing import Any, Protocol, TypeAlias

    class Underlying(Protocol):
        def write(self, data: bytes) -> Any: ...

    class Decompressor(Protocol):
        def write(self, data: bytes) -> int: ...
        def finalize(self) -> None: ...

    DecompressorFactory: TypeAlias = "Callable[[Underlying], Decompressor]"

# Get logger for this module.
logger = logging.getLogger(__name__)


class ZlibDecoder:
    """This object provides an interface to decompress a zlib stream.  The
    decompressed data is written to the underlying object given when the
    decoder is created, in pieces of at most `max_length` bytes.

    Decompression stops as soon as the underlying object consumes nothing
    from a piece (its `write()` returns 0), so a request that has already
    failed does not decompress the rest of its body.

    Args:
        underlying: the underlying object to pass writes to
    """

    #: The window bits handed to :func:`zlib.decompressobj`.
    wbits = zlib.MAX_WBITS

    #: Whether another compressed stream may follow the end of the first one.
    multi_member = False

    #: The maximum number of decompressed bytes written at once.
    max_length = 65536

    def __init__(self, underlying: Underlying) -> None:
        self.underlying = underlying
        self.decompressor = zlib.decompressobj(wbits=self.wbits)

    def write(self, data: bytes) -> int:
        """Takes any input data provided, decompresses it, and passes the
        result to the underlying object.

        Args:
            data: compressed data to write to the decoder

        Returns:
            The number of bytes consumed.
        """
        length = len(data)
        try:
            while True:
                decoded = self.decompressor.decompress(data, self.max_length)
                if decoded and self.underlying.write(decoded) == 0:
                    break

                if self.multi_member and self.decompressor.eof and self.decompressor.unused_data:
                    # A new member starts right after the end of this one.
                    data = self.decompressor.unused_data
                    self.decompressor = zlib.decompressobj(wbits=self.wbits)
                    continue

                data = self.decompressor.unconsumed_tail
                if not data and len(decoded) < self.max_length:
                    break
        except zlib.error as e:
            raise DecompressionError("incorrect header check", "Z_DATA_ERROR") from e

        return length

    def close(self) -> None:
        """Close this decoder.  If the underlying object has a `close()`
        method, this function will call it.
        """
        if hasattr(self.underlying, "close"):
            self.underlying.close()

    def finalize(self) -> None:
        """Finalize this object.  This should be called when no more data
        should be written to the stream.

        Raises:
            DecompressionError: If the compressed stream is incomplete.
        """
        try:
            decoded = self.decompressor.flush()
        except zlib.error as e:  # pragma: no cover
            raise DecompressionError("incorrect header check", "Z_DATA_ERROR") from e

        if decoded:
            self.underlying.write(decoded)

        if not self.decompressor.eof:
            raise DecompressionError("unexpected end of file", "Z_BUF_ERROR")

        if hasattr(self.underlying, "finalize"):
            self.underlying.finalize()

    def __repr__(self) -> str:
        return "%s(underlying=%r)" % (self.__class__.__name__, self.underlying)


class DeflateDecoder(ZlibDecoder):
    """Decoder for `Content-Encoding: deflate`, a zlib wrapped deflate stream."""

    wbits = zlib.MAX_WBITS


class GzipDecoder(ZlibDecoder):
    """Decoder for `Content-Encoding: gzip`.  Bodies made of several
    concatenated gzip members are decoded completely.
    """

    wbits = 16 + zlib.MAX_WBITS
    multi_member = True


class BrotliDecoder:
    """Decoder for `Content-Encoding: br`, backed by the `Brotli` package.
    Like [`ZlibDecoder`][body_parser.decoders.ZlibDecoder], output is written in
    pieces of at most `max_length` bytes and decoding stops once the
    underlying object consumes nothing.

    Args:
        underlying: the underlying object to pass writes to
    """

    #: The maximum number of decompressed bytes written at once.
    max_length = 65536

    def __init__(self, underlying: Underlying) -> None:
        self.underlying = underlying
        self.decompressor = brotli.Decompressor()

    def write(self, data: bytes) -> int:
        try:
            decoded = self.decompressor.process(data, output_buffer_limit=self.max_length)
            while True:
                if decoded and self.underlying.write(decoded) == 0:
                    break
                # Input held back by the output limit is drained with empty writes.
                if self.decompressor.is_finished() or self.decompressor.can_accept_more_data():
                    break
                decoded = self.decompressor.process(b"", output_buffer_limit=self.max_length)
        except brotli.error as e:
            raise DecompressionError("incorrect header check", "Z_DATA_ERROR") from e

        return len(data)

    def close(self) -> None:
        if hasattr(self.underlying, "close"):
            self.underlying.close()

    def finalize(self) -> None:
        if not self.decompressor.is_finished():
            raise DecompressionError("unexpected end of file", "Z_BUF_ERROR")

        if hasattr(self.underlying, "finalize"):
            self.underlying.finalize()

    def __repr__(self) -> str:
        return "%s(underlying=%r)" % (self.__class__.__name__, self.underlying)


#: The decompressors available without any configuration.
STANDARD_DECOMPRESSORS: dict[str, DecompressorFactory] = {
    "deflate": DeflateDecoder,
    "gzip": GzipDecoder,
    "br": BrotliDecoder,
}


def match_content_encoding(content_encoding: str, inflate: Sequence[str] | bool, global_names: Sequence[str]) -> bool:
    """Return whether a parser configuration accepts the content encoding of a
    request.  `identity` is always accepted here; whether it is allowed at all
    is checked when the body is read.

    Args:
        content_encoding: The (lower-cased) `Content-Encoding` of the request.
        inflate: The inflate setting of the parser configuration, ``True``
            allows every name in `global_names`.
        global_names: The names of all available decompressors.
    """
    if content_encoding == "identity":
        return True
    names = global_names if inflate is True else inflate
    return content_encoding in names


def get_available_decompressors(
    parsers: Sequence[dict[str, Any]],
    decompressors: Mapping[str, DecompressorFactory] | None = None,
) -> tuple[dict[str, DecompressorFactory], list[str]]:
    """Compute the decompressors available at runtime.

    Unless a parser configuration allows every decompressor, decompressors
    that no configuration references are left out.

    Returns:
        A tuple of the mapping from name to decompressor factory and the list
        of available names.  The latter starts with `identity` when
        uncompressed requests are allowed.

    Raises:
        ConfigurationError: If a configuration references a decompressor that
            is not supplied.
    """
    allows_all = any(parser["inflate"] is True for parser in parsers)
    referenced = list(
        dict.fromkeys(name for parser in parsers if parser["inflate"] is not True for name in parser["inflate"])
    )

    standard = dict(STANDARD_DECOMPRESSORS)
    supplied = dict(decompressors or {})
    if not allows_all:
        standard = {name: factory for name, factory in standard.items() if name in referenced}
        supplied = {name: factory for name, factory in supplied.items() if name in referenced}

    available = {**standard, **supplied}
    available_names = (["identity"] if allows_all or "identity" in referenced else []) + list(available)

    missing = [name for name in referenced if name not in available_names]
    if missing:
        raise ConfigurationError(
            "The following decompressors in the parse configuration are not supplied: %s" % ", ".join(missing)
        )

    logger.debug("Available decompressors: %r", available_names)
    return available, available_names
