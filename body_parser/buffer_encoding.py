"""Charset handling: the alias table for encoding names, the buffer encoders
that turn the (decompressed) body bytes into text, and the registry of buffer
encoders available to the parser configurations.
"""

from __future__ import annotations

import base64
import codecs
import functools
import logging
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable, Sequence
    from typing import Any, Protocol, TypeAlias, Union

    class IncrementalDecoder(Protocol):
        def decode(self, input: bytes, final: bool = False) -> Any: ...

    BufferEncoder: TypeAlias = "Union[ChunkedBufferEncoder, UnchunkedBufferEncoder]"
    EncodingVariations: TypeAlias = "dict[str, list[str]]"

# Get logger for this module.
logger = logging.getLogger(__name__)

# Unique missing object.
_missing = object()

#: The charsets that are decoded without any additional buffer encoder.
NATIVE_BUFFER_ENCODINGS = [
    "utf-8",
    "utf8",
    "ucs-2",
    "ucs2",
    "utf16le",
    "latin1",
    "ascii",
    "base64",
    "base64url",
    "hex",
    "binary",
]

#: The equivalence groups known before any buffer encoder is added.
DEFAULT_ENCODING_VARIATIONS: dict[str, list[str]] = {
    "utf8": ["utf-8", "utf8"],
    "utf-8": ["utf-8", "utf8"],
    "ucs2": ["ucs-2", "ucs2"],
    "ucs-2": ["ucs-2", "ucs2"],
}


class ChunkedBufferEncoder:
    """A buffer encoder that decodes the body chunk by chunk.

    Args:
        encodings: The charset names this encoder is registered for.
        decoder: A callable returning a new incremental decoder.  The decoder
            follows the :class:`codecs.IncrementalDecoder` interface, i.e.
            ``decode(data, final=False)``.  A fresh decoder is created for
            every request.
        reduce: Combines the decoded pieces into the final value.
    """

    def __init__(
        self,
        encodings: Sequence[str],
        decoder: Callable[[], IncrementalDecoder],
        reduce: Callable[[list[Any]], Any] = "".join,
    ) -> None:
        self.encodings = list(encodings)
        self.decoder = decoder
        self.reduce = reduce

    def __repr__(self) -> str:
        return "%s(encodings=%r)" % (self.__class__.__name__, self.encodings)


class UnchunkedBufferEncoder:
    """A buffer encoder that needs the whole body before it can decode it.

    Args:
        encodings: The charset names this encoder is registered for.
        transform: Converts the concatenated body bytes into the final value.
    """

    def __init__(self, encodings: Sequence[str], transform: Callable[[bytes], Any]) -> None:
        self.encodings = list(encodings)
        self.transform = transform

    def __repr__(self) -> str:
        return "%s(encodings=%r)" % (self.__class__.__name__, self.encodings)


class Base64TextDecoder(codecs.IncrementalDecoder):
    """Renders the bytes it is given as base64 text.

    Only multiples of three bytes can be encoded without padding, so any
    remainder is kept in a cache until the next call.
    """

    urlsafe = False

    def __init__(self, errors: str = "strict") -> None:
        super().__init__(errors)
        self.cache = b""

    def decode(self, input: bytes, final: bool = False) -> str:
        # Prepend any cache info to our data.
        data = self.cache + bytes(input)

        if final:
            encode_len = len(data)
        else:
            # Slice off a string that's a multiple of 3.
            encode_len = (len(data) // 3) * 3

        val, self.cache = data[:encode_len], data[encode_len:]
        if self.urlsafe:
            return base64.urlsafe_b64encode(val).decode("ascii").rstrip("=")
        return base64.b64encode(val).decode("ascii")

    def reset(self) -> None:
        self.cache = b""


class Base64UrlTextDecoder(Base64TextDecoder):
    urlsafe = True


class HexTextDecoder(codecs.IncrementalDecoder):
    """Renders the bytes it is given as lower-case hexadecimal text."""

    def decode(self, input: bytes, final: bool = False) -> str:
        return bytes(input).hex()


# Python codec names for the native charsets.
_NATIVE_CODECS = {
    "utf-8": "utf-8",
    "utf8": "utf-8",
    "ucs-2": "utf-16-le",
    "ucs2": "utf-16-le",
    "utf16le": "utf-16-le",
    "latin1": "latin-1",
    "binary": "latin-1",
    "ascii": "ascii",
}

_NATIVE_TEXT_DECODERS = {
    "base64": Base64TextDecoder,
    "base64url": Base64UrlTextDecoder,
    "hex": HexTextDecoder,
}


def get_native_decoder(name: str) -> Callable[[], IncrementalDecoder]:
    """Return the decoder factory for one of :data:`NATIVE_BUFFER_ENCODINGS`.

    Undecodable input is replaced with U+FFFD instead of raising.
    """
    if name in _NATIVE_TEXT_DECODERS:
        return _NATIVE_TEXT_DECODERS[name]
    return functools.partial(codecs.getincrementaldecoder(_NATIVE_CODECS[name]), errors="replace")


def match_charset_encoding(
    encodings: list[str] | bool | None,
    charset: str | None,
    available_names: Sequence[str],
    default_encoding: str | None,
) -> bool:
    """Matches the charset of a request with the encodings of a parser
    configuration.

    Args:
        encodings: The encodings of the parser configuration; ``True`` allows
            every name in `available_names`.
        charset: The charset of the request, if it specified one.
        available_names: All charset names available on this server.
        default_encoding: The default encoding of the parser configuration,
            used when the request does not specify a charset.
    """
    effective_charset = charset or default_encoding
    if not encodings and not effective_charset:
        return True
    if not encodings or not effective_charset:
        return False
    if encodings is True:
        return effective_charset in available_names
    return effective_charset in encodings


def get_encoding_variations(
    buffer_encodings: Sequence[BufferEncoder] | None = None,
) -> tuple[EncodingVariations, list[str]]:
    """Build the table of equivalent encoding names.

    Returns:
        A tuple of the variations table, which maps every alias to the full
        list of its equivalent names, and the list of native variation names
        which must not get a native decoder of their own, since they are
        served by the decoder of an equivalent name.

    Raises:
        ConfigurationError: If a name is declared by more than one buffer
            encoder.
    """
    variations = {name: list(group) for name, group in DEFAULT_ENCODING_VARIATIONS.items()}
    default_names = list(DEFAULT_ENCODING_VARIATIONS)

    if not buffer_encodings:
        native_variations = _unique(name.replace("-", "", 1) for name in default_names)
        return variations, native_variations

    added = [name for buffer_encoding in buffer_encodings for name in buffer_encoding.encodings]
    if len(added) > len(set(added)):
        raise ConfigurationError("Same encoding is supplied more than one time in BufferEncoding object.")

    # Names taken over by a buffer encoder leave their default group.
    for name in added:
        if name not in default_names:
            continue
        variations.pop(name, None)
        for key, group in variations.items():
            if name in group:
                variations[key] = [variation for variation in group if variation != name]

    native_variations = _unique(name for name in default_names if name not in added)
    single_names = [name.replace("-", "", 1) for name in native_variations]
    native_variations = [name for name in native_variations if name not in single_names]

    for buffer_encoding in buffer_encodings:
        if len(buffer_encoding.encodings) > 1:
            for name in buffer_encoding.encodings:
                variations[name] = list(buffer_encoding.encodings)

    variations = {name: group for name, group in variations.items() if len(group) >= 2}
    logger.debug("Encoding variations: %r, native variations: %r", variations, native_variations)
    return variations, native_variations


def normalize_encodings(encodings: str | Iterable[str], variations: EncodingVariations) -> list[str]:
    """Convert encoding names to lower case and expand every name into its
    group of equivalent names.  Duplicates are removed, the first occurrence
    wins.
    """
    if isinstance(encodings, str):
        encodings = [encodings]

    expanded: list[str] = []
    for encoding in encodings:
        encoding = encoding.lower()
        expanded.extend(variations.get(encoding, [encoding]))
    return _unique(expanded)


def get_encodings(
    parser: dict[str, Any],
    variations: EncodingVariations,
    default_media_type_encoding: str | None = None,
) -> dict[str, Any]:
    """Resolve the `encodings` and `default_encoding` entries of a parser
    configuration.

    Args:
        parser: The user supplied parser configuration.
        variations: The encoding variations table.
        default_media_type_encoding: The default encoding of the default media
            type the configuration overlays, if any.

    Returns:
        A dict holding the resolved `encodings` and `default_encoding`, each
        only when set.

    Raises:
        ConfigurationError: If `default_encoding` is set together with
            ``encodings=None`` or ``encodings=False``.
    """
    default_encoding = parser.get("default_encoding")
    resolved: dict[str, Any] = {"default_encoding": default_encoding} if default_encoding else {}
    encodings = parser.get("encodings", _missing)

    if encodings is True:
        resolved["encodings"] = True
        return resolved

    if isinstance(encodings, (str, list, tuple)) and encodings:
        names = [default_encoding] if default_encoding else []
        names.extend([encodings] if isinstance(encodings, str) else encodings)
        resolved["encodings"] = normalize_encodings(_unique(names), variations)
        return resolved

    if default_encoding and not default_media_type_encoding:
        if encodings is None or encodings is False:
            raise ConfigurationError(
                "Parser Configuration Error: When defaultEncoding is set, encoding can not be false or null."
            )
        resolved["encodings"] = normalize_encodings([default_encoding], variations)
        return resolved

    if default_media_type_encoding and encodings is _missing:
        return {"default_encoding": default_encoding or default_media_type_encoding, "encodings": True}

    return {}


def get_available_buffer_encodings(
    parsers: Sequence[dict[str, Any]],
    variations: EncodingVariations,
    native_variations: Sequence[str],
    buffer_encodings: Sequence[BufferEncoder] | None = None,
) -> tuple[dict[str, BufferEncoder], list[str]]:
    """Compute the buffer encoders that are available at runtime.

    Every alias of an encoder maps to the same encoder object.  Only names
    referenced by some parser configuration are made available.

    Returns:
        A tuple of the mapping from charset name to buffer encoder and the
        list of available charset names.

    Raises:
        ConfigurationError: If a name is defined by several buffer encoders,
            or if a parser configuration references an encoding for which no
            buffer encoder exists.
    """
    buffer_encodings = list(buffer_encodings or [])
    supplied = [name.lower() for buffer_encoding in buffer_encodings for name in buffer_encoding.encodings]
    duplicated = _unique(name for index, name in enumerate(supplied) if name in supplied[index + 1 :])
    if duplicated:
        raise ConfigurationError("The encodings %s are defined in multiple BufferEncodings" % ", ".join(duplicated))

    encoders: list[BufferEncoder] = [
        ChunkedBufferEncoder(normalize_encodings(name, variations), get_native_decoder(name))
        for name in NATIVE_BUFFER_ENCODINGS
        if name not in supplied and name not in native_variations
    ]
    encoders.extend(buffer_encodings)

    referenced: list[str] = []
    for parser in parsers:
        encodings = parser.get("encodings")
        default_encoding = parser.get("default_encoding")
        if encodings is None and default_encoding is None:
            continue
        names = [default_encoding] if default_encoding else []
        names.extend(encodings if isinstance(encodings, list) else NATIVE_BUFFER_ENCODINGS)
        for name in names:
            referenced.extend(variations.get(name, [name]))
    referenced = _unique(referenced)

    available_names = [
        name for name in _unique(name for encoder in encoders for name in encoder.encodings) if name in referenced
    ]
    missing = [name for name in referenced if name not in available_names]
    if missing:
        raise ConfigurationError(
            "The following encodings in the parse configuration are not supplied: %s" % ", ".join(missing)
        )

    available: dict[str, BufferEncoder] = {}
    for name in available_names:
        available[name] = next(encoder for encoder in encoders if name in encoder.encodings)

    logger.debug("Available buffer encodings: %r", available_names)
    return available, available_names


def _unique(names: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(names))
