from __future__ import annotations

import logging
from email.message import Message
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError, MediaTypeError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable
    from typing import TypeAlias, Union

    MediaType: TypeAlias = "tuple[str, str]"
    # ``None`` stands for the wildcard ``*``.
    MediaTypeTemplate: TypeAlias = "tuple[str | None, str | None]"
    MediaTypeFunction: TypeAlias = "Callable[[MediaType], bool]"
    MediaTypeIdentifier: TypeAlias = "Union[str, MediaTypeFunction]"
    MediaTypeMatcher: TypeAlias = "Union[MediaTypeTemplate, MediaTypeFunction]"

# Get logger for this module.
logger = logging.getLogger(__name__)

# fmt: off
# These are the characters allowed in an HTTP token, see RFC7230 section 3.2.6.
TOKEN_CHARS_SET = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "0123456789"
    "!#$%&'*+-.^_`|~")
# fmt: on


def parse_media_type_identifier(identifier: str) -> MediaTypeTemplate:
    """Convert a media type identifier such as ``"application/*"`` into a
    template.  Each ``*`` becomes a wildcard (``None``).

    Raises:
        ConfigurationError: If the identifier does not consist of exactly a
            type and a subtype.
    """
    parts = identifier.split("/")
    if len(parts) != 2:
        raise ConfigurationError("Media type identifier '%s' is invalid." % identifier)

    main_type, sub_type = (None if part == "*" else part for part in parts)
    return (main_type, sub_type)


def get_media_type_matchers(identifiers: MediaTypeIdentifier | Iterable[MediaTypeIdentifier]) -> list[MediaTypeMatcher]:
    """Convert a media type identifier, a matching function, or a list of any
    of these into a list of matchers.
    """
    if isinstance(identifiers, str) or callable(identifiers):
        identifiers = [identifiers]

    return [
        parse_media_type_identifier(identifier) if isinstance(identifier, str) else identifier
        for identifier in identifiers
    ]


def match_type(template: MediaTypeTemplate, media_type: MediaType) -> bool:
    """Return whether every non-wildcard part of the template equals the
    corresponding part of the media type.
    """
    return (template[0] is None or template[0] == media_type[0]) and (
        template[1] is None or template[1] == media_type[1]
    )


def match_any_type(matchers: Iterable[MediaTypeMatcher], media_type: MediaType) -> bool:
    """Return whether any of the matchers accepts the media type.

    Exceptions raised by a matching function are not caught.
    """
    for matcher in matchers:
        if isinstance(matcher, tuple):
            if match_type(matcher, media_type):
                return True
        elif matcher(media_type):
            return True
    return False


def _is_token(value: str) -> bool:
    return bool(value) and all(char in TOKEN_CHARS_SET for char in value)


def parse_content_type(value: str | bytes | None) -> tuple[MediaType, dict[str, str]]:
    """Parses a Content-Type header into ``((type, subtype), parameters)``.

    The type and subtype are lower-cased, as are the parameter names.

    Raises:
        MediaTypeError: If the header is missing or is not a valid media type.
    """
    if value is None:
        raise MediaTypeError("content-type header is missing")

    if isinstance(value, bytes):
        value = value.decode("latin-1")

    full_type, _, rest = value.partition(";")
    full_type = full_type.strip().lower()
    main_type, slash, sub_type = full_type.partition("/")
    if not slash or not _is_token(main_type) or not _is_token(sub_type):
        raise MediaTypeError("invalid media type")

    if not rest.strip():
        return (main_type, sub_type), {}

    message = Message()
    message["content-type"] = value
    params = message.get_params()
    if not params:
        raise MediaTypeError("invalid parameter format")

    options: dict[str, str] = {}
    for key, param in params[1:]:
        if isinstance(param, tuple):
            # RFC 2231 encoded value: (charset, language, value)
            param = param[-1]
        if not _is_token(key):
            raise MediaTypeError("invalid parameter format")
        options[key.lower()] = param

    logger.debug("Parsed content type %s/%s with parameters %r", main_type, sub_type, options)
    return (main_type, sub_type), options
