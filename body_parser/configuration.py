"""Parser configurations: the built-in default media types, the default parser
functions, and the joiner that merges user configurations with the defaults
into the resolved configurations used for every request.

A user configuration is a dict.  When it overlays a default media type, each
field is read in one of three ways: a missing key inherits the default, a
``None`` value removes it, and any other value overrides it.
"""

from __future__ import annotations

import logging
import math
import re
from enum import Enum
from numbers import Number
from typing import TYPE_CHECKING
from urllib.parse import unquote_plus

import msgspec

from .buffer_encoding import get_encodings
from .exceptions import ConfigurationError, ParseError
from .media_types import get_media_type_matchers
from .querystring import QuerystringParser

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable
    from typing import Any, TypeAlias, TypedDict, Union

    from .buffer_encoding import EncodingVariations
    from .media_types import MediaTypeIdentifier, MediaTypeMatcher

    Inflate: TypeAlias = "Union[bool, str, list[str]]"

    class ParserConfiguration(TypedDict, total=False):
        matcher: MediaTypeIdentifier | list[MediaTypeIdentifier]
        parser: Callable[[Any], Any] | None
        inflate: Inflate
        limit: int | float | str | None
        require_content_length: bool | None
        encodings: str | list[str] | bool | None
        default_encoding: str | None
        empty_response: Any
        verify: Callable[..., Any] | None

    class PatchedParser(TypedDict, total=False):
        matcher: list[MediaTypeMatcher]
        parser: Callable[[Any], Any]
        inflate: bool | list[str]
        limit: int | float | None
        require_content_length: bool
        encodings: bool | list[str]
        default_encoding: str
        empty_response: Any
        verify: Callable[..., Any]

    ParserConfigurations: TypeAlias = "Union[str, ParserConfiguration, Iterable[Union[str, ParserConfiguration]]]"

# Get logger for this module.
logger = logging.getLogger(__name__)

# Multipliers for the byte notation, e.g. "20kb" or "1.5MB".
BYTE_UNITS = {
    "b": 1,
    "kb": 1 << 10,
    "mb": 1 << 20,
    "gb": 1 << 30,
    "tb": 1 << 40,
    "pb": 1 << 50,
}

BYTES_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(b|kb|mb|gb|tb|pb)?\s*$", re.IGNORECASE)


class Overlay(Enum):
    """How an overlay field relates to the default it is applied to.  Any
    other value read with :func:`get_overlay` is an override.
    """

    INHERIT = "inherit"
    REMOVE = "remove"


def get_overlay(config: dict[str, Any], key: str) -> Any:
    """Read a field of an overlay configuration."""
    if key not in config:
        return Overlay.INHERIT
    value = config[key]
    if value is None:
        return Overlay.REMOVE
    return value


def parse_bytes(value: int | float | str) -> int | float:
    """Convert a byte notation like ``"20kb"`` into a number of bytes.

    Numbers are returned unchanged, so ``float("inf")`` stays unbounded.  The
    units are 1024 based and case-insensitive; a bare number means bytes.

    Raises:
        ConfigurationError: If the value can not be parsed.
    """
    if isinstance(value, Number) and not isinstance(value, bool):
        return value  # type: ignore[return-value]

    match = BYTES_RE.match(value) if isinstance(value, str) else None
    if match is None:
        raise ConfigurationError("Invalid byte size %r" % (value,))

    number, unit = match.groups()
    return math.floor(float(number) * BYTE_UNITS[(unit or "b").lower()])


def get_inflate(inflate: Inflate) -> bool | list[str]:
    """Standardize the inflate setting: a single name becomes a list with one
    element, ``True`` (allow every decompressor) is kept.

    Raises:
        ConfigurationError: If the setting is neither ``True``, a name nor a
            list of names.
    """
    if isinstance(inflate, str):
        return [inflate]
    if inflate is True:
        return True
    if not isinstance(inflate, (list, tuple)) or not all(isinstance(name, str) for name in inflate):
        raise ConfigurationError("Invalid inflate setting %r" % (inflate,))
    return list(inflate)


def parameter_count(body: str, limit: int) -> int | None:
    """Count the ``&`` separators in a urlencoded body.  Returns None as soon
    as `limit` separators are found.
    """
    count = 0
    index = body.find("&")
    while index != -1:
        count += 1
        if count == limit:
            return None
        index = body.find("&", index + 1)
    return count


def parse_querystring(payload: str, max_keys: int = 0) -> dict[str, str | list[str]]:
    """Parse a urlencoded body into a dict.  Repeated names collect their
    values into a list.  A name without an equals sign gets an empty value.

    Args:
        payload: The decoded body.
        max_keys: Stop after this many fields, 0 means no limit.
    """
    result: dict[str, str | list[str]] = {}
    name_buffer: list[str] = []
    data_buffer: list[str] = []
    count = 0

    def on_field_start() -> None:
        name_buffer.clear()
        data_buffer.clear()

    def on_field_name(data: str, start: int, end: int) -> None:
        name_buffer.append(data[start:end])

    def on_field_data(data: str, start: int, end: int) -> None:
        data_buffer.append(data[start:end])

    def on_field_end() -> None:
        nonlocal count
        count += 1
        if max_keys and count > max_keys:
            return
        name = unquote_plus("".join(name_buffer))
        value = unquote_plus("".join(data_buffer))
        if name not in result:
            result[name] = value
        else:
            existing = result[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[name] = [existing, value]

    parser = QuerystringParser(
        callbacks={
            "on_field_start": on_field_start,
            "on_field_name": on_field_name,
            "on_field_data": on_field_data,
            "on_field_end": on_field_end,
        }
    )
    parser.write(payload)
    parser.finalize()
    return result


def get_querystring_parser(max_keys: int | float = 1000) -> Callable[[str], dict[str, str | list[str]]]:
    """Create the parser function for `application/x-www-form-urlencoded`
    bodies.

    Args:
        max_keys: The maximum number of parameters, ``float("inf")`` or 0 for
            no limit.

    Raises:
        ConfigurationError: If `max_keys` is negative.
    """
    if max_keys < 0:
        raise ConfigurationError("maxKeys can not be smaller than 0")
    limit = 0 if max_keys == float("inf") else int(max_keys)

    def querystring_parser(payload: str) -> dict[str, str | list[str]]:
        if parameter_count(payload, limit) is None:
            e = ParseError("too many parameters")
            e.status = 413
            e.type = "parameters.too.many"
            raise e
        return parse_querystring(payload, limit)

    return querystring_parser


def parse_json(payload: str | bytes) -> Any:
    """Strict JSON parser.  A `__proto__` key on the main level of an object
    is rejected; nested objects are not inspected.
    """
    try:
        raw = msgspec.json.decode(payload)
    except msgspec.DecodeError as e:
        raise ParseError(str(e)) from e

    if isinstance(raw, dict) and "__proto__" in raw:
        raise ParseError("__proto__ key not allowed in JSON body on main level")
    return raw


#: The built-in media types.  The missing fields are completed by the joiner
#: with the global options.
DEFAULT_MEDIA_TYPE_PARSERS: dict[str, dict[str, Any]] = {
    "application/x-www-form-urlencoded": {
        "parser": get_querystring_parser(),
        "default_encoding": "utf-8",
        "empty_response": {},
    },
    "application/json": {
        "parser": parse_json,
        "default_encoding": "utf-8",
        "empty_response": {},
    },
    "text/plain": {
        "default_encoding": "utf-8",
        "empty_response": "",
    },
    "application/octet-stream": {
        "empty_response": b"",
    },
}


def _join_default_media_type(
    name: str, limit: int | float, inflate: Inflate, variations: EncodingVariations, require_content_length: bool
) -> PatchedParser:
    default = DEFAULT_MEDIA_TYPE_PARSERS.get(name)
    if default is None:
        raise ConfigurationError("'%s' is not a default media type." % name)

    patched: PatchedParser = {"matcher": get_media_type_matchers(name)}
    patched.update(get_encodings(default, variations, default.get("default_encoding")))  # type: ignore[typeddict-item]
    for key in ("parser", "empty_response"):
        if key in default:
            patched[key] = default[key]  # type: ignore[literal-required]
    patched["limit"] = limit
    patched["inflate"] = get_inflate(inflate)
    patched["require_content_length"] = require_content_length
    return patched


def _overlay_default_media_type(
    config: dict[str, Any],
    default: dict[str, Any],
    limit: int | float,
    inflate: Inflate,
    variations: EncodingVariations,
    require_content_length: bool,
) -> PatchedParser:
    patched: PatchedParser = {"matcher": get_media_type_matchers(config["matcher"])}
    patched.update(get_encodings(config, variations, default.get("default_encoding")))  # type: ignore[typeddict-item]

    for key in ("parser", "empty_response"):
        value = get_overlay(config, key)
        if value is Overlay.REMOVE:
            continue
        if value is Overlay.INHERIT:
            if key in default:
                patched[key] = default[key]  # type: ignore[literal-required]
        else:
            patched[key] = value  # type: ignore[literal-required]

    value = get_overlay(config, "limit")
    patched["limit"] = limit if isinstance(value, Overlay) else parse_bytes(value)

    value = get_overlay(config, "inflate")
    patched["inflate"] = get_inflate(inflate if isinstance(value, Overlay) else value)

    value = get_overlay(config, "verify")
    if not isinstance(value, Overlay):
        patched["verify"] = value

    value = get_overlay(config, "require_content_length")
    patched["require_content_length"] = require_content_length if isinstance(value, Overlay) else bool(value)
    return patched


def _join_custom(
    config: dict[str, Any],
    limit: int | float,
    inflate: Inflate,
    variations: EncodingVariations,
    require_content_length: bool,
) -> PatchedParser:
    patched: PatchedParser = {}
    patched.update(get_encodings(config, variations))  # type: ignore[typeddict-item]
    patched["limit"] = limit
    patched["require_content_length"] = require_content_length
    patched["inflate"] = get_inflate(inflate)

    for key, value in config.items():
        if key in ("encodings", "default_encoding") or value is None:
            continue
        if value is False and key != "require_content_length":
            continue
        if key == "limit":
            value = parse_bytes(value)
        elif key == "matcher":
            value = get_media_type_matchers(value)
        elif key == "inflate":
            value = get_inflate(value)
        patched[key] = value  # type: ignore[literal-required]

    if "matcher" not in patched:
        raise ConfigurationError("Parser configuration %r has no matcher." % (config,))
    return patched


def join_parser_configurations(
    parser_configurations: ParserConfigurations | None = None,
    default_limit: int | float | str = "20kb",
    inflate: Inflate = "identity",
    variations: EncodingVariations | None = None,
    require_content_length: bool = False,
) -> list[PatchedParser]:
    """Merge the parser configurations with the default media types and the
    global options into the list of resolved configurations.

    Each entry is handled in one of three ways:

    1. A default media type name, e.g. ``"application/json"``, takes over
       everything from that default and the global options.
    2. A dict whose `matcher` is a default media type name overlays that
       default.  `parser=None` and `empty_response=None` remove the defaults.
    3. Any other dict overlays the global options only.  Extra keys are kept.

    Args:
        parser_configurations: A configuration, a default media type name, or
            a list of any of these.  The four default media types when None.
        default_limit: The default size limit, a number of bytes or a byte
            notation string.
        inflate: The default inflate setting.
        variations: The encoding variations table.
        require_content_length: Whether `Content-Length` is required by
            default.

    Raises:
        ConfigurationError: If any configuration is invalid.
    """
    if parser_configurations is None:
        parser_configurations = list(DEFAULT_MEDIA_TYPE_PARSERS)
    if isinstance(parser_configurations, (str, dict)):
        parser_configurations = [parser_configurations]
    if variations is None:
        variations = {}

    limit = parse_bytes(default_limit)

    patched_parsers: list[PatchedParser] = []
    for config in parser_configurations:
        if isinstance(config, str):
            patched = _join_default_media_type(config, limit, inflate, variations, require_content_length)
        elif isinstance(config.get("matcher"), str) and config["matcher"] in DEFAULT_MEDIA_TYPE_PARSERS:
            default = DEFAULT_MEDIA_TYPE_PARSERS[config["matcher"]]
            patched = _overlay_default_media_type(
                config, default, limit, inflate, variations, require_content_length
            )
        else:
            patched = _join_custom(config, limit, inflate, variations, require_content_length)
        logger.debug("Joined parser configuration: %r", patched)
        patched_parsers.append(patched)

    return patched_parsers
