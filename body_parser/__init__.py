__version__ = "0.6.0"

from .base import BaseParser
from .buffer_encoding import ChunkedBufferEncoder, UnchunkedBufferEncoder
from .configuration import get_querystring_parser, join_parser_configurations
from .decoders import BrotliDecoder, DeflateDecoder, GzipDecoder
from .parser import (
    BodyParser,
    MediaTypeParser,
    RawBodyParser,
    create_body_parser,
    json_parser,
    raw_parser,
    read_stream_callback,
    text_parser,
    urlencoded_parser,
)
from .querystring import QuerystringParser

__all__ = (
    "BaseParser",
    "BodyParser",
    "BrotliDecoder",
    "ChunkedBufferEncoder",
    "DeflateDecoder",
    "GzipDecoder",
    "MediaTypeParser",
    "QuerystringParser",
    "RawBodyParser",
    "UnchunkedBufferEncoder",
    "create_body_parser",
    "get_querystring_parser",
    "join_parser_configurations",
    "json_parser",
    "raw_parser",
    "read_stream_callback",
    "text_parser",
    "urlencoded_parser",
)
