from __future__ import annotations

import asyncio
import base64
import codecs
import gzip
import os
import tracemalloc
import unittest
import zlib
from io import BytesIO
from typing import TYPE_CHECKING

import yaml

from body_parser import (
    BodyParser,
    ChunkedBufferEncoder,
    RawBodyParser,
    UnchunkedBufferEncoder,
    create_body_parser,
    get_querystring_parser,
    json_parser,
    raw_parser,
    read_stream_callback,
    text_parser,
    urlencoded_parser,
)
from body_parser.buffer_encoding import get_native_decoder
from body_parser.configuration import parse_json
from body_parser.decoders import STANDARD_DECOMPRESSORS, GzipDecoder
from body_parser.exceptions import ConfigurationError, HTTPError

from .compat import AbortingStream, Request, call_middleware, parametrize, parametrize_class

if TYPE_CHECKING:
    from typing import Any, TypedDict

    class TestParams(TypedDict):
        name: str
        test: bytes
        result: Any


# Get the current directory for our later test cases.
curr_dir = os.path.abspath(os.path.dirname(__file__))

# Load our list of HTTP test cases.
http_tests_dir = os.path.join(curr_dir, "test_data", "http")

# Read in all test cases and load them.
http_tests: list[TestParams] = []
for f in sorted(os.listdir(http_tests_dir)):
    # Only load the HTTP test cases.
    fname, ext = os.path.splitext(f)
    if ext == ".http":
        # Get the YAML file and load it too.
        yaml_file = os.path.join(http_tests_dir, fname + ".yaml")

        # Load both.
        with open(os.path.join(http_tests_dir, f), "rb") as fh:
            test_data = fh.read()

        with open(yaml_file, "rb") as fy:
            yaml_data = yaml.safe_load(fy)

        http_tests.append({"name": fname, "test": test_data, "result": yaml_data})


def make_request(data: bytes) -> Request:
    """Turn a raw HTTP/1.1 request into a Request."""
    head, _, body = data.partition(b"\r\n\r\n")
    request_line, *header_lines = head.decode("latin-1").split("\r\n")
    headers = dict(line.split(": ", 1) for line in header_lines)
    return Request(body, headers, request_line.split(" ", 1)[0])


def body_request(body: bytes, content_type: str = "application/json", **headers: str) -> Request:
    headers = dict(headers, **{"Content-Type": content_type, "Content-Length": str(len(body))})
    return Request(body, {key.replace("_", "-"): value for key, value in headers.items()})


class ReverseDecoder:
    """A decompressor that reverses the body."""

    def __init__(self, underlying: Any) -> None:
        self.underlying = underlying
        self.buffer = b""

    def write(self, data: bytes) -> int:
        self.buffer += data
        return len(data)

    def finalize(self) -> None:
        self.underlying.write(self.buffer[::-1])
        self.underlying.finalize()


class CountDecoder(codecs.IncrementalDecoder):
    def decode(self, input: bytes, final: bool = False) -> int:
        return 0 if final else 1


@parametrize_class
class TestHttpRequests(unittest.TestCase):
    @parametrize("param", http_tests)
    def test_http(self, param: TestParams) -> None:
        options = param["result"].get("options") or {}
        middleware = BodyParser(options.get("config", {}), options.get("parsers"))

        err, body = call_middleware(middleware, make_request(param["test"]))

        expected = param["result"]["expected"]
        if "error" in expected:
            self.assertIsInstance(err, HTTPError)
            for key, value in expected["error"].items():
                self.assertEqual(getattr(err, key), value)
            self.assertIsNone(body)
            return

        # No error!
        self.assertIsNone(err)
        if "body_hex" in expected:
            self.assertEqual(body, bytes.fromhex(expected["body_hex"]))
        else:
            self.assertEqual(body, expected["body"])


class TestRawBodyParser(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def callback(self, *args: Any) -> None:
        self.calls.append(args)

    def make(
        self,
        parse_configuration: dict[str, Any] | None = None,
        content_encoding: str = "identity",
        content_length: int | None = None,
        default_encoding: str | None = None,
        limit: int | None = None,
        buffer_encoder: Any = None,
        decompressor_names: tuple[str, ...] = ("identity",),
    ) -> RawBodyParser:
        return RawBodyParser(
            Request(),
            None,
            self.callback,
            STANDARD_DECOMPRESSORS,
            list(decompressor_names),
            parse_configuration or {},  # type: ignore[arg-type]
            content_length,
            content_encoding,
            default_encoding,
            limit,
            buffer_encoder,
        )

    def test_bytes(self) -> None:
        p = self.make()
        p.write(b"foo")
        p.write(b"bar")
        self.assertEqual(self.calls, [])

        p.finalize()
        self.assertEqual(self.calls, [(None, b"foobar")])

    def test_split_character(self) -> None:
        data = "论".encode()
        p = self.make(
            {"encodings": True},
            default_encoding="utf-8",
            buffer_encoder=ChunkedBufferEncoder(["utf-8"], get_native_decoder("utf-8")),
        )
        for i in range(len(data)):
            p.write(data[i : i + 1])
        p.finalize()

        self.assertEqual(self.calls, [(None, "论")])

    def test_custom_reduce(self) -> None:
        encoder = ChunkedBufferEncoder(["count"], CountDecoder, sum)
        p = self.make({"encodings": True}, default_encoding="count", buffer_encoder=encoder)
        p.write(b"a")
        p.write(b"b")
        p.write(b"c")
        p.finalize()

        self.assertEqual(self.calls, [(None, 3)])

    def test_unchunked_transform(self) -> None:
        encoder = UnchunkedBufferEncoder(["b64"], lambda buffer: base64.b64decode(buffer).decode())
        p = self.make({"encodings": ["b64"]}, default_encoding="b64", buffer_encoder=encoder)
        p.write(b"Zm9v")
        p.write(b"YmFy")
        p.finalize()

        self.assertEqual(self.calls, [(None, "foobar")])

    def test_gzip(self) -> None:
        data = gzip.compress(b"foobar" * 10)
        p = self.make(content_encoding="gzip", decompressor_names=("gzip",))
        p.write(data[:5])
        p.write(data[5:])
        p.finalize()

        self.assertEqual(self.calls, [(None, b"foobar" * 10)])

    def test_empty_response(self) -> None:
        p = self.make({"empty_response": {}})
        p.finalize()

        self.assertEqual(self.calls, [(None, {})])

    def test_limit(self) -> None:
        p = self.make(limit=3)
        p.write(b"ab")
        p.write(b"cd")
        p.write(b"ef")
        p.finalize()

        self.assertEqual(len(self.calls), 1)
        (err,) = self.calls[0]
        self.assertEqual(err.status, 413)
        self.assertEqual(err.limit, 3)
        self.assertEqual(err.received, 4)
        self.assertEqual(err.type, "entity.too.large")

    def test_limit_counts_decompressed_bytes(self) -> None:
        data = gzip.compress(b"a" * 100)
        p = self.make(content_encoding="gzip", limit=50, decompressor_names=("gzip",))
        p.write(data)
        p.finalize()

        self.assertEqual(self.calls[0][0].status, 413)

    def test_abort(self) -> None:
        p = self.make()
        p.write(b"foo")
        p.abort()
        p.finalize()

        self.assertEqual(len(self.calls), 1)
        (err,) = self.calls[0]
        self.assertEqual(err.status, 400)
        self.assertEqual(err.message, "request aborted")
        self.assertEqual(err.code, "ECONNABORTED")

    def test_stream_error(self) -> None:
        p = self.make()
        e = OSError("boom")
        p.error(e)
        p.finalize()

        self.assertEqual(self.calls, [(e,)])

    def test_truncated_gzip(self) -> None:
        p = self.make(content_encoding="gzip", decompressor_names=("gzip",))
        p.write(gzip.compress(b"foobar")[:-4])
        p.finalize()

        (err,) = self.calls[0]
        self.assertEqual(err.status, 400)
        self.assertEqual(err.message, "unexpected end of file")
        self.assertEqual(err.type, "end.of.file")

    def test_size_mismatch(self) -> None:
        p = self.make(content_length=10)
        p.write(b"foo")
        p.finalize()

        (err,) = self.calls[0]
        self.assertEqual(err.status, 400)
        self.assertEqual(err.expected, 10)
        self.assertEqual(err.received, 3)

    def test_verify(self) -> None:
        seen: list[tuple[Any, ...]] = []

        def verify(request: Any, response: Any, buffer: bytes, body: Any, encoding: str | None) -> None:
            seen.append((buffer, body, encoding))

        p = self.make(
            {"encodings": True, "verify": verify},
            default_encoding="utf-8",
            buffer_encoder=ChunkedBufferEncoder(["utf-8"], get_native_decoder("utf-8")),
        )
        p.write("论".encode())
        p.finalize()

        self.assertEqual(seen, [("论".encode(), "论", "utf-8")])
        self.assertEqual(self.calls, [(None, "论")])

    def test_run(self) -> None:
        p = self.make(content_length=6)
        p.run(BytesIO(b"foobarbaz"), chunk_size=4)

        self.assertEqual(self.calls, [(None, b"foobar")])
        self.assertEqual(p.chunks, [])

    def test_run_without_length(self) -> None:
        p = self.make()
        p.run(BytesIO(b"foobarbaz"), chunk_size=4)

        self.assertEqual(self.calls, [(None, b"foobarbaz")])

    def test_run_connection_reset(self) -> None:
        p = self.make(content_length=10)
        p.run(AbortingStream(b"foob"), chunk_size=4)

        (err,) = self.calls[0]
        self.assertEqual(err.status, 400)
        self.assertEqual(err.type, "request.aborted")

    def test_run_read_error(self) -> None:
        class BrokenStream:
            def read(self, n: int) -> bytes:
                raise OSError("disk on fire")

        p = self.make()
        p.run(BrokenStream())

        (err,) = self.calls[0]
        self.assertIsInstance(err, OSError)

    def test_run_unexpected_read_error(self) -> None:
        e = ValueError("I/O operation on closed file.")

        class ClosedStream:
            def read(self, n: int) -> bytes:
                raise e

        p = self.make()
        p.run(ClosedStream())

        self.assertEqual(self.calls, [(e,)])

    def test_gzip_members(self) -> None:
        data = gzip.compress(b"hello ") + gzip.compress(b"world")
        p = self.make(content_encoding="gzip", decompressor_names=("gzip",))
        p.run(BytesIO(data), chunk_size=7)

        self.assertEqual(self.calls, [(None, b"hello world")])

    def test_compressed_body_over_limit_is_not_inflated(self) -> None:
        # 64 MiB of zeros compress to about 64 KiB.
        compressor = zlib.compressobj(9, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
        zeros = bytes(1 << 20)
        data = b"".join(compressor.compress(zeros) for _ in range(64)) + compressor.flush()
        del zeros

        p = self.make(content_encoding="gzip", limit=20480, decompressor_names=("gzip",))
        tracemalloc.start()
        try:
            p.run(BytesIO(data))
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()

        (err,) = self.calls[0]
        self.assertEqual(err.status, 413)
        self.assertEqual(err.type, "entity.too.large")
        self.assertLessEqual(err.received, GzipDecoder.max_length)
        self.assertLess(peak, 8 << 20)

    def test_logger_name(self) -> None:
        self.assertEqual(self.make().logger.name, "body_parser.parser")

    def test_repr(self) -> None:
        self.assertEqual(
            repr(self.make(limit=10)), "RawBodyParser(content_encoding='identity', default_encoding=None, limit=10)"
        )


class TestReadStreamCallback(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.request = Request()

        def next(*args: Any) -> None:
            self.calls.append(args)

        self.callback = read_stream_callback(next, self.request)

    def test_body(self) -> None:
        self.callback(None, {"a": 1})
        self.assertEqual(self.request.body, {"a": 1})
        self.assertEqual(self.calls, [()])

    def test_no_body(self) -> None:
        self.callback(None)
        self.assertIsNone(self.request.body)
        self.assertEqual(self.calls, [()])

    def test_error_is_wrapped(self) -> None:
        self.callback(ValueError("oops"))
        (err,) = self.calls[0]
        self.assertIsInstance(err, HTTPError)
        self.assertEqual(err.status, 400)
        self.assertEqual(err.message, "oops")


class TestBodyParser(unittest.TestCase):
    def test_json(self) -> None:
        err, body = call_middleware(BodyParser(), body_request(b'{"a":[1,2,{"b":null}]}'))
        self.assertIsNone(err)
        self.assertEqual(body, {"a": [1, 2, {"b": None}]})

    def test_json_parse_error(self) -> None:
        err, body = call_middleware(BodyParser(), body_request(b'{"a":'))
        self.assertEqual(err.status, 400)
        self.assertTrue(err.message.startswith("Parse error: "))
        self.assertEqual(err.body, '{"a":')
        self.assertEqual(err.type, "entity.parse.failed")
        self.assertIsNone(body)

    def test_json_proto(self) -> None:
        err, _ = call_middleware(BodyParser(), body_request(b'{"__proto__":{}}'))
        self.assertEqual(err.status, 400)
        self.assertEqual(err.message, "Parse error: __proto__ key not allowed in JSON body on main level")

    def test_already_parsed(self) -> None:
        middleware = BodyParser()
        request = body_request(b'{"a":1}')
        call_middleware(middleware, request)

        request.stream = BytesIO(b'{"b":2}')
        err, body = call_middleware(middleware, request)
        self.assertIsNone(err)
        self.assertEqual(body, {"a": 1})

    def test_require_content_length(self) -> None:
        middleware = BodyParser({"REQUIRE_CONTENT_LENGTH": True})
        request = Request(b"{}", {"Content-Type": "application/json", "Transfer-Encoding": "chunked"})
        err, _ = call_middleware(middleware, request)

        self.assertEqual(err.status, 411)
        self.assertEqual(err.message, "Header 'Content-Length' not specified but required by configuration.")
        self.assertEqual(err.type, "contentLength.missing")

    def test_too_many_parameters(self) -> None:
        middleware = BodyParser(
            parser_configurations={
                "matcher": "application/x-www-form-urlencoded",
                "parser": get_querystring_parser(2),
            }
        )
        err, _ = call_middleware(middleware, body_request(b"a=1&b=2&c=3", "application/x-www-form-urlencoded"))

        self.assertEqual(err.status, 413)
        self.assertEqual(err.message, "Parse error: too many parameters")
        self.assertEqual(err.type, "parameters.too.many")

    def test_verify_failure(self) -> None:
        def verify(request: Any, response: Any, buffer: bytes, body: Any, encoding: str | None) -> None:
            if not buffer.startswith(b"\x00"):
                raise ValueError("no leading null")

        middleware = BodyParser(parser_configurations={"matcher": "application/json", "verify": verify})
        err, body = call_middleware(middleware, body_request(b'{"a":1}'))

        self.assertEqual(err.status, 403)
        self.assertEqual(err.message, "Verify function did not match: no leading null")
        self.assertEqual(err.body, '{"a":1}')
        self.assertEqual(err.type, "entity.verify.failed")
        self.assertIsNone(body)

    def test_verify_failure_status(self) -> None:
        class VerifyError(Exception):
            status = 400
            type = "signature.invalid"

        def verify(request: Any, response: Any, buffer: bytes, body: Any, encoding: str | None) -> None:
            raise VerifyError("bad signature")

        middleware = BodyParser(parser_configurations={"matcher": "text/plain", "verify": verify})
        err, _ = call_middleware(middleware, body_request(b"hello", "text/plain"))

        self.assertEqual(err.status, 400)
        self.assertEqual(err.type, "signature.invalid")
        self.assertEqual(err.body, "hello")

    def test_custom_matcher(self) -> None:
        def is_json(media_type: tuple[str, str]) -> bool:
            return media_type[1].endswith("+json")

        middleware = BodyParser(
            parser_configurations={"matcher": is_json, "parser": parse_json, "default_encoding": "utf-8"}
        )
        err, body = call_middleware(middleware, body_request(b'{"a":1}', "application/vnd.api+json"))
        self.assertIsNone(err)
        self.assertEqual(body, {"a": 1})

        err, _ = call_middleware(middleware, body_request(b'{"a":1}'))
        self.assertEqual(err.status, 415)

    def test_custom_decompressor(self) -> None:
        middleware = BodyParser({"INFLATE": ["reverse"]}, "application/json", decompressors={"reverse": ReverseDecoder})
        err, body = call_middleware(middleware, body_request(b'}1:"a"{', Content_Encoding="reverse"))

        self.assertIsNone(err)
        self.assertEqual(body, {"a": 1})

    def test_custom_buffer_encoding(self) -> None:
        rot13 = UnchunkedBufferEncoder(["rot13"], lambda buffer: codecs.decode(buffer.decode("ascii"), "rot13"))
        middleware = BodyParser({}, {"matcher": "text/plain", "encodings": ["rot13"]}, [rot13])

        err, body = call_middleware(middleware, body_request(b"uryyb", "text/plain; charset=rot13"))
        self.assertIsNone(err)
        self.assertEqual(body, "hello")

        err, _ = call_middleware(middleware, body_request(b"uryyb", "text/plain"))
        self.assertEqual(err.status, 415)
        self.assertEqual(
            err.message,
            "Default charset is not set for this 'Media-Type'. Please provide the 'charset' for this 'Media-Type'",
        )

    def test_charset_not_available_for_media_type(self) -> None:
        err, _ = call_middleware(BodyParser(), body_request(b"foo", "application/octet-stream; charset=utf-8"))

        self.assertEqual(err.status, 415)
        self.assertEqual(
            err.message, "Specified 'charset=utf-8' is not available for this 'Media-Type' on this server."
        )
        self.assertEqual(err.charset, "utf-8")

    def test_encoding_not_available_for_media_type(self) -> None:
        middleware = BodyParser({}, ["application/json", {"matcher": "text/plain", "inflate": "gzip"}])
        err, _ = call_middleware(middleware, body_request(gzip.compress(b"{}"), Content_Encoding="gzip"))

        self.assertEqual(err.status, 415)
        self.assertEqual(
            err.message,
            "Specified 'Content-Encoding: gzip' is not available for this 'Media-Type' and 'charset' on this server.",
        )

        request = body_request(gzip.compress(b"hi"), "text/plain", Content_Encoding="gzip")
        err, body = call_middleware(middleware, request)
        self.assertIsNone(err)
        self.assertEqual(body, "hi")

    def test_charset_checked_before_content_encoding(self) -> None:
        verified: list[Any] = []

        def verify(request: Any, response: Any, buffer: bytes, body: Any, encoding: str | None) -> None:
            verified.append(body)

        middleware = BodyParser(parser_configurations={"matcher": "text/plain", "verify": verify})
        request = body_request(gzip.compress(b"qapla'"), "text/plain; charset=klingon", Content_Encoding="gzip")
        err, body = call_middleware(middleware, request)

        self.assertEqual(err.status, 415)
        self.assertEqual(err.type, "charset.unsupported")
        self.assertEqual(err.message, "Specified 'charset=klingon' is not available on this server.")
        self.assertIsNone(body)
        self.assertEqual(verified, [])

    def test_json_proto_in_value(self) -> None:
        payload = b'{"user":"tobi","other":"uses __proto__ in a value"}'
        err, body = call_middleware(BodyParser(), body_request(payload))

        self.assertIsNone(err)
        self.assertEqual(body, {"user": "tobi", "other": "uses __proto__ in a value"})

    def test_gzip_members(self) -> None:
        middleware = BodyParser({"INFLATE": "gzip"})
        data = gzip.compress(b"hello ") + gzip.compress(b"world")
        request = body_request(data, "text/plain", Content_Encoding="gzip")
        err, body = call_middleware(middleware, request)

        self.assertIsNone(err)
        self.assertEqual(body, "hello world")

    def test_connection_reset(self) -> None:
        middleware = BodyParser()
        middleware.media_type_parser.chunk_size = 4
        request = body_request(b'{"a":1}')
        request.stream = AbortingStream(b'{"a"')  # type: ignore[assignment]

        err, body = call_middleware(middleware, request)
        self.assertEqual(err.status, 400)
        self.assertEqual(err.message, "request aborted")
        self.assertIsNone(body)

    def test_deferred_error_in_event_loop(self) -> None:
        middleware = BodyParser({"INFLATE": ["gzip", "deflate"]})
        calls: list[Any] = []

        def next(err: Any = None) -> None:
            calls.append(err)

        async def main() -> None:
            middleware(body_request(b"{}"), None, next)
            self.assertEqual(calls, [])

            await asyncio.sleep(0)
            self.assertEqual(len(calls), 1)

        asyncio.run(main())
        self.assertEqual(calls[0].status, 415)
        self.assertEqual(calls[0].message, "Decompression failed: server does not allow uncompressed requests.")

    def test_default_content_type(self) -> None:
        middleware = BodyParser({"DEFAULT_CONTENT_TYPE": "application/json"})
        request = Request(b'{"a":1}', {"Content-Length": "7"})

        err, body = call_middleware(middleware, request)
        self.assertIsNone(err)
        self.assertEqual(body, {"a": 1})

    def test_default_content_type_not_used_with_header(self) -> None:
        middleware = BodyParser({"DEFAULT_CONTENT_TYPE": "application/json"})
        err, _ = call_middleware(middleware, body_request(b"{}", "nonsense"))
        self.assertEqual(err.status, 400)
        self.assertEqual(err.message, "invalid media type: nonsense")

    def test_invalid_default_content_type(self) -> None:
        with self.assertRaises(ConfigurationError) as cm:
            BodyParser({"DEFAULT_CONTENT_TYPE": "json"})
        self.assertEqual(str(cm.exception), "The specified default content type 'json' is invalid.")

        with self.assertRaises(ConfigurationError) as cm:
            BodyParser({"DEFAULT_CONTENT_TYPE": "image/png"})
        self.assertEqual(
            str(cm.exception), "The specified default content type 'image/png' does not match any parser configuration"
        )

    def test_bodiless_request_skips_matcher(self) -> None:
        def matcher(media_type: tuple[str, str]) -> bool:
            raise RuntimeError("oops!")

        middleware = BodyParser(parser_configurations={"matcher": matcher})
        err, body = call_middleware(middleware, Request(method="GET"))
        self.assertIsNone(err)
        self.assertIsNone(body)

    def test_invalid_configurations(self) -> None:
        with self.assertRaises(ConfigurationError):
            BodyParser({}, {"matcher": "text/plain", "encodings": ["klingon"]})

        with self.assertRaises(ConfigurationError):
            BodyParser({"INFLATE": ["compress"]})

        with self.assertRaises(ConfigurationError):
            BodyParser({"DEFAULT_LIMIT": "a lot"})

    def test_create_body_parser(self) -> None:
        middleware = create_body_parser({"DEFAULT_LIMIT": 10})
        self.assertIsInstance(middleware, BodyParser)
        self.assertEqual([parser["limit"] for parser in middleware.parsers], [10, 10, 10, 10])
        self.assertEqual(repr(middleware), "BodyParser(parsers=4)")


class TestEntryPoints(unittest.TestCase):
    def test_json_parser(self) -> None:
        middleware = json_parser({"DEFAULT_CONTENT_TYPE": True})
        err, body = call_middleware(middleware, Request(b'{"a":1}', {"Content-Length": "7"}))
        self.assertIsNone(err)
        self.assertEqual(body, {"a": 1})

        err, _ = call_middleware(middleware, body_request(b"foo", "text/plain"))
        self.assertEqual(err.status, 415)

    def test_urlencoded_parser(self) -> None:
        err, body = call_middleware(
            urlencoded_parser(), body_request(b"a=1&b=%20", "application/x-www-form-urlencoded")
        )
        self.assertIsNone(err)
        self.assertEqual(body, {"a": "1", "b": " "})

    def test_text_parser(self) -> None:
        err, body = call_middleware(text_parser(), body_request(b"hello", "text/plain; charset=ascii"))
        self.assertIsNone(err)
        self.assertEqual(body, "hello")

    def test_raw_parser(self) -> None:
        request = body_request(gzip.compress(b"\x00\xff"), "application/octet-stream", Content_Encoding="gzip")
        err, body = call_middleware(raw_parser({"INFLATE": True}), request)
        self.assertIsNone(err)
        self.assertEqual(body, b"\x00\xff")

    def test_raw_parser_without_content_type(self) -> None:
        middleware = raw_parser({"DEFAULT_CONTENT_TYPE": True})
        err, body = call_middleware(middleware, Request(b"\x01\x02", {"Content-Length": "2"}))
        self.assertIsNone(err)
        self.assertEqual(body, b"\x01\x02")
