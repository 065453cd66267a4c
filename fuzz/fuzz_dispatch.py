import io
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from body_parser import BodyParser
    from body_parser.exceptions import HTTPError

body_parser = BodyParser({"INFLATE": True, "DEFAULT_LIMIT": "64kb"})

CONTENT_TYPES = [
    "application/json",
    "application/json; charset=utf16le",
    "application/x-www-form-urlencoded",
    "text/plain; charset=latin1",
    "application/octet-stream",
]
CONTENT_ENCODINGS = ["identity", "gzip", "deflate", "br"]


class Request:
    def __init__(self, headers: dict, body: bytes) -> None:
        self.headers = headers
        self.method = "POST"
        self.stream = io.BytesIO(body)
        self.body = None


def next(err=None) -> None:
    # Only errors the middleware reports are expected.
    if err is not None and not isinstance(err, HTTPError):
        raise err


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    headers = {
        "content-type": fdp.PickValueInList(CONTENT_TYPES),
        "content-encoding": fdp.PickValueInList(CONTENT_ENCODINGS),
    }
    body = fdp.ConsumeRandomBytes()
    if fdp.ConsumeBool():
        headers["content-length"] = str(len(body))
    else:
        headers["transfer-encoding"] = "chunked"

    body_parser(Request(headers, body), None, next)


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
