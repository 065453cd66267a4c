import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from body_parser.exceptions import MediaTypeError
    from body_parser.media_types import parse_content_type


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    try:
        parse_content_type(fdp.ConsumeRandomBytes())
    except MediaTypeError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
