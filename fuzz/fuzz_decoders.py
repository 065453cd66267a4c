import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from body_parser.decoders import BrotliDecoder, DeflateDecoder, GzipDecoder
    from body_parser.exceptions import DecompressionError, QuerystringParseError
    from body_parser.querystring import QuerystringParser


class Sink:
    def write(self, data: bytes) -> None:
        pass


def fuzz_gzip_decoder(fdp: EnhancedDataProvider) -> None:
    decoder = GzipDecoder(Sink())
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.finalize()


def fuzz_deflate_decoder(fdp: EnhancedDataProvider) -> None:
    decoder = DeflateDecoder(Sink())
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.finalize()


def fuzz_brotli_decoder(fdp: EnhancedDataProvider) -> None:
    decoder = BrotliDecoder(Sink())
    decoder.write(fdp.ConsumeRandomBytes())
    decoder.finalize()


def fuzz_querystring_parser(fdp: EnhancedDataProvider) -> None:
    parser = QuerystringParser()
    parser.write(fdp.ConsumeRandomString())
    parser.finalize()


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [fuzz_gzip_decoder, fuzz_deflate_decoder, fuzz_brotli_decoder, fuzz_querystring_parser]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except (DecompressionError, QuerystringParseError):
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
