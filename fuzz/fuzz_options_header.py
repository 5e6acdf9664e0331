import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from multipart_fields.multipart import parse_mime_type, parse_options_header
    from multipart_fields.rules import content_type_matches


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    try:
        parse_options_header(fdp.ConsumeRandomBytes())
        declared = fdp.ConsumeRandomString()
        content_type_matches(declared, [("image", "*"), ("*", "plain")])
        parse_mime_type(declared)
    except AssertionError:
        return
    except TypeError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
