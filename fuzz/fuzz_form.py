import io
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from multipart_fields.exceptions import FormParserError
    from multipart_fields.form import FormParser
    from multipart_fields.rules import FieldRule, Repetition

BOUNDARY = "boundary"
CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


def make_rules() -> list[FieldRule]:
    return [
        FieldRule.text("note", size_limit=64, repetition=Repetition.fixed(2)),
        FieldRule.raw("blob", size_limit=64),
        FieldRule.file("photo", size_limit=128, content_types=["image/*"], repetition=Repetition.unlimited()),
    ]


def parse_random_body(fdp: EnhancedDataProvider) -> None:
    result = FormParser(CONTENT_TYPE, make_rules()).parse(io.BytesIO(fdp.ConsumeRandomBytes()))
    result.dispose()


def parse_random_entry(fdp: EnhancedDataProvider) -> None:
    name = fdp.ConsumeFieldName()
    body = (
        f"--{BOUNDARY}\r\n"
        f'Content-Disposition: form-data; name="{name}"; filename="f.png"\r\n'
        f"Content-Type: image/png\r\n\r\n"
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{BOUNDARY}--\r\n"
    )
    result = FormParser(CONTENT_TYPE, make_rules()).parse(io.BytesIO(body.encode("utf-8", errors="ignore")))
    result.dispose()


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_random_body, parse_random_entry]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except FormParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
