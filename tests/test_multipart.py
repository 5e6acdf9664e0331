from __future__ import annotations

import os
import unittest
from io import BytesIO
from typing import TYPE_CHECKING

import pytest

from multipart_fields.exceptions import FormIOError, MultipartParseError
from multipart_fields.multipart import (
    BaseParser,
    EntryReader,
    MultipartParser,
    MultipartState,
    parse_mime_type,
    parse_options_header,
)

from .helpers import BrokenStream, SlowStream, make_body, make_part

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import Any

# Get the current directory for our later test cases.
curr_dir = os.path.abspath(os.path.dirname(__file__))
http_tests_dir = os.path.join(curr_dir, "test_data", "http")


def split_all(val: bytes) -> Iterator[tuple[bytes, bytes]]:
    """
    This function will split an array all possible ways.  For example:
        split_all([1,2,3,4])
    will give:
        ([1], [2,3,4]), ([1,2], [3,4]), ([1,2,3], [4])
    """
    for i in range(1, len(val) - 1):
        yield (val[:i], val[i:])


class TestParseOptionsHeader(unittest.TestCase):
    def test_simple(self) -> None:
        t, p = parse_options_header("application/json")
        self.assertEqual(t, "application/json")
        self.assertEqual(p, {})

    def test_blank(self) -> None:
        t, p = parse_options_header("")
        self.assertEqual(t, "")
        self.assertEqual(p, {})

    def test_none(self) -> None:
        self.assertEqual(parse_options_header(None), ("", {}))

    def test_lowercases_value(self) -> None:
        t, p = parse_options_header("Multipart/Form-Data; boundary=AbC")
        self.assertEqual(t, "multipart/form-data")
        self.assertEqual(p, {"boundary": "AbC"})

    def test_single_param(self) -> None:
        t, p = parse_options_header("application/json;par=val")
        self.assertEqual(t, "application/json")
        self.assertEqual(p, {"par": "val"})

    def test_single_param_with_spaces(self) -> None:
        t, p = parse_options_header(b"application/json;     par=val")
        self.assertEqual(t, "application/json")
        self.assertEqual(p, {"par": "val"})

    def test_multiple_params(self) -> None:
        t, p = parse_options_header(b"application/json;par=val;asdf=foo")
        self.assertEqual(t, "application/json")
        self.assertEqual(p, {"par": "val", "asdf": "foo"})

    def test_quoted_param(self) -> None:
        t, p = parse_options_header(b'application/json;param="quoted"')
        self.assertEqual(t, "application/json")
        self.assertEqual(p, {"param": "quoted"})

    def test_quoted_param_with_semicolon(self) -> None:
        t, p = parse_options_header(b'application/json;param="quoted;with;semicolons"')
        self.assertEqual(p["param"], "quoted;with;semicolons")

    def test_quoted_param_with_escapes(self) -> None:
        t, p = parse_options_header(b'application/json;param="This \\" is \\" a \\" quote"')
        self.assertEqual(p["param"], 'This " is " a " quote')

    def test_semicolon_in_quoted_value(self) -> None:
        t, p = parse_options_header('form-data; name="user;name"; filename="video;game.mp4"')
        self.assertEqual(t, "form-data")
        self.assertEqual(p, {"name": "user;name", "filename": "video;game.mp4"})

    def test_spaces_around_equals(self) -> None:
        t, p = parse_options_header('form-data; name = "test" ; filename = "file.txt"')
        self.assertEqual(p, {"name": "test", "filename": "file.txt"})

    def test_param_names_are_lowercased(self) -> None:
        t, p = parse_options_header("MULTIPART/FORM-DATA; BOUNDARY=abc")
        self.assertEqual(t, "multipart/form-data")
        self.assertEqual(p, {"boundary": "abc"})

    def test_empty_file_name(self) -> None:
        t, p = parse_options_header('form-data; name="photo"; filename=""')
        self.assertEqual(t, "form-data")
        self.assertEqual(p, {"name": "photo", "filename": ""})

    def test_handles_ie6_bug(self) -> None:
        t, p = parse_options_header(b'text/plain; filename="C:\\this\\is\\a\\path\\file.txt"')

        self.assertEqual(p["filename"], "file.txt")

    def test_redos_attack_header(self) -> None:
        t, p = parse_options_header(
            b'application/x-www-form-urlencoded; !="'
            b"\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\\"
        )
        # If vulnerable, this test wouldn't finish, the line above would hang
        self.assertIn('"\\', p["!"])

    def test_handles_rfc_2231(self) -> None:
        t, p = parse_options_header(b"text/plain; param*=us-ascii'en-us'encoded%20message")

        self.assertEqual(p["param"], "encoded message")

    def test_handles_rfc_2231_utf8(self) -> None:
        t, p = parse_options_header("form-data; name=file; filename*=utf-8''na%C3%AFve.txt")

        self.assertEqual(p["filename"], "na\xefve.txt")


@pytest.mark.parametrize(
    "value, expected",
    [
        ("text/plain", ("text", "plain")),
        ("Text/HTML; charset=UTF-8", ("text", "html")),
        ("image/*", ("image", "*")),
        (" application/vnd.api+json ", ("application", "vnd.api+json")),
        ("text", None),
        ("text/", None),
        ("/plain", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_mime_type(value: str | None, expected: tuple[str, str] | None) -> None:
    assert parse_mime_type(value) == expected


class TestBaseParser(unittest.TestCase):
    def setUp(self) -> None:
        self.b = BaseParser()
        self.b.callbacks = {}

    def test_callbacks(self) -> None:
        called = 0

        def on_foo() -> None:
            nonlocal called
            called += 1

        self.b.set_callback("foo", on_foo)  # type: ignore[arg-type]
        self.b.callback("foo")  # type: ignore[arg-type]
        self.assertEqual(called, 1)

        self.b.set_callback("foo", None)  # type: ignore[arg-type]
        self.b.callback("foo")  # type: ignore[arg-type]
        self.assertEqual(called, 1)

    def test_data_callback_skips_empty_slices(self) -> None:
        calls: list[bytes] = []
        self.b.set_callback("part_data", lambda data, start, end: calls.append(data[start:end]))

        self.b.callback("part_data", b"abc", 1, 1)
        self.b.callback("part_data", b"abc", 1, 3)
        self.assertEqual(calls, [b"bc"])


class TestMultipartParser(unittest.TestCase):
    def make(self, boundary: str | bytes = "boundary", **kwargs: Any) -> None:
        self.parts: list[dict[str, Any]] = []
        self.ended = False
        header_field: list[bytes] = []
        header_value: list[bytes] = []

        def on_part_begin() -> None:
            self.parts.append({"headers": [], "data": b"", "ended": False})

        def on_header_field(data: bytes, start: int, end: int) -> None:
            header_field.append(bytes(data[start:end]))

        def on_header_value(data: bytes, start: int, end: int) -> None:
            header_value.append(bytes(data[start:end]))

        def on_header_end() -> None:
            self.parts[-1]["headers"].append((b"".join(header_field), b"".join(header_value)))
            del header_field[:]
            del header_value[:]

        def on_part_data(data: bytes, start: int, end: int) -> None:
            self.parts[-1]["data"] += bytes(data[start:end])

        def on_part_end() -> None:
            self.parts[-1]["ended"] = True

        def on_end() -> None:
            self.ended = True

        self.p = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_header_field": on_header_field,
                "on_header_value": on_header_value,
                "on_header_end": on_header_end,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
                "on_end": on_end,
            },
            **kwargs,
        )

    def assert_single_field_single_file(self) -> None:
        self.assertTrue(self.ended)
        self.assertEqual(len(self.parts), 2)

        field, file = self.parts
        self.assertEqual(field["headers"], [(b"Content-Disposition", b'form-data; name="field"')])
        self.assertEqual(field["data"], b"test1")
        self.assertTrue(field["ended"])

        self.assertEqual(
            file["headers"],
            [
                (b"Content-Disposition", b'form-data; name="file"; filename="file.txt"'),
                (b"Content-Type", b"text/plain"),
            ],
        )
        self.assertEqual(file["data"], b"test2")
        self.assertTrue(file["ended"])

    def read_http(self, name: str) -> bytes:
        with open(os.path.join(http_tests_dir, name + ".http"), "rb") as f:
            return f.read()

    def test_whole_body(self) -> None:
        self.make()
        test_data = self.read_http("single_field_single_file")

        self.assertEqual(self.p.write(test_data), len(test_data))
        self.p.finalize()

        self.assert_single_field_single_file()
        self.assertEqual(self.p.state, MultipartState.END)

    def test_random_splitting(self) -> None:
        """
        This test runs a simple multipart body with one field and one file
        through every possible split.
        """
        test_data = self.read_http("single_field_single_file")

        for first, last in split_all(test_data):
            self.make()

            i = 0
            i += self.p.write(first)
            i += self.p.write(last)
            self.p.finalize()

            self.assertEqual(i, len(test_data))
            self.assert_single_field_single_file()

    def test_feed_single_bytes(self) -> None:
        self.make()
        test_data = self.read_http("single_field_single_file")

        for i in range(len(test_data)):
            self.p.write(test_data[i : i + 1])
        self.p.finalize()

        self.assert_single_field_single_file()

    def test_almost_match_boundary(self) -> None:
        test_data = self.read_http("almost_match_boundary")

        for chunk_size in (1, 2, 5, len(test_data)):
            self.make()
            for i in range(0, len(test_data), chunk_size):
                self.p.write(test_data[i : i + chunk_size])
            self.p.finalize()

            self.assertEqual(len(self.parts), 1)
            self.assertEqual(self.parts[0]["data"], b"--boundar\r\n--boundaryX\r\n-boundary")

    def test_preamble_and_epilogue_are_ignored(self) -> None:
        self.make()
        self.p.write(b"preamble\r\n--boundary\r\nContent-Disposition: form-data; name=a\r\n\r\nA")
        self.p.write(b"\r\n--boundary--\r\nepilogue\r\n--boundary\r\n")
        self.p.finalize()

        self.assertEqual(len(self.parts), 1)
        self.assertEqual(self.parts[0]["data"], b"A")

    def test_boundary_text_inside_preamble(self) -> None:
        body = b"preamble mentions --boundaryless text\r\n" + make_body([make_part("a", b"A")])

        for chunk_size in (1, 4, len(body)):
            self.make()
            for i in range(0, len(body), chunk_size):
                self.p.write(body[i : i + chunk_size])
            self.p.finalize()

            self.assertEqual(len(self.parts), 1)
            self.assertEqual(self.parts[0]["data"], b"A")

    def test_boundary_prefix_at_body_start(self) -> None:
        self.make()
        self.p.write(b"--bo")
        self.p.write(b"x\r\n" + make_body([make_part("a", b"A")]))
        self.p.finalize()

        self.assertEqual(len(self.parts), 1)

    def test_empty_part_data(self) -> None:
        self.make()
        self.p.write(make_body([make_part("a", b"")]))
        self.p.finalize()

        self.assertEqual(self.parts[0]["data"], b"")
        self.assertTrue(self.parts[0]["ended"])

    def test_header_whitespace_is_stripped(self) -> None:
        self.make()
        self.p.write(b"--boundary\r\nX-Thing:  \t value \t\r\n\r\n\r\n--boundary--")
        self.p.finalize()

        self.assertEqual(self.parts[0]["headers"], [(b"X-Thing", b"value")])

    def test_bad_character_after_boundary(self) -> None:
        self.make()

        with self.assertRaises(MultipartParseError) as cm:
            self.p.write(b"--boundaryXX")

        self.assertEqual(cm.exception.offset, 10)

    def test_malformed_header(self) -> None:
        self.make()

        with self.assertRaises(MultipartParseError):
            self.p.write(b"--boundary\r\nContent-Disposition form-data\r\n\r\n")

    def test_invalid_header_character(self) -> None:
        self.make()

        with self.assertRaises(MultipartParseError) as cm:
            self.p.write(b"--boundary\r\nBad Header: foo\r\n\r\n")

        self.assertEqual(cm.exception.offset, 15)

    def test_header_too_long(self) -> None:
        self.make(max_header_size=16)

        with self.assertRaises(MultipartParseError):
            self.p.write(b"--boundary\r\nContent-Disposition: form-data")

    def test_max_size(self) -> None:
        self.make(max_size=10)

        with self.assertRaises(MultipartParseError) as cm:
            self.p.write(b"--boundary\r\n")

        self.assertEqual(cm.exception.offset, 10)

    def test_invalid_max_size(self) -> None:
        with self.assertRaises(ValueError):
            MultipartParser("boundary", max_size=0)

    def test_empty_boundary(self) -> None:
        with self.assertRaises(ValueError):
            MultipartParser(b"")

    def test_unexpected_end(self) -> None:
        self.make()
        self.p.write(b"--boundary\r\nContent-Disposition: form-data; name=a\r\n\r\ndata")

        with self.assertRaises(MultipartParseError):
            self.p.finalize()
        self.assertFalse(self.ended)

    def test_empty_body(self) -> None:
        self.make()

        with self.assertRaises(MultipartParseError):
            self.p.finalize()


class TestEntryReader(unittest.TestCase):
    def setUp(self) -> None:
        self.body = make_body(
            [
                make_part("note", b"hello"),
                make_part("photo", b"PNG" * 10, file_name="cat.png", content_type="Image/PNG; foo=bar"),
                make_part("other", b"other"),
            ]
        )

    def test_entries(self) -> None:
        reader = EntryReader(BytesIO(self.body), "boundary")

        entries = []
        for entry in reader:
            entries.append((entry.name, entry.file_name, entry.content_type, b"".join(entry)))

        self.assertEqual(
            entries,
            [
                ("note", None, None, b"hello"),
                ("photo", "cat.png", "image/png", b"PNG" * 10),
                ("other", None, None, b"other"),
            ],
        )
        self.assertEqual(reader.bytes_received, len(self.body))

    def test_headers_are_lowercased(self) -> None:
        reader = EntryReader(BytesIO(self.body), "boundary")
        reader.read_entry()
        entry = reader.read_entry()
        assert entry is not None

        self.assertEqual(entry.headers["content-type"], "Image/PNG; foo=bar")
        self.assertEqual(entry.disposition, "form-data")

    def test_small_chunks(self) -> None:
        stream = SlowStream(self.body, step=3)
        reader = EntryReader(stream, "boundary", chunk_size=2)

        data = {entry.name: b"".join(entry) for entry in reader}

        self.assertEqual(data, {"note": b"hello", "photo": b"PNG" * 10, "other": b"other"})
        self.assertGreater(stream.reads, len(self.body) // 2)

    def test_read_entry_skips_unread_data(self) -> None:
        reader = EntryReader(BytesIO(self.body), "boundary", chunk_size=4)

        first = reader.read_entry()
        assert first is not None
        second = reader.read_entry()
        assert second is not None

        self.assertTrue(first.finished)
        self.assertEqual(first.read(), b"")
        self.assertEqual(second.name, "photo")
        self.assertEqual(b"".join(second), b"PNG" * 10)
        self.assertEqual(second.bytes_read, 30)

    def test_read_chunk_of_other_entry(self) -> None:
        reader = EntryReader(BytesIO(self.body), "boundary")
        entry = reader.read_entry()
        assert entry is not None
        other = EntryReader(BytesIO(self.body), "boundary").read_entry()
        assert other is not None

        with self.assertRaises(ValueError):
            reader.read_chunk(other)

    def test_entry_drain(self) -> None:
        reader = EntryReader(BytesIO(self.body), "boundary", chunk_size=7)
        reader.read_entry()
        entry = reader.read_entry()
        assert entry is not None

        self.assertEqual(entry.drain(), 30)
        self.assertTrue(entry.finished)

    def test_drain(self) -> None:
        stream = BytesIO(self.body + b"trailing")
        reader = EntryReader(stream, "boundary", chunk_size=5)
        reader.read_entry()

        self.assertEqual(reader.drain(), 2)
        self.assertIsNone(reader.read_entry())
        self.assertEqual(stream.read(), b"")

    def test_content_length(self) -> None:
        stream = BytesIO(self.body + b"trailing")
        reader = EntryReader(stream, "boundary", content_length=len(self.body))

        self.assertEqual(len(list(reader)), 3)
        self.assertEqual(reader.bytes_received, len(self.body))
        self.assertEqual(stream.read(), b"trailing")

    def test_content_length_cuts_body(self) -> None:
        reader = EntryReader(BytesIO(self.body), "boundary", content_length=len(self.body) - 10)

        with self.assertRaises(MultipartParseError):
            for entry in reader:
                entry.drain()

    def test_stream_error(self) -> None:
        reader = EntryReader(BrokenStream(self.body, fail_after=40), "boundary", chunk_size=16)

        with self.assertRaises(FormIOError) as cm:
            for entry in reader:
                entry.drain()

        self.assertIsInstance(cm.exception, OSError)
        self.assertIsInstance(cm.exception.__cause__, ConnectionResetError)
        self.assertNotIsInstance(cm.exception, MultipartParseError)

        # A failed reader doesn't touch the stream again.
        self.assertEqual(reader.drain(), 0)

    def test_closed_stream(self) -> None:
        stream = BytesIO(self.body)
        stream.close()
        reader = EntryReader(stream, "boundary")

        with self.assertRaises(FormIOError) as cm:
            reader.read_entry()

        self.assertIsInstance(cm.exception.__cause__, ValueError)
        self.assertEqual(reader.drain(), 0)

    def test_truncated_body(self) -> None:
        reader = EntryReader(BytesIO(self.body[:-20]), "boundary")

        with self.assertRaises(MultipartParseError):
            for entry in reader:
                entry.drain()

    def test_part_without_name(self) -> None:
        body = b"--boundary\r\nContent-Disposition: attachment\r\n\r\ndata\r\n--boundary--\r\n"
        reader = EntryReader(BytesIO(body), "boundary")

        with self.assertRaises(MultipartParseError):
            reader.read_entry()

    def test_part_without_disposition(self) -> None:
        body = b"--boundary\r\nContent-Type: text/plain\r\n\r\ndata\r\n--boundary--\r\n"
        reader = EntryReader(BytesIO(body), "boundary")

        with self.assertRaises(MultipartParseError):
            reader.read_entry()

    def test_utf8_header_values(self) -> None:
        body = make_body([make_part("f", b"x", file_name="na\xefve.txt")])
        reader = EntryReader(BytesIO(body), "boundary")
        entry = reader.read_entry()
        assert entry is not None

        self.assertEqual(entry.file_name, "na\xefve.txt")

    def test_empty_body(self) -> None:
        reader = EntryReader(BytesIO(b""), "boundary")

        with self.assertRaises(MultipartParseError):
            reader.read_entry()

    def test_no_entries(self) -> None:
        reader = EntryReader(BytesIO(b"--boundary--\r\n"), "boundary")

        self.assertIsNone(reader.read_entry())
