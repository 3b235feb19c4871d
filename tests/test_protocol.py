from __future__ import annotations

import socket

import pytest

from safe_cpp_runner.errors import IncompleteRequest, MalformedRequest
from safe_cpp_runner.protocol import parse_query, parse_request, read_request, url_decode


class _FakeSource:
    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = list(chunks)
        self.calls = 0

    def recv(self, bufsize: int) -> bytes:
        self.calls += 1
        if not self.chunks:
            return b""
        chunk = self.chunks.pop(0)
        if len(chunk) > bufsize:
            self.chunks.insert(0, chunk[bufsize:])
            chunk = chunk[:bufsize]
        return chunk


class _EndlessSource:
    def __init__(self) -> None:
        self.received = 0

    def recv(self, bufsize: int) -> bytes:
        self.received += bufsize
        return b"a" * bufsize


class _TimeoutSource:
    def recv(self, bufsize: int) -> bytes:
        raise socket.timeout("timed out")


def test_reads_start_line_headers_and_query() -> None:
    source = _FakeSource(
        [
            b"GET /load?name=star_code.cpp&x=1 HTTP/1.1\r\n",
            b"Host: localhost\r\nX-Token:  abc \r\n\r\n",
        ]
    )
    req = read_request(source)

    assert req.method == "GET"
    assert req.target == "/load?name=star_code.cpp&x=1"
    assert req.path == "/load"
    assert req.query == "name=star_code.cpp&x=1"
    assert req.version == "HTTP/1.1"
    assert req.headers == {"host": "localhost", "x-token": "abc"}
    assert req.params == {"name": "star_code.cpp", "x": "1"}
    assert req.body == b""


def test_header_names_are_case_folded_and_last_write_wins() -> None:
    req = parse_request(
        b"POST /run HTTP/1.1\r\nX-A: 1\r\nnot a header line\r\nx-a: 2\r\n\r\n"
    )
    assert req.headers == {"x-a": "2"}


def test_body_is_read_until_content_length_across_chunks() -> None:
    source = _FakeSource(
        [
            b"POST /run HTTP/1.1\r\nContent-Length: 11\r\n\r\nhello",
            b" wor",
            b"ld",
        ]
    )
    req = read_request(source)
    assert req.body == b"hello world"


def test_body_is_truncated_to_declared_length() -> None:
    source = _FakeSource([b"POST /save HTTP/1.1\r\nContent-Length: 3\r\n\r\nabcdef"])
    req = read_request(source)
    assert req.body == b"abc"


def test_body_stops_when_peer_sends_no_more_data() -> None:
    source = _FakeSource([b"POST /save HTTP/1.1\r\nContent-Length: 100\r\n\r\npartial"])
    req = read_request(source)
    assert req.body == b"partial"


def test_missing_content_length_uses_buffered_body() -> None:
    source = _FakeSource([b"POST /save HTTP/1.1\r\n\r\nbuffered", b"never read"])
    req = read_request(source)
    assert req.body == b"buffered"
    assert source.chunks == [b"never read"]


def test_unparsable_content_length_uses_buffered_body() -> None:
    source = _FakeSource([b"POST /save HTTP/1.1\r\nContent-Length: abc\r\n\r\nxyz", b"more"])
    req = read_request(source)
    assert req.body == b"xyz"


def test_oversized_content_length_is_rejected_without_reading_body() -> None:
    source = _FakeSource(
        [
            b"POST /run HTTP/1.1\r\nContent-Length: 999999999\r\n\r\n",
            b"x" * 4096,
            b"x" * 4096,
        ]
    )
    with pytest.raises(MalformedRequest, match="exceeds limit"):
        read_request(source, max_bytes=1024)
    assert source.calls == 1
    assert len(source.chunks) == 2


def test_missing_terminator_within_ceiling_is_incomplete_not_hung() -> None:
    source = _EndlessSource()
    with pytest.raises(IncompleteRequest):
        read_request(source, max_bytes=16 * 1024)
    assert source.received <= 16 * 1024 + 8192


def test_connection_closed_before_terminator_is_incomplete() -> None:
    with pytest.raises(IncompleteRequest):
        read_request(_FakeSource([b"GET / HTTP/1.1\r\nHost: x\r\n"]))


def test_read_timeout_is_incomplete() -> None:
    with pytest.raises(IncompleteRequest):
        read_request(_TimeoutSource())


def test_request_without_path_is_malformed() -> None:
    with pytest.raises(MalformedRequest):
        read_request(_FakeSource([b"GET\r\nHost: x\r\n\r\n"]))


def test_request_line_without_version_is_accepted() -> None:
    req = parse_request(b"GET /\r\n\r\n")
    assert req.method == "GET"
    assert req.path == "/"
    assert req.version == ""


def test_url_decode_handles_plus_and_percent_sequences() -> None:
    assert url_decode("a%20b+c") == "a b c"
    assert url_decode("%C3%A9t%C3%A9") == "été"
    assert url_decode("%2B") == "+"


def test_url_decode_keeps_malformed_escapes_literally() -> None:
    assert url_decode("100%") == "100%"
    assert url_decode("%zz%4") == "%zz%4"
    assert url_decode("%4g") == "%4g"


def test_parse_query_drops_empty_keys_and_keeps_last_value() -> None:
    assert parse_query("a=1&a=2&=x&b&&c=%41") == {"a": "2", "b": "", "c": "A"}
    assert parse_query("") == {}


def test_request_headers_are_read_only() -> None:
    req = parse_request(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    with pytest.raises(TypeError):
        req.headers["host"] = "elsewhere"  # type: ignore[index]
    assert req.headers["host"] == "localhost"
