from __future__ import annotations

import re
import socket
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Protocol

from .errors import IncompleteRequest, MalformedRequest

MAX_REQUEST_BYTES = 512 * 1024
HEADER_TERMINATOR = b"\r\n\r\n"
_RECV_CHUNK = 4096
_HEX_PAIR = re.compile(rb"[0-9A-Fa-f]{2}")


class ByteSource(Protocol):
    def recv(self, bufsize: int) -> bytes:
        """Return up to ``bufsize`` bytes, or ``b""`` once the peer is done.

        Example:
            ```python
            chunk = conn.recv(4096)
            ```
        """
        ...


@dataclass(frozen=True, slots=True)
class Request:
    """One framed request. Header names are lowercased; the last duplicate wins.

    ``headers`` is exposed read-only, so a request cannot change once built.

    Example:
        ```python
        req = Request(method="GET", target="/load?name=a.cpp", path="/load", query="name=a.cpp")
        ```
    """

    method: str
    target: str
    path: str
    query: str = ""
    version: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        """Freeze the header mapping.

        Example:
            ```python
            Request(method="GET", target="/", path="/", headers={"host": "x"}).headers["host"]
            ```
        """
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    @property
    def params(self) -> dict[str, str]:
        """Return the decoded query-string parameters.

        Example:
            ```python
            name = req.params.get("name", "star_code.cpp")
            ```
        """
        return parse_query(self.query)


def url_decode(value: str) -> str:
    """Percent-decode a query component and turn ``+`` into a space.

    Malformed escapes are kept literally instead of failing the parse.

    Example:
        ```python
        url_decode("a%20b+c")  # -> "a b c"
        ```
    """
    raw = value.encode("utf-8")
    out = bytearray()
    i = 0
    while i < len(raw):
        byte = raw[i]
        if byte == 0x25 and _HEX_PAIR.fullmatch(raw[i + 1 : i + 3]):
            out.append(int(raw[i + 1 : i + 3], 16))
            i += 3
            continue
        out.append(0x20 if byte == 0x2B else byte)
        i += 1
    return out.decode("utf-8", errors="replace")


def split_target(target: str) -> tuple[str, str]:
    """Split a request target into path and query at the first ``?``.

    Example:
        ```python
        split_target("/load?name=a.cpp")  # -> ("/load", "name=a.cpp")
        ```
    """
    path, _, query = target.partition("?")
    return path, query


def parse_query(query: str) -> dict[str, str]:
    """Decode ``k=v&k2=v2`` pairs; empty keys are dropped and the last value wins.

    Example:
        ```python
        parse_query("name=star_code.cpp&x")  # -> {"name": "star_code.cpp", "x": ""}
        ```
    """
    params: dict[str, str] = {}
    for part in query.split("&"):
        if not part:
            continue
        key, _, value = part.partition("=")
        key = url_decode(key)
        if key:
            params[key] = url_decode(value)
    return params


def _parse_headers(lines: list[str]) -> dict[str, str]:
    """Parse ``name: value`` lines, skipping lines without a separator.

    Example:
        ```python
        _parse_headers(["Content-Length: 4", "garbage"])  # -> {"content-length": "4"}
        ```
    """
    headers: dict[str, str] = {}
    for line in lines:
        if not line.strip():
            break
        name, sep, value = line.partition(":")
        if not sep:
            continue
        headers[name.strip().lower()] = value.strip()
    return headers


def parse_request(raw: bytes) -> Request:
    """Parse an already-buffered request: start line, headers and body.

    Example:
        ```python
        req = parse_request(b"GET / HTTP/1.1\\r\\nHost: x\\r\\n\\r\\n")
        ```
    """
    header_end = raw.find(HEADER_TERMINATOR)
    if header_end < 0:
        raise IncompleteRequest("header terminator not found")

    head = raw[:header_end].decode("latin-1")
    body = raw[header_end + len(HEADER_TERMINATOR) :]
    lines = head.split("\n")
    lines = [line[:-1] if line.endswith("\r") else line for line in lines]

    parts = lines[0].split() if lines else []
    if len(parts) < 2:
        raise MalformedRequest("request line lacks a method and path")
    method, target = parts[0], parts[1]
    version = parts[2] if len(parts) > 2 else ""
    path, query = split_target(target)

    return Request(
        method=method,
        target=target,
        path=path,
        query=query,
        version=version,
        headers=_parse_headers(lines[1:]),
        body=body,
    )


def _declared_length(headers: Mapping[str, str], max_bytes: int) -> int | None:
    """Return a usable Content-Length, or None when absent or unparsable.

    Raises MalformedRequest when the declared length exceeds the ceiling.

    Example:
        ```python
        _declared_length({"content-length": "12"}, 1024)  # -> 12
        ```
    """
    raw_value = headers.get("content-length")
    if raw_value is None:
        return None
    try:
        length = int(raw_value)
    except ValueError:
        return None
    if length < 0:
        return None
    if length > max_bytes:
        raise MalformedRequest(f"content-length {length} exceeds limit of {max_bytes} bytes")
    return length


def _recv(source: ByteSource) -> bytes:
    """Receive one chunk, mapping read timeouts and resets to end-of-data.

    Example:
        ```python
        chunk = _recv(conn)
        ```
    """
    try:
        return source.recv(_RECV_CHUNK)
    except (socket.timeout, ConnectionError):
        return b""


def read_request(source: ByteSource, max_bytes: int = MAX_REQUEST_BYTES) -> Request:
    """Accumulate bytes until one request is framed, then parse it.

    Headers must arrive within ``max_bytes``; the body is read up to its
    declared Content-Length (or whatever is already buffered when absent).

    Example:
        ```python
        req = read_request(conn)
        ```
    """
    data = bytearray()
    while HEADER_TERMINATOR not in data:
        if len(data) > max_bytes:
            raise IncompleteRequest(f"headers exceed limit of {max_bytes} bytes")
        chunk = _recv(source)
        if not chunk:
            raise IncompleteRequest("connection closed before header terminator")
        data.extend(chunk)

    request = parse_request(bytes(data))
    length = _declared_length(request.headers, max_bytes)
    if length is None:
        return request

    body = bytearray(request.body)
    while len(body) < length:
        chunk = _recv(source)
        if not chunk:
            break
        body.extend(chunk)
    del body[length:]

    return Request(
        method=request.method,
        target=request.target,
        path=request.path,
        query=request.query,
        version=request.version,
        headers=request.headers,
        body=bytes(body),
    )
