from __future__ import annotations

import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from .pipeline import CompileFailed, Completed, PipelineResult

TEXT = "text/plain; charset=utf-8"
HTML = "text/html; charset=utf-8"
JSON = "application/json; charset=utf-8"

_KEPT_CONTROLS = {"\n", "\r", "\t"}


@dataclass(frozen=True, slots=True)
class Response:
    """A single response; every response closes the connection.

    Example:
        ```python
        resp = Response(200, TEXT, b"ok\\n")
        ```
    """

    status: int
    content_type: str
    body: bytes

    def to_bytes(self) -> bytes:
        """Serialize status line, headers and body.

        Example:
            ```python
            wire = Response(404, TEXT, b"Not Found\\n").to_bytes()
            ```
        """
        try:
            reason = HTTPStatus(self.status).phrase
        except ValueError:
            reason = "Unknown"
        head = (
            f"HTTP/1.1 {self.status} {reason}\r\n"
            f"Content-Type: {self.content_type}\r\n"
            f"Content-Length: {len(self.body)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        return head.encode("latin-1") + self.body


def sanitize_output(text: str) -> str:
    """Drop control characters other than newline, carriage return and tab.

    Example:
        ```python
        sanitize_output("a\\x07b\\n")  # -> "ab\\n"
        ```
    """
    return "".join(ch for ch in text if ch >= " " or ch in _KEPT_CONTROLS)


def text_response(status: int, text: str) -> Response:
    """Build a plain-text response.

    Example:
        ```python
        resp = text_response(404, "Not Found\\n")
        ```
    """
    return Response(status, TEXT, text.encode("utf-8"))


def json_response(status: int, payload: dict[str, Any]) -> Response:
    """Build a JSON response; non-ASCII text is emitted as UTF-8.

    Example:
        ```python
        resp = json_response(400, {"ok": False, "error": "Missing 'code'"})
        ```
    """
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return Response(status, JSON, body.encode("utf-8"))


def error_response(status: int, message: str) -> Response:
    """Build the ``{"ok": false, "error": ...}`` envelope.

    Example:
        ```python
        resp = error_response(500, "Internal server error")
        ```
    """
    return json_response(status, {"ok": False, "error": sanitize_output(message)})


def result_payload(result: PipelineResult) -> dict[str, Any]:
    """Shape a pipeline result into the ``/run`` JSON object.

    Example:
        ```python
        payload = result_payload(Completed(exit_code=0, timed_out=False, output="hi\\n"))
        ```
    """
    if isinstance(result, CompileFailed):
        return {"ok": False, "stage": "compile", "output": sanitize_output(result.output)}
    if isinstance(result, Completed):
        return {
            "ok": True,
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "output": sanitize_output(result.output),
        }
    raise TypeError(f"Unsupported pipeline result: {type(result).__name__}")
