from __future__ import annotations


class RunnerError(Exception):
    """Base class for request-level failures raised by safe-cpp-runner.

    Example:
        ```python
        raise RunnerError("something went wrong")
        ```
    """


class FramingError(RunnerError):
    """The request bytes could not be framed into a complete request.

    Example:
        ```python
        raise FramingError("no header terminator")
        ```
    """


class IncompleteRequest(FramingError):
    """The peer stopped sending (or sent too much) before the headers ended.

    Example:
        ```python
        raise IncompleteRequest("connection closed before header terminator")
        ```
    """


class MalformedRequest(FramingError):
    """The framed bytes do not form a parsable request.

    Example:
        ```python
        raise MalformedRequest("missing method or path")
        ```
    """


class ValidationError(RunnerError, ValueError):
    """A required request field is missing or has the wrong type.

    Example:
        ```python
        raise ValidationError("Missing 'code'")
        ```
    """


class InternalFailure(RunnerError):
    """Process infrastructure (pipe/fork/exec) failed for a submission.

    The message is for logs only and is never sent to clients.

    Example:
        ```python
        raise InternalFailure("failed to start process: g++")
        ```
    """
