from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILURE_EXIT_CODE = 127
SIGNAL_EXIT_BASE = 128
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Ceilings applied to a sandboxed child before it executes.

    A field set to ``None`` leaves the inherited limit untouched.

    Example:
        ```python
        limits = ResourceLimits(cpu_seconds=2, address_space_bytes=256 * 1024 * 1024)
        ```
    """

    cpu_seconds: int | None = 2
    address_space_bytes: int | None = 256 * 1024 * 1024
    file_size_bytes: int | None = 1024 * 1024
    open_files: int | None = 64


@dataclass(slots=True)
class SandboxRequest:
    """One external command to run under the sandbox.

    Example:
        ```python
        req = SandboxRequest(command=["./main.out"], stdin=b"5\\n", timeout_seconds=2.0)
        ```
    """

    command: list[str]
    stdin: bytes = b""
    timeout_seconds: float = 2.0
    limits: ResourceLimits | None = None
    cwd: Path | None = None


@dataclass(slots=True)
class ProcessOutcome:
    """Normalized result of one sandboxed process.

    ``exit_code`` is the program's exit status, ``SIGNAL_EXIT_BASE + signum``
    when it was killed by a signal, and ``TIMEOUT_EXIT_CODE`` when the sandbox
    killed it at the deadline. ``output`` holds interleaved stdout/stderr.

    Example:
        ```python
        out = ProcessOutcome(exit_code=0, timed_out=False, output=b"hello\\n")
        ```
    """

    exit_code: int
    timed_out: bool
    output: bytes = b""
    error: str | None = None
    cancelled: bool = False
    truncated: bool = False
    duration_seconds: float = field(default=0.0, compare=False)

    @property
    def succeeded(self) -> bool:
        """Return True when the process exited on its own with status 0.

        Example:
            ```python
            ok = ProcessOutcome(exit_code=0, timed_out=False).succeeded
            ```
        """
        return self.exit_code == 0 and not self.timed_out and self.error is None
