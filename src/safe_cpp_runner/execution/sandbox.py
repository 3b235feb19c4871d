from __future__ import annotations

import logging
import os
import selectors
import shutil
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable

from .types import (
    DEFAULT_MAX_OUTPUT_BYTES,
    LAUNCH_FAILURE_EXIT_CODE,
    SIGNAL_EXIT_BASE,
    TIMEOUT_EXIT_CODE,
    ProcessOutcome,
    ResourceLimits,
    SandboxRequest,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096
_WRITE_CHUNK = 64 * 1024
_MAX_READS_PER_PASS = 64


def _limiter_path() -> Path:
    """Return the absolute path to the rlimit exec trampoline.

    Example:
        ```python
        path = _limiter_path()
        ```
    """
    return Path(__file__).resolve().parent / "trampoline" / "limiter.py"


def limited_argv(
    command: list[str],
    limits: ResourceLimits,
    status_fd: int | None = None,
) -> list[str]:
    """Wrap a command so its ceilings are applied in the child before exec.

    When ``status_fd`` is given the trampoline reports launch failures on it.

    Example:
        ```python
        argv = limited_argv(["./main.out"], ResourceLimits(open_files=64))
        ```
    """
    argv = [sys.executable, "-I", "-S", str(_limiter_path())]
    if status_fd is not None:
        argv.extend(["--status-fd", str(status_fd)])
    flags = (
        ("--cpu", limits.cpu_seconds),
        ("--as", limits.address_space_bytes),
        ("--fsize", limits.file_size_bytes),
        ("--nofile", limits.open_files),
    )
    for flag, value in flags:
        if value is not None:
            argv.extend([flag, str(int(value))])
    argv.append("--")
    argv.extend(command)
    return argv


def classify_returncode(returncode: int) -> int:
    """Map a Popen return code to an exit status, encoding signal deaths.

    Example:
        ```python
        classify_returncode(-9)  # -> 137
        ```
    """
    if returncode < 0:
        return SIGNAL_EXIT_BASE + (-returncode)
    return returncode


def kill_process_group(pgid: int) -> None:
    """Send SIGKILL to every member of a process group, ignoring a vanished group.

    Example:
        ```python
        kill_process_group(proc.pid)
        ```
    """
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class _OutputBuffer:
    """Byte accumulator that drops everything past its cap.

    Example:
        ```python
        buf = _OutputBuffer(limit=1024)
        ```
    """

    def __init__(self, limit: int) -> None:
        """Create an empty buffer holding at most ``limit`` bytes.

        Example:
            ```python
            buf = _OutputBuffer(limit=16)
            ```
        """
        self._limit = max(0, int(limit))
        self._chunks = bytearray()
        self.truncated = False

    def append(self, data: bytes) -> None:
        """Keep as much of ``data`` as fits under the cap.

        Example:
            ```python
            buf.append(b"hello")
            ```
        """
        room = self._limit - len(self._chunks)
        if len(data) > room:
            self.truncated = True
            data = data[: max(0, room)]
        self._chunks.extend(data)

    def getvalue(self) -> bytes:
        """Return the captured bytes.

        Example:
            ```python
            data = buf.getvalue()
            ```
        """
        return bytes(self._chunks)


class Sandbox:
    """Run one external command in its own process group with bounded resources.

    ``run`` never raises: launch failures, timeouts and cancellations are all
    reported through the returned :class:`ProcessOutcome`.

    Example:
        ```python
        sandbox = Sandbox(max_output_bytes=64 * 1024)
        outcome = sandbox.run(SandboxRequest(command=["echo", "hi"], timeout_seconds=1))
        ```
    """

    def __init__(
        self,
        *,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        poll_interval: float = 0.01,
        cancel_interval: float = 0.1,
    ) -> None:
        """Configure the output cap and polling cadence.

        Example:
            ```python
            sandbox = Sandbox(poll_interval=0.005)
            ```
        """
        if max_output_bytes < 0:
            raise ValueError("max_output_bytes must be non-negative")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._max_output_bytes = int(max_output_bytes)
        self._poll_interval = float(poll_interval)
        self._cancel_interval = float(cancel_interval)

    def run(
        self,
        request: SandboxRequest,
        cancel: Callable[[], bool] | None = None,
    ) -> ProcessOutcome:
        """Launch, feed, drain and reap one child process.

        ``cancel`` is polled periodically; returning True kills the process
        group the same way the deadline does.

        Example:
            ```python
            outcome = sandbox.run(SandboxRequest(command=["cat"], stdin=b"ping", timeout_seconds=1))
            ```
        """
        started = time.monotonic()
        if not request.command:
            return self._launch_failure("empty command", started)

        argv = list(request.command)
        status_read: int | None = None
        status_write: int | None = None
        if request.limits is not None:
            if not self._is_executable(request):
                return self._launch_failure(f"{argv[0]}: not found or not executable", started)
            status_read, status_write = os.pipe()
            argv = limited_argv(argv, request.limits, status_fd=status_write)

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=request.cwd,
                start_new_session=True,
                close_fds=True,
                pass_fds=() if status_write is None else (status_write,),
            )
        except (OSError, subprocess.SubprocessError) as exc:
            reason = getattr(exc, "strerror", None) or str(exc)
            if status_read is not None:
                os.close(status_read)
            return self._launch_failure(f"{request.command[0]}: {reason}", started)
        finally:
            if status_write is not None:
                os.close(status_write)

        logger.debug("Launched pid=%s command=%s", proc.pid, request.command[0])
        capture = _OutputBuffer(self._max_output_bytes)
        try:
            outcome = self._supervise(proc, request, capture, cancel, started)
            if status_read is not None:
                reason = self._read_status(status_read)
                if reason:
                    return self._launch_failure(reason, started)
            return outcome
        finally:
            if status_read is not None:
                os.close(status_read)
            for stream in (proc.stdin, proc.stdout):
                if stream is not None and not stream.closed:
                    try:
                        stream.close()
                    except OSError:
                        pass
            if proc.returncode is None:
                kill_process_group(proc.pid)
                proc.wait()

    def _supervise(
        self,
        proc: subprocess.Popen[bytes],
        request: SandboxRequest,
        capture: _OutputBuffer,
        cancel: Callable[[], bool] | None,
        started: float,
    ) -> ProcessOutcome:
        """Poll the child until exit, deadline or cancellation, draining output throughout.

        Example:
            ```python
            outcome = sandbox._supervise(proc, request, _OutputBuffer(1024), None, time.monotonic())
            ```
        """
        assert proc.stdin is not None and proc.stdout is not None
        stdout_fd = proc.stdout.fileno()
        os.set_blocking(stdout_fd, False)
        pending = memoryview(request.stdin)
        stdin_fd = proc.stdin.fileno()

        deadline = started + max(0.0, float(request.timeout_seconds))
        next_cancel_check = started + self._cancel_interval
        timed_out = False
        cancelled = False

        with selectors.DefaultSelector() as selector:
            selector.register(stdout_fd, selectors.EVENT_READ)
            if pending:
                os.set_blocking(stdin_fd, False)
                selector.register(stdin_fd, selectors.EVENT_WRITE)
            else:
                proc.stdin.close()

            while True:
                if selector.get_map():
                    events = selector.select(timeout=self._poll_interval)
                else:
                    time.sleep(self._poll_interval)
                    events = []
                for key, _ in events:
                    if key.fd == stdout_fd:
                        if not self._drain(stdout_fd, capture):
                            selector.unregister(stdout_fd)
                    elif key.fd == stdin_fd:
                        pending = self._feed(stdin_fd, pending)
                        if not pending:
                            selector.unregister(stdin_fd)
                            proc.stdin.close()

                if proc.poll() is not None:
                    break

                now = time.monotonic()
                if now >= deadline:
                    timed_out = True
                    logger.warning(
                        "Killing process group %s after %.2fs timeout",
                        proc.pid,
                        request.timeout_seconds,
                    )
                    break
                if cancel is not None and now >= next_cancel_check:
                    next_cancel_check = now + self._cancel_interval
                    if cancel():
                        cancelled = True
                        logger.info("Cancelling process group %s", proc.pid)
                        break

        if not proc.stdin.closed:
            try:
                proc.stdin.close()
            except OSError:
                pass

        # Also reaps descendants left behind by a leader that already exited.
        kill_process_group(proc.pid)
        proc.wait()
        self._drain(stdout_fd, capture, until_eof=True)

        if timed_out or cancelled:
            exit_code = TIMEOUT_EXIT_CODE
        else:
            exit_code = classify_returncode(proc.returncode)

        return ProcessOutcome(
            exit_code=exit_code,
            timed_out=timed_out,
            output=capture.getvalue(),
            cancelled=cancelled,
            truncated=capture.truncated,
            duration_seconds=time.monotonic() - started,
        )

    def _drain(self, fd: int, capture: _OutputBuffer, *, until_eof: bool = False) -> bool:
        """Read whatever is available without blocking; return False at EOF.

        Example:
            ```python
            still_open = sandbox._drain(fd, capture)
            ```
        """
        reads = 0
        while until_eof or reads < _MAX_READS_PER_PASS:
            try:
                chunk = os.read(fd, _READ_CHUNK)
            except BlockingIOError:
                return True
            except OSError:
                return False
            if not chunk:
                return False
            capture.append(chunk)
            reads += 1
        return True

    def _feed(self, fd: int, pending: memoryview) -> memoryview:
        """Write the next slice of stdin; return what is still unwritten.

        A child that closed its input end gets nothing more.

        Example:
            ```python
            pending = sandbox._feed(fd, memoryview(b"input"))
            ```
        """
        try:
            written = os.write(fd, pending[:_WRITE_CHUNK])
        except BlockingIOError:
            return pending
        except (BrokenPipeError, OSError):
            return pending[:0]
        return pending[written:]

    def _read_status(self, fd: int) -> str:
        """Return the launch failure the trampoline reported, or ``""`` after a clean exec.

        Called once the child has been reaped, so every report is already buffered.

        Example:
            ```python
            reason = sandbox._read_status(status_read)
            ```
        """
        os.set_blocking(fd, False)
        try:
            data = os.read(fd, _READ_CHUNK)
        except BlockingIOError:
            return ""
        return data.decode("utf-8", errors="replace").strip()

    def _is_executable(self, request: SandboxRequest) -> bool:
        """Check that the command resolves to an executable file before wrapping it.

        Paths are resolved against ``request.cwd``; bare names are looked up on PATH.

        Example:
            ```python
            ok = sandbox._is_executable(SandboxRequest(command=["/bin/true"]))
            ```
        """
        program = request.command[0]
        if os.sep not in program:
            return shutil.which(program) is not None
        candidate = Path(program)
        if not candidate.is_absolute() and request.cwd is not None:
            candidate = Path(request.cwd) / candidate
        return candidate.is_file() and os.access(candidate, os.X_OK)

    def _launch_failure(self, reason: str, started: float) -> ProcessOutcome:
        """Build the outcome reported when the child could not be started.

        Example:
            ```python
            outcome = sandbox._launch_failure("g++: No such file or directory", time.monotonic())
            ```
        """
        logger.warning("Failed to start process: %s", reason)
        return ProcessOutcome(
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            timed_out=False,
            output=f"failed to start process: {reason}\n".encode("utf-8", errors="replace"),
            error=f"failed to start process: {reason}",
            duration_seconds=time.monotonic() - started,
        )
