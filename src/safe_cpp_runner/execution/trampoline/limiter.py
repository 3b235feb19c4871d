"""Exec trampoline that applies resource ceilings to itself, then becomes the target.

Run as a script by the sandbox:

    python -I -S limiter.py --status-fd 5 --cpu 2 --as 268435456 --nofile 64 -- ./main.out

Limits are set in this process before ``execvp``, so they are in force before
the first instruction of the target program runs. Any failure before the
target starts is written to ``--status-fd``, which is close-on-exec: the
parent reads EOF with no data when the exec succeeded. This file lives in its
own directory and imports only the standard library, so running it as a script
never shadows a stdlib module.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
from typing import Any, Sequence

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None

LAUNCH_FAILURE_EXIT_CODE = 127


def _clamp(value: int, current_hard: int) -> int:
    """Clamp a requested ceiling to the inherited hard limit.

    Example:
        ```python
        _clamp(64, 1024)  # -> 64
        ```
    """
    if current_hard in (-1, _resource.RLIM_INFINITY):
        return value
    return min(value, current_hard)


def apply_limits(
    *,
    cpu_seconds: int | None,
    address_space_bytes: int | None,
    file_size_bytes: int | None,
    open_files: int | None,
) -> None:
    """Set soft and hard rlimits on the current process.

    Raises OSError or ValueError when a ceiling cannot be applied.

    Example:
        ```python
        apply_limits(cpu_seconds=2, address_space_bytes=None, file_size_bytes=None, open_files=64)
        ```
    """
    if _resource is None:
        raise OSError("resource limits are unavailable on this platform")
    requested = (
        (_resource.RLIMIT_CPU, cpu_seconds),
        (_resource.RLIMIT_AS, address_space_bytes),
        (_resource.RLIMIT_FSIZE, file_size_bytes),
        (_resource.RLIMIT_NOFILE, open_files),
    )
    for which, value in requested:
        if value is None:
            continue
        _, current_hard = _resource.getrlimit(which)
        target = _clamp(int(value), current_hard)
        _resource.setrlimit(which, (target, target))


def _build_parser() -> argparse.ArgumentParser:
    """Build the trampoline argument parser.

    Example:
        ```python
        args = _build_parser().parse_args(["--cpu", "2", "--", "./main.out"])
        ```
    """
    parser = argparse.ArgumentParser(prog="limiter", add_help=False)
    parser.add_argument("--status-fd", type=int, default=None)
    parser.add_argument("--cpu", type=int, default=None)
    parser.add_argument("--as", dest="address_space", type=int, default=None)
    parser.add_argument("--fsize", type=int, default=None)
    parser.add_argument("--nofile", type=int, default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser


def _report_failure(reason: str, status_fd: int | None) -> int:
    """Report a launch failure on stderr and the status descriptor.

    Example:
        ```python
        code = _report_failure("empty command", None)  # -> 127
        ```
    """
    message = f"failed to start process: {reason}"
    sys.stderr.write(message + "\n")
    sys.stderr.flush()
    if status_fd is not None:
        try:
            os.write(status_fd, reason.encode("utf-8", errors="replace"))
        except OSError:
            pass
    return LAUNCH_FAILURE_EXIT_CODE


def main(argv: Sequence[str] | None = None) -> int:
    """Apply limits and replace this process with the target command.

    Only returns when something went wrong before ``execvp`` succeeded.

    Example:
        ```python
        main(["--nofile", "64", "--", "/bin/true"])
        ```
    """
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    status_fd = args.status_fd
    if status_fd is not None:
        os.set_inheritable(status_fd, False)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        return _report_failure("empty command", status_fd)

    try:
        apply_limits(
            cpu_seconds=args.cpu,
            address_space_bytes=args.address_space,
            file_size_bytes=args.fsize,
            open_files=args.nofile,
        )
    except (OSError, ValueError) as exc:
        return _report_failure(f"resource limits not applied: {exc}", status_fd)

    # The interpreter ignores these at start-up and exec keeps ignored dispositions.
    for name in ("SIGPIPE", "SIGXFSZ"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, signal.SIG_DFL)

    sys.stdout.flush()
    try:
        os.execvp(command[0], command)
    except OSError as exc:
        return _report_failure(f"{command[0]}: {exc.strerror or exc}", status_fd)
    return LAUNCH_FAILURE_EXIT_CODE


if __name__ == "__main__":
    raise SystemExit(main())
