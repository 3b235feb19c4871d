from __future__ import annotations

import os
import subprocess
import sys

import pytest

from safe_cpp_runner.execution.sandbox import limited_argv
from safe_cpp_runner.execution.trampoline import limiter
from safe_cpp_runner.execution.types import ResourceLimits

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX rlimits required")


def _run(argv: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(argv, capture_output=True, text=True, timeout=30, check=False)


def test_limits_survive_exec() -> None:
    limits = ResourceLimits(cpu_seconds=3, address_space_bytes=None, file_size_bytes=4096, open_files=20)
    code = (
        "import resource\n"
        "print(resource.getrlimit(resource.RLIMIT_NOFILE))\n"
        "print(resource.getrlimit(resource.RLIMIT_CPU))\n"
        "print(resource.getrlimit(resource.RLIMIT_FSIZE))\n"
    )
    proc = _run(limited_argv([sys.executable, "-c", code], limits))

    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines() == ["(20, 20)", "(3, 3)", "(4096, 4096)"]


def test_empty_command_is_a_launch_failure(capsys: pytest.CaptureFixture[str]) -> None:
    assert limiter.main(["--cpu", "1", "--"]) == limiter.LAUNCH_FAILURE_EXIT_CODE
    assert "failed to start process" in capsys.readouterr().err


def test_missing_program_is_a_launch_failure() -> None:
    proc = _run([sys.executable, "-I", "-S", limiter.__file__, "--nofile", "32", "--", "/nonexistent/program"])
    assert proc.returncode == limiter.LAUNCH_FAILURE_EXIT_CODE
    assert "failed to start process" in proc.stderr


def test_script_directory_does_not_shadow_stdlib_modules() -> None:
    proc = _run([sys.executable, limiter.__file__, "--", sys.executable, "-c", "print('ok')"])
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout == "ok\n"


def _run_with_status(command: list[str]) -> tuple[int, bytes]:
    read_fd, write_fd = os.pipe()
    try:
        proc = subprocess.run(
            [sys.executable, "-I", "-S", limiter.__file__, "--status-fd", str(write_fd), "--", *command],
            capture_output=True,
            timeout=30,
            check=False,
            pass_fds=(write_fd,),
        )
    finally:
        os.close(write_fd)
    try:
        report = os.read(read_fd, 4096)
    finally:
        os.close(read_fd)
    return proc.returncode, report


def test_status_descriptor_carries_exec_failure() -> None:
    returncode, report = _run_with_status(["/nonexistent/program"])
    assert returncode == limiter.LAUNCH_FAILURE_EXIT_CODE
    assert report.startswith(b"/nonexistent/program: ")


def test_status_descriptor_is_empty_after_successful_exec() -> None:
    returncode, report = _run_with_status(["/bin/true"])
    assert returncode == 0
    assert report == b""


def test_limit_above_hard_ceiling_is_clamped() -> None:
    import resource

    _, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    if hard == resource.RLIM_INFINITY:
        pytest.skip("no finite descriptor ceiling to clamp against")
    assert limiter._clamp(hard + 100, hard) == hard
    assert limiter._clamp(8, hard) == 8
