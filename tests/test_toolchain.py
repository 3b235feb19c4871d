from __future__ import annotations

import sys

import pytest

from safe_cpp_runner.execution import toolchain
from safe_cpp_runner.execution.toolchain import (
    ToolchainCapabilities,
    capabilities_for_toolchain,
    preflight_validate_toolchain,
)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")
def test_posix_host_supports_process_controls() -> None:
    caps = capabilities_for_toolchain("definitely-not-a-compiler-xyz")

    assert caps.supports_resource_limits
    assert caps.supports_process_groups
    assert not caps.compiler_available


def test_preflight_reports_missing_compiler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        toolchain,
        "capabilities_for_toolchain",
        lambda compiler: ToolchainCapabilities(False, True, True),
    )
    with pytest.raises(RuntimeError, match="was not found"):
        preflight_validate_toolchain("g++")


def test_preflight_reports_missing_process_groups(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        toolchain,
        "capabilities_for_toolchain",
        lambda compiler: ToolchainCapabilities(True, True, False),
    )
    with pytest.raises(RuntimeError, match="Process groups"):
        preflight_validate_toolchain("g++")


def test_preflight_passes_with_python_as_compiler() -> None:
    caps = preflight_validate_toolchain(sys.executable)
    assert caps.compiler_available
