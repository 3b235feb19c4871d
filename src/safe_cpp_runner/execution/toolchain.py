from __future__ import annotations

import os
import shutil
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ToolchainCapabilities:
    """Capability flags for the host the sandbox runs on.

    Example:
        ```python
        caps = ToolchainCapabilities(True, True, True)
        ```
    """

    compiler_available: bool
    supports_resource_limits: bool
    supports_process_groups: bool


def capabilities_for_toolchain(compiler: str) -> ToolchainCapabilities:
    """Check the host for the compiler and the POSIX process controls.

    Example:
        ```python
        caps = capabilities_for_toolchain("g++")
        ```
    """
    try:
        import resource  # noqa: F401
    except ImportError:  # pragma: no cover - platform specific
        has_rlimits = False
    else:
        has_rlimits = True
    return ToolchainCapabilities(
        compiler_available=shutil.which(compiler) is not None,
        supports_resource_limits=has_rlimits,
        supports_process_groups=hasattr(os, "killpg") and hasattr(os, "setsid"),
    )


def preflight_validate_toolchain(compiler: str) -> ToolchainCapabilities:
    """Fail fast when the host cannot compile or sandbox submissions.

    Example:
        ```python
        preflight_validate_toolchain("g++")
        ```
    """
    caps = capabilities_for_toolchain(compiler)
    if not caps.supports_process_groups:
        raise RuntimeError("Process groups are required; run safe-cpp-runner on a POSIX host")
    if not caps.supports_resource_limits:
        raise RuntimeError("The 'resource' module is unavailable; resource limits cannot be applied")
    if not caps.compiler_available:
        raise RuntimeError(
            f"Compiler '{compiler}' was not found. Install it or set [toolchain].compiler."
        )
    return caps
