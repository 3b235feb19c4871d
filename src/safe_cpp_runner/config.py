from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .execution.types import ResourceLimits

_MB = 1024 * 1024
_TABLES = ("server", "toolchain", "limits")


def _default_config_path() -> Path:
    """Return bundled default configuration TOML path.

    Example:
        ```python
        path = _default_config_path()
        ```
    """
    return Path(__file__).with_name("default_config.toml")


def _read_config_toml(path: Path) -> dict[str, dict[str, Any]]:
    """Read a configuration TOML file and return its known tables.

    Example:
        ```python
        raw = _read_config_toml(Path("/tmp/runner.toml"))
        ```
    """
    if not path.exists():
        return {
            "server": {
                "host": "127.0.0.1",
                "port": 8080,
                "max_workers": min(os.cpu_count() or 1, 4),
                "static_dir": "public",
                "storage_dir": "user_codes",
                "max_request_bytes": 512 * 1024,
                "read_timeout_seconds": 10,
                "cancel_on_disconnect": True,
            },
            "toolchain": {
                "compiler": "g++",
                "compiler_flags": ["-std=c++17", "-O2"],
                "compile_timeout_seconds": 5,
                "run_timeout_seconds": 2,
                "max_output_bytes": _MB,
            },
            "limits": {
                "cpu_seconds": 2,
                "address_space_mb": 256,
                "file_size_mb": 1,
                "open_files": 64,
            },
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    tables: dict[str, dict[str, Any]] = {}
    for name in _TABLES:
        table = raw.get(name, {})
        if not isinstance(table, dict):
            raise ValueError(f"'[{name}]' must be a TOML table")
        tables[name] = table
    return tables


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings config field.

    Example:
        ```python
        flags = _list_of_str(["-std=c++17", "-O2"], "compiler_flags")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _optional_limit(value: Any, scale: int = 1) -> int | None:
    """Convert a limit setting into a ceiling; zero or a missing value disables it.

    Example:
        ```python
        _optional_limit(256, scale=1024 * 1024)  # -> 268435456
        ```
    """
    if value is None or int(value) <= 0:
        return None
    return int(value) * scale


_DEFAULT_RAW = _read_config_toml(_default_config_path())
_DEFAULT_SERVER = _DEFAULT_RAW["server"]
_DEFAULT_TOOLCHAIN = _DEFAULT_RAW["toolchain"]
_DEFAULT_LIMITS = _DEFAULT_RAW["limits"]

DEFAULT_COMPILER_FLAGS = _list_of_str(_DEFAULT_TOOLCHAIN.get("compiler_flags"), "compiler_flags")


@dataclass(slots=True)
class ServerConfig:
    """Operational parameters for the runner server, pipeline and sandbox.

    Example:
        ```python
        config = ServerConfig(port=9090, run_timeout_seconds=3)
        ```
    """

    host: str = str(_DEFAULT_SERVER.get("host", "127.0.0.1"))
    port: int = int(_DEFAULT_SERVER.get("port", 8080))
    max_workers: int = int(_DEFAULT_SERVER.get("max_workers", 4))
    static_dir: str = str(_DEFAULT_SERVER.get("static_dir", "public"))
    storage_dir: str = str(_DEFAULT_SERVER.get("storage_dir", "user_codes"))
    max_request_bytes: int = int(_DEFAULT_SERVER.get("max_request_bytes", 512 * 1024))
    read_timeout_seconds: float = float(_DEFAULT_SERVER.get("read_timeout_seconds", 10))
    cancel_on_disconnect: bool = bool(_DEFAULT_SERVER.get("cancel_on_disconnect", True))
    compiler: str = str(_DEFAULT_TOOLCHAIN.get("compiler", "g++"))
    compiler_flags: list[str] = field(default_factory=lambda: DEFAULT_COMPILER_FLAGS.copy())
    compile_timeout_seconds: float = float(_DEFAULT_TOOLCHAIN.get("compile_timeout_seconds", 5))
    run_timeout_seconds: float = float(_DEFAULT_TOOLCHAIN.get("run_timeout_seconds", 2))
    max_output_bytes: int = int(_DEFAULT_TOOLCHAIN.get("max_output_bytes", _MB))
    cpu_seconds: int | None = _optional_limit(_DEFAULT_LIMITS.get("cpu_seconds", 2))
    address_space_bytes: int | None = _optional_limit(_DEFAULT_LIMITS.get("address_space_mb", 256), _MB)
    file_size_bytes: int | None = _optional_limit(_DEFAULT_LIMITS.get("file_size_mb", 1), _MB)
    open_files: int | None = _optional_limit(_DEFAULT_LIMITS.get("open_files", 64))
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate numeric settings after dataclass initialization.

        Example:
            ```python
            ServerConfig(port=8080)
            ```
        """
        if not 0 <= self.port <= 65535:
            raise ValueError("port must be between 0 and 65535")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.max_request_bytes < 1:
            raise ValueError("max_request_bytes must be positive")
        if self.max_output_bytes < 0:
            raise ValueError("max_output_bytes must be non-negative")
        for name in ("read_timeout_seconds", "compile_timeout_seconds", "run_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if not self.compiler.strip():
            raise ValueError("compiler must be a non-empty command")

    @classmethod
    def from_file(cls, config_path: str) -> "ServerConfig":
        """Create a config from a TOML file layered over the bundled defaults.

        Example:
            ```python
            config = ServerConfig.from_file("/etc/safe-cpp-runner.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Config file not found: {config_path}")
        raw = _read_config_toml(path)
        server = {**_DEFAULT_SERVER, **raw["server"]}
        toolchain = {**_DEFAULT_TOOLCHAIN, **raw["toolchain"]}
        limits = {**_DEFAULT_LIMITS, **raw["limits"]}
        cancel = server.get("cancel_on_disconnect", True)
        if not isinstance(cancel, bool):
            raise ValueError("'cancel_on_disconnect' must be a boolean")
        return cls(
            host=str(server.get("host", "127.0.0.1")),
            port=int(server.get("port", 8080)),
            max_workers=int(server.get("max_workers", 4)),
            static_dir=str(server.get("static_dir", "public")),
            storage_dir=str(server.get("storage_dir", "user_codes")),
            max_request_bytes=int(server.get("max_request_bytes", 512 * 1024)),
            read_timeout_seconds=float(server.get("read_timeout_seconds", 10)),
            cancel_on_disconnect=cancel,
            compiler=str(toolchain.get("compiler", "g++")),
            compiler_flags=_list_of_str(toolchain.get("compiler_flags"), "compiler_flags"),
            compile_timeout_seconds=float(toolchain.get("compile_timeout_seconds", 5)),
            run_timeout_seconds=float(toolchain.get("run_timeout_seconds", 2)),
            max_output_bytes=int(toolchain.get("max_output_bytes", _MB)),
            cpu_seconds=_optional_limit(limits.get("cpu_seconds")),
            address_space_bytes=_optional_limit(limits.get("address_space_mb"), _MB),
            file_size_bytes=_optional_limit(limits.get("file_size_mb"), _MB),
            open_files=_optional_limit(limits.get("open_files")),
            config_path=config_path,
        )

    def resource_limits(self) -> ResourceLimits:
        """Return the ceilings applied to the run phase.

        Example:
            ```python
            limits = ServerConfig().resource_limits()
            ```
        """
        return ResourceLimits(
            cpu_seconds=self.cpu_seconds,
            address_space_bytes=self.address_space_bytes,
            file_size_bytes=self.file_size_bytes,
            open_files=self.open_files,
        )
