from __future__ import annotations

from pathlib import Path

import pytest

from safe_cpp_runner import ResourceLimits, ServerConfig


def test_defaults_come_from_bundled_toml() -> None:
    config = ServerConfig()

    assert config.host == "127.0.0.1"
    assert config.port == 8080
    assert config.compiler == "g++"
    assert config.compiler_flags == ["-std=c++17", "-O2"]
    assert config.compile_timeout_seconds == 5
    assert config.run_timeout_seconds == 2
    assert config.storage_dir == "user_codes"
    assert config.cancel_on_disconnect is True
    assert config.resource_limits() == ResourceLimits(
        cpu_seconds=2,
        address_space_bytes=256 * 1024 * 1024,
        file_size_bytes=1024 * 1024,
        open_files=64,
    )


def test_default_flag_lists_are_not_shared() -> None:
    first = ServerConfig()
    first.compiler_flags.append("-Wall")
    assert ServerConfig().compiler_flags == ["-std=c++17", "-O2"]


def test_from_file_layers_partial_tables_over_defaults(tmp_path: Path) -> None:
    path = tmp_path / "runner.toml"
    path.write_text(
        "[server]\n"
        "port = 9090\n"
        "cancel_on_disconnect = false\n"
        "[toolchain]\n"
        'compiler = "clang++"\n'
        'compiler_flags = ["-std=c++20"]\n'
        "run_timeout_seconds = 0.5\n"
        "[limits]\n"
        "address_space_mb = 0\n"
        "open_files = 16\n",
        encoding="utf-8",
    )
    config = ServerConfig.from_file(str(path))

    assert config.port == 9090
    assert config.host == "127.0.0.1"
    assert config.cancel_on_disconnect is False
    assert config.compiler == "clang++"
    assert config.compiler_flags == ["-std=c++20"]
    assert config.run_timeout_seconds == 0.5
    assert config.compile_timeout_seconds == 5
    assert config.address_space_bytes is None
    assert config.open_files == 16
    assert config.cpu_seconds == 2
    assert config.config_path == str(path)


def test_missing_config_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Config file not found"):
        ServerConfig.from_file(str(tmp_path / "missing.toml"))


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ('[toolchain]\ncompiler_flags = "-O2"\n', "must be a list of strings"),
        ("[toolchain]\ncompiler_flags = [1]\n", "must contain only strings"),
        ('[server]\ncancel_on_disconnect = "yes"\n', "must be a boolean"),
        ('server = "x"\n', "must be a TOML table"),
        ("[server]\nport = 70000\n", "port"),
        ("[server]\nmax_workers = 0\n", "max_workers"),
        ("[toolchain]\nrun_timeout_seconds = 0\n", "run_timeout_seconds must be positive"),
    ],
)
def test_invalid_config_values_raise(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "runner.toml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError, match=message):
        ServerConfig.from_file(str(path))


def test_direct_construction_is_validated() -> None:
    with pytest.raises(ValueError, match="compiler"):
        ServerConfig(compiler=" ")
    with pytest.raises(ValueError, match="max_output_bytes"):
        ServerConfig(max_output_bytes=-1)
