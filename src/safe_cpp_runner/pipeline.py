from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Union

from .config import ServerConfig
from .errors import InternalFailure
from .execution.engine import ProcessRunner
from .execution.sandbox import Sandbox
from .execution.types import ProcessOutcome, SandboxRequest

logger = logging.getLogger(__name__)

SOURCE_NAME = "main.cpp"
BINARY_NAME = "main.out"


@dataclass(frozen=True, slots=True)
class CompileFailed:
    """The toolchain rejected the submission; ``output`` holds its diagnostics.

    Example:
        ```python
        result = CompileFailed(output="main.cpp:1:1: error: ...")
        ```
    """

    output: str


@dataclass(frozen=True, slots=True)
class Completed:
    """The binary was built and run (to exit, signal death or timeout).

    Example:
        ```python
        result = Completed(exit_code=0, timed_out=False, output="42\\n")
        ```
    """

    exit_code: int
    timed_out: bool
    output: str


PipelineResult = Union[CompileFailed, Completed]


def _decode(data: bytes) -> str:
    """Decode captured process output, replacing invalid UTF-8.

    Example:
        ```python
        _decode(b"ok\\xff")  # -> "ok\\ufffd"
        ```
    """
    return data.decode("utf-8", errors="replace")


class ExecutionPipeline:
    """Compile a C++ submission, then run the produced binary under limits.

    Every call works in its own temporary directory, so concurrent calls never
    share a source or binary path.

    Example:
        ```python
        pipeline = ExecutionPipeline(ServerConfig())
        result = pipeline.execute("int main() { return 3; }", "")
        ```
    """

    def __init__(self, config: ServerConfig, sandbox: ProcessRunner | None = None) -> None:
        """Bind the pipeline to a config and a process runner.

        Example:
            ```python
            pipeline = ExecutionPipeline(ServerConfig(), sandbox=Sandbox())
            ```
        """
        self._config = config
        self._sandbox: ProcessRunner = sandbox or Sandbox(max_output_bytes=config.max_output_bytes)

    def execute(
        self,
        code: str,
        stdin: str = "",
        cancel: Callable[[], bool] | None = None,
    ) -> PipelineResult:
        """Run the compile phase and, only if it succeeds, the run phase.

        Raises InternalFailure when a process could not be started at all.

        Example:
            ```python
            result = pipeline.execute(source, "3 4\\n")
            ```
        """
        with tempfile.TemporaryDirectory(prefix="safe-cpp-runner-") as workspace:
            root = Path(workspace)
            source = root / SOURCE_NAME
            binary = root / BINARY_NAME
            try:
                source.write_text(code, encoding="utf-8")
            except OSError as exc:
                raise InternalFailure(f"failed to write source file: {exc}") from exc

            compile_outcome = self._compile(source, binary, cancel)
            if not compile_outcome.succeeded:
                output = _decode(compile_outcome.output)
                if compile_outcome.timed_out:
                    output += (
                        f"\ncompilation timed out after {self._config.compile_timeout_seconds:g}s\n"
                    )
                logger.info(
                    "Compilation failed exit_code=%s timed_out=%s",
                    compile_outcome.exit_code,
                    compile_outcome.timed_out,
                )
                return CompileFailed(output=output)

            run_outcome = self._run(binary, stdin, cancel)
            return Completed(
                exit_code=run_outcome.exit_code,
                timed_out=run_outcome.timed_out,
                output=_decode(run_outcome.output),
            )

    def _compile(
        self,
        source: Path,
        binary: Path,
        cancel: Callable[[], bool] | None,
    ) -> ProcessOutcome:
        """Invoke the compiler without resource limits.

        Example:
            ```python
            outcome = pipeline._compile(Path("main.cpp"), Path("main.out"), None)
            ```
        """
        command = [
            self._config.compiler,
            str(source),
            *self._config.compiler_flags,
            "-o",
            str(binary),
        ]
        outcome = self._sandbox.run(
            SandboxRequest(
                command=command,
                timeout_seconds=self._config.compile_timeout_seconds,
                cwd=source.parent,
            ),
            cancel,
        )
        self._raise_on_infrastructure_error(outcome, "compile")
        return outcome

    def _run(
        self,
        binary: Path,
        stdin: str,
        cancel: Callable[[], bool] | None,
    ) -> ProcessOutcome:
        """Invoke the built binary with the configured ceilings.

        Example:
            ```python
            outcome = pipeline._run(Path("/tmp/x/main.out"), "5\\n", None)
            ```
        """
        outcome = self._sandbox.run(
            SandboxRequest(
                command=[str(binary)],
                stdin=stdin.encode("utf-8"),
                timeout_seconds=self._config.run_timeout_seconds,
                limits=self._config.resource_limits(),
                cwd=binary.parent,
            ),
            cancel,
        )
        self._raise_on_infrastructure_error(outcome, "run")
        if outcome.timed_out:
            logger.info("Run timed out after %gs", self._config.run_timeout_seconds)
        return outcome

    def _raise_on_infrastructure_error(self, outcome: ProcessOutcome, stage: str) -> None:
        """Turn a launch failure reported by the sandbox into InternalFailure.

        Example:
            ```python
            pipeline._raise_on_infrastructure_error(outcome, "compile")
            ```
        """
        if outcome.error is not None:
            raise InternalFailure(f"{stage} stage: {outcome.error}")
