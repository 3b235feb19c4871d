from __future__ import annotations

from typing import Callable, Protocol

from .types import ProcessOutcome, SandboxRequest


class ProcessRunner(Protocol):
    def run(
        self,
        request: SandboxRequest,
        cancel: Callable[[], bool] | None = None,
    ) -> ProcessOutcome:
        """Run one command to completion and return its normalized outcome.

        Example:
            ```python
            outcome = runner.run(SandboxRequest(command=["true"], timeout_seconds=1))
            ```
        """
        ...
