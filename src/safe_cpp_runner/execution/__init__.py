from .engine import ProcessRunner
from .sandbox import Sandbox
from .types import ProcessOutcome, ResourceLimits, SandboxRequest

__all__ = [
    "ProcessRunner",
    "Sandbox",
    "ProcessOutcome",
    "ResourceLimits",
    "SandboxRequest",
]
