from .config import ServerConfig
from .execution.sandbox import Sandbox
from .execution.types import ProcessOutcome, ResourceLimits, SandboxRequest
from .pipeline import CompileFailed, Completed, ExecutionPipeline, PipelineResult
from .server import ConnectionHandler, RunnerServer
from .snippets import SnippetStore

__all__ = [
    "ServerConfig",
    "Sandbox",
    "ProcessOutcome",
    "ResourceLimits",
    "SandboxRequest",
    "CompileFailed",
    "Completed",
    "ExecutionPipeline",
    "PipelineResult",
    "ConnectionHandler",
    "RunnerServer",
    "SnippetStore",
]
