from coderflow.backends.api import ApiAgent, create_api_agent
from coderflow.backends.base import (
    AgentAbortedError,
    AgentAdapter,
    AgentError,
    AgentResult,
    AgentStartupError,
    AgentTimeoutError,
    CallOptions,
    ErrorKind,
    FatalStderrError,
    RateLimitedError,
    StructuredResult,
    TransientAgentError,
)
from coderflow.backends.cli import CliAgent, resolve_agent_name
from coderflow.backends.pool import AgentLease, AgentPool
from coderflow.backends.resilient import RetryFallbackAgent, RetryPolicy

__all__ = [
    "AgentAbortedError",
    "AgentAdapter",
    "AgentError",
    "AgentLease",
    "AgentPool",
    "AgentResult",
    "AgentStartupError",
    "AgentTimeoutError",
    "ApiAgent",
    "CallOptions",
    "CliAgent",
    "ErrorKind",
    "FatalStderrError",
    "RateLimitedError",
    "RetryFallbackAgent",
    "RetryPolicy",
    "StructuredResult",
    "TransientAgentError",
    "create_api_agent",
    "resolve_agent_name",
]
