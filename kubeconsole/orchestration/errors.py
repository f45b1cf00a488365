# kubeconsole/orchestration/errors.py

"""
Error taxonomy for the conversation orchestrator.

Tool and agent errors are absorbed into transcript content by the stages.
Control/persistence errors (checkpoint failures) end the current turn and are
surfaced to the caller as an explicit error event.
"""

from typing import Iterable, Optional


class ConsoleError(Exception):
    """Base class for every error raised by the orchestrator."""

    kind = "error"


class ValidationError(ConsoleError):
    """Malformed caller input; rejected before any graph execution."""

    kind = "validation"

    def __init__(self, message: str, fields: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.fields = list(fields or [])


class InvalidArgument(ValidationError):
    """Tool arguments that fail the tool's schema."""

    kind = "invalid_argument"

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"Invalid arguments for tool '{tool}': {message}")
        self.tool = tool


class RoutingError(ConsoleError):
    """The supervisor named an undeclared worker or no next step at all."""

    kind = "routing"


class ToolError(ConsoleError):
    """A tool adapter call failed (upstream failure, bad response)."""

    kind = "tool"

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"Tool '{tool}' failed: {message}")
        self.tool = tool


class ToolTimeout(ToolError):
    kind = "tool_timeout"

    def __init__(self, tool: str, timeout: float) -> None:
        super().__init__(tool, f"timed out after {timeout:g}s")
        self.timeout = timeout


class AgentExhausted(ConsoleError):
    """A worker's tool-call loop hit its iteration cap."""

    kind = "agent_exhausted"

    def __init__(self, agent: str, iterations: int) -> None:
        super().__init__(
            f"{agent} stopped after {iterations} tool-call rounds without reaching an answer. "
            "Try narrowing the request (a specific cluster, namespace or service)."
        )
        self.agent = agent
        self.iterations = iterations


class CheckpointError(ConsoleError):
    """The checkpoint datastore is unreachable or a read/write failed."""

    kind = "checkpoint"


class CheckpointConflict(CheckpointError):
    """A second checkpoint write for the same session while one is in flight."""

    kind = "checkpoint_conflict"


class SessionConflict(ConsoleError):
    kind = "session_conflict"


class SessionNotFound(ConsoleError):
    kind = "session_not_found"


class InfraError(ConsoleError):
    """The infrastructure REST backend returned an error or was unreachable."""

    kind = "infra"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class KubectlError(ConsoleError):
    """kubectl execution through the MCP server failed or was refused."""

    kind = "kubectl"
