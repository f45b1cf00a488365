# kubeconsole/orchestration/events.py

"""
Events emitted while a turn executes, in the order the graph produces them.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Dict

from kubeconsole.orchestration.session_state import Node


@dataclass(frozen=True)
class GraphEvent:
    kind: ClassVar[str] = "event"


@dataclass(frozen=True)
class NodeStarted(GraphEvent):
    kind: ClassVar[str] = "node_start"
    node: Node
    step: int


@dataclass(frozen=True)
class Announcement(GraphEvent):
    """Supervisor-authored text: a routing notice or a direct answer."""
    kind: ClassVar[str] = "announcement"
    text: str
    route: Node


@dataclass(frozen=True)
class Token(GraphEvent):
    kind: ClassVar[str] = "token"
    node: Node
    text: str


@dataclass(frozen=True)
class ToolCalled(GraphEvent):
    kind: ClassVar[str] = "tool_call"
    node: Node
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolReturned(GraphEvent):
    kind: ClassVar[str] = "tool_result"
    node: Node
    tool: str
    ok: bool


@dataclass(frozen=True)
class NodeFinished(GraphEvent):
    """State transition: `node` ran, its delta was merged and checkpointed."""
    kind: ClassVar[str] = "node_end"
    node: Node
    step: int
    next_node: Node
    added_messages: int


@dataclass(frozen=True)
class TurnFinished(GraphEvent):
    kind: ClassVar[str] = "end"
    answer: str


@dataclass(frozen=True)
class TurnFailed(GraphEvent):
    kind: ClassVar[str] = "error"
    error: str
    message: str


Emit = Callable[[GraphEvent], Awaitable[None]]
