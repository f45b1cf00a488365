# kubeconsole/orchestration/session_state.py

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, TypedDict

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage

from kubeconsole.orchestration.errors import RoutingError


class Node(str, Enum):
    """
    Closed set of graph positions.

    START is the entry pseudo-state and FINISH the terminal sentinel; the rest
    are executable nodes. Worker values double as the author names written on
    their answers.
    """

    START = "__start__"
    SUPERVISOR = "Supervisor"
    CLUSTER = "ClusterAgent"
    SERVICE = "ServiceAgent"
    FINISH = "FINISH"

    def __str__(self) -> str:
        return self.value


# Spellings of the terminal sentinel used by model providers and older transcripts.
_FINISH_ALIASES = {"finish", "__end__", "end", "done"}


class ConversationState(TypedDict, total=False):
    """
    Conversation scratchpad threaded through the orchestration graph.

    Keys:
        messages : Rolling transcript (append-only; concatenated on merge).
        next     : Node chosen by the supervisor, FINISH when absent.
    """
    messages: List[BaseMessage]
    next: Node


@dataclass(frozen=True)
class AgentMember:
    name: Node
    description: str


AGENT_MEMBERS: Tuple[AgentMember, ...] = (
    AgentMember(
        name=Node.CLUSTER,
        description=(
            "Kubernetes cluster administrator: lists clusters, shows cluster details "
            "and runs kubectl commands to inspect or troubleshoot a cluster."
        ),
    ),
    AgentMember(
        name=Node.SERVICE,
        description="Service administrator: lists the services deployed on the clusters and where they run.",
    ),
)


def roster_names(members: Iterable[AgentMember] = AGENT_MEMBERS) -> FrozenSet[Node]:
    return frozenset(m.name for m in members)


def members_summary(members: Iterable[AgentMember] = AGENT_MEMBERS) -> List[str]:
    """One 'Name: description' line per worker, used in the supervisor prompt."""
    return [f"{m.name.value}: {m.description}" for m in members]


def route_options(members: Iterable[AgentMember] = AGENT_MEMBERS) -> List[str]:
    return [Node.FINISH.value] + [m.name.value for m in members]


def resolve_route(value: Any, roster: FrozenSet[Node]) -> Node:
    """
    Map a raw routing value onto a declared worker or FINISH.

    Raises:
        RoutingError: value is empty or names something outside the roster.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RoutingError("supervisor did not name a next step")

    if isinstance(value, Node):
        node = value
    else:
        raw = str(value).strip()
        if raw.lower() in _FINISH_ALIASES:
            return Node.FINISH
        try:
            node = Node(raw)
        except ValueError:
            matches = [n for n in roster if n.value.lower() == raw.lower()]
            if not matches:
                raise RoutingError(f"'{raw}' is not a declared worker") from None
            node = matches[0]

    if node is Node.FINISH or node in roster:
        return node
    raise RoutingError(f"'{node.value}' is not a routable worker")


def new_state(messages: Optional[List[BaseMessage]] = None) -> ConversationState:
    return {"messages": list(messages or []), "next": Node.FINISH}


def merge_state(state: ConversationState, delta: ConversationState) -> ConversationState:
    """
    Fold a node's output into the state: messages are concatenated, every
    other key is overwritten. Returns a new dict; inputs are left untouched.
    """
    merged: ConversationState = dict(state)  # type: ignore[assignment]
    merged["messages"] = list(state.get("messages", [])) + list(delta.get("messages", []))
    for key, value in delta.items():
        if key != "messages":
            merged[key] = value  # type: ignore[literal-required]
    merged.setdefault("next", Node.FINISH)
    return merged


def message_text(content: Any) -> str:
    """
    Flatten message content to plain text; providers may return a list of parts.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content)


def error_annotation(kind: str, text: str) -> SystemMessage:
    """System-authored transcript entry marking a recovered control-plane error."""
    return SystemMessage(
        content=f"[{kind} error] {text}",
        name=Node.SUPERVISOR.value,
        additional_kwargs={"error_kind": kind},
    )


def is_error_annotation(message: BaseMessage) -> bool:
    return isinstance(message, SystemMessage) and "error_kind" in message.additional_kwargs


def last_answer(messages: List[BaseMessage]) -> str:
    """Text of the last agent-authored message, or an empty string."""
    for msg in reversed(messages):
        if isinstance(msg, AIMessage):
            text = message_text(msg.content)
            if text.strip():
                return text
    return ""


def snapshot_payload(state: ConversationState, pending: Optional[Node]) -> Dict[str, Any]:
    """Checkpoint payload: transcript, routing field and the node that runs next."""
    return {
        "messages": list(state.get("messages", [])),
        "next": Node(state.get("next", Node.FINISH)).value,
        "pending": pending.value if pending is not None else None,
    }


def state_from_payload(payload: Dict[str, Any]) -> Tuple[ConversationState, Optional[Node]]:
    state: ConversationState = {
        "messages": list(payload.get("messages") or []),
        "next": Node(payload.get("next") or Node.FINISH.value),
    }
    pending_raw = payload.get("pending")
    pending = Node(pending_raw) if pending_raw else None
    return state, pending
