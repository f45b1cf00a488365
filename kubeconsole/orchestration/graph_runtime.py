# kubeconsole/orchestration/graph_runtime.py

"""
Step-wise interpreter for the supervisor/worker graph.

Each step looks up the handler for the current node, awaits it, merges the
returned delta into the state (messages concatenated, other keys
overwritten), resolves the next node from the transition table and persists
a checkpoint carrying that next node. A turn ends when FINISH is reached.
"""

import asyncio
import contextlib
import logging
import weakref
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from langchain_core.messages import HumanMessage

from kubeconsole.orchestration.errors import CheckpointError, ConsoleError, RoutingError
from kubeconsole.orchestration.events import (
    Emit,
    GraphEvent,
    NodeFinished,
    NodeStarted,
    TurnFailed,
    TurnFinished,
)
from kubeconsole.orchestration.session_state import (
    ConversationState,
    Node,
    error_annotation,
    last_answer,
    merge_state,
    new_state,
)

_log = logging.getLogger(__name__)

NodeHandler = Callable[[ConversationState, Emit], Awaitable[ConversationState]]
Router = Callable[[ConversationState], Union[Node, str, None]]

_STREAM_END = object()


def _last_human_index(state: ConversationState) -> int:
    messages = state.get("messages", [])
    for idx in range(len(messages) - 1, -1, -1):
        if isinstance(messages[idx], HumanMessage):
            return idx
    return len(messages)


class GraphDefinitionError(ValueError):
    """The node/edge wiring is inconsistent; raised at compile time."""


class _SessionLocks:
    """Per-session turn mutexes; entries disappear once no turn holds them."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


class StateGraph:
    """
    Builder for the orchestration graph: nodes, plain edges and conditional
    edges keyed on a state field. `compile()` validates the wiring and
    returns the executable CompiledGraph.
    """

    def __init__(self) -> None:
        self.nodes: Dict[Node, NodeHandler] = {}
        self.edges: Dict[Node, Node] = {}
        self.branches: Dict[Node, Router] = {}

    def add_node(self, name: Node, handler: NodeHandler) -> "StateGraph":
        if name in (Node.START, Node.FINISH):
            raise GraphDefinitionError(f"{name.value} is reserved")
        if name in self.nodes:
            raise GraphDefinitionError(f"node {name.value} already declared")
        self.nodes[name] = handler
        return self

    def add_edge(self, source: Node, target: Node) -> "StateGraph":
        if source in self.edges or source in self.branches:
            raise GraphDefinitionError(f"node {source.value} already has an outgoing edge")
        self.edges[source] = target
        return self

    def add_conditional_edges(self, source: Node, router: Router) -> "StateGraph":
        if source in self.edges or source in self.branches:
            raise GraphDefinitionError(f"node {source.value} already has an outgoing edge")
        self.branches[source] = router
        return self

    def set_entry_point(self, node: Node) -> "StateGraph":
        return self.add_edge(Node.START, node)

    def compile(self, store, max_steps: int = 12, checkpoint_timeout: float = 15.0) -> "CompiledGraph":
        if Node.START not in self.edges:
            raise GraphDefinitionError("graph has no entry point")
        for source, target in self.edges.items():
            if source is not Node.START and source not in self.nodes:
                raise GraphDefinitionError(f"edge from undeclared node {source.value}")
            if target is not Node.FINISH and target not in self.nodes:
                raise GraphDefinitionError(f"edge to undeclared node {target.value}")
        for source in self.branches:
            if source not in self.nodes:
                raise GraphDefinitionError(f"conditional edge from undeclared node {source.value}")
        for name in self.nodes:
            if name not in self.edges and name not in self.branches:
                raise GraphDefinitionError(f"node {name.value} has no outgoing edge")
        if max_steps < 1:
            raise GraphDefinitionError("max_steps must be at least 1")
        if checkpoint_timeout <= 0:
            raise GraphDefinitionError("checkpoint_timeout must be positive")
        _log.info("Graph compiled with nodes: %s", ", ".join(n.value for n in self.nodes))
        return CompiledGraph(
            dict(self.nodes), dict(self.edges), dict(self.branches), store, max_steps, checkpoint_timeout
        )


class CompiledGraph:
    """
    Executable graph bound to a checkpoint store.

    - `astream(session_id, message)` runs one turn and yields GraphEvents
    - `astream(session_id)` resumes an interrupted turn from its checkpoint
    - `ainvoke(...)` runs a turn to completion and returns the final state
    """

    def __init__(
        self,
        nodes: Dict[Node, NodeHandler],
        edges: Dict[Node, Node],
        branches: Dict[Node, Router],
        store,
        max_steps: int,
        checkpoint_timeout: float = 15.0,
    ) -> None:
        self.nodes = nodes
        self.edges = edges
        self.branches = branches
        self.store = store
        self.max_steps = max_steps
        self.checkpoint_timeout = checkpoint_timeout
        self._locks = _SessionLocks()

    @property
    def entry(self) -> Node:
        return self.edges[Node.START]

    # ──────────────────────────────────────────────────────────────────────────
    # Transitions
    # ──────────────────────────────────────────────────────────────────────────
    def next_node(self, current: Node, state: ConversationState) -> Node:
        """
        Resolve the node that follows `current`.

        Raises:
            RoutingError: the conditional edge produced nothing or an
                undeclared node.
        """
        if current in self.edges:
            return self.edges[current]
        router = self.branches[current]
        raw = router(state)
        if raw is None or raw == "":
            raise RoutingError(f"{current.value} left the next step undefined")
        try:
            target = raw if isinstance(raw, Node) else Node(raw)
        except ValueError:
            raise RoutingError(f"'{raw}' is not a declared node") from None
        if target is not Node.FINISH and target not in self.nodes:
            raise RoutingError(f"'{target.value}' is not a declared node")
        return target

    # ──────────────────────────────────────────────────────────────────────────
    # Execution
    # ──────────────────────────────────────────────────────────────────────────
    async def _persist(self, session_id: str, state: ConversationState, pending: Optional[Node]) -> None:
        # A write that has started completes even if the turn is cancelled.
        write = asyncio.ensure_future(self.store.save_checkpoint(session_id, state, pending))
        try:
            await asyncio.wait_for(asyncio.shield(write), timeout=self.checkpoint_timeout)
        except asyncio.TimeoutError:
            write.cancel()
            raise CheckpointError(
                f"checkpoint write for {session_id} timed out after {self.checkpoint_timeout:g}s"
            ) from None
        except asyncio.CancelledError:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(write, timeout=self.checkpoint_timeout)
            raise

    async def _load(self, session_id: str):
        try:
            return await asyncio.wait_for(self.store.load_checkpoint(session_id), timeout=self.checkpoint_timeout)
        except asyncio.TimeoutError:
            raise CheckpointError(
                f"checkpoint read for {session_id} timed out after {self.checkpoint_timeout:g}s"
            ) from None

    async def _prepare(self, session_id: str, message: Optional[str]):
        checkpoint = await self._load(session_id)
        state = checkpoint.state if checkpoint is not None else new_state()

        if message is None:
            position = checkpoint.pending if checkpoint is not None else None
            return state, position

        # A new message always starts from the entry node on the stored transcript.
        state = merge_state(state, {"messages": [HumanMessage(content=message)], "next": Node.FINISH})
        position = self.entry
        await self._persist(session_id, state, position)
        return state, position

    async def _drive(self, session_id: str, message: Optional[str], emit: Emit) -> ConversationState:
        async with self._locks.get(session_id):
            try:
                state, position = await self._prepare(session_id, message)
            except CheckpointError as exc:
                _log.error("Could not load/record turn input for %s: %s", session_id, exc)
                await emit(TurnFailed(error=exc.kind, message=str(exc)))
                return new_state()

            turn_start = _last_human_index(state)
            step = 0
            while position is not None and position is not Node.FINISH:
                if step >= self.max_steps:
                    _log.warning("Session %s hit the %d-step cap; finishing turn.", session_id, self.max_steps)
                    state = merge_state(
                        state,
                        {
                            "messages": [
                                error_annotation("routing", f"turn stopped after {self.max_steps} steps")
                            ],
                            "next": Node.FINISH,
                        },
                    )
                    try:
                        await self._persist(session_id, state, None)
                    except CheckpointError as exc:
                        await emit(TurnFailed(error=exc.kind, message=str(exc)))
                        return state
                    break

                step += 1
                await emit(NodeStarted(node=position, step=step))
                handler = self.nodes[position]
                try:
                    delta = await handler(state, emit)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    _log.error("Node %s failed in session %s: %s", position.value, session_id, exc, exc_info=True)
                    kind = exc.kind if isinstance(exc, ConsoleError) else "node"
                    await emit(TurnFailed(error=kind, message=f"{position.value} failed: {exc}"))
                    return state

                merged = merge_state(state, delta or {})
                try:
                    target = self.next_node(position, merged)
                except RoutingError as exc:
                    _log.warning("Routing error after %s: %s", position.value, exc)
                    merged = merge_state(
                        merged, {"messages": [error_annotation("routing", str(exc))], "next": Node.FINISH}
                    )
                    target = Node.FINISH

                try:
                    await self._persist(session_id, merged, target if target is not Node.FINISH else None)
                except CheckpointError as exc:
                    _log.error("Checkpoint failed after %s in %s: %s", position.value, session_id, exc)
                    await emit(TurnFailed(error=exc.kind, message=str(exc)))
                    return state

                added = len(merged.get("messages", [])) - len(state.get("messages", []))
                await emit(NodeFinished(node=position, step=step, next_node=target, added_messages=added))
                state, position = merged, target

            answer = last_answer(state.get("messages", [])[turn_start:])
            await emit(TurnFinished(answer=answer))
            return state

    async def astream(self, session_id: str, message: Optional[str] = None) -> AsyncIterator[GraphEvent]:
        """
        Run (or resume) a turn and yield its events in execution order.

        Closing the iterator early cancels the turn: the node in flight is
        abandoned unmerged and the last checkpoint stays as it was.
        """
        queue: "asyncio.Queue[object]" = asyncio.Queue()

        async def _emit(event: GraphEvent) -> None:
            queue.put_nowait(event)

        task = asyncio.create_task(self._drive(session_id, message, _emit))
        task.add_done_callback(lambda _t: queue.put_nowait(_STREAM_END))
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    break
                yield item  # type: ignore[misc]
            await task
        finally:
            if not task.done():
                _log.info("Stream for session %s closed early; cancelling turn.", session_id)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def ainvoke(self, session_id: str, message: Optional[str] = None) -> ConversationState:
        """Run a turn without streaming and return the final state."""
        events: List[GraphEvent] = []

        async def _collect(event: GraphEvent) -> None:
            events.append(event)

        state = await self._drive(session_id, message, _collect)
        failures = [e for e in events if isinstance(e, TurnFailed)]
        if failures:
            _log.warning("Turn for %s ended with error: %s", session_id, failures[-1].message)
        return state
