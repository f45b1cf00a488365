# tests/test_graph_runtime.py

import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from conftest import FakeChatModel, answer, call_tool, route
from kubeconsole.orchestration.adapters.cluster_tools import build_cluster_tools
from kubeconsole.orchestration.adapters.service_tools import build_service_tools
from kubeconsole.orchestration.build_flow import assemble_graph
from kubeconsole.orchestration.errors import CheckpointError, RoutingError
from kubeconsole.orchestration.events import (
    Announcement,
    NodeFinished,
    NodeStarted,
    Token,
    ToolCalled,
    ToolReturned,
    TurnFailed,
    TurnFinished,
)
from kubeconsole.orchestration.graph_runtime import GraphDefinitionError, StateGraph
from kubeconsole.orchestration.session_state import Node, is_error_annotation
from kubeconsole.orchestration.stages.cluster_agent import ClusterNode
from kubeconsole.orchestration.stages.service_agent import ServiceNode
from kubeconsole.orchestration.stages.supervisor import SupervisorNode

SID = "session-1"


def _graph(llm, store, infra, kubectl, max_steps=12, workers=None):
    if workers is None:
        workers = {
            Node.CLUSTER: ClusterNode(llm, build_cluster_tools(infra, kubectl)),
            Node.SERVICE: ServiceNode(llm, build_service_tools(infra)),
        }
    return assemble_graph(SupervisorNode(llm), workers, store, max_steps=max_steps)


async def _collect(graph, session_id=SID, message=None):
    return [event async for event in graph.astream(session_id, message)]


def _started(events):
    return [e.node for e in events if isinstance(e, NodeStarted)]


# ──────────────────────────────────────────────────────────────────────────────
# Turn scenarios
# ──────────────────────────────────────────────────────────────────────────────

async def test_list_clusters_turn(store, infra, kubectl):
    llm = FakeChatModel(
        [
            route("ClusterAgent", "routing to ClusterAgent"),
            call_tool("list_clusters"),
            answer("You have 2 clusters: prod-eu and dev."),
            route("FINISH"),
        ]
    )
    events = await _collect(_graph(llm, store, infra, kubectl), message="list my clusters")

    kinds = [type(e) for e in events]
    assert kinds[:3] == [NodeStarted, Announcement, NodeFinished]
    assert events[1].text == "routing to ClusterAgent"
    assert kinds.index(ToolCalled) < kinds.index(ToolReturned) < kinds.index(Token)
    assert kinds[-1] is TurnFinished
    assert events[-1].answer == "You have 2 clusters: prod-eu and dev."
    assert _started(events) == [Node.SUPERVISOR, Node.CLUSTER, Node.SUPERVISOR]
    assert len([e for e in events if isinstance(e, ToolCalled)]) == 1
    assert "".join(e.text for e in events if isinstance(e, Token)) == "You have 2 clusters: prod-eu and dev."

    checkpoint = await store.load_checkpoint(SID)
    assert checkpoint.pending is None
    assert [(type(m), m.name) for m in checkpoint.state["messages"]] == [
        (HumanMessage, None),
        (AIMessage, "Supervisor"),
        (AIMessage, "ClusterAgent"),
    ]


async def test_ambiguous_input_is_answered_directly(store, infra, kubectl):
    llm = FakeChatModel([answer("Hello! I can help with clusters and services.")])
    events = await _collect(_graph(llm, store, infra, kubectl), message="hi there")

    assert _started(events) == [Node.SUPERVISOR]
    finished = [e for e in events if isinstance(e, NodeFinished)]
    assert finished[0].next_node is Node.FINISH
    assert events[-1] == TurnFinished(answer="Hello! I can help with clusters and services.")
    infra.list_clusters.assert_not_awaited()


async def test_supervisor_is_the_only_routing_point(store, infra, kubectl):
    llm = FakeChatModel(
        [
            route("ClusterAgent"),
            answer("prod-eu is healthy."),
            route("ServiceAgent"),
            answer("billing runs on prod-eu."),
            route("FINISH"),
        ]
    )
    events = await _collect(_graph(llm, store, infra, kubectl), message="is billing on a healthy cluster?")

    started = _started(events)
    assert started == [Node.SUPERVISOR, Node.CLUSTER, Node.SUPERVISOR, Node.SERVICE, Node.SUPERVISOR]
    for prev, cur in zip(started, started[1:]):
        assert Node.SUPERVISOR in (prev, cur)
    assert events[-1].answer == "billing runs on prod-eu."


async def test_step_cap_forces_finish(store, infra, kubectl):
    llm = FakeChatModel(
        responder=lambda messages: route("ClusterAgent")
        if not isinstance(messages[0].content, str) or "supervisor" in messages[0].content
        else answer("still looking")
    )
    events = await _collect(_graph(llm, store, infra, kubectl, max_steps=4), message="loop forever")

    assert len(_started(events)) == 4
    assert isinstance(events[-1], TurnFinished)
    checkpoint = await store.load_checkpoint(SID)
    last = checkpoint.state["messages"][-1]
    assert is_error_annotation(last)
    assert last.additional_kwargs["error_kind"] == "routing"
    assert checkpoint.pending is None


async def test_undeclared_route_halts_with_annotation(store, infra, kubectl):
    llm = FakeChatModel([route("ServiceAgent")])
    workers = {Node.CLUSTER: ClusterNode(llm, build_cluster_tools(infra, kubectl))}
    events = await _collect(_graph(llm, store, infra, kubectl, workers=workers), message="list services")

    assert _started(events) == [Node.SUPERVISOR]
    assert isinstance(events[-1], TurnFinished)
    messages = (await store.load_checkpoint(SID)).state["messages"]
    assert is_error_annotation(messages[-1])
    assert "ServiceAgent" in messages[-1].content


async def test_state_grows_monotonically_across_turns(store, infra, kubectl, monkeypatch):
    snapshots = []
    original = store.save_checkpoint

    async def recording_save(session_id, state, pending=None, thread_id=""):
        snapshots.append([m.content for m in state["messages"]])
        return await original(session_id, state, pending, thread_id)

    monkeypatch.setattr(store, "save_checkpoint", recording_save)
    llm = FakeChatModel(
        [
            route("ClusterAgent"),
            answer("2 clusters."),
            route("FINISH"),
            route("ServiceAgent"),
            answer("1 service."),
            route("FINISH"),
        ]
    )
    graph = _graph(llm, store, infra, kubectl)
    await _collect(graph, message="clusters?")
    await _collect(graph, message="services?")

    assert len(snapshots) == 8
    for earlier, later in zip(snapshots, snapshots[1:]):
        assert later[: len(earlier)] == earlier
    assert snapshots[-1][0] == "clusters?"
    assert "services?" in snapshots[-1]


# ──────────────────────────────────────────────────────────────────────────────
# Failure, cancellation and resume
# ──────────────────────────────────────────────────────────────────────────────

async def test_resume_continues_at_supervisor_without_replaying_worker(store, infra, kubectl):
    hang = asyncio.Event()
    script = [route("ClusterAgent"), call_tool("list_clusters"), answer("2 clusters.")]

    async def responder(_messages):
        if script:
            return script.pop(0)
        await hang.wait()

    llm = FakeChatModel(responder=responder)
    graph = _graph(llm, store, infra, kubectl)

    stream = graph.astream(SID, "list my clusters")
    async for event in stream:
        if isinstance(event, NodeStarted) and event.step == 3:
            break
    await stream.aclose()

    interrupted = await store.load_checkpoint(SID)
    assert interrupted.pending is Node.SUPERVISOR
    assert interrupted.state["messages"][-1].name == "ClusterAgent"

    resumed_llm = FakeChatModel([route("FINISH")])
    resumed = _graph(resumed_llm, store, infra, kubectl)
    events = await _collect(resumed)

    assert _started(events) == [Node.SUPERVISOR]
    assert events[-1].answer == "2 clusters."
    assert infra.list_clusters.await_count == 1
    assert len(resumed_llm.calls) == 1
    assert (await store.load_checkpoint(SID)).pending is None


async def test_closing_stream_abandons_node_in_flight(store, infra, kubectl):
    worker_started = asyncio.Event()

    async def responder(messages):
        if "supervisor" in messages[0].content:
            return route("ClusterAgent", "checking")
        worker_started.set()
        await asyncio.Event().wait()

    graph = _graph(FakeChatModel(responder=responder), store, infra, kubectl)
    stream = graph.astream(SID, "list my clusters")
    async for event in stream:
        if isinstance(event, NodeStarted) and event.node is Node.CLUSTER:
            break
    await asyncio.wait_for(worker_started.wait(), timeout=1)
    await stream.aclose()

    checkpoint = await store.load_checkpoint(SID)
    assert checkpoint.pending is Node.CLUSTER
    assert [m.name for m in checkpoint.state["messages"]] == [None, "Supervisor"]


async def test_node_failure_fails_turn_and_keeps_last_checkpoint(store, infra, kubectl):
    async def broken(state, emit):
        raise RuntimeError("worker crashed")

    llm = FakeChatModel([route("ClusterAgent")])
    graph = _graph(llm, store, infra, kubectl, workers={Node.CLUSTER: broken})
    events = await _collect(graph, message="list my clusters")

    assert isinstance(events[-1], TurnFailed)
    assert events[-1].error == "node"
    assert not any(isinstance(e, TurnFinished) for e in events)
    checkpoint = await store.load_checkpoint(SID)
    assert checkpoint.pending is Node.CLUSTER
    assert len(checkpoint.state["messages"]) == 2


async def test_checkpoint_failure_fails_turn(store, infra, kubectl, monkeypatch):
    original = store.save_checkpoint
    calls = {"n": 0}

    async def flaky_save(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise CheckpointError("checkpoint write failed: database is locked")
        return await original(*args, **kwargs)

    monkeypatch.setattr(store, "save_checkpoint", flaky_save)
    llm = FakeChatModel([route("ClusterAgent"), answer("never persisted")])
    events = await _collect(_graph(llm, store, infra, kubectl), message="list my clusters")

    assert events[-1] == TurnFailed(error="checkpoint", message="checkpoint write failed: database is locked")
    checkpoint = await store.load_checkpoint(SID)
    assert checkpoint.pending is Node.SUPERVISOR
    assert [m.content for m in checkpoint.state["messages"]] == ["list my clusters"]


async def test_hung_checkpoint_read_fails_turn(store, monkeypatch):
    async def stalled_load(*args, **kwargs):
        await asyncio.sleep(3600)

    monkeypatch.setattr(store, "load_checkpoint", stalled_load)
    llm = FakeChatModel()
    graph = assemble_graph(SupervisorNode(llm), {}, store, checkpoint_timeout=0.05)

    events = await asyncio.wait_for(_collect(graph, message="hi"), timeout=5)

    assert len(events) == 1
    assert events[0].error == "checkpoint"
    assert "timed out" in events[0].message
    assert llm.calls == []


async def test_hung_checkpoint_write_fails_turn(store, infra, kubectl, monkeypatch):
    original = store.save_checkpoint
    calls = {"n": 0}

    async def stalled_save(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            await asyncio.sleep(3600)
        return await original(*args, **kwargs)

    monkeypatch.setattr(store, "save_checkpoint", stalled_save)
    llm = FakeChatModel([route("ClusterAgent")])
    graph = assemble_graph(
        SupervisorNode(llm),
        {Node.CLUSTER: ClusterNode(llm, build_cluster_tools(infra, kubectl))},
        store,
        checkpoint_timeout=0.05,
    )

    events = await asyncio.wait_for(_collect(graph, message="list my clusters"), timeout=5)

    assert isinstance(events[-1], TurnFailed)
    assert events[-1].error == "checkpoint"
    assert "write" in events[-1].message
    checkpoint = await store.load_checkpoint(SID)
    assert checkpoint.pending is Node.SUPERVISOR


async def test_turns_on_one_session_are_serialized(store, infra, kubectl):
    async def echo(messages):
        await asyncio.sleep(0.01)
        return answer(f"echo: {messages[-2].content}")

    graph = _graph(FakeChatModel(responder=echo), store, infra, kubectl)
    first, second = await asyncio.gather(graph.ainvoke(SID, "one"), graph.ainvoke(SID, "two"))

    contents = [m.content for m in (await store.load_checkpoint(SID)).state["messages"]]
    assert contents in (
        ["one", "echo: one", "two", "echo: two"],
        ["two", "echo: two", "one", "echo: one"],
    )
    assert first["next"] is Node.FINISH and second["next"] is Node.FINISH


async def test_sessions_are_independent(store, infra, kubectl):
    llm = FakeChatModel(responder=lambda messages: answer(f"echo: {messages[-2].content}"))
    graph = _graph(llm, store, infra, kubectl)
    await asyncio.gather(graph.ainvoke("a", "alpha"), graph.ainvoke("b", "beta"))

    a = (await store.load_checkpoint("a")).state["messages"]
    b = (await store.load_checkpoint("b")).state["messages"]
    assert [m.content for m in a] == ["alpha", "echo: alpha"]
    assert [m.content for m in b] == ["beta", "echo: beta"]


# ──────────────────────────────────────────────────────────────────────────────
# Graph definition
# ──────────────────────────────────────────────────────────────────────────────

async def _noop(state, emit):
    return {}


def test_compile_requires_entry_point(store):
    g = StateGraph().add_node(Node.SUPERVISOR, _noop).add_edge(Node.SUPERVISOR, Node.FINISH)
    with pytest.raises(GraphDefinitionError):
        g.compile(store)


def test_compile_rejects_dangling_nodes_and_edges(store):
    g = StateGraph().add_node(Node.SUPERVISOR, _noop).add_node(Node.CLUSTER, _noop)
    g.add_edge(Node.SUPERVISOR, Node.SERVICE).set_entry_point(Node.SUPERVISOR)
    with pytest.raises(GraphDefinitionError):
        g.compile(store)

    g = StateGraph().add_node(Node.SUPERVISOR, _noop).add_node(Node.CLUSTER, _noop)
    g.add_edge(Node.SUPERVISOR, Node.FINISH).set_entry_point(Node.SUPERVISOR)
    with pytest.raises(GraphDefinitionError):
        g.compile(store)


def test_compile_rejects_non_positive_checkpoint_timeout(store):
    g = StateGraph().add_node(Node.SUPERVISOR, _noop).add_edge(Node.SUPERVISOR, Node.FINISH)
    g.set_entry_point(Node.SUPERVISOR)
    with pytest.raises(GraphDefinitionError):
        g.compile(store, checkpoint_timeout=0)
    assert g.compile(store, checkpoint_timeout=0.5).checkpoint_timeout == 0.5


def test_reserved_and_duplicate_nodes_are_rejected():
    with pytest.raises(GraphDefinitionError):
        StateGraph().add_node(Node.FINISH, _noop)
    with pytest.raises(GraphDefinitionError):
        StateGraph().add_node(Node.CLUSTER, _noop).add_node(Node.CLUSTER, _noop)


def test_conditional_edge_must_name_a_declared_node(store):
    g = StateGraph().add_node(Node.SUPERVISOR, _noop)
    g.add_conditional_edges(Node.SUPERVISOR, lambda state: state.get("next"))
    g.set_entry_point(Node.SUPERVISOR)
    graph = g.compile(store)

    assert graph.next_node(Node.SUPERVISOR, {"next": Node.FINISH}) is Node.FINISH
    with pytest.raises(RoutingError):
        graph.next_node(Node.SUPERVISOR, {"next": Node.CLUSTER})
    with pytest.raises(RoutingError):
        graph.next_node(Node.SUPERVISOR, {"next": "Nobody"})
    with pytest.raises(RoutingError):
        graph.next_node(Node.SUPERVISOR, {})


async def test_resume_without_checkpoint_is_an_empty_turn(store, infra, kubectl):
    llm = FakeChatModel()
    events = await _collect(_graph(llm, store, infra, kubectl))

    assert events == [TurnFinished(answer="")]
    assert llm.calls == []
