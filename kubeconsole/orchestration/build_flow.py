# kubeconsole/orchestration/build_flow.py

import logging
from typing import Any, Dict, List, Mapping

from langchain_core.tools import BaseTool

from kubeconsole.orchestration.graph_runtime import CompiledGraph, NodeHandler, StateGraph
from kubeconsole.orchestration.session_state import ConversationState, Node
from kubeconsole.orchestration.stages.cluster_agent import ClusterNode
from kubeconsole.orchestration.stages.service_agent import ServiceNode
from kubeconsole.orchestration.stages.supervisor import SupervisorNode

_log = logging.getLogger(__name__)


def _route_label(state: ConversationState) -> Node:
    return state.get("next", Node.FINISH)


def assemble_graph(
    supervisor: NodeHandler,
    workers: Mapping[Node, NodeHandler],
    store,
    max_steps: int = 12,
    checkpoint_timeout: float = 15.0,
) -> CompiledGraph:
    """
    Wire a supervisor and its workers into the orchestration graph.

    START → supervisor; supervisor → worker | FINISH (on state["next"]);
    every worker → supervisor.
    """
    _log.info("Composing orchestration graph ...")

    g = StateGraph()

    # Routing stage
    g.add_node(Node.SUPERVISOR, supervisor)

    # Workers report back to the supervisor
    for name, handler in workers.items():
        g.add_node(name, handler)
        g.add_edge(name, Node.SUPERVISOR)

    # Conditional routing
    g.add_conditional_edges(Node.SUPERVISOR, _route_label)

    # Entry point
    g.set_entry_point(Node.SUPERVISOR)

    graph = g.compile(store, max_steps=max_steps, checkpoint_timeout=checkpoint_timeout)
    _log.info("Orchestration compiled successfully.")
    return graph


def build_graph(
    llm: Any,
    store,
    cluster_tools: List[BaseTool],
    service_tools: List[BaseTool],
    agent_cfg: Dict[str, Any],
    checkpoint_timeout: float = 15.0,
) -> CompiledGraph:
    """
    Build the production graph: Supervisor, ClusterAgent and ServiceAgent
    sharing one chat model.
    """
    model_timeout = float(agent_cfg.get("model_timeout_seconds", 60))
    tool_timeout = float(agent_cfg.get("tool_timeout_seconds", 30))
    max_iterations = int(agent_cfg.get("max_iterations", 5))

    supervisor = SupervisorNode(llm, model_timeout=model_timeout)
    workers: Dict[Node, NodeHandler] = {
        Node.CLUSTER: ClusterNode(
            llm,
            cluster_tools,
            max_iterations=max_iterations,
            model_timeout=model_timeout,
            tool_timeout=tool_timeout,
        ),
        Node.SERVICE: ServiceNode(
            llm,
            service_tools,
            max_iterations=max_iterations,
            model_timeout=model_timeout,
            tool_timeout=tool_timeout,
        ),
    }
    return assemble_graph(
        supervisor,
        workers,
        store,
        max_steps=int(agent_cfg.get("max_steps", 12)),
        checkpoint_timeout=checkpoint_timeout,
    )
