# kubeconsole/orchestration/run_once.py

import logging
from typing import Callable, Optional

from kubeconsole.orchestration.events import (
    Announcement,
    NodeStarted,
    Token,
    ToolCalled,
    TurnFailed,
    TurnFinished,
)
from kubeconsole.orchestration.graph_runtime import CompiledGraph

_log = logging.getLogger(__name__)


def _fmt_step(content: str) -> str:
    """Lightweight step divider for streamed graph output."""
    bar = "─" * 72
    return f"\n{bar}\n{content}\n{bar}\n"


async def run_chat_once(
    graph: CompiledGraph,
    session_id: str,
    question: Optional[str],
    on_text: Optional[Callable[[str], None]] = None,
) -> str:
    """
    Execute a single turn of the agent graph and return the final answer text.

    Args:
        graph: Compiled orchestration graph.
        session_id: Conversation the turn belongs to.
        question: User's input prompt; None resumes an interrupted turn.
        on_text: Optional sink for progress output (announcements, tokens,
            tool calls) while the turn runs.

    Returns:
        Final assistant answer, or an explanatory error string.
    """
    _log.info("Starting single-turn graph execution for session %s.", session_id)
    sink = on_text or (lambda _text: None)
    answer: Optional[str] = None
    failure: Optional[TurnFailed] = None

    async for event in graph.astream(session_id, question):
        if isinstance(event, NodeStarted):
            _log.debug("Step %d: %s", event.step, event.node.value)
        elif isinstance(event, Announcement):
            sink(_fmt_step(event.text))
        elif isinstance(event, Token):
            sink(event.text)
        elif isinstance(event, ToolCalled):
            sink(f"\n[{event.node.value} → {event.tool}]\n")
        elif isinstance(event, TurnFailed):
            failure = event
            sink(f"\nError ({event.error}): {event.message}\n")
        elif isinstance(event, TurnFinished):
            answer = event.answer

    _log.info("Graph execution completed; delivering final response.")
    if failure is not None:
        return f"Error ({failure.error}): {failure.message}"
    return answer or "No response was produced by the agent."
