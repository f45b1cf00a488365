# kubeconsole/orchestration/stages/supervisor.py

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_core.tools import tool
from pydantic import BaseModel, Field

from kubeconsole.orchestration.errors import RoutingError
from kubeconsole.orchestration.events import Announcement, Emit
from kubeconsole.orchestration.session_state import (
    AGENT_MEMBERS,
    AgentMember,
    ConversationState,
    Node,
    error_annotation,
    is_error_annotation,
    members_summary,
    message_text,
    resolve_route,
    roster_names,
    route_options,
)
from kubeconsole.orchestration.stages.stage_base import BaseNode

_log = logging.getLogger(__name__)

ROUTE_TOOL_NAME = "route"
APOLOGY = "Sorry, I could not work out how to handle this request. Please try rephrasing it."


class RouteDecision(BaseModel):
    next: str = Field(description="The next role to act, or FINISH")
    message: str = Field(default="", description="This is the reply from the supervisor.")


@tool(ROUTE_TOOL_NAME, args_schema=RouteDecision)
def route_tool(next: str, message: str = "") -> Dict[str, str]:
    """Select the next role and supervisor reply message."""
    return {"next": next, "message": message}


class SupervisorNode(BaseNode):
    """
    Routing stage: one decision per step, which worker acts next or FINISH.

    Ambiguity, model failures and undeclared worker names all end in FINISH;
    the latter two leave an error annotation in the transcript.
    """

    node = Node.SUPERVISOR

    def __init__(
        self,
        llm: Any,
        members: Sequence[AgentMember] = AGENT_MEMBERS,
        model_timeout: float = 60.0,
    ) -> None:
        super().__init__(llm, model_timeout=model_timeout)
        self.members = tuple(members)
        self.roster = roster_names(self.members)

        system_prompt = self._load_prompt("supervisor.md")
        prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_prompt),
                MessagesPlaceholder("messages"),
                (
                    "human",
                    "Given the conversation above, who should act next?"
                    " Or should we FINISH? Select one of: {options}",
                ),
            ]
        )
        self.prompt = prompt.partial(
            options=", ".join(route_options(self.members)),
            members="\n".join(f"- {line}" for line in members_summary(self.members)),
        )
        _log.info("Wiring route tool into LLM for supervisor stage.")
        self.router = self.llm.bind_tools([route_tool], tool_choice=ROUTE_TOOL_NAME)

    async def _decide(self, messages: List[BaseMessage]) -> Tuple[Optional[Any], str]:
        """
        Ask the model for a routing decision.

        Returns:
            (raw next value or None when the model made no tool call, message text)
        """
        prompt_value = await self.prompt.ainvoke({"messages": messages})
        reply = await asyncio.wait_for(
            self.router.ainvoke(prompt_value.to_messages()), timeout=self.model_timeout
        )
        calls = [c for c in (getattr(reply, "tool_calls", None) or []) if c.get("name") == ROUTE_TOOL_NAME]
        if not calls:
            # No actionable choice: treat the reply text as a direct answer.
            return None, message_text(getattr(reply, "content", ""))
        args = calls[0].get("args") or {}
        return args.get("next"), str(args.get("message") or "")

    async def route(self, state: ConversationState) -> Tuple[Node, List[BaseMessage]]:
        """
        Decide the next node and the transcript entries that go with it.
        """
        messages = list(state.get("messages", []))
        try:
            raw_next, text = await self._decide(messages)
        except asyncio.TimeoutError:
            _log.warning("Supervisor model timed out after %ss; finishing turn.", self.model_timeout)
            return Node.FINISH, [
                error_annotation("model", f"supervisor decision timed out after {self.model_timeout:g}s")
            ]
        except Exception as exc:
            _log.error("Supervisor model call failed: %s", exc, exc_info=True)
            return Node.FINISH, [error_annotation("model", f"supervisor decision failed: {exc}")]

        if raw_next is None:
            entries: List[BaseMessage] = []
            if text.strip():
                entries.append(AIMessage(content=text, name=Node.SUPERVISOR.value))
            return Node.FINISH, entries

        try:
            nxt = resolve_route(raw_next, self.roster)
        except RoutingError as exc:
            _log.warning("Routing contract violation (%s); finishing turn.", exc)
            entries = [error_annotation("routing", str(exc))]
            if text.strip():
                entries.append(AIMessage(content=text, name=Node.SUPERVISOR.value))
            return Node.FINISH, entries

        if nxt is not Node.FINISH and not text.strip():
            text = f"routing to {nxt.value}"
        entries = [AIMessage(content=text, name=Node.SUPERVISOR.value)] if text.strip() else []
        return nxt, entries

    async def __call__(self, state: ConversationState, emit: Emit) -> ConversationState:
        _log.info("Supervisor stage invoked with %d message(s).", len(state.get("messages", [])))
        nxt, entries = await self.route(state)
        spoken = [e for e in entries if isinstance(e, AIMessage)]
        for entry in spoken:
            await emit(Announcement(text=message_text(entry.content), route=nxt))
        if not spoken and any(is_error_annotation(e) for e in entries):
            await emit(Announcement(text=APOLOGY, route=nxt))
        _log.info("Supervisor routed to %s", nxt.value)
        return {"next": nxt, "messages": entries}
