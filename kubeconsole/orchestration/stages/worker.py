# kubeconsole/orchestration/stages/worker.py

import asyncio
import logging
from typing import Any, List, Optional

from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage, SystemMessage
from langchain_core.tools import BaseTool

from kubeconsole.orchestration.adapters.tool_runner import Toolbox
from kubeconsole.orchestration.errors import AgentExhausted
from kubeconsole.orchestration.events import Emit, Token, ToolCalled, ToolReturned
from kubeconsole.orchestration.session_state import ConversationState, message_text
from kubeconsole.orchestration.stages.stage_base import BaseNode

_log = logging.getLogger(__name__)

EMPTY_ANSWER = "I could not produce an answer for this request."


class WorkerNode(BaseNode):
    """
    Domain agent: a bounded "ask model → call tools → ask again" loop.

    The delta always carries exactly one message, the final answer authored
    with the worker's node name. Tool failures, model failures and the
    iteration cap all end in an explanatory answer instead of an exception.
    """

    prompt_name: str = ""

    def __init__(
        self,
        llm: Any,
        tools: List[BaseTool],
        max_iterations: int = 5,
        model_timeout: float = 60.0,
        tool_timeout: float = 30.0,
    ) -> None:
        super().__init__(llm, model_timeout=model_timeout)
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.max_iterations = max_iterations
        self.toolbox = Toolbox(tools, timeout=tool_timeout)
        self.system_prompt = self._load_prompt(self.prompt_name)
        _log.info("Wiring %d tool(s) into LLM for %s.", len(self.toolbox.tools), self.node.value)
        self.llm_with_tools = self.llm.bind_tools(self.toolbox.as_list())

    async def _answer(self, text: str, emit: Emit, streamed: bool = False) -> ConversationState:
        """Build the delta; text the model did not stream itself goes out as a Token."""
        if not text.strip():
            text = EMPTY_ANSWER
            streamed = False
        if not streamed:
            await emit(Token(node=self.node, text=text))
        return {"messages": [AIMessage(content=text, name=self.node.value)]}

    async def _ask_model(self, transcript: List[BaseMessage], emit: Emit) -> AIMessage:
        """
        Stream one model reply, forwarding text chunks as Token events, and
        return the merged message (text plus any tool calls).
        """

        async def _collect() -> Optional[AIMessageChunk]:
            merged: Optional[AIMessageChunk] = None
            async for chunk in self.llm_with_tools.astream(transcript):
                text = message_text(chunk.content)
                if text:
                    await emit(Token(node=self.node, text=text))
                merged = chunk if merged is None else merged + chunk
            return merged

        merged = await asyncio.wait_for(_collect(), timeout=self.model_timeout)
        if merged is None:
            return AIMessage(content="")
        return AIMessage(
            content=message_text(merged.content),
            tool_calls=list(merged.tool_calls or []),
        )

    async def __call__(self, state: ConversationState, emit: Emit) -> ConversationState:
        _log.info("%s stage invoked with current state.", self.node.value)
        transcript: List[BaseMessage] = [SystemMessage(content=self.system_prompt)] + list(
            state.get("messages", [])
        )

        for iteration in range(1, self.max_iterations + 1):
            try:
                reply = await self._ask_model(transcript, emit)
            except asyncio.TimeoutError:
                _log.warning("%s model call timed out after %ss.", self.node.value, self.model_timeout)
                return await self._answer(
                    f"Sorry, the model did not respond within {self.model_timeout:g} seconds, "
                    "so I could not complete this request.",
                    emit,
                )
            except Exception as exc:
                _log.error("%s model call failed: %s", self.node.value, exc, exc_info=True)
                return await self._answer(
                    "Sorry, I could not reach the language model to complete this request.", emit
                )

            if not reply.tool_calls:
                _log.info("%s answered after %d round(s).", self.node.value, iteration)
                return await self._answer(message_text(reply.content), emit, streamed=True)

            transcript.append(reply)
            for call in reply.tool_calls:
                await emit(ToolCalled(node=self.node, tool=call.get("name", ""), args=dict(call.get("args") or {})))
                result = await self.toolbox.run_call(call)
                ok = getattr(result, "status", "success") != "error"
                await emit(ToolReturned(node=self.node, tool=call.get("name", ""), ok=ok))
                transcript.append(result)

        exhausted = AgentExhausted(self.node.value, self.max_iterations)
        _log.warning("%s", exhausted)
        return await self._answer(str(exhausted), emit)
