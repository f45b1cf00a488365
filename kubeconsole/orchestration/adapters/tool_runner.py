# kubeconsole/orchestration/adapters/tool_runner.py

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping

from langchain_core.messages import ToolMessage
from langchain_core.messages.tool import ToolCall
from langchain_core.tools import BaseTool
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from kubeconsole.orchestration.errors import ConsoleError, InvalidArgument, ToolError, ToolTimeout

_log = logging.getLogger(__name__)


def _render(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class Toolbox:
    """
    Schema-validated, timeout-bounded access to a worker's tools.

    `invoke` is the adapter contract (result or ToolError/InvalidArgument);
    `run_call` wraps it for the agent loop and never raises: failures come
    back as a ToolMessage with status='error'.
    """

    def __init__(self, tools: Iterable[BaseTool], timeout: float = 30.0) -> None:
        self.tools: Dict[str, BaseTool] = {t.name: t for t in tools}
        self.timeout = timeout

    def __contains__(self, name: str) -> bool:
        return name in self.tools

    def as_list(self) -> List[BaseTool]:
        return list(self.tools.values())

    def validate(self, name: str, args: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Check `args` against the tool's schema and return the normalized
        argument dict (defaults filled in).
        """
        tool = self.tools.get(name)
        if tool is None:
            raise InvalidArgument(name, "unknown tool")
        schema = tool.args_schema
        if schema is None or not (isinstance(schema, type) and issubclass(schema, BaseModel)):
            return dict(args)
        try:
            return schema.model_validate(dict(args)).model_dump()
        except PydanticValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
            )
            raise InvalidArgument(name, problems) from exc

    async def invoke(self, name: str, args: Mapping[str, Any]) -> Any:
        """
        Validate and execute one tool call.

        Raises:
            InvalidArgument: schema validation failed; the tool was not called.
            ToolTimeout: the call exceeded the configured timeout.
            ToolError: the tool (or its backend) failed.
        """
        validated = self.validate(name, args)
        tool = self.tools[name]
        _log.info("Invoking tool %s", name)
        try:
            return await asyncio.wait_for(tool.ainvoke(validated), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            _log.warning("Tool %s timed out after %ss", name, self.timeout)
            raise ToolTimeout(name, self.timeout) from exc
        except ConsoleError as exc:
            _log.warning("Tool %s failed: %s", name, exc)
            raise ToolError(name, str(exc)) from exc
        except Exception as exc:
            _log.error("Tool %s raised unexpectedly: %s", name, exc, exc_info=True)
            raise ToolError(name, f"{type(exc).__name__}: {exc}") from exc

    async def run_call(self, call: ToolCall) -> ToolMessage:
        """Execute a model-issued tool call and wrap the outcome as a ToolMessage."""
        name = call.get("name", "")
        call_id = call.get("id") or name
        try:
            result = await self.invoke(name, call.get("args") or {})
        except ConsoleError as exc:
            return ToolMessage(
                content=f"ERROR: {exc}",
                tool_call_id=call_id,
                name=name,
                status="error",
                additional_kwargs={"error_kind": exc.kind},
            )
        return ToolMessage(content=_render(result), tool_call_id=call_id, name=name)
