# kubeconsole/backends/kubectl_mcp.py

import os
import logging
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters, stdio_client

from kubeconsole.orchestration.errors import KubectlError

_log = logging.getLogger(__name__)

READ_ONLY_VERBS = frozenset(
    {
        "get",
        "describe",
        "logs",
        "top",
        "explain",
        "api-resources",
        "api-versions",
        "version",
        "cluster-info",
        "events",
        "auth",
    }
)


def command_verb(command: str) -> str:
    """First non-flag token of a kubectl command ('kubectl' prefix optional)."""
    tokens = command.split()
    if tokens and tokens[0] == "kubectl":
        tokens = tokens[1:]
    for tok in tokens:
        if not tok.startswith("-"):
            return tok
    return ""


class KubectlMcpRunner:
    """
    Executes kubectl commands through a Kubernetes MCP server over stdio.

    A fresh server process is spawned per call, so nothing is shared between
    sessions.
    """

    def __init__(
        self,
        command: str = "npx",
        args: Optional[List[str]] = None,
        tool_name: str = "kubectl_generic",
        command_arg: str = "command",
        context_arg: str = "context",
        read_only: bool = True,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.command = command
        self.args = list(args or ["-y", "mcp-server-kubernetes"])
        self.tool_name = tool_name
        self.command_arg = command_arg
        self.context_arg = context_arg
        self.read_only = read_only
        self.env = dict(env or {})

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "KubectlMcpRunner":
        return cls(
            command=cfg.get("command", "npx"),
            args=cfg.get("args"),
            tool_name=cfg.get("tool_name", "kubectl_generic"),
            command_arg=cfg.get("command_arg", "command"),
            context_arg=cfg.get("context_arg", "context"),
            read_only=bool(cfg.get("read_only", True)),
            env=cfg.get("env"),
        )

    def check_allowed(self, command: str) -> None:
        verb = command_verb(command)
        if not verb:
            raise KubectlError("empty kubectl command")
        if self.read_only and verb not in READ_ONLY_VERBS:
            _log.warning("Refused mutating kubectl verb: %s", verb)
            raise KubectlError(
                f"'{verb}' is not allowed in read-only mode; permitted verbs: {', '.join(sorted(READ_ONLY_VERBS))}"
            )

    async def execute(self, cluster: str, command: str) -> Dict[str, Any]:
        """
        Run `command` against the kubeconfig context named `cluster`.

        Returns:
            Dict with keys: cluster, command, output.
        """
        self.check_allowed(command)
        full_command = command if command.split()[0] == "kubectl" else f"kubectl {command}"

        params = StdioServerParameters(
            command=self.command,
            args=self.args,
            env={**os.environ, **self.env},
        )
        arguments = {self.command_arg: full_command, self.context_arg: cluster}
        _log.info("Executing via MCP on cluster %s: %s", cluster, full_command)
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(self.tool_name, arguments)
        except KubectlError:
            raise
        except Exception as exc:
            _log.error("MCP kubectl call failed: %s", exc, exc_info=True)
            raise KubectlError(f"MCP server call failed: {exc}") from exc

        output = "\n".join(
            getattr(item, "text", "") for item in (result.content or []) if getattr(item, "type", "") == "text"
        )
        if result.isError:
            raise KubectlError(output or "kubectl command failed")
        return {"cluster": cluster, "command": full_command, "output": output}
