# kubeconsole/orchestration/adapters/cluster_tools.py

import logging
import re
from typing import Any, Dict, List, Optional

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field, field_validator

from kubeconsole.backends.infra_client import InfraClient
from kubeconsole.backends.kubectl_mcp import KubectlMcpRunner

_log = logging.getLogger(__name__)

# Safety caps
PAGE_SIZE_CAP = 100
_SHELL_META = re.compile(r"[;&|`$<>\n\\]")


class ListClustersArgs(BaseModel):
    name: Optional[str] = Field(default=None, description="Filter clusters by (partial) name")
    page: int = Field(default=1, ge=1, description="Page number, starting at 1")
    page_size: int = Field(default=20, ge=1, le=PAGE_SIZE_CAP, description="Clusters per page")


class ClusterDetailArgs(BaseModel):
    cluster_id: int = Field(ge=1, description="Numeric cluster id as returned by list_clusters")


class KubectlArgs(BaseModel):
    cluster: str = Field(min_length=1, description="Cluster name (kubeconfig context) to run against")
    command: str = Field(min_length=1, description="kubectl command, e.g. 'get pods -n default'")

    @field_validator("command")
    @classmethod
    def _plain_command(cls, value: str) -> str:
        value = value.strip()
        if not value or value == "kubectl":
            raise ValueError("command must not be empty")
        if _SHELL_META.search(value):
            raise ValueError("shell operators and substitutions are not allowed")
        return value


def _summarize_cluster(cluster: Dict[str, Any]) -> Dict[str, Any]:
    """Trim a backend cluster record to the fields worth showing in chat."""
    nodes = cluster.get("nodes") or []
    return {
        "id": cluster.get("id"),
        "name": cluster.get("name"),
        "status": cluster.get("status"),
        "level": cluster.get("level"),
        "provider": cluster.get("provider"),
        "region": cluster.get("region"),
        "api_server_address": cluster.get("api_server_address"),
        "node_number": cluster.get("node_number", len(nodes)),
        "nodes": [n.get("name") for n in nodes if isinstance(n, dict)],
    }


def build_cluster_tools(infra: InfraClient, kubectl: KubectlMcpRunner) -> List[BaseTool]:
    """
    Cluster tools bound to the given backends.
    """

    @tool("list_clusters", args_schema=ListClustersArgs)
    async def list_clusters(name: Optional[str] = None, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        """Get a page of the kubernetes clusters managed by the console (id, name, status, region)."""
        _log.info("Listing clusters (name=%s, page=%s)", name, page)
        payload = await infra.list_clusters(name=name, page=page, page_size=page_size)
        clusters = payload.get("clusters") or []
        return {
            "total": payload.get("total", len(clusters)),
            "clusters": [_summarize_cluster(c) for c in clusters if isinstance(c, dict)],
        }

    @tool("get_cluster_detail", args_schema=ClusterDetailArgs)
    async def get_cluster_detail(cluster_id: int) -> Dict[str, Any]:
        """Get the detail of one cluster: status, level, provider, region, API server and nodes."""
        _log.info("Fetching cluster detail for id=%s", cluster_id)
        payload = await infra.get_cluster(cluster_id)
        return _summarize_cluster(payload)

    @tool("run_kubectl", args_schema=KubectlArgs)
    async def run_kubectl(cluster: str, command: str) -> Dict[str, Any]:
        """Run a kubectl command against a cluster and return its output. Read-only verbs unless configured otherwise."""
        return await kubectl.execute(cluster=cluster, command=command)

    return [list_clusters, get_cluster_detail, run_kubectl]
