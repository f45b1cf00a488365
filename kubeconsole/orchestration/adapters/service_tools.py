# kubeconsole/orchestration/adapters/service_tools.py

import logging
from typing import Any, Dict, List, Optional

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from kubeconsole.backends.infra_client import InfraClient
from kubeconsole.orchestration.adapters.cluster_tools import PAGE_SIZE_CAP

_log = logging.getLogger(__name__)


class ListServicesArgs(BaseModel):
    cluster_id: Optional[int] = Field(default=None, ge=1, description="Only services placed on this cluster")
    name: Optional[str] = Field(default=None, description="Filter services by (partial) name")
    page: int = Field(default=1, ge=1)
    size: int = Field(default=20, ge=1, le=PAGE_SIZE_CAP)


def build_service_tools(infra: InfraClient) -> List[BaseTool]:

    @tool("list_services", args_schema=ListServicesArgs)
    async def list_services(
        cluster_id: Optional[int] = None,
        name: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Dict[str, Any]:
        """Get a page of services (id, name, description, project, workspace and cluster ids)."""
        _log.info("Listing services (cluster_id=%s, name=%s)", cluster_id, name)
        payload = await infra.list_services(cluster_id=cluster_id, name=name, page=page, size=size)
        services = payload.get("services") or []
        return {
            "total": payload.get("total", len(services)),
            "services": [
                {
                    "id": s.get("id"),
                    "name": s.get("name"),
                    "description": (s.get("description") or "")[:120],
                    "project_id": s.get("project_id"),
                    "workspace_id": s.get("workspace_id"),
                    "cluster_id": s.get("cluster_id"),
                }
                for s in services
                if isinstance(s, dict)
            ],
        }

    return [list_services]
