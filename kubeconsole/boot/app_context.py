# kubeconsole/boot/app_context.py

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from kubeconsole.backends.infra_client import InfraClient
from kubeconsole.backends.kubectl_mcp import KubectlMcpRunner
from kubeconsole.backends.model_gateway import build_llm
from kubeconsole.backends.session_store import SessionStore
from kubeconsole.boot.env_vars import EnvConfig
from kubeconsole.orchestration.adapters.cluster_tools import build_cluster_tools
from kubeconsole.orchestration.adapters.service_tools import build_service_tools
from kubeconsole.orchestration.build_flow import build_graph
from kubeconsole.orchestration.chat_service import ChatService
from kubeconsole.orchestration.graph_runtime import CompiledGraph

_log = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///data/kubeconsole.db"


def build_engine(db_cfg: Dict[str, Any]) -> AsyncEngine:
    """
    Create the async engine from the `database` settings section.
    SQLite files get their parent directory created on demand.
    """
    url = make_url(db_cfg.get("url") or DEFAULT_DATABASE_URL)
    kwargs: Dict[str, Any] = {"pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            parent = os.path.dirname(os.path.abspath(url.database))
            os.makedirs(parent, exist_ok=True)
    else:
        kwargs["pool_size"] = int(db_cfg.get("pool_size", 10))
    _log.info("Creating database engine for backend '%s'.", url.get_backend_name())
    return create_async_engine(url, **kwargs)


@dataclass
class AppContext:
    """
    Owns every process-wide collaborator: engine, store, REST client,
    kubectl runner, compiled graph and chat service.
    """

    cfg: Dict[str, Any]
    engine: AsyncEngine
    store: SessionStore
    infra: InfraClient
    kubectl: KubectlMcpRunner
    graph: CompiledGraph
    service: ChatService

    @classmethod
    async def create(cls, cfg: Dict[str, Any], llm: Optional[Any] = None) -> "AppContext":
        """
        Build the runtime from merged settings.

        Args:
            cfg: Merged configuration dictionary.
            llm: Chat model to use; built from the `agent` section when omitted.
        """
        env = EnvConfig()
        agent_cfg = cfg.get("agent", {})
        infra_cfg = cfg.get("infra", {})

        db_cfg = cfg.get("database", {})
        engine = build_engine(db_cfg)
        store = SessionStore(engine)
        try:
            await store.initialize()
        except Exception:
            await engine.dispose()
            raise

        infra = InfraClient(
            base_url=infra_cfg.get("base_url", "http://localhost:8000/api/v1alpha1"),
            token=env.infra_api_token,
            timeout=float(infra_cfg.get("timeout_seconds", 30)),
        )
        kubectl = KubectlMcpRunner.from_config(cfg.get("kubectl_mcp", {}))

        try:
            model = llm if llm is not None else build_llm(agent_cfg, env)
            graph = build_graph(
                model,
                store,
                cluster_tools=build_cluster_tools(infra, kubectl),
                service_tools=build_service_tools(infra),
                agent_cfg=agent_cfg,
                checkpoint_timeout=float(db_cfg.get("timeout_seconds", 15)),
            )
        except Exception:
            await infra.aclose()
            await engine.dispose()
            raise

        _log.info("Application context ready.")
        return cls(
            cfg=cfg,
            engine=engine,
            store=store,
            infra=infra,
            kubectl=kubectl,
            graph=graph,
            service=ChatService(graph, store),
        )

    async def aclose(self) -> None:
        await self.infra.aclose()
        await self.engine.dispose()
        _log.info("Application context closed.")
