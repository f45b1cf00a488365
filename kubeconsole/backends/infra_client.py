# kubeconsole/backends/infra_client.py

import logging
from typing import Any, Dict, Optional

import httpx

from kubeconsole.orchestration.errors import InfraError

_log = logging.getLogger(__name__)


class InfraClient:
    """
    Lightweight client for the infrastructure REST backend.

    - Wraps a shared httpx.AsyncClient (base URL, bearer token, timeout)
    - Lists clusters and services, fetches cluster detail
    - Raises InfraError for transport failures and non-2xx responses
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            base_url: Backend API root, e.g. 'http://localhost:8000/api/v1alpha1'.
            token: Optional bearer token forwarded as Authorization header.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used to stub the backend).
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url + "/",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        _log.info("Infra client ready. Backend: %s", self.base_url)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        # Drop empty query values the way the console UI does before forwarding.
        query = {
            k: str(v).lower() if isinstance(v, bool) else v
            for k, v in (params or {}).items()
            if v is not None and v != ""
        }
        try:
            _log.debug("GET %s params=%s", path, query)
            resp = await self.client.get(path, params=query)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            _log.error("Backend returned %s for %s", status, path)
            raise InfraError(f"backend returned HTTP {status} for {path}", status_code=status) from exc
        except httpx.HTTPError as exc:
            _log.error("Backend request failed for %s: %s", path, exc)
            raise InfraError(f"backend unreachable for {path}: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise InfraError(f"backend returned a non-JSON body for {path}") from exc
        if not isinstance(payload, dict):
            raise InfraError(f"unexpected payload type for {path}: {type(payload).__name__}")
        return payload

    async def list_clusters(
        self, name: Optional[str] = None, page: int = 1, page_size: int = 20
    ) -> Dict[str, Any]:
        return await self._get("cluster/list", {"name": name, "page": page, "page_size": page_size})

    async def get_cluster(self, cluster_id: int) -> Dict[str, Any]:
        return await self._get("cluster", {"id": cluster_id})

    async def list_services(
        self,
        cluster_id: Optional[int] = None,
        name: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Dict[str, Any]:
        return await self._get(
            "service/list",
            {"cluster_id": cluster_id, "name": name, "page": page, "size": size},
        )
