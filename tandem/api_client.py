"""
HTTP access to the score service.

``fetch`` is the raw primitive (never raises for an HTTP status);
``request_json`` turns statuses into typed errors: 429/5xx and transport
failures are ``NetworkTransient``, other 4xx are ``NetworkFatal``.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from . import config
from .errors import NetworkFatal, NetworkTransient
from .logging_utils import get_logger
from .schemas import GameVariant

logger = get_logger("tandem.api")


@dataclass
class FetchResponse:
    ok: bool
    status: int
    json: Any = None


class ApiClient:
    def __init__(self, base_url: str = config.API_URL, timeout: float = config.NETWORK_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def fetch(self, method: str, path: str, *, json: Any = None, params: Optional[Dict[str, Any]] = None, token: Optional[str] = None) -> FetchResponse:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            resp = await self._http().request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise NetworkTransient("request timed out", url=path, error=str(exc))
        except httpx.TransportError as exc:
            raise NetworkTransient("connection failed", url=path, error=str(exc))
        try:
            body = resp.json()
        except ValueError:
            body = None
        return FetchResponse(ok=resp.is_success, status=resp.status_code, json=body)

    async def request_json(self, method: str, path: str, **kwargs) -> Any:
        resp = await self.fetch(method, path, **kwargs)
        if resp.ok:
            return resp.json
        detail = resp.json.get("detail") if isinstance(resp.json, dict) else None
        logger.debug("api_error", extra={"method": method, "url": path, "status": resp.status, "error": detail})
        if resp.status == 429 or resp.status >= 500:
            raise NetworkTransient(detail or f"HTTP {resp.status}", status=resp.status)
        raise NetworkFatal(detail or f"HTTP {resp.status}", status=resp.status)

    # score service ------------------------------------------------------
    async def get_puzzle(self, variant, date: str) -> FetchResponse:
        return await self.fetch("GET", "/puzzle", params={"variant": GameVariant.parse(variant).value, "date": date})

    async def get_stats(self, variant, token: str) -> Optional[Dict[str, Any]]:
        body = await self.request_json("GET", f"/stats/{GameVariant.parse(variant).value}", token=token)
        return body.get("stats") if isinstance(body, dict) else None

    async def put_stats(self, variant, stats: Dict[str, Any], token: str) -> Dict[str, Any]:
        return await self.request_json("PUT", f"/stats/{GameVariant.parse(variant).value}", json={"stats": stats}, token=token)

    async def delete_account(self, token: str) -> Dict[str, Any]:
        return await self.request_json("DELETE", "/account", token=token)
