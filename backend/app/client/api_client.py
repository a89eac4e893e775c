from typing import Any, Dict, Optional, Protocol

import httpx

from app.core.logging import get_logger

logger = get_logger("offline")


class SyncTransport(Protocol):
    async def send(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        """Submit one operation and return its server result"""
        ...


class HttpSyncTransport:
    """Sends queued operations to ``POST /sync/operations``, one per request.

    Transport failures and non-2xx responses are raised as httpx errors; the
    reconciliation engine decides which of them are worth retrying.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "http://localhost:8000",
        device_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.token = token
        self.device_id = device_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        return headers

    async def send(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.post(
            "/sync/operations",
            json={"operations": [operation]},
            headers=self._headers(),
        )
        response.raise_for_status()
        results = response.json()["results"]
        logger.debug(
            "Operation replayed",
            correlation_id=operation["correlation_id"],
            outcome=results[0]["outcome"],
        )
        return results[0]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
