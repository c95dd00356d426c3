"""Thin client for the OMI REST API (memories + key checks)."""

import logging
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)


class OmiClient:
    def __init__(self, base_url: str = "https://api.omi.me", transport: httpx.AsyncBaseTransport | None = None,
                 timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self.transport, timeout=self.timeout)

    async def probe_key(self, api_key: str) -> int:
        """Make a minimal authenticated call and return the HTTP status code."""
        async with self._client() as client:
            r = await client.get("/v3/memories", params={"limit": 1},
                                 headers={"Authorization": f"Bearer {api_key}"})
        return r.status_code

    async def fetch_memories(self, api_key: str, limit: int = 50, offset: int = 0) -> list[dict] | None:
        """List the user's memories. Returns None on a non-2xx response.

        Raises:
            httpx.HTTPError: On transport failures.
        """
        async with self._client() as client:
            r = await client.get("/v3/memories", params={"limit": limit, "offset": offset},
                                 headers={"Authorization": f"Bearer {api_key}"})
        if not r.is_success:
            logger.warning(f"OMI memories request failed: HTTP {r.status_code}")
            return None
        data = r.json()
        return data if isinstance(data, list) else []


def memory_to_transcript(memory: dict) -> dict:
    """Shape an OMI memory like a local transcript entry."""
    mid = memory.get("id")
    return {
        "id": mid,
        "text": memory.get("content") or memory.get("transcript") or "",
        "created": memory.get("created_at") or memory.get("created") or datetime.now(timezone.utc).isoformat(),
        "session_id": memory.get("session_id") or f"omi-{mid}",
        "source": "omi_device",
        "category": memory.get("category"),
        "metadata": memory.get("metadata") or {},
    }
