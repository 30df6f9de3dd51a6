"""
External vector index client.

Mirrors locally stored chunk vectors into a Pinecone-compatible REST index
(``POST /vectors/upsert`` and ``POST /vectors/delete``). Calls are bounded by
a timeout and never retried; callers treat ``False`` as "skip and record".
"""
from typing import Any, Dict, List, Optional

import httpx

from kbsync.config import Settings, settings as default_settings
from kbsync.core.errors import VectorIndexError
from kbsync.core.logging import get_logger

logger = get_logger(__name__)


class VectorIndex:
    """Protocol for an external vector index addressed by string id."""

    async def upsert(self, vector_id: str, vector: List[float], metadata: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def delete(self, vector_ids: List[str]) -> bool:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class PineconeVectorIndex(VectorIndex):
    """
    Pinecone REST client on top of a pooled ``httpx.AsyncClient``.

    Args:
        endpoint: Index host, e.g. ``https://my-index-abc.svc.pinecone.io``
        api_key: Sent as the ``Api-Key`` header
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout: float = 30.0,
        max_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._max_connections = max_connections
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PineconeVectorIndex":
        settings = settings or default_settings
        return cls(
            endpoint=settings.vector_index_endpoint,
            api_key=settings.vector_index_api_key,
            timeout=settings.vector_index_timeout_seconds,
        )

    @property
    def limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=self._max_connections,
            max_keepalive_connections=self._max_connections,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            client_kwargs: Dict[str, Any] = {
                "base_url": self.endpoint,
                "limits": self.limits,
                "timeout": httpx.Timeout(self._timeout),
                "headers": {"Api-Key": self._api_key, "Content-Type": "application/json"},
            }
            if self._transport is not None:
                client_kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**client_kwargs)
        return self._client

    async def aclose(self) -> None:
        """Release pooled connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._get_client().post(path, json=payload)
        except httpx.HTTPError as e:
            raise VectorIndexError(f"Vector index request failed: {e}") from e

        if response.status_code != 200:
            raise VectorIndexError(
                f"Vector index returned error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json() if response.content else {}

    async def upsert(self, vector_id: str, vector: List[float], metadata: Dict[str, Any]) -> bool:
        payload = {"vectors": [{"id": vector_id, "values": vector, "metadata": metadata}]}
        try:
            await self._post("/vectors/upsert", payload)
        except VectorIndexError as e:
            logger.error("vector_upsert_failed", vector_id=vector_id, error=str(e))
            return False

        logger.debug("vector_upserted", vector_id=vector_id, dimensions=len(vector))
        return True

    async def delete(self, vector_ids: List[str]) -> bool:
        if not vector_ids:
            return True
        try:
            await self._post("/vectors/delete", {"ids": list(vector_ids)})
        except VectorIndexError as e:
            logger.error("vector_delete_failed", count=len(vector_ids), error=str(e))
            return False

        logger.debug("vectors_deleted", count=len(vector_ids))
        return True
