# Summary of file: Pinecone vector index (vectorQuery capability)

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pinecone import Pinecone

from mailrecall.common.capabilities import VectorMatch

logger = logging.getLogger("mailrecall.adapter.pinecone")


class PineconeVectorIndex:
    """
    Filtered similarity queries against one Pinecone index.

    The SDK client is created on first use so that constructing the server
    without a Pinecone key still works for the database tier.
    """

    def __init__(self, api_key: str, index_name: str = "beya-context", index=None):
        self._api_key = api_key
        self._index_name = index_name
        self._index = index

    @property
    def index_name(self) -> str:
        return self._index_name

    def _ensure_index(self):
        if self._index is None:
            if not self._api_key:
                raise RuntimeError("PINECONE_API_KEY is not configured")
            self._index = Pinecone(api_key=self._api_key).Index(self._index_name)
            logger.info("Connected to Pinecone index %s", self._index_name)
        return self._index

    async def query(
        self,
        vector: List[float],
        filter: Optional[Dict[str, Any]],
        top_k: int,
    ) -> List[VectorMatch]:
        return await asyncio.to_thread(self._query_sync, vector, filter, top_k)

    def _query_sync(self, vector, filter, top_k) -> List[VectorMatch]:
        index = self._ensure_index()
        kwargs = {
            "vector": list(vector),
            "top_k": top_k,
            "include_metadata": True,
            "include_values": False,
        }
        if filter:
            kwargs["filter"] = filter
        response = index.query(**kwargs)

        matches = getattr(response, "matches", None)
        if matches is None and isinstance(response, dict):
            matches = response.get("matches", [])

        results = []
        for match in matches or []:
            if isinstance(match, dict):
                results.append(VectorMatch(
                    id=str(match.get("id", "")),
                    score=float(match.get("score") or 0.0),
                    metadata=dict(match.get("metadata") or {}),
                ))
            else:
                results.append(VectorMatch(
                    id=str(match.id),
                    score=float(match.score or 0.0),
                    metadata=dict(match.metadata or {}),
                ))
        return results
