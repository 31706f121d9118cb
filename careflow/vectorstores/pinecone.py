"""
Pinecone vector database implementation.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List

from pinecone import Pinecone, ServerlessSpec

from careflow.vectorstores.base import (
    BaseVectorStore, VectorEntry, SearchResult, vector_store_registry
)

logger = logging.getLogger(__name__)


class PineconeVectorStore(BaseVectorStore):
    """Pinecone implementation of vector store."""

    provider_name = "pinecone"

    def __init__(self, api_key: str = None, index_name: str = "careflow-reports",
                 dimension: int = 384, cloud: str = "aws", region: str = "us-east-1", **kwargs):
        self.api_key = api_key or os.getenv("PINECONE_API_KEY")
        self.index_name = index_name
        self.dimension = dimension
        self.cloud = cloud
        self.region = region
        self.client = None
        self._index = None

    async def initialize(self) -> None:
        """Initialize Pinecone client, creating the index if missing."""
        self.client = Pinecone(api_key=self.api_key)
        existing = await asyncio.to_thread(lambda: [i.name for i in self.client.list_indexes()])

        if self.index_name not in existing:
            logger.info(f"Creating Pinecone index {self.index_name} ({self.dimension} dims)")
            await asyncio.to_thread(
                self.client.create_index,
                name=self.index_name,
                dimension=self.dimension,
                metric="cosine",
                spec=ServerlessSpec(cloud=self.cloud, region=self.region),
            )

        self._index = self.client.Index(self.index_name)

    async def upsert_vectors(self, namespace: str, vectors: List[VectorEntry]) -> int:
        """Upsert vectors to Pinecone."""
        records = [
            {"id": v.id, "values": v.vector, "metadata": v.metadata or {}}
            for v in vectors
        ]
        response = await asyncio.to_thread(self._index.upsert, vectors=records, namespace=namespace)
        return getattr(response, "upserted_count", len(records))

    async def search(
        self,
        namespace: str,
        query_vector: List[float],
        top_k: int = 10,
        filters: Dict[str, Any] = None,
    ) -> List[SearchResult]:
        """Search for similar vectors."""
        pinecone_filter = {k: {"$eq": v} for k, v in (filters or {}).items()} or None
        response = await asyncio.to_thread(
            self._index.query,
            vector=query_vector,
            top_k=top_k,
            include_metadata=True,
            filter=pinecone_filter,
            namespace=namespace,
        )

        return [
            SearchResult(
                id=match.id,
                score=float(match.score),
                metadata=dict(match.metadata or {}),
            )
            for match in response.matches
        ]

    async def delete_vectors(self, namespace: str, ids: List[str]) -> int:
        """Delete vectors by id."""
        await asyncio.to_thread(self._index.delete, ids=ids, namespace=namespace)
        return len(ids)


vector_store_registry.register(PineconeVectorStore)
