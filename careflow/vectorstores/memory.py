"""
In-process vector store using numpy cosine similarity.
"""

import asyncio
from typing import Any, Dict, List, Tuple

import numpy as np

from careflow.vectorstores.base import (
    BaseVectorStore, VectorEntry, SearchResult, vector_store_registry
)


class InMemoryVectorStore(BaseVectorStore):
    """Namespaced dictionary of normalised vectors."""

    provider_name = "memory"

    def __init__(self, **kwargs):
        self._namespaces: Dict[str, Dict[str, Tuple[np.ndarray, Dict[str, Any]]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _normalise(vector: List[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=float)
        norm = np.linalg.norm(array)
        return array / norm if norm else array

    async def upsert_vectors(self, namespace: str, vectors: List[VectorEntry]) -> int:
        async with self._lock:
            bucket = self._namespaces.setdefault(namespace, {})
            for entry in vectors:
                bucket[entry.id] = (self._normalise(entry.vector), dict(entry.metadata or {}))
        return len(vectors)

    async def search(
        self,
        namespace: str,
        query_vector: List[float],
        top_k: int = 10,
        filters: Dict[str, Any] = None,
    ) -> List[SearchResult]:
        bucket = self._namespaces.get(namespace, {})
        candidates = [
            (entry_id, vector, metadata)
            for entry_id, (vector, metadata) in bucket.items()
            if all(metadata.get(k) == v for k, v in (filters or {}).items())
        ]
        if not candidates:
            return []

        matrix = np.stack([vector for _, vector, _ in candidates])
        scores = matrix @ self._normalise(query_vector)
        order = np.argsort(-scores)[:top_k]

        return [
            SearchResult(
                id=candidates[i][0],
                score=float(scores[i]),
                metadata=dict(candidates[i][2]),
            )
            for i in order
        ]

    async def delete_vectors(self, namespace: str, ids: List[str]) -> int:
        async with self._lock:
            bucket = self._namespaces.get(namespace, {})
            removed = [bucket.pop(entry_id) for entry_id in ids if entry_id in bucket]
        return len(removed)

    def count(self, namespace: str = None) -> int:
        if namespace is not None:
            return len(self._namespaces.get(namespace, {}))
        return sum(len(bucket) for bucket in self._namespaces.values())


vector_store_registry.register(InMemoryVectorStore)
