"""
Base vector database interface.
Abstracts vector database operations for different backends and scopes
every report lookup to a single patient.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

from careflow.core.errors import ScopeViolation

logger = logging.getLogger(__name__)


@dataclass
class VectorEntry:
    """A vector entry for storage."""
    id: str
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    """Result from vector search."""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseVectorStore(ABC):
    """Abstract base class for vector database backends."""

    provider_name: str

    async def initialize(self) -> None:
        """Connect to the backend."""
        pass

    @abstractmethod
    async def upsert_vectors(
        self,
        namespace: str,
        vectors: List[VectorEntry],
    ) -> int:
        """Insert or replace vectors; returns the number written."""
        pass

    @abstractmethod
    async def search(
        self,
        namespace: str,
        query_vector: List[float],
        top_k: int = 10,
        filters: Dict[str, Any] = None,
    ) -> List[SearchResult]:
        """Return the closest vectors by cosine similarity, best first."""
        pass

    @abstractmethod
    async def delete_vectors(self, namespace: str, ids: List[str]) -> int:
        """Delete vectors by id."""
        pass


class VectorStoreRegistry:
    """Registry for vector store backends."""

    def __init__(self):
        self._store_classes: Dict[str, type] = {}

    def register(self, store_class: type, name: str = None) -> None:
        self._store_classes[name or store_class.provider_name] = store_class

    def create(self, name: str, **config) -> BaseVectorStore:
        if name not in self._store_classes:
            raise ValueError(
                f"Vector store '{name}' not registered. Available: {list(self._store_classes)}"
            )
        return self._store_classes[name](**config)


class PatientScopedIndex:
    """
    Retrieval index for handoff reports, partitioned by patient.

    Every entry is written to its patient's namespace with the patient id in
    its metadata, every query filters on both, and results are re-checked
    before they are returned.
    """

    def __init__(self, base_store: BaseVectorStore, prefix: str = "patient"):
        self.base_store = base_store
        self.prefix = prefix

    def _namespace(self, patient_id: str) -> str:
        if not patient_id:
            raise ScopeViolation("Retrieval requires a patient id")
        return f"{self.prefix}-{patient_id}"

    async def index_report(
        self,
        report_id: str,
        patient_id: str,
        vector: List[float],
        metadata: Dict[str, Any] = None,
    ) -> None:
        entry_metadata = {
            k: v for k, v in (metadata or {}).items() if v is not None
        }
        entry_metadata["patient_id"] = patient_id
        entry_metadata["report_id"] = report_id
        await self.base_store.upsert_vectors(
            self._namespace(patient_id),
            [VectorEntry(id=report_id, vector=list(vector), metadata=entry_metadata)],
        )

    async def search(
        self,
        patient_id: str,
        query_vector: List[float],
        top_k: int = 3,
        min_score: float = 0.0,
    ) -> List[SearchResult]:
        results = await self.base_store.search(
            self._namespace(patient_id),
            query_vector,
            top_k=top_k,
            filters={"patient_id": patient_id},
        )

        for result in results:
            owner = result.metadata.get("patient_id")
            if owner != patient_id:
                logger.error(
                    f"Scope violation: report {result.id} belongs to {owner}, "
                    f"returned for patient {patient_id}"
                )
                raise ScopeViolation(f"Report {result.id} is outside patient {patient_id}")

        matches = [r for r in results if r.score >= min_score]
        matches.sort(key=lambda r: r.score, reverse=True)
        return matches[:top_k]


# Global vector store registry
vector_store_registry = VectorStoreRegistry()
