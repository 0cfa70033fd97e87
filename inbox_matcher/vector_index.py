"""
Vector index abstraction for transaction embeddings

Nearest-neighbour lookup is a swappable capability: the retriever only
depends on ``VectorIndex.query``. Two brute-force implementations are
provided, which are exact and fast enough for small and medium tenants:

- ``InMemoryVectorIndex`` keeps per-tenant numpy matrices in process memory.
- ``DatabaseVectorIndex`` scans the ``embeddings`` table of one tenant.

Every query is scoped to a single tenant; vectors of other tenants are
never compared.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inbox_matcher.database.models import Embedding, OwnerType

logger = logging.getLogger(__name__)

Neighbor = Tuple[uuid.UUID, float]


class VectorIndexError(Exception):
    """Raised when the index cannot answer a query."""
    pass


def _normalize(vector: Sequence[float]) -> Optional[np.ndarray]:
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1 or arr.size == 0 or not np.all(np.isfinite(arr)):
        return None
    norm = np.linalg.norm(arr)
    if norm == 0:
        return None
    return arr / norm


def _top_k(ids: List[uuid.UUID], matrix: np.ndarray, query: np.ndarray, top_k: int) -> List[Neighbor]:
    if not ids or top_k <= 0:
        return []
    similarities = matrix @ query
    k = min(top_k, len(ids))
    # argpartition keeps this O(n) before sorting the k winners
    best = np.argpartition(-similarities, k - 1)[:k]
    best = best[np.argsort(-similarities[best], kind="stable")]
    return [(ids[i], float(similarities[i])) for i in best]


class VectorIndex(ABC):
    """Nearest-neighbour index over transaction vectors."""

    @abstractmethod
    def upsert(self, owner_id: uuid.UUID, vector: Sequence[float], tenant_id: str) -> None:
        """Insert or replace the vector of one transaction."""

    @abstractmethod
    def remove(self, owner_id: uuid.UUID, tenant_id: str) -> None:
        """Drop a transaction from the index; unknown ids are ignored."""

    @abstractmethod
    def query(self, vector: Sequence[float], tenant_id: str, top_k: int) -> List[Neighbor]:
        """Return up to ``top_k`` (transaction_id, cosine similarity), best first.

        Raises:
            VectorIndexError: when the backend is unavailable
        """


class InMemoryVectorIndex(VectorIndex):
    """Thread-safe in-process index, one matrix per tenant."""

    def __init__(self):
        self._vectors: Dict[str, Dict[uuid.UUID, np.ndarray]] = {}
        self._lock = threading.RLock()

    def upsert(self, owner_id: uuid.UUID, vector: Sequence[float], tenant_id: str) -> None:
        normalized = _normalize(vector)
        if normalized is None:
            logger.warning(f"Skipping unusable vector for transaction {owner_id}")
            return
        with self._lock:
            self._vectors.setdefault(tenant_id, {})[owner_id] = normalized

    def remove(self, owner_id: uuid.UUID, tenant_id: str) -> None:
        with self._lock:
            self._vectors.get(tenant_id, {}).pop(owner_id, None)

    def query(self, vector: Sequence[float], tenant_id: str, top_k: int) -> List[Neighbor]:
        query = _normalize(vector)
        if query is None:
            return []
        with self._lock:
            tenant_vectors = {
                owner_id: v for owner_id, v in self._vectors.get(tenant_id, {}).items()
                if v.shape == query.shape
            }
        if not tenant_vectors:
            return []
        ids = list(tenant_vectors)
        matrix = np.vstack([tenant_vectors[i] for i in ids])
        return _top_k(ids, matrix, query, top_k)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._vectors.values())


class DatabaseVectorIndex(VectorIndex):
    """
    Brute-force index over the ``embeddings`` table.

    Uses its own short-lived session so it can run on a worker thread
    under the retriever's timeout. The table itself is the index, so
    ``upsert`` and ``remove`` have nothing to maintain.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def upsert(self, owner_id: uuid.UUID, vector: Sequence[float], tenant_id: str) -> None:
        logger.debug(f"Transaction {owner_id} indexed through the embeddings table")

    def remove(self, owner_id: uuid.UUID, tenant_id: str) -> None:
        logger.debug(f"Transaction {owner_id} removal handled by the embeddings table")

    def query(self, vector: Sequence[float], tenant_id: str, top_k: int) -> List[Neighbor]:
        query = _normalize(vector)
        if query is None:
            return []

        session = self._session_factory()
        try:
            rows = session.execute(
                select(Embedding.owner_id, Embedding.vector).where(
                    Embedding.tenant_id == tenant_id,
                    Embedding.owner_type == OwnerType.TRANSACTION,
                    Embedding.dimensions == int(query.size),
                )
            ).all()
        except SQLAlchemyError as e:
            raise VectorIndexError(f"Embedding scan failed: {e}") from e
        finally:
            session.close()

        ids: List[uuid.UUID] = []
        vectors: List[np.ndarray] = []
        for owner_id, raw in rows:
            normalized = _normalize(raw)
            if normalized is not None and normalized.shape == query.shape:
                ids.append(owner_id)
                vectors.append(normalized)
        if not ids:
            return []
        return _top_k(ids, np.vstack(vectors), query, top_k)
