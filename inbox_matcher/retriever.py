"""
Candidate retrieval for document scoring

Builds the bounded shortlist of transactions a document is scored against:
semantic neighbours from the vector index (when the document has a
vector) unioned with a deterministic date/currency window. The index call
runs on a worker thread with a hard timeout. A slow or failing index never
stalls a scoring run; the run falls back to the deterministic path and is
flagged as degraded.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from inbox_matcher.database.models import Transaction
from inbox_matcher.database.monitoring import query_timer
from inbox_matcher.database.repositories import TransactionRepository
from inbox_matcher.vector_index import VectorIndex, VectorIndexError

logger = logging.getLogger(__name__)


class IndexWorkerPool:
    """
    Thread pool for vector index lookups.

    A timed-out lookup cannot be interrupted; its worker stays busy until
    the index call returns. Once every worker is held by such an abandoned
    call the pool is replaced, so a hung backend degrades later runs only
    for their own timeout instead of starving them. The stuck threads of
    the old pool exit when their calls finally return.
    """

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self.replacements = 0
        self._lock = threading.Lock()
        self._executor = self._new_executor()
        self._stuck = 0

    @property
    def stuck_workers(self) -> int:
        """Workers still running a lookup that was given up on."""
        with self._lock:
            return self._stuck

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="vector-index")

    def submit(self, fn: Callable, *args) -> Future:
        with self._lock:
            return self._executor.submit(fn, *args)

    def abandon(self, future: Future) -> None:
        """Give up on ``future`` after a timeout."""
        if future.cancel():
            return
        with self._lock:
            owner = self._executor
            self._stuck += 1
            if self._stuck >= self.max_workers:
                logger.error(
                    f"All {self.max_workers} vector index workers are blocked on timed-out calls; "
                    f"starting a fresh pool"
                )
                owner.shutdown(wait=False)
                self._executor = self._new_executor()
                self._stuck = 0
                self.replacements += 1
        future.add_done_callback(lambda _: self._release(owner))

    def _release(self, owner: ThreadPoolExecutor) -> None:
        with self._lock:
            if owner is self._executor and self._stuck > 0:
                self._stuck -= 1


_default_pool = IndexWorkerPool()


@dataclass
class RetrievalResult:
    """Shortlist for one document"""
    candidates: List[Transaction] = field(default_factory=list)
    semantic_ids: Set[uuid.UUID] = field(default_factory=set)
    degraded_reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


class CandidateRetriever:
    """Tenant-scoped candidate shortlist builder."""

    def __init__(
        self,
        session: Session,
        index: Optional[VectorIndex] = None,
        top_k: int = 20,
        date_window_days: int = 7,
        candidate_limit: int = 50,
        index_timeout: float = 2.0,
        pool: Optional[IndexWorkerPool] = None
    ):
        self.session = session
        self.index = index
        self.top_k = top_k
        self.date_window_days = date_window_days
        self.candidate_limit = candidate_limit
        self.index_timeout = index_timeout
        self._pool = pool or _default_pool
        self._transactions = TransactionRepository(session)

    @classmethod
    def from_config(cls, session: Session, config, index: Optional[VectorIndex] = None) -> 'CandidateRetriever':
        r = config.retrieval
        return cls(
            session,
            index=index,
            top_k=r.top_k,
            date_window_days=r.date_window_days,
            candidate_limit=r.candidate_limit,
            index_timeout=r.index_timeout_seconds,
        )

    def _semantic_ids(self, vector: Sequence[float], tenant_id: str, result: RetrievalResult) -> List[uuid.UUID]:
        if self.index is None:
            return []
        future = self._pool.submit(self.index.query, vector, tenant_id, self.top_k)
        try:
            with query_timer("vector_index_query"):
                neighbors = future.result(timeout=self.index_timeout)
        except FuturesTimeout:
            self._pool.abandon(future)
            logger.warning(
                f"Vector index query timed out after {self.index_timeout}s "
                f"for tenant {tenant_id}; using deterministic candidates only"
            )
            result.degraded_reason = "index_timeout"
            return []
        except VectorIndexError as e:
            logger.warning(f"Vector index unavailable for tenant {tenant_id}: {e}")
            result.degraded_reason = "index_unavailable"
            return []
        except Exception as e:
            logger.warning(f"Vector index query failed ({type(e).__name__}: {e}); falling back")
            result.degraded_reason = "index_error"
            return []
        return [owner_id for owner_id, _ in neighbors]

    def retrieve(
        self,
        tenant_id: str,
        vector: Optional[Sequence[float]],
        currency: Optional[str],
        document_date: Optional[date],
        always_include: Iterable[uuid.UUID] = ()
    ) -> RetrievalResult:
        """
        Build the candidate set for a document.

        Args:
            tenant_id: Tenant of the document; the only tenant searched
            vector: Document embedding, or None to skip the semantic step
            currency: Document currency, restricts the deterministic step when known
            document_date: Document date; without it the deterministic step is empty
            always_include: Transactions that must be rescored regardless of the
                cap (pairs that currently hold a pending suggestion)

        Returns:
            RetrievalResult with semantic hits first, then window hits by
            date proximity, capped at ``candidate_limit``
        """
        result = RetrievalResult()

        semantic_ids: List[uuid.UUID] = []
        if vector is not None:
            semantic_ids = self._semantic_ids(vector, tenant_id, result)

        window: List[Transaction] = []
        if document_date is not None:
            window = self._transactions.find_in_window(
                tenant_id,
                document_date,
                self.date_window_days,
                currency=currency,
                limit=self.candidate_limit,
            )

        # Index hits are re-read through the tenant filter
        semantic = self._transactions.get_many(tenant_id, semantic_ids)

        seen: Set[uuid.UUID] = set()
        for transaction_id in semantic_ids:
            transaction = semantic.get(transaction_id)
            if transaction is not None and transaction_id not in seen:
                seen.add(transaction_id)
                result.candidates.append(transaction)
                result.semantic_ids.add(transaction_id)
        for transaction in window:
            if transaction.id not in seen:
                seen.add(transaction.id)
                result.candidates.append(transaction)

        result.candidates = result.candidates[:self.candidate_limit]
        kept = {t.id for t in result.candidates}

        missing = [tid for tid in always_include if tid not in kept]
        if missing:
            result.candidates.extend(self._transactions.get_many(tenant_id, missing).values())

        logger.debug(
            f"Retrieved {len(result.candidates)} candidates for tenant {tenant_id} "
            f"({len(result.semantic_ids)} semantic, degraded={result.degraded})"
        )
        return result
