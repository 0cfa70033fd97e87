"""
Database-backed Matching Service

Runs the scoring pipeline for inbox documents and exposes the operations
the API and CLI call. The service works inside the caller's session; the
caller owns commit and rollback (usually ``session_scope``).

Pipeline for one document:
    1. load (or embed) the document vector
    2. retrieve a bounded, tenant-scoped candidate set
    3. score every candidate on five signals
    4. combine, classify and rank with the tenant's thresholds
    5. upsert qualifying pairs, expire pending pairs that no longer qualify
    6. auto-match the leading candidate when it is eligible

Usage:
    # With FastAPI
    @app.post("/documents/{document_id}/process")
    def process(
        document_id: uuid.UUID,
        service: MatchingService = Depends(get_matching_service)
    ):
        return service.process_document(document_id).to_dict()

    # Standalone
    with db_provider.session_scope() as session:
        service = MatchingService(session, config)
        result = service.process_document(document_id)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inbox_matcher.calibration import CalibrationResult, CalibrationService
from inbox_matcher.config_manager import get_config
from inbox_matcher.database.models import (
    AuditAction,
    CLOSED_DOCUMENT_STATUSES,
    Document,
    DocumentStatus,
    MatchSuggestion,
    OwnerType,
    SuggestionStatus,
    utcnow,
)
from inbox_matcher.database.monitoring import record_match_run, record_suggestion
from inbox_matcher.database.repositories import (
    AuditRepository,
    DocumentRepository,
    EmbeddingRepository,
    EntityNotFoundError,
    RepositoryError,
    SuggestionRepository,
    TransactionRepository,
)
from inbox_matcher.embeddings import (
    EmbeddingProvider,
    EmbeddingProviderError,
    prepare_document_text,
    prepare_transaction_text,
)
from inbox_matcher.reconciliation import (
    ConflictError,
    InvalidStateError,
    ReconciliationCoordinator,
    TenantMismatchError,
)
from inbox_matcher.retriever import CandidateRetriever
from inbox_matcher.scoring import DecisionPolicy, SignalScorer, Thresholds
from inbox_matcher.security_logger import SecurityLogger
from inbox_matcher.vector_index import VectorIndex

logger = logging.getLogger(__name__)

RESCORE_ACTOR = "system:rescore"
EXPIRY_ACTOR = "system:expiry"

# Statuses picked up by the background re-run
REPROCESS_STATUSES = (DocumentStatus.NEW, DocumentStatus.PENDING)


@dataclass
class MatchRunResult:
    """Outcome of scoring one document"""
    document_id: uuid.UUID
    status: DocumentStatus
    candidates: int = 0
    created: int = 0
    updated: int = 0
    reopened: int = 0
    expired: int = 0
    auto_matched_transaction_id: Optional[uuid.UUID] = None
    degraded_reason: Optional[str] = None
    skipped: bool = False
    suggestions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': str(self.document_id),
            'status': self.status.value,
            'candidates': self.candidates,
            'created': self.created,
            'updated': self.updated,
            'reopened': self.reopened,
            'expired': self.expired,
            'auto_matched_transaction_id': (
                str(self.auto_matched_transaction_id) if self.auto_matched_transaction_id else None
            ),
            'degraded': self.degraded,
            'degraded_reason': self.degraded_reason,
            'skipped': self.skipped,
            'suggestions': self.suggestions,
        }


@dataclass
class RescoreSummary:
    """Outcome of a bulk re-run over many documents"""
    tenant_id: Optional[str]
    processed: int = 0
    failed: int = 0
    auto_matched: int = 0
    degraded: int = 0
    statuses: Dict[str, int] = field(default_factory=dict)

    def add(self, result: MatchRunResult) -> None:
        self.processed += 1
        if result.auto_matched_transaction_id:
            self.auto_matched += 1
        if result.degraded:
            self.degraded += 1
        key = result.status.value
        self.statuses[key] = self.statuses.get(key, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'processed': self.processed,
            'failed': self.failed,
            'auto_matched': self.auto_matched,
            'degraded': self.degraded,
            'statuses': self.statuses,
        }


def suggestion_to_dict(suggestion: MatchSuggestion) -> Dict[str, Any]:
    transaction = suggestion.transaction
    return {
        'id': str(suggestion.id),
        'document_id': str(suggestion.document_id),
        'transaction_id': str(suggestion.transaction_id),
        'confidence': suggestion.confidence,
        'match_type': suggestion.match_type.value,
        'status': suggestion.status.value,
        'rank': suggestion.rank,
        'scores': {
            'embedding': suggestion.embedding_score,
            'amount': suggestion.amount_score,
            'currency': suggestion.currency_score,
            'date': suggestion.date_score,
            'name': suggestion.name_score,
        },
        'details': suggestion.match_details,
        'decided_by': suggestion.decided_by,
        'decided_at': suggestion.decided_at.isoformat() if suggestion.decided_at else None,
        'last_scored_at': suggestion.last_scored_at.isoformat() if suggestion.last_scored_at else None,
        'transaction': {
            'amount': float(transaction.amount) if transaction and transaction.amount is not None else None,
            'currency': transaction.currency if transaction else None,
            'date': transaction.date.isoformat() if transaction and transaction.date else None,
            'counterparty_name': transaction.counterparty_name if transaction else None,
            'description': transaction.description if transaction else None,
        },
    }


class MatchingService:
    """
    Matching operations over one database session.

    Args:
        session: SQLAlchemy session; the caller commits
        config: ConfigManager, defaults to the global instance
        index: Vector index for semantic retrieval, optional
        embedding_provider: Embedding client, optional; without it only
            stored vectors are used
        security_logger: Logger for tenant violations
    """

    def __init__(
        self,
        session: Session,
        config: Optional[Any] = None,
        index: Optional[VectorIndex] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        security_logger: Optional[SecurityLogger] = None
    ):
        self.session = session
        self.config = config or get_config()
        self.index = index
        self.embedding_provider = embedding_provider

        self._documents = DocumentRepository(session)
        self._transactions = TransactionRepository(session)
        self._embeddings = EmbeddingRepository(session)
        self._suggestions = SuggestionRepository(session)
        self._audit = AuditRepository(session)

        self.scorer = SignalScorer.from_config(self.config)
        self.retriever = CandidateRetriever.from_config(session, self.config, index)
        self.calibration = CalibrationService(session, self.config)
        self.coordinator = ReconciliationCoordinator(session, security_logger)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _policy_for(self, tenant_id: str) -> DecisionPolicy:
        return DecisionPolicy(self.config.matching.weights, self.calibration.thresholds_for(tenant_id))

    def _check_tenant(self, document: Document, tenant_id: Optional[str], action: str) -> None:
        if tenant_id is not None and document.tenant_id != tenant_id:
            self.coordinator.security.log_tenant_mismatch(
                caller_tenant_id=tenant_id,
                owner_tenant_id=document.tenant_id,
                actor_id=None,
                resource_type="document",
                resource_id=str(document.id),
                action=action,
            )
            raise TenantMismatchError(f"Document {document.id} does not belong to tenant {tenant_id}")

    def _document_vector(self, document: Document):
        """Stored vector, or a freshly embedded one. Returns (vector, degraded_reason)."""
        stored = self._embeddings.get(OwnerType.DOCUMENT, document.id)
        if stored is not None:
            return stored.vector, None
        if self.embedding_provider is None:
            return None, None

        text = prepare_document_text(document)
        try:
            vector = self.embedding_provider.embed(text)
        except EmbeddingProviderError as e:
            logger.warning(f"Embedding failed for document {document.id}: {e}")
            return None, "embedding_unavailable"

        self._embeddings.put(
            OwnerType.DOCUMENT, document.id, document.tenant_id, vector, text, self.embedding_provider.model
        )
        return vector, None

    # ------------------------------------------------------------------
    # scoring
    # ------------------------------------------------------------------

    def process_document(self, document_id: uuid.UUID, tenant_id: Optional[str] = None) -> MatchRunResult:
        """
        Score a document against its candidates and persist the outcome.

        Idempotent: running it twice over unchanged data leaves the same
        suggestions. Closed documents (done, archived, deleted) are skipped.

        Raises:
            EntityNotFoundError: unknown document
            TenantMismatchError: ``tenant_id`` given and not the owner
        """
        document = self._documents.get_or_raise(document_id)
        self._check_tenant(document, tenant_id, "process")

        if document.status in CLOSED_DOCUMENT_STATUSES:
            logger.info(f"Document {document_id} is {document.status.value}, skipping")
            record_match_run("skipped")
            return MatchRunResult(document_id=document.id, status=document.status, skipped=True)

        # Embed before touching the document row so its lock is not held across the provider call
        vector, degraded_reason = self._document_vector(document)
        self._documents.set_status(document, DocumentStatus.ANALYZING)
        pending_ids = self._suggestions.pending_transaction_ids(document.id)

        retrieval = self.retriever.retrieve(
            document.tenant_id,
            vector,
            document.currency,
            document.date,
            always_include=pending_ids,
        )
        degraded_reason = degraded_reason or retrieval.degraded_reason

        # Decided pairs never compete again
        dismissed = set(self._suggestions.dismissed_transaction_ids(document.id))
        candidates = [
            t for t in retrieval.candidates
            if t.tenant_id == document.tenant_id and t.id not in dismissed
        ]

        transaction_vectors = {}
        if vector is not None and candidates:
            transaction_vectors = self._embeddings.get_vectors(
                OwnerType.TRANSACTION, [t.id for t in candidates]
            )

        scored = [
            (t, self.scorer.score(document, t, vector, transaction_vectors.get(t.id)))
            for t in candidates
        ]
        decision = self._policy_for(document.tenant_id).decide(scored)

        result = MatchRunResult(
            document_id=document.id,
            status=document.status,
            candidates=len(candidates),
            degraded_reason=degraded_reason,
        )

        for candidate in decision.accepted:
            _, action = self._suggestions.upsert(
                tenant_id=document.tenant_id,
                document_id=document.id,
                transaction_id=candidate.transaction_id,
                scores=candidate.scores.to_dict(),
                confidence=candidate.confidence,
                match_type=candidate.match_type,
                rank=candidate.rank,
                details=candidate.details,
            )
            if action == SuggestionRepository.CREATED:
                result.created += 1
                record_suggestion(candidate.match_type.value)
            elif action == SuggestionRepository.UPDATED:
                result.updated += 1
            elif action == SuggestionRepository.REOPENED:
                result.reopened += 1

        result.expired = self._suggestions.expire_pending_for_document(
            document.id,
            RESCORE_ACTOR,
            transaction_ids=[c.transaction_id for c in decision.rejected],
        )

        auto = decision.auto_match
        if auto is not None:
            try:
                with self.session.begin_nested():
                    self.coordinator.confirm(
                        document.tenant_id,
                        document.id,
                        auto.transaction_id,
                        self.config.suggestions.auto_match_actor,
                        auto=True,
                    )
                result.auto_matched_transaction_id = auto.transaction_id
            except (ConflictError, InvalidStateError) as e:
                logger.warning(f"Auto-match of document {document_id} skipped: {e}")

        if result.auto_matched_transaction_id is None:
            if decision.accepted:
                status = DocumentStatus.SUGGESTED_MATCH
            elif degraded_reason:
                # Retried later by process_pending once the dependency recovers
                status = DocumentStatus.PENDING
            else:
                status = DocumentStatus.NO_MATCH
            self._documents.set_status(document, status)

        result.status = document.status
        result.suggestions = [
            suggestion_to_dict(s) for s in self._suggestions.list_for_document(document.id)
            if s.status in (SuggestionStatus.PENDING, SuggestionStatus.CONFIRMED)
        ]

        outcome = "auto_matched" if result.auto_matched_transaction_id else result.status.value
        record_match_run(outcome, degraded_reason)
        logger.info(
            f"Document {document_id}: {len(candidates)} candidates, {len(decision.accepted)} suggested, "
            f"{result.expired} expired, status={result.status.value}"
            + (f", degraded ({degraded_reason})" if degraded_reason else "")
        )
        return result

    def _process_many(self, documents: Sequence[Document], summary: RescoreSummary) -> RescoreSummary:
        for document in documents:
            try:
                with self.session.begin_nested():
                    summary.add(self.process_document(document.id))
            except (RepositoryError, SQLAlchemyError) as e:
                summary.failed += 1
                logger.error(f"Scoring document {document.id} failed: {e}")
        return summary

    def rescore_all(self, tenant_id: str) -> RescoreSummary:
        """Re-run scoring for every open document of a tenant (after recalibration or a data fix)."""
        documents = self._documents.list_open(tenant_id)
        summary = self._process_many(documents, RescoreSummary(tenant_id=tenant_id))
        self._audit.log(
            action=AuditAction.RESCORE,
            resource_type="tenant",
            resource_id=tenant_id,
            tenant_id=tenant_id,
            actor_id=RESCORE_ACTOR,
            details=summary.to_dict(),
            success=summary.failed == 0,
        )
        logger.info(f"Rescored {summary.processed} documents for tenant {tenant_id} ({summary.failed} failed)")
        return summary

    def process_pending(self, tenant_id: Optional[str] = None, limit: Optional[int] = None) -> RescoreSummary:
        """Score new documents and retry runs that were left pending by a degraded dependency."""
        limit = limit or self.config.suggestions.batch_size
        documents = self._documents.list_by_status(REPROCESS_STATUSES, tenant_id=tenant_id, limit=limit)
        return self._process_many(documents, RescoreSummary(tenant_id=tenant_id))

    def index_transaction(self, transaction_id: uuid.UUID) -> bool:
        """
        Make a transaction searchable: embed it when needed and push it to the index.

        Returns:
            True when the transaction has a vector afterwards
        """
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise EntityNotFoundError(f"Transaction {transaction_id} not found")

        stored = self._embeddings.get(OwnerType.TRANSACTION, transaction.id)
        vector = stored.vector if stored is not None else None
        if vector is None and self.embedding_provider is not None:
            text = prepare_transaction_text(transaction)
            try:
                vector = self.embedding_provider.embed(text)
            except EmbeddingProviderError as e:
                logger.warning(f"Embedding failed for transaction {transaction_id}: {e}")
                return False
            self._embeddings.put(
                OwnerType.TRANSACTION, transaction.id, transaction.tenant_id,
                vector, text, self.embedding_provider.model
            )

        if vector is None:
            return False
        if self.index is not None:
            self.index.upsert(transaction.id, vector, transaction.tenant_id)
        return True

    def process_transaction(self, transaction_id: uuid.UUID) -> List[MatchRunResult]:
        """Reverse direction: a new transaction arrived, rescore the open documents near its date."""
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise EntityNotFoundError(f"Transaction {transaction_id} not found")

        self.index_transaction(transaction_id)
        if transaction.date is None:
            return []

        documents = self._documents.list_open_near_date(
            transaction.tenant_id, transaction.date, self.config.retrieval.date_window_days
        )
        return [self.process_document(d.id) for d in documents]

    # ------------------------------------------------------------------
    # suggestions
    # ------------------------------------------------------------------

    def list_suggestions(
        self,
        document_id: uuid.UUID,
        tenant_id: Optional[str] = None,
        include_closed: bool = False
    ) -> List[MatchSuggestion]:
        """Suggestions of a document, best first. Pending and confirmed only unless ``include_closed``."""
        document = self._documents.get_or_raise(document_id)
        self._check_tenant(document, tenant_id, "list_suggestions")
        suggestions = self._suggestions.list_for_document(document_id)
        if include_closed:
            return suggestions
        return [s for s in suggestions if s.status in (SuggestionStatus.PENDING, SuggestionStatus.CONFIRMED)]

    def confirm(self, tenant_id: str, document_id: uuid.UUID, transaction_id: uuid.UUID, actor_id: str):
        return self.coordinator.confirm(tenant_id, document_id, transaction_id, actor_id)

    def decline(self, tenant_id: str, document_id: uuid.UUID, suggestion_id: uuid.UUID, actor_id: str):
        return self.coordinator.decline(tenant_id, document_id, suggestion_id, actor_id)

    def archive(self, tenant_id: str, document_id: uuid.UUID, actor_id: str) -> Document:
        return self.coordinator.archive(tenant_id, document_id, actor_id)

    def delete(self, tenant_id: str, document_id: uuid.UUID, actor_id: str) -> Document:
        return self.coordinator.delete(tenant_id, document_id, actor_id)

    def expire(self, older_than: Optional[datetime] = None, tenant_id: Optional[str] = None) -> int:
        """
        Expire pending suggestions not rescored since ``older_than``.

        Defaults to ``suggestions.expire_after_days`` before now.
        """
        if older_than is None:
            older_than = utcnow() - timedelta(days=self.config.suggestions.expire_after_days)
        count = self._suggestions.expire(older_than, tenant_id=tenant_id, actor_id=EXPIRY_ACTOR)
        if count:
            self._audit.log(
                action=AuditAction.EXPIRE,
                resource_type="suggestion",
                tenant_id=tenant_id,
                actor_id=EXPIRY_ACTOR,
                details={'expired': count, 'older_than': older_than.isoformat()}
            )
        logger.info(f"Expired {count} suggestions older than {older_than.isoformat()}")
        return count

    # ------------------------------------------------------------------
    # calibration and stats
    # ------------------------------------------------------------------

    def calibrate(self, tenant_id: str) -> CalibrationResult:
        return self.calibration.calibrate(tenant_id)

    def thresholds_for(self, tenant_id: str) -> Thresholds:
        return self.calibration.thresholds_for(tenant_id)

    def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        return {
            'tenant_id': tenant_id,
            'documents': self._documents.count_by_status(tenant_id),
            'suggestions': self._suggestions.count_by_status(tenant_id),
            'thresholds': self.thresholds_for(tenant_id).to_dict(),
            'calibrated': self.calibration.is_calibrated(tenant_id),
        }


# FastAPI Dependency Injection Support
_matching_service_factory = None


def configure_matching_service(
    db_provider,
    config=None,
    index: Optional[VectorIndex] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
    security_logger: Optional[SecurityLogger] = None
):
    """
    Configure the matching service factory for dependency injection.

    Call this during application startup.

    Args:
        db_provider: DatabaseSessionProvider instance
        config: Optional ConfigManager instance
        index: Optional shared vector index
        embedding_provider: Optional embedding client
        security_logger: Optional security logger
    """
    global _matching_service_factory
    _matching_service_factory = (db_provider, config, index, embedding_provider, security_logger)


def reset_matching_service() -> None:
    global _matching_service_factory
    _matching_service_factory = None


def get_matching_service():
    """
    FastAPI dependency for getting a MatchingService.

    The session commits when the request handler returns and rolls back
    when it raises.

    Yields:
        MatchingService instance

    Raises:
        RuntimeError: If matching service not configured
    """
    if _matching_service_factory is None:
        raise RuntimeError(
            "Matching service not configured. Call configure_matching_service() first."
        )

    db_provider, config, index, embedding_provider, security_logger = _matching_service_factory

    with db_provider.session_scope() as session:
        yield MatchingService(
            session,
            config,
            index=index,
            embedding_provider=embedding_provider,
            security_logger=security_logger,
        )
