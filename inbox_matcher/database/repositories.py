"""
Repository Pattern for Inbox Matching Database Operations

Provides the data access layer with proper typing and error handling.
Repositories flush but never commit; the caller's unit of work owns the
transaction boundary.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, and_
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from inbox_matcher.database.models import (
    Document,
    Transaction,
    Embedding,
    MatchSuggestion,
    AuditLog,
    TenantMatchCalibration,
    DocumentStatus,
    OwnerType,
    MatchType,
    SuggestionStatus,
    AuditAction,
    CLOSED_DOCUMENT_STATUSES,
    DECIDED_SUGGESTION_STATUSES,
    normalize_currency,
    utcnow,
)
from inbox_matcher.database.monitoring import timed_query

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


# ============================================
# DOCUMENT REPOSITORY
# ============================================

class DocumentRepository:
    """Repository for inbox document operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, data: Dict[str, Any]) -> Document:
        """
        Create a new document.

        Args:
            data: Dictionary containing document fields

        Raises:
            DuplicateEntityError: If a document with the same id exists
        """
        data = dict(data)
        data['currency'] = normalize_currency(data.get('currency'))
        try:
            document = Document(**data)
            with self.session.begin_nested():
                self.session.add(document)
            logger.debug(f"Created document: {document.id} (tenant {document.tenant_id})")
            return document
        except IntegrityError as e:
            raise DuplicateEntityError(f"Document already exists: {e}")

    def get(self, document_id: uuid.UUID) -> Optional[Document]:
        return self.session.get(Document, document_id)

    def get_or_raise(self, document_id: uuid.UUID) -> Document:
        document = self.get(document_id)
        if document is None:
            raise EntityNotFoundError(f"Document {document_id} not found")
        return document

    def get_for_update(self, document_id: uuid.UUID) -> Optional[Document]:
        """Load a document with a row lock, refreshing any stale identity-map copy."""
        query = (
            select(Document)
            .where(Document.id == document_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(query).scalar_one_or_none()

    def set_status(self, document: Document, status: DocumentStatus) -> None:
        if document.status != status:
            document.status = status
            document.touch()
            self.session.flush()

    def list_by_status(
        self,
        statuses: Iterable[DocumentStatus],
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Document]:
        query = select(Document).where(Document.status.in_(list(statuses)))
        if tenant_id:
            query = query.where(Document.tenant_id == tenant_id)
        query = query.order_by(Document.created_at, Document.id)
        if limit:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars().all())

    def list_open(self, tenant_id: str) -> List[Document]:
        """Documents of a tenant that can still be (re)scored."""
        query = (
            select(Document)
            .where(
                Document.tenant_id == tenant_id,
                Document.status.not_in(list(CLOSED_DOCUMENT_STATUSES))
            )
            .order_by(Document.created_at, Document.id)
        )
        return list(self.session.execute(query).scalars().all())

    def list_open_near_date(self, tenant_id: str, around: date, window_days: int) -> List[Document]:
        """Open documents dated within ``window_days`` of ``around``."""
        query = (
            select(Document)
            .where(
                Document.tenant_id == tenant_id,
                Document.status.not_in(list(CLOSED_DOCUMENT_STATUSES)),
                Document.date.between(around - timedelta(days=window_days),
                                      around + timedelta(days=window_days))
            )
            .order_by(Document.date, Document.id)
        )
        return list(self.session.execute(query).scalars().all())

    def count_by_status(self, tenant_id: str) -> Dict[str, int]:
        query = (
            select(Document.status, func.count(Document.id))
            .where(Document.tenant_id == tenant_id)
            .group_by(Document.status)
        )
        return {status.value: count for status, count in self.session.execute(query).all()}


# ============================================
# TRANSACTION REPOSITORY
# ============================================

class TransactionRepository:
    """Read access to ledger transactions."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, data: Dict[str, Any]) -> Transaction:
        data = dict(data)
        data['currency'] = normalize_currency(data.get('currency'))
        transaction = Transaction(**data)
        self.session.add(transaction)
        self.session.flush()
        return transaction

    def get(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        return self.session.get(Transaction, transaction_id)

    def get_many(self, tenant_id: str, transaction_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Transaction]:
        """Load transactions by id, dropping any that belong to another tenant."""
        if not transaction_ids:
            return {}
        query = select(Transaction).where(
            Transaction.id.in_(list(transaction_ids)),
            Transaction.tenant_id == tenant_id
        )
        return {t.id: t for t in self.session.execute(query).scalars().all()}

    @timed_query("find_transactions_in_window")
    def find_in_window(
        self,
        tenant_id: str,
        around: date,
        window_days: int,
        currency: Optional[str] = None,
        limit: int = 50
    ) -> List[Transaction]:
        """
        Deterministic candidate filter.

        Same tenant, date within ``window_days`` of ``around`` and, when
        known, the same currency. Ordered by date proximity.
        """
        conditions = [
            Transaction.tenant_id == tenant_id,
            Transaction.date.between(around - timedelta(days=window_days),
                                     around + timedelta(days=window_days)),
        ]
        currency = normalize_currency(currency)
        if currency:
            conditions.append(Transaction.currency == currency)

        rows = self.session.execute(select(Transaction).where(and_(*conditions))).scalars().all()
        rows = sorted(rows, key=lambda t: (abs((t.date - around).days), str(t.id)))
        return rows[:limit]


# ============================================
# EMBEDDING REPOSITORY
# ============================================

class EmbeddingRepository:
    """Embedding store: exactly one vector per owner."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, owner_type: OwnerType, owner_id: uuid.UUID) -> Optional[Embedding]:
        """Return the owner's embedding, or None. Absence is a normal state."""
        query = select(Embedding).where(
            Embedding.owner_type == owner_type,
            Embedding.owner_id == owner_id
        )
        return self.session.execute(query).scalar_one_or_none()

    def get_vectors(self, owner_type: OwnerType, owner_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, List[float]]:
        if not owner_ids:
            return {}
        query = select(Embedding.owner_id, Embedding.vector).where(
            Embedding.owner_type == owner_type,
            Embedding.owner_id.in_(list(owner_ids))
        )
        return {owner_id: vector for owner_id, vector in self.session.execute(query).all()}

    def put(
        self,
        owner_type: OwnerType,
        owner_id: uuid.UUID,
        tenant_id: str,
        vector: Sequence[float],
        source_text: Optional[str],
        model: str
    ) -> Embedding:
        """
        Insert or fully replace the owner's embedding.

        Regeneration with a new model overwrites the vector, text and model
        together; nothing is appended.
        """
        values = {
            'tenant_id': tenant_id,
            'vector': [float(v) for v in vector],
            'dimensions': len(vector),
            'source_text': source_text,
            'model': model,
        }
        existing = self.get(owner_type, owner_id)
        if existing is None:
            embedding = Embedding(owner_type=owner_type, owner_id=owner_id, **values)
            try:
                with self.session.begin_nested():
                    self.session.add(embedding)
                return embedding
            except IntegrityError:
                existing = self.get(owner_type, owner_id)
                if existing is None:
                    raise

        for key, value in values.items():
            setattr(existing, key, value)
        existing.touch()
        self.session.flush()
        return existing


# ============================================
# SUGGESTION REPOSITORY
# ============================================

class SuggestionRepository:
    """Suggestion store: one row per (document, transaction) pair."""

    CREATED = "created"
    UPDATED = "updated"
    REOPENED = "reopened"
    UNCHANGED = "unchanged"

    def __init__(self, session: Session):
        self.session = session

    def get(self, suggestion_id: uuid.UUID) -> Optional[MatchSuggestion]:
        return self.session.get(MatchSuggestion, suggestion_id)

    def get_for_pair(self, document_id: uuid.UUID, transaction_id: uuid.UUID) -> Optional[MatchSuggestion]:
        query = select(MatchSuggestion).where(
            MatchSuggestion.document_id == document_id,
            MatchSuggestion.transaction_id == transaction_id
        )
        return self.session.execute(query).scalar_one_or_none()

    def list_for_document(self, document_id: uuid.UUID) -> List[MatchSuggestion]:
        """All suggestions of a document, highest confidence first."""
        query = (
            select(MatchSuggestion)
            .where(MatchSuggestion.document_id == document_id)
            .order_by(MatchSuggestion.confidence.desc(), MatchSuggestion.rank, MatchSuggestion.id)
        )
        return list(self.session.execute(query).scalars().all())

    def lock_for_document(self, document_id: uuid.UUID) -> List[MatchSuggestion]:
        query = (
            select(MatchSuggestion)
            .where(MatchSuggestion.document_id == document_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(query).scalars().all())

    def pending_transaction_ids(self, document_id: uuid.UUID) -> List[uuid.UUID]:
        query = select(MatchSuggestion.transaction_id).where(
            MatchSuggestion.document_id == document_id,
            MatchSuggestion.status == SuggestionStatus.PENDING
        )
        return list(self.session.execute(query).scalars().all())

    def dismissed_transaction_ids(self, document_id: uuid.UUID) -> List[uuid.UUID]:
        query = select(MatchSuggestion.transaction_id).where(
            MatchSuggestion.document_id == document_id,
            MatchSuggestion.status.in_(list(DECIDED_SUGGESTION_STATUSES))
        )
        return list(self.session.execute(query).scalars().all())

    @timed_query("upsert_suggestion")
    def upsert(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        transaction_id: uuid.UUID,
        scores: Dict[str, Optional[float]],
        confidence: float,
        match_type: MatchType,
        rank: int = 1,
        details: Optional[Dict[str, Any]] = None
    ) -> Tuple[MatchSuggestion, str]:
        """
        Idempotently record a scored pair.

        - no row: insert as pending
        - pending row: overwrite scores, confidence, type and rank
        - expired row: reopen as pending with the fresh scores
        - confirmed/declined/unmatched row: scores are not resurrected,
          only ``last_scored_at`` moves

        A concurrent insert of the same pair loses on the unique constraint
        inside a savepoint and falls through to the update path.

        Returns:
            Tuple of (suggestion, action) where action is one of
            created/updated/reopened/unchanged
        """
        fields = {
            'embedding_score': scores.get('embedding'),
            'amount_score': scores.get('amount'),
            'currency_score': scores.get('currency'),
            'date_score': scores.get('date'),
            'name_score': scores.get('name'),
            'confidence': confidence,
            'match_type': match_type,
            'rank': rank,
            'match_details': details,
        }

        existing = self.get_for_pair(document_id, transaction_id)
        if existing is None:
            suggestion = MatchSuggestion(
                tenant_id=tenant_id,
                document_id=document_id,
                transaction_id=transaction_id,
                status=SuggestionStatus.PENDING,
                **fields
            )
            try:
                with self.session.begin_nested():
                    self.session.add(suggestion)
                return suggestion, self.CREATED
            except IntegrityError:
                logger.info(f"Concurrent insert for pair {document_id}/{transaction_id}, updating instead")
                existing = self.get_for_pair(document_id, transaction_id)
                if existing is None:
                    raise

        now = utcnow()
        existing.last_scored_at = now

        if existing.status in DECIDED_SUGGESTION_STATUSES:
            self.session.flush()
            return existing, self.UNCHANGED

        action = self.UPDATED
        if existing.status == SuggestionStatus.EXPIRED:
            existing.status = SuggestionStatus.PENDING
            existing.decided_by = None
            existing.decided_at = None
            action = self.REOPENED

        for key, value in fields.items():
            setattr(existing, key, value)
        existing.updated_at = now
        self.session.flush()
        return existing, action

    def set_status(
        self,
        suggestion: MatchSuggestion,
        status: SuggestionStatus,
        actor_id: Optional[str]
    ) -> None:
        now = utcnow()
        suggestion.status = status
        suggestion.decided_by = actor_id
        suggestion.decided_at = now
        suggestion.updated_at = now

    def expire_pending_for_document(
        self,
        document_id: uuid.UUID,
        actor_id: str,
        transaction_ids: Optional[Sequence[uuid.UUID]] = None
    ) -> int:
        """Move a document's pending suggestions (optionally only some pairs) out of the active set."""
        now = utcnow()
        conditions = [
            MatchSuggestion.document_id == document_id,
            MatchSuggestion.status == SuggestionStatus.PENDING,
        ]
        if transaction_ids is not None:
            if not transaction_ids:
                return 0
            conditions.append(MatchSuggestion.transaction_id.in_(list(transaction_ids)))
        result = self.session.execute(
            update(MatchSuggestion)
            .where(*conditions)
            .values(status=SuggestionStatus.EXPIRED, decided_by=actor_id, decided_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    @timed_query("expire_suggestions")
    def expire(self, older_than: datetime, tenant_id: Optional[str] = None, actor_id: str = "system:expiry") -> int:
        """
        Bulk-transition stale pending suggestions to expired.

        A suggestion is stale when it has not been scored since ``older_than``.

        Returns:
            Number of suggestions expired
        """
        now = utcnow()
        conditions = [
            MatchSuggestion.status == SuggestionStatus.PENDING,
            MatchSuggestion.last_scored_at < older_than,
        ]
        if tenant_id:
            conditions.append(MatchSuggestion.tenant_id == tenant_id)
        result = self.session.execute(
            update(MatchSuggestion)
            .where(*conditions)
            .values(status=SuggestionStatus.EXPIRED, decided_by=actor_id, decided_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def count_by_status(self, tenant_id: str) -> Dict[str, int]:
        query = (
            select(MatchSuggestion.status, func.count(MatchSuggestion.id))
            .where(MatchSuggestion.tenant_id == tenant_id)
            .group_by(MatchSuggestion.status)
        )
        return {status.value: count for status, count in self.session.execute(query).all()}

    def feedback_since(self, tenant_id: str, since: datetime) -> List[Tuple[SuggestionStatus, float]]:
        """(status, confidence) of suggestions a decision was taken on since ``since``."""
        query = select(MatchSuggestion.status, MatchSuggestion.confidence).where(
            MatchSuggestion.tenant_id == tenant_id,
            MatchSuggestion.status.in_(list(DECIDED_SUGGESTION_STATUSES)),
            MatchSuggestion.decided_at >= since
        )
        return [(status, confidence) for status, confidence in self.session.execute(query).all()]


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log operations."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: Type of action
            resource_type: Type of resource affected
            resource_id: ID of resource
            tenant_id: Tenant the action was performed in
            actor_id: User or system actor
            details: Additional details
            success: Whether action succeeded
            error_message: Error if failed
        """
        entry = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            tenant_id=tenant_id,
            actor_id=actor_id,
            details=details,
            success=success,
            error_message=error_message
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def search(
        self,
        action: Optional[AuditAction] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[AuditLog], int]:
        """
        Search audit logs with filters.

        Returns:
            Tuple of (logs list, total count)
        """
        conditions = []
        if action:
            conditions.append(AuditLog.action == action)
        if resource_type:
            conditions.append(AuditLog.resource_type == resource_type)
        if resource_id:
            conditions.append(AuditLog.resource_id == resource_id)
        if tenant_id:
            conditions.append(AuditLog.tenant_id == tenant_id)

        count_query = select(func.count()).select_from(AuditLog)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = select(AuditLog)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(AuditLog.timestamp.desc()).offset(offset).limit(limit)

        return list(self.session.execute(query).scalars().all()), total


# ============================================
# CALIBRATION REPOSITORY
# ============================================

class CalibrationRepository:
    """Per-tenant calibrated thresholds."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, tenant_id: str) -> Optional[TenantMatchCalibration]:
        return self.session.get(TenantMatchCalibration, tenant_id)

    def save(self, tenant_id: str, values: Dict[str, Any]) -> TenantMatchCalibration:
        """Insert or replace the tenant's calibration row."""
        row = self.get(tenant_id)
        now = utcnow()
        if row is None:
            row = TenantMatchCalibration(tenant_id=tenant_id, **values)
            self.session.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = now
        row.last_calibrated_at = now
        self.session.flush()
        return row
