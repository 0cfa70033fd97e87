"""
SQLAlchemy ORM Models for the Inbox Matching Engine

Tables:
1. documents - Inbound financial documents (receipts, invoices, uploads)
2. transactions - Ledger transactions the documents are reconciled against
3. embeddings - One vector per document and one per transaction
4. match_suggestions - Scored (document, transaction) pairings and their lifecycle
5. audit_logs - Immutable trail of reconciliation actions
6. tenant_match_calibration - Per-tenant calibrated decision thresholds

Generic column types (Uuid, JSON, Numeric) keep the schema portable between
PostgreSQL in production and SQLite in unit tests. Timestamps are written by
application code in the same transaction as the change they describe.
"""

import re
import unicodedata
import uuid
from datetime import date as date_type, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Date, Text, Numeric, Uuid,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, Enum, JSON
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware current time used for all bookkeeping columns."""
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, name: str) -> Enum:
    # Persist enum values ("pending"), not member names ("PENDING")
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ============================================
# ENUMS
# ============================================

class DocumentStatus(str, PyEnum):
    """Matching lifecycle of an inbox document"""
    NEW = "new"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    PENDING = "pending"
    SUGGESTED_MATCH = "suggested_match"
    NO_MATCH = "no_match"
    DONE = "done"
    ARCHIVED = "archived"
    DELETED = "deleted"


# Documents in these states are never rescored
CLOSED_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.DONE,
    DocumentStatus.ARCHIVED,
    DocumentStatus.DELETED,
})


class OwnerType(str, PyEnum):
    """Owner of an embedding"""
    DOCUMENT = "document"
    TRANSACTION = "transaction"


class MatchType(str, PyEnum):
    """Decision policy classification of a persisted suggestion"""
    AUTO_MATCHED = "auto_matched"
    HIGH_CONFIDENCE = "high_confidence"
    SUGGESTED = "suggested"


class SuggestionStatus(str, PyEnum):
    """Lifecycle status of a match suggestion"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"
    UNMATCHED = "unmatched"


# A decision was taken on these; rescoring never reopens them
DECIDED_SUGGESTION_STATUSES = frozenset({
    SuggestionStatus.CONFIRMED,
    SuggestionStatus.DECLINED,
    SuggestionStatus.UNMATCHED,
})


class AuditAction(str, PyEnum):
    """Type of audit action"""
    CONFIRM = "CONFIRM"
    DECLINE = "DECLINE"
    AUTO_MATCH = "AUTO_MATCH"
    ARCHIVE = "ARCHIVE"
    DELETE = "DELETE"
    EXPIRE = "EXPIRE"
    RESCORE = "RESCORE"
    CALIBRATE = "CALIBRATE"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    def touch(self) -> None:
        """Stamp updated_at; called explicitly wherever a row changes."""
        self.updated_at = utcnow()


# ============================================
# CORE MODELS
# ============================================

class Document(Base, TimestampMixin):
    """
    Inbound financial document awaiting reconciliation.

    Extracted fields may be partially missing when OCR fails; every
    scoring signal tolerates that. ``transaction_id`` holds the single
    confirmed link. ``version`` guards concurrent confirmations.
    """
    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Extracted fields
    display_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    date: Mapped[Optional[date_type]] = mapped_column(Date, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    counterparty_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    status: Mapped[DocumentStatus] = mapped_column(
        _enum_column(DocumentStatus, "document_status"),
        nullable=False,
        default=DocumentStatus.NEW,
        index=True
    )

    # Confirmed link (at most one)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Version for optimistic locking
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    suggestions: Mapped[List["MatchSuggestion"]] = relationship(
        "MatchSuggestion",
        back_populates="document",
        lazy="selectin",
        order_by="MatchSuggestion.confidence.desc()"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_document_tenant_status', 'tenant_id', 'status'),
        Index('ix_document_tenant_date', 'tenant_id', 'date'),
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, tenant='{self.tenant_id}', status={self.status})>"


class Transaction(Base, TimestampMixin):
    """
    Ledger transaction owned by the accounting subsystem.

    The engine only reads these rows.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    date: Mapped[Optional[date_type]] = mapped_column(Date, nullable=True)
    counterparty_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_transaction_tenant_date', 'tenant_id', 'date'),
        Index('ix_transaction_tenant_currency_date', 'tenant_id', 'currency', 'date'),
    )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, tenant='{self.tenant_id}', amount={self.amount})>"


class Embedding(Base, TimestampMixin):
    """
    Embedding vector for a document or transaction.

    Exactly one row per owner. Regeneration replaces the row in place.
    """
    __tablename__ = "embeddings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_type: Mapped[OwnerType] = mapped_column(
        _enum_column(OwnerType, "embedding_owner_type"),
        nullable=False
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vector: Mapped[list] = mapped_column(JSON, nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    source_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    model: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint('owner_type', 'owner_id', name='uq_embedding_owner'),
        Index('ix_embedding_tenant_owner_type', 'tenant_id', 'owner_type'),
    )

    def __repr__(self) -> str:
        return f"<Embedding(owner={self.owner_type}:{self.owner_id}, dims={self.dimensions})>"


class MatchSuggestion(Base, TimestampMixin):
    """
    Scored pairing between a document and a transaction.

    Unique per (document, transaction); rescoring updates the row in place.
    Score columns are derived data and only ever written by the scorer.
    Rows are never deleted so the decision history stays auditable.
    """
    __tablename__ = "match_suggestions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Sub-scores, NULL when the signal could not be computed
    embedding_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    amount_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    date_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    name_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    match_type: Mapped[MatchType] = mapped_column(
        _enum_column(MatchType, "match_type"),
        nullable=False
    )
    rank: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[SuggestionStatus] = mapped_column(
        _enum_column(SuggestionStatus, "suggestion_status"),
        nullable=False,
        default=SuggestionStatus.PENDING,
        index=True
    )
    match_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Who changed the status and when
    decided_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scored_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    document: Mapped["Document"] = relationship("Document", back_populates="suggestions")
    transaction: Mapped["Transaction"] = relationship("Transaction", lazy="joined")

    __table_args__ = (
        UniqueConstraint('document_id', 'transaction_id', name='uq_suggestion_document_transaction'),
        Index('ix_suggestion_document_status', 'document_id', 'status'),
        Index('ix_suggestion_tenant_status', 'tenant_id', 'status'),
        CheckConstraint('confidence >= 0 AND confidence <= 1', name='ck_suggestion_confidence_range'),
        CheckConstraint(
            'embedding_score IS NULL OR (embedding_score >= 0 AND embedding_score <= 1)',
            name='ck_suggestion_embedding_range'
        ),
        CheckConstraint(
            'amount_score IS NULL OR (amount_score >= 0 AND amount_score <= 1)',
            name='ck_suggestion_amount_range'
        ),
        CheckConstraint(
            'currency_score IS NULL OR (currency_score >= 0 AND currency_score <= 1)',
            name='ck_suggestion_currency_range'
        ),
        CheckConstraint(
            'date_score IS NULL OR (date_score >= 0 AND date_score <= 1)',
            name='ck_suggestion_date_range'
        ),
        CheckConstraint(
            'name_score IS NULL OR (name_score >= 0 AND name_score <= 1)',
            name='ck_suggestion_name_range'
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<MatchSuggestion(id={self.id}, document={self.document_id}, "
            f"transaction={self.transaction_id}, confidence={self.confidence}, status={self.status})>"
        )


# ============================================
# AUDIT AND CALIBRATION MODELS
# ============================================

class AuditLog(Base):
    """
    Trail of reconciliation actions.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # No updated_at - audit logs are immutable
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )
    action: Mapped[AuditAction] = mapped_column(
        _enum_column(AuditAction, "audit_action"),
        nullable=False,
        index=True
    )
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Resource being acted upon
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_audit_timestamp_action', 'timestamp', 'action'),
        Index('ix_audit_resource', 'resource_type', 'resource_id'),
        Index('ix_audit_actor', 'actor_id', 'timestamp'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, resource='{self.resource_type}')>"


class TenantMatchCalibration(Base, TimestampMixin):
    """Calibrated decision thresholds and feedback metrics for one tenant."""
    __tablename__ = "tenant_match_calibration"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    suggest_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    high_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    auto_threshold: Mapped[float] = mapped_column(Float, nullable=False)

    # Feedback metrics from the last calibration run
    total_feedback: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    declined_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_confidence_confirmed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_confidence_negative: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    last_calibrated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            'suggest_threshold <= high_threshold AND high_threshold <= auto_threshold',
            name='ck_calibration_threshold_order'
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantMatchCalibration(tenant='{self.tenant_id}', suggest={self.suggest_threshold}, "
            f"auto={self.auto_threshold})>"
        )


# ============================================
# HELPER FUNCTIONS
# ============================================

def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a counterparty name for comparison.

    Removes accents, punctuation and repeated whitespace, converts to uppercase.

    Args:
        name: The name to normalize (can be None)

    Returns:
        Normalized name string, or empty string if name is None/empty
    """
    if not name:
        return ""

    # Decompose accents and drop the combining marks
    normalized = unicodedata.normalize('NFD', name)
    normalized = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')
    normalized = re.sub(r'[^\w\s]', ' ', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.upper().strip()


def normalize_currency(code: Optional[str]) -> Optional[str]:
    """Uppercase ISO 4217 code, or None when blank."""
    if code is None:
        return None
    code = code.strip().upper()
    return code or None
