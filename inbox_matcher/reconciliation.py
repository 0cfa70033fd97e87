"""
Reconciliation Coordinator

Applies human or automatic decisions to suggestions. Every operation runs
inside the caller's transaction with the document row locked first and
then its suggestion rows (``SELECT ... FOR UPDATE``). The document's
version column turns a lost race into ``ConflictError`` on backends
without row locks. A conflict is reported to the caller and never retried
here, because retrying against stale state could confirm twice.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inbox_matcher.database.models import (
    AuditAction,
    Document,
    DocumentStatus,
    MatchSuggestion,
    SuggestionStatus,
)
from inbox_matcher.database.monitoring import record_reconciliation
from inbox_matcher.database.repositories import (
    AuditRepository,
    DocumentRepository,
    SuggestionRepository,
)
from inbox_matcher.security_logger import SecurityLogger, get_security_logger

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Base exception for reconciliation errors."""
    pass


class DocumentNotFoundError(ReconciliationError):
    pass


class SuggestionNotFoundError(ReconciliationError):
    pass


class TenantMismatchError(ReconciliationError):
    """The caller's tenant does not own the document or suggestion."""
    pass


class ConflictError(ReconciliationError):
    """The state changed underneath the caller (already resolved, lost race)."""
    pass


class InvalidStateError(ReconciliationError):
    """The document is in a state the action does not apply to."""
    pass


class ReconciliationCoordinator:
    """Confirms, declines and closes suggestions for a document."""

    def __init__(self, session: Session, security_logger: Optional[SecurityLogger] = None):
        self.session = session
        self._security = security_logger
        self._documents = DocumentRepository(session)
        self._suggestions = SuggestionRepository(session)
        self._audit = AuditRepository(session)

    @property
    def security(self) -> SecurityLogger:
        if self._security is None:
            self._security = get_security_logger()
        return self._security

    def _lock_document(self, tenant_id: str, document_id: uuid.UUID, actor_id: str, action: str) -> Document:
        document = self._documents.get_for_update(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        if document.tenant_id != tenant_id:
            self.security.log_tenant_mismatch(
                caller_tenant_id=tenant_id,
                owner_tenant_id=document.tenant_id,
                actor_id=actor_id,
                resource_type="document",
                resource_id=str(document_id),
                action=action,
            )
            record_reconciliation(action, "tenant_mismatch")
            raise TenantMismatchError(f"Document {document_id} does not belong to tenant {tenant_id}")
        return document

    def confirm(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        transaction_id: uuid.UUID,
        actor_id: str,
        auto: bool = False
    ) -> MatchSuggestion:
        """
        Confirm the suggestion pairing ``document_id`` with ``transaction_id``.

        Links the document to the transaction, marks the chosen suggestion
        confirmed, every other open suggestion of the document unmatched,
        and moves the document to done.

        Raises:
            DocumentNotFoundError: unknown document
            TenantMismatchError: document or suggestion owned by another tenant
            SuggestionNotFoundError: no suggestion for the pair
            ConflictError: document already resolved or suggestion no longer pending
            InvalidStateError: document archived or deleted
        """
        action = "auto_match" if auto else "confirm"
        try:
            document = self._lock_document(tenant_id, document_id, actor_id, action)
            suggestions = self._suggestions.lock_for_document(document_id)
            chosen = next((s for s in suggestions if s.transaction_id == transaction_id), None)
            if chosen is None:
                raise SuggestionNotFoundError(
                    f"No suggestion for document {document_id} and transaction {transaction_id}"
                )
            if chosen.tenant_id != tenant_id:
                self.security.log_tenant_mismatch(
                    caller_tenant_id=tenant_id,
                    owner_tenant_id=chosen.tenant_id,
                    actor_id=actor_id,
                    resource_type="suggestion",
                    resource_id=str(chosen.id),
                    action=action,
                )
                raise TenantMismatchError(f"Suggestion {chosen.id} does not belong to tenant {tenant_id}")
            if document.status == DocumentStatus.DONE or document.transaction_id is not None:
                raise ConflictError(f"Document {document_id} is already resolved")
            if document.status in (DocumentStatus.ARCHIVED, DocumentStatus.DELETED):
                raise InvalidStateError(f"Document {document_id} is {document.status.value}")
            if chosen.status != SuggestionStatus.PENDING:
                raise ConflictError(f"Suggestion {chosen.id} is already {chosen.status.value}")

            document.transaction_id = transaction_id
            document.status = DocumentStatus.DONE
            document.touch()

            self._suggestions.set_status(chosen, SuggestionStatus.CONFIRMED, actor_id)
            superseded = []
            for other in suggestions:
                if other.id != chosen.id and other.status in (SuggestionStatus.PENDING, SuggestionStatus.EXPIRED):
                    self._suggestions.set_status(other, SuggestionStatus.UNMATCHED, actor_id)
                    superseded.append(str(other.transaction_id))

            self.session.flush()

            self._audit.log(
                action=AuditAction.AUTO_MATCH if auto else AuditAction.CONFIRM,
                resource_type="document",
                resource_id=str(document_id),
                tenant_id=tenant_id,
                actor_id=actor_id,
                details={
                    'suggestion_id': str(chosen.id),
                    'transaction_id': str(transaction_id),
                    'confidence': chosen.confidence,
                    'match_type': chosen.match_type.value,
                    'unmatched_transactions': superseded,
                }
            )
        except StaleDataError as e:
            record_reconciliation(action, "conflict")
            raise ConflictError(f"Document {document_id} was modified concurrently") from e
        except ConflictError:
            record_reconciliation(action, "conflict")
            raise

        record_reconciliation(action, "success")
        logger.info(
            f"Document {document_id} matched to transaction {transaction_id} by {actor_id} "
            f"({len(superseded)} competing suggestions unmatched)"
        )
        return chosen

    def decline(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        suggestion_id: uuid.UUID,
        actor_id: str
    ) -> MatchSuggestion:
        """
        Decline one suggestion. The document and its other suggestions are untouched.

        Raises:
            DocumentNotFoundError, SuggestionNotFoundError, TenantMismatchError, ConflictError
        """
        document = self._lock_document(tenant_id, document_id, actor_id, "decline")
        suggestion = self.session.execute(
            select(MatchSuggestion)
            .where(MatchSuggestion.id == suggestion_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if suggestion is None or suggestion.document_id != document.id:
            raise SuggestionNotFoundError(f"Suggestion {suggestion_id} not found for document {document_id}")
        if suggestion.tenant_id != tenant_id:
            self.security.log_tenant_mismatch(
                caller_tenant_id=tenant_id,
                owner_tenant_id=suggestion.tenant_id,
                actor_id=actor_id,
                resource_type="suggestion",
                resource_id=str(suggestion_id),
                action="decline",
            )
            raise TenantMismatchError(f"Suggestion {suggestion_id} does not belong to tenant {tenant_id}")
        if suggestion.status != SuggestionStatus.PENDING:
            record_reconciliation("decline", "conflict")
            raise ConflictError(f"Suggestion {suggestion_id} is already {suggestion.status.value}")

        self._suggestions.set_status(suggestion, SuggestionStatus.DECLINED, actor_id)
        self.session.flush()

        self._audit.log(
            action=AuditAction.DECLINE,
            resource_type="suggestion",
            resource_id=str(suggestion_id),
            tenant_id=tenant_id,
            actor_id=actor_id,
            details={
                'document_id': str(document_id),
                'transaction_id': str(suggestion.transaction_id),
                'confidence': suggestion.confidence,
            }
        )
        record_reconciliation("decline", "success")
        logger.info(f"Suggestion {suggestion_id} declined by {actor_id}")
        return suggestion

    def _close(self, tenant_id: str, document_id: uuid.UUID, actor_id: str, status: DocumentStatus) -> Document:
        action = "archive" if status == DocumentStatus.ARCHIVED else "delete"
        document = self._lock_document(tenant_id, document_id, actor_id, action)
        if document.status == DocumentStatus.DELETED:
            raise InvalidStateError(f"Document {document_id} is deleted")

        try:
            expired = self._suggestions.expire_pending_for_document(document_id, actor_id)
            document.status = status
            document.touch()
            self.session.flush()
        except StaleDataError as e:
            raise ConflictError(f"Document {document_id} was modified concurrently") from e

        self._audit.log(
            action=AuditAction.ARCHIVE if status == DocumentStatus.ARCHIVED else AuditAction.DELETE,
            resource_type="document",
            resource_id=str(document_id),
            tenant_id=tenant_id,
            actor_id=actor_id,
            details={'expired_suggestions': expired}
        )
        record_reconciliation(action, "success")
        return document

    def archive(self, tenant_id: str, document_id: uuid.UUID, actor_id: str) -> Document:
        """User-driven exit: archive the document and expire its open suggestions."""
        return self._close(tenant_id, document_id, actor_id, DocumentStatus.ARCHIVED)

    def delete(self, tenant_id: str, document_id: uuid.UUID, actor_id: str) -> Document:
        """Soft-delete the document; suggestion rows stay for audit."""
        return self._close(tenant_id, document_id, actor_id, DocumentStatus.DELETED)
