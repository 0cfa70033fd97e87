"""
Repository tests against in-memory SQLite.

Covers the suggestion upsert state rules, embedding replacement, the
deterministic window filter and bulk expiry.
"""

import uuid
from datetime import date, timedelta

import pytest

from inbox_matcher.database.models import (
    AuditAction,
    DocumentStatus,
    MatchType,
    OwnerType,
    SuggestionStatus,
    normalize_name,
    utcnow,
)
from inbox_matcher.database.repositories import (
    AuditRepository,
    CalibrationRepository,
    DocumentRepository,
    DuplicateEntityError,
    EmbeddingRepository,
    EntityNotFoundError,
    SuggestionRepository,
    TransactionRepository,
)
from tests.conftest import OTHER_TENANT, TENANT

SCORES = {'embedding': None, 'amount': 1.0, 'currency': 1.0, 'date': 0.9, 'name': None}


class TestNormalization:

    def test_normalize_name(self):
        assert normalize_name("  Müller & Söhne, GmbH ") == "MULLER SOHNE GMBH"
        assert normalize_name(None) == ""


class TestDocumentRepository:

    def test_create_normalizes_currency(self, session):
        document = DocumentRepository(session).create({'tenant_id': TENANT, 'currency': ' eur '})
        assert document.currency == "EUR"

    def test_duplicate_id(self, session):
        repo = DocumentRepository(session)
        document_id = uuid.uuid4()
        repo.create({'id': document_id, 'tenant_id': TENANT})
        session.expunge_all()
        with pytest.raises(DuplicateEntityError):
            repo.create({'id': document_id, 'tenant_id': TENANT})

    def test_get_or_raise(self, session):
        with pytest.raises(EntityNotFoundError):
            DocumentRepository(session).get_or_raise(uuid.uuid4())

    def test_list_open_excludes_closed(self, session, make_document):
        open_doc = make_document()
        make_document(status=DocumentStatus.DONE)
        make_document(status=DocumentStatus.ARCHIVED)
        make_document(tenant_id=OTHER_TENANT)

        assert [d.id for d in DocumentRepository(session).list_open(TENANT)] == [open_doc.id]


class TestTransactionRepository:

    def test_window_filters_tenant_currency_and_date(self, session, make_transaction):
        near = make_transaction(txn_date=date(2024, 1, 11))
        nearest = make_transaction(txn_date=date(2024, 1, 10))
        make_transaction(txn_date=date(2024, 2, 1))
        make_transaction(currency="USD")
        make_transaction(tenant_id=OTHER_TENANT)

        found = TransactionRepository(session).find_in_window(TENANT, date(2024, 1, 10), 7, currency="eur")
        assert [t.id for t in found] == [nearest.id, near.id]

    def test_get_many_drops_other_tenants(self, session, make_transaction):
        mine = make_transaction()
        theirs = make_transaction(tenant_id=OTHER_TENANT)
        found = TransactionRepository(session).get_many(TENANT, [mine.id, theirs.id])
        assert list(found) == [mine.id]


class TestEmbeddingRepository:

    def test_absent_is_none(self, session):
        assert EmbeddingRepository(session).get(OwnerType.DOCUMENT, uuid.uuid4()) is None

    def test_put_replaces_in_place(self, session):
        repo = EmbeddingRepository(session)
        owner = uuid.uuid4()
        first = repo.put(OwnerType.TRANSACTION, owner, TENANT, [1.0, 0.0], "old", "model-a")
        second = repo.put(OwnerType.TRANSACTION, owner, TENANT, [0.0, 1.0, 0.0], "new", "model-b")

        assert first.id == second.id
        stored = repo.get(OwnerType.TRANSACTION, owner)
        assert stored.vector == [0.0, 1.0, 0.0]
        assert stored.dimensions == 3
        assert stored.model == "model-b"
        assert stored.source_text == "new"


class TestSuggestionRepository:
    """Tests for the idempotent suggestion upsert."""

    @pytest.fixture
    def pair(self, make_document, make_transaction):
        return make_document(), make_transaction()

    def _upsert(self, repo, document, transaction, confidence=0.8, match_type=MatchType.HIGH_CONFIDENCE):
        return repo.upsert(TENANT, document.id, transaction.id, SCORES, confidence, match_type, rank=1)

    def test_create_then_update(self, session, pair):
        repo = SuggestionRepository(session)
        document, transaction = pair

        first, action = self._upsert(repo, document, transaction)
        assert action == repo.CREATED
        assert first.status == SuggestionStatus.PENDING

        second, action = self._upsert(repo, document, transaction, confidence=0.6, match_type=MatchType.SUGGESTED)
        assert action == repo.UPDATED
        assert second.id == first.id
        assert second.confidence == 0.6
        assert len(repo.list_for_document(document.id)) == 1

    def test_concurrent_insert_falls_back_to_update(self, session, pair, monkeypatch):
        """A run that lost the insert race updates the winner's row instead of failing."""
        repo = SuggestionRepository(session)
        document, transaction = pair
        winner, _ = self._upsert(repo, document, transaction, confidence=0.5, match_type=MatchType.SUGGESTED)

        real_get = repo.get_for_pair
        lookups = []

        def get_missing_first(document_id, transaction_id):
            lookups.append(transaction_id)
            return None if len(lookups) == 1 else real_get(document_id, transaction_id)

        monkeypatch.setattr(repo, "get_for_pair", get_missing_first)

        suggestion, action = self._upsert(repo, document, transaction, confidence=0.7)

        assert action == repo.UPDATED
        assert len(lookups) == 2
        assert suggestion.id == winner.id
        assert suggestion.confidence == 0.7
        assert len(SuggestionRepository(session).list_for_document(document.id)) == 1

    def test_expired_row_is_reopened(self, session, pair):
        repo = SuggestionRepository(session)
        document, transaction = pair
        suggestion, _ = self._upsert(repo, document, transaction)
        repo.expire_pending_for_document(document.id, "tester")
        session.refresh(suggestion)
        assert suggestion.status == SuggestionStatus.EXPIRED

        reopened, action = self._upsert(repo, document, transaction)
        assert action == repo.REOPENED
        assert reopened.status == SuggestionStatus.PENDING
        assert reopened.decided_by is None

    @pytest.mark.parametrize("status", [
        SuggestionStatus.DECLINED,
        SuggestionStatus.CONFIRMED,
        SuggestionStatus.UNMATCHED,
    ])
    def test_decided_row_is_not_resurrected(self, session, pair, status):
        repo = SuggestionRepository(session)
        document, transaction = pair
        suggestion, _ = self._upsert(repo, document, transaction, confidence=0.5)
        repo.set_status(suggestion, status, "user-1")
        session.flush()

        again, action = self._upsert(repo, document, transaction, confidence=0.99, match_type=MatchType.AUTO_MATCHED)
        assert action == repo.UNCHANGED
        assert again.status == status
        assert again.confidence == 0.5

    def test_expire_older_than(self, session, pair, make_transaction):
        repo = SuggestionRepository(session)
        document, transaction = pair
        stale, _ = self._upsert(repo, document, transaction)
        stale.last_scored_at = utcnow() - timedelta(days=40)
        fresh, _ = self._upsert(repo, document, make_transaction())
        session.flush()

        expired = repo.expire(utcnow() - timedelta(days=30), tenant_id=TENANT)
        assert expired == 1
        session.refresh(stale)
        session.refresh(fresh)
        assert stale.status == SuggestionStatus.EXPIRED
        assert fresh.status == SuggestionStatus.PENDING

    def test_pending_and_dismissed_ids(self, session, pair, make_transaction):
        repo = SuggestionRepository(session)
        document, transaction = pair
        other = make_transaction()
        self._upsert(repo, document, transaction)
        declined, _ = self._upsert(repo, document, other)
        repo.set_status(declined, SuggestionStatus.DECLINED, "user-1")
        session.flush()

        assert repo.pending_transaction_ids(document.id) == [transaction.id]
        assert repo.dismissed_transaction_ids(document.id) == [other.id]


class TestAuditAndCalibration:

    def test_audit_search(self, session):
        repo = AuditRepository(session)
        repo.log(AuditAction.CONFIRM, "document", "d-1", tenant_id=TENANT, actor_id="u-1")
        repo.log(AuditAction.DECLINE, "suggestion", "s-1", tenant_id=TENANT, actor_id="u-1")
        repo.log(AuditAction.CONFIRM, "document", "d-2", tenant_id=OTHER_TENANT)

        logs, total = repo.search(action=AuditAction.CONFIRM, tenant_id=TENANT)
        assert total == 1
        assert logs[0].resource_id == "d-1"

    def test_calibration_save_replaces(self, session):
        repo = CalibrationRepository(session)
        repo.save(TENANT, {'suggest_threshold': 0.4, 'high_threshold': 0.75, 'auto_threshold': 0.95})
        repo.save(TENANT, {'suggest_threshold': 0.37, 'high_threshold': 0.73, 'auto_threshold': 0.95})
        assert repo.get(TENANT).suggest_threshold == 0.37
