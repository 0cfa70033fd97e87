"""
End-to-end tests for MatchingService against in-memory SQLite.

Exercises the full scoring run: retrieval, scoring, persistence of
suggestions, auto-matching, degraded runs and the bulk operations.
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from inbox_matcher.database.matching_service import MatchingService
from inbox_matcher.database.models import (
    AuditAction,
    DocumentStatus,
    MatchType,
    SuggestionStatus,
    utcnow,
)
from inbox_matcher.database.repositories import (
    AuditRepository,
    EntityNotFoundError,
    SuggestionRepository,
)
from inbox_matcher.embeddings import HttpEmbeddingProvider
from inbox_matcher.reconciliation import TenantMismatchError
from inbox_matcher.vector_index import InMemoryVectorIndex
from tests.conftest import (
    OTHER_TENANT,
    TENANT,
    FakeEmbeddingProvider,
    unit_vector_with_similarity,
)


@pytest.fixture
def service(session, config):
    return MatchingService(session, config)


class StatusRecordingProvider(FakeEmbeddingProvider):
    """Records the document's status and version at the moment it is embedded."""

    def __init__(self, document):
        super().__init__()
        self.document = document
        self.seen = []

    def embed(self, text, model=None):
        self.seen.append((self.document.status, self.document.version))
        return super().embed(text, model)


def _malformed_http_provider():
    """HTTP provider whose endpoint answers with a bare JSON list."""
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = [0.1, 0.2, 0.3]
    session = MagicMock()
    session.post.return_value = response
    return HttpEmbeddingProvider("http://embed.local/v1", dimensions=3, max_retries=0, session=session)


class TestScenarios:
    """Acceptance scenarios for a single document run."""

    def test_exact_pair_is_auto_matched(self, session, service, make_document, make_transaction):
        document = make_document(vector=[1.0, 0.0])
        transaction = make_transaction(vector=unit_vector_with_similarity(0.97))

        result = service.process_document(document.id)

        assert result.auto_matched_transaction_id == transaction.id
        assert result.status == DocumentStatus.DONE
        suggestion = SuggestionRepository(session).get_for_pair(document.id, transaction.id)
        assert suggestion.status == SuggestionStatus.CONFIRMED
        assert suggestion.match_type == MatchType.AUTO_MATCHED
        assert suggestion.decided_by == "system:auto-match"
        assert suggestion.confidence >= 0.95
        assert suggestion.amount_score == 1.0
        assert suggestion.currency_score == 1.0
        assert suggestion.date_score == 1.0
        assert suggestion.embedding_score == pytest.approx(0.97)

    def test_amount_difference_stays_a_suggestion(self, session, service, make_document, make_transaction):
        document = make_document(vector=[1.0, 0.0])
        transaction = make_transaction(amount="90.00", vector=unit_vector_with_similarity(0.97))

        result = service.process_document(document.id)

        assert result.auto_matched_transaction_id is None
        assert result.status == DocumentStatus.SUGGESTED_MATCH
        assert result.created == 1
        suggestion = SuggestionRepository(session).get_for_pair(document.id, transaction.id)
        assert suggestion.status == SuggestionStatus.PENDING
        assert suggestion.match_type == MatchType.HIGH_CONFIDENCE
        assert suggestion.amount_score == pytest.approx(1 - 10 / 90, abs=1e-4)
        assert 0.75 <= suggestion.confidence < 0.95

    def test_missing_embedding_uses_remaining_signals(self, session, service, make_document, make_transaction):
        document = make_document()
        transaction = make_transaction(vector=[1.0, 0.0])

        result = service.process_document(document.id)

        assert result.candidates == 1
        suggestion = SuggestionRepository(session).get_for_pair(document.id, transaction.id)
        assert suggestion.embedding_score is None
        assert suggestion.confidence == pytest.approx(1.0)

    def test_confirming_the_runner_up(self, session, service, make_document, make_transaction):
        document = make_document()
        leading = make_transaction(amount="90.00")
        runner_up = make_transaction(amount="80.00")

        result = service.process_document(document.id)
        assert result.created == 2
        suggestions = service.list_suggestions(document.id, TENANT)
        assert [s.transaction_id for s in suggestions] == [leading.id, runner_up.id]
        assert suggestions[0].match_details['leading'] is True

        service.confirm(TENANT, document.id, runner_up.id, "user-1")

        repo = SuggestionRepository(session)
        assert repo.get_for_pair(document.id, runner_up.id).status == SuggestionStatus.CONFIRMED
        assert repo.get_for_pair(document.id, leading.id).status == SuggestionStatus.UNMATCHED
        assert document.status == DocumentStatus.DONE

    def test_other_tenant_transaction_never_a_candidate(self, session, config, make_document, make_transaction):
        index = InMemoryVectorIndex()
        foreign = make_transaction(tenant_id=OTHER_TENANT, vector=[1.0, 0.0])
        index.upsert(foreign.id, [1.0, 0.0], OTHER_TENANT)
        document = make_document(vector=[1.0, 0.0])

        result = MatchingService(session, config, index=index).process_document(document.id)

        assert result.candidates == 0
        assert result.status == DocumentStatus.NO_MATCH
        assert SuggestionRepository(session).list_for_document(document.id) == []


class TestProcessDocument:

    def test_rerun_is_idempotent(self, session, service, make_document, make_transaction):
        document = make_document()
        make_transaction(amount="90.00")
        make_transaction(amount="80.00")

        first = service.process_document(document.id)
        ids = [s['id'] for s in first.suggestions]
        second = service.process_document(document.id)

        assert second.created == 0
        assert second.updated == 2
        assert [s['id'] for s in second.suggestions] == ids
        assert [s['confidence'] for s in second.suggestions] == [s['confidence'] for s in first.suggestions]
        assert len(SuggestionRepository(session).list_for_document(document.id)) == 2

    def test_pair_that_no_longer_qualifies_is_expired(self, session, service, make_document, make_transaction):
        document = make_document()
        transaction = make_transaction(amount="90.00")
        service.process_document(document.id)

        transaction.amount = Decimal("10.00")
        transaction.currency = "USD"
        session.flush()
        result = service.process_document(document.id)

        assert result.expired == 1
        assert result.status == DocumentStatus.NO_MATCH
        suggestion = SuggestionRepository(session).get_for_pair(document.id, transaction.id)
        assert suggestion.status == SuggestionStatus.EXPIRED

    def test_declined_pair_stays_dismissed(self, session, service, make_document, make_transaction):
        document = make_document()
        transaction = make_transaction(amount="90.00")
        service.process_document(document.id)
        suggestion = SuggestionRepository(session).get_for_pair(document.id, transaction.id)
        service.decline(TENANT, document.id, suggestion.id, "user-1")

        result = service.process_document(document.id)

        assert result.candidates == 0
        assert result.status == DocumentStatus.NO_MATCH
        session.refresh(suggestion)
        assert suggestion.status == SuggestionStatus.DECLINED
        assert service.list_suggestions(document.id, TENANT) == []
        assert len(service.list_suggestions(document.id, TENANT, include_closed=True)) == 1

    def test_closed_document_is_skipped(self, service, make_document, make_transaction):
        document = make_document(status=DocumentStatus.ARCHIVED)
        make_transaction()

        result = service.process_document(document.id)

        assert result.skipped
        assert result.status == DocumentStatus.ARCHIVED

    def test_unknown_document(self, service):
        with pytest.raises(EntityNotFoundError):
            service.process_document(uuid.uuid4())

    def test_wrong_tenant(self, service, make_document):
        document = make_document()
        with pytest.raises(TenantMismatchError):
            service.process_document(document.id, tenant_id=OTHER_TENANT)

    def test_document_is_embedded_once(self, session, config, make_document, make_transaction):
        provider = FakeEmbeddingProvider()
        document = make_document()
        make_transaction(amount="90.00")
        service = MatchingService(session, config, embedding_provider=provider)

        service.process_document(document.id)
        service.process_document(document.id)

        assert len(provider.calls) == 1

    def test_document_row_not_written_before_embedding(self, session, config, make_document):
        """The provider call happens before the document's status update is flushed."""
        document = make_document()
        provider = StatusRecordingProvider(document)

        MatchingService(session, config, embedding_provider=provider).process_document(document.id)

        assert provider.seen == [(DocumentStatus.NEW, 1)]

    def test_embedding_failure_degrades_to_pending(self, session, config, make_document):
        document = make_document()
        service = MatchingService(session, config, embedding_provider=FakeEmbeddingProvider(fail=True))

        result = service.process_document(document.id)

        assert result.degraded_reason == "embedding_unavailable"
        assert result.status == DocumentStatus.PENDING

    def test_embedding_failure_still_finds_deterministic_candidates(
        self, session, config, make_document, make_transaction
    ):
        document = make_document()
        make_transaction(amount="90.00")
        service = MatchingService(session, config, embedding_provider=FakeEmbeddingProvider(fail=True))

        result = service.process_document(document.id)

        assert result.degraded
        assert result.created == 1
        assert result.status == DocumentStatus.SUGGESTED_MATCH

    def test_malformed_provider_response_degrades(self, session, config, make_document, make_transaction):
        document = make_document()
        make_transaction(amount="90.00")
        service = MatchingService(session, config, embedding_provider=_malformed_http_provider())

        result = service.process_document(document.id)

        assert result.degraded_reason == "embedding_unavailable"
        assert result.created == 1
        assert result.status == DocumentStatus.SUGGESTED_MATCH

    def test_malformed_provider_response_does_not_stop_rescore(self, session, config, make_document):
        make_document()
        make_document(amount="55.00")
        service = MatchingService(session, config, embedding_provider=_malformed_http_provider())

        summary = service.rescore_all(TENANT)

        assert summary.processed == 2
        assert summary.failed == 0
        assert summary.degraded == 2

    def test_pending_run_is_retried(self, session, config, make_document):
        document = make_document()
        MatchingService(session, config, embedding_provider=FakeEmbeddingProvider(fail=True)).process_document(
            document.id
        )

        summary = MatchingService(session, config, embedding_provider=FakeEmbeddingProvider()).process_pending()

        assert summary.processed == 1
        assert summary.degraded == 0
        assert document.status == DocumentStatus.NO_MATCH


class TestTransactions:

    def test_index_transaction_embeds_and_indexes(self, session, config, make_transaction):
        index = InMemoryVectorIndex()
        provider = FakeEmbeddingProvider()
        transaction = make_transaction(description="Hosting January")
        service = MatchingService(session, config, index=index, embedding_provider=provider)

        assert service.index_transaction(transaction.id) is True
        assert len(index) == 1
        assert provider.calls == ["ACME GmbH Hosting January"]

    def test_index_transaction_without_provider(self, service, make_transaction):
        assert service.index_transaction(make_transaction().id) is False

    def test_new_transaction_rescores_open_documents(self, session, config, make_document, make_transaction):
        document = make_document()
        make_document(doc_date=date(2023, 1, 1))
        service = MatchingService(session, config, index=InMemoryVectorIndex())
        assert service.process_document(document.id).status == DocumentStatus.NO_MATCH

        transaction = make_transaction(amount="90.00")
        results = service.process_transaction(transaction.id)

        assert [r.document_id for r in results] == [document.id]
        assert results[0].status == DocumentStatus.SUGGESTED_MATCH

    def test_unknown_transaction(self, service):
        with pytest.raises(EntityNotFoundError):
            service.process_transaction(uuid.uuid4())


class TestBulkOperations:

    def test_rescore_all(self, session, service, make_document, make_transaction):
        make_document()
        make_document(amount="55.00")
        make_document(status=DocumentStatus.DONE)
        make_document(tenant_id=OTHER_TENANT)
        make_transaction(amount="90.00")

        summary = service.rescore_all(TENANT)

        assert summary.processed == 2
        assert summary.failed == 0
        _, total = AuditRepository(session).search(action=AuditAction.RESCORE, tenant_id=TENANT)
        assert total == 1

    def test_expire(self, session, service, make_document, make_transaction):
        document = make_document()
        transaction = make_transaction(amount="90.00")
        service.process_document(document.id)
        suggestion = SuggestionRepository(session).get_for_pair(document.id, transaction.id)
        suggestion.last_scored_at = utcnow() - timedelta(days=45)
        session.flush()

        assert service.expire() == 1
        session.refresh(suggestion)
        assert suggestion.status == SuggestionStatus.EXPIRED
        _, total = AuditRepository(session).search(action=AuditAction.EXPIRE)
        assert total == 1

    def test_expire_nothing_writes_no_audit(self, session, service):
        assert service.expire(tenant_id=TENANT) == 0
        _, total = AuditRepository(session).search(action=AuditAction.EXPIRE)
        assert total == 0

    def test_stats(self, service, make_document, make_transaction):
        document = make_document()
        make_transaction(amount="90.00")
        service.process_document(document.id)

        stats = service.get_stats(TENANT)

        assert stats['documents'] == {DocumentStatus.SUGGESTED_MATCH.value: 1}
        assert stats['suggestions'] == {SuggestionStatus.PENDING.value: 1}
        assert stats['thresholds'] == {'suggest': 0.40, 'high': 0.75, 'auto': 0.95}
        assert stats['calibrated'] is False
