"""
Tests for the embedding client, vector helpers and vector indexes.
"""

import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy.exc import OperationalError

from inbox_matcher.embeddings import (
    EmbeddingProviderError,
    HttpEmbeddingProvider,
    cosine_similarity,
    prepare_document_text,
    prepare_transaction_text,
)
from inbox_matcher.vector_index import DatabaseVectorIndex, InMemoryVectorIndex, VectorIndexError
from tests.conftest import OTHER_TENANT, TENANT, unit_vector_with_similarity


def _response(payload, status=200):
    response = MagicMock()
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        response.raise_for_status.return_value = None
    return response


class TestCosineSimilarity:

    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_known_similarity(self):
        assert cosine_similarity([1.0, 0.0], unit_vector_with_similarity(0.97)) == pytest.approx(0.97)

    def test_opposite_floored_at_zero(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0

    @pytest.mark.parametrize("a,b", [
        (None, [1.0]),
        ([], []),
        ([0.0, 0.0], [1.0, 0.0]),
        ([1.0, 0.0], [1.0, 0.0, 0.0]),
    ])
    def test_unusable_vectors(self, a, b):
        assert cosine_similarity(a, b) is None


class TestTextPreparation:

    def test_document_text(self):
        document = SimpleNamespace(display_name="Invoice 42", counterparty_name="ACME",
                                   website="https://www.acme.example/billing", description="Hosting")
        assert prepare_document_text(document) == "Invoice 42 ACME acme.example Hosting"

    def test_empty_text(self):
        assert prepare_transaction_text(SimpleNamespace(counterparty_name=None, description="  ")) == "unknown"


class TestHttpEmbeddingProvider:
    """Tests for the HTTP client; no network."""

    def _provider(self, session, **kwargs):
        return HttpEmbeddingProvider("http://embed.local/v1", dimensions=3, max_retries=1,
                                     session=session, **kwargs)

    def test_embedding_field(self):
        session = MagicMock()
        session.post.return_value = _response({"embedding": [0.1, 0.2, 0.3]})
        assert self._provider(session).embed("hello") == [0.1, 0.2, 0.3]

    def test_openai_style_payload(self):
        session = MagicMock()
        session.post.return_value = _response({"data": [{"embedding": [1, 2, 3]}]})
        assert self._provider(session).embed("hello") == [1.0, 2.0, 3.0]

    def test_sends_model_and_auth(self):
        session = MagicMock()
        session.post.return_value = _response({"embedding": [0.1, 0.2, 0.3]})
        self._provider(session, api_key="secret", model="m-1").embed("hello")

        _, kwargs = session.post.call_args
        assert kwargs["json"] == {"model": "m-1", "input": "hello"}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["timeout"] == 5.0

    def test_timeout_is_retried_then_raised(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(EmbeddingProviderError, match="timed out"):
            self._provider(session).embed("hello")
        assert session.post.call_count == 2

    def test_http_error(self):
        session = MagicMock()
        session.post.return_value = _response({}, status=500)
        with pytest.raises(EmbeddingProviderError):
            self._provider(session).embed("hello")

    def test_wrong_dimensions(self):
        session = MagicMock()
        session.post.return_value = _response({"embedding": [0.1, 0.2]})
        with pytest.raises(EmbeddingProviderError, match="dimensions"):
            self._provider(session).embed("hello")

    def test_non_finite_values(self):
        session = MagicMock()
        session.post.return_value = _response({"embedding": [0.1, float("nan"), 0.3]})
        with pytest.raises(EmbeddingProviderError):
            self._provider(session).embed("hello")

    @pytest.mark.parametrize("payload", [
        [0.1, 0.2, 0.3],
        "not json object",
        None,
        {},
        {"data": {"embedding": [1, 2, 3]}},
        {"data": []},
        {"data": ["x"]},
        {"data": [{"vector": [1, 2, 3]}]},
        {"embedding": "0.1,0.2,0.3"},
        {"embedding": [0.1, "a", 0.3]},
    ])
    def test_malformed_body(self, payload):
        """Any unexpected response shape becomes a provider error."""
        session = MagicMock()
        session.post.return_value = _response(payload)
        with pytest.raises(EmbeddingProviderError):
            self._provider(session).embed("hello")

    def test_url_required(self):
        with pytest.raises(ValueError):
            HttpEmbeddingProvider("")


class TestInMemoryVectorIndex:

    def test_query_orders_by_similarity(self):
        index = InMemoryVectorIndex()
        near, far = uuid.uuid4(), uuid.uuid4()
        index.upsert(near, unit_vector_with_similarity(0.95), TENANT)
        index.upsert(far, unit_vector_with_similarity(0.30), TENANT)

        results = index.query([1.0, 0.0], TENANT, top_k=5)
        assert [owner for owner, _ in results] == [near, far]
        assert results[0][1] == pytest.approx(0.95)

    def test_tenant_isolation(self):
        """Vectors of another tenant are never returned."""
        index = InMemoryVectorIndex()
        index.upsert(uuid.uuid4(), [1.0, 0.0], OTHER_TENANT)
        assert index.query([1.0, 0.0], TENANT, top_k=5) == []

    def test_top_k_and_remove(self):
        index = InMemoryVectorIndex()
        ids = [uuid.uuid4() for _ in range(5)]
        for i, owner in enumerate(ids):
            index.upsert(owner, unit_vector_with_similarity(0.5 + i / 10), TENANT)
        assert len(index.query([1.0, 0.0], TENANT, top_k=2)) == 2

        index.remove(ids[-1], TENANT)
        assert len(index) == 4
        assert ids[-1] not in [owner for owner, _ in index.query([1.0, 0.0], TENANT, top_k=5)]

    def test_zero_vector_skipped(self):
        index = InMemoryVectorIndex()
        index.upsert(uuid.uuid4(), [0.0, 0.0], TENANT)
        assert len(index) == 0


class TestDatabaseVectorIndex:

    def test_scans_tenant_transactions(self, session, db_provider, make_transaction):
        mine = make_transaction(vector=unit_vector_with_similarity(0.9))
        make_transaction(tenant_id=OTHER_TENANT, vector=[1.0, 0.0])
        session.commit()

        results = DatabaseVectorIndex(db_provider.session_factory).query([1.0, 0.0], TENANT, top_k=10)
        assert [owner for owner, _ in results] == [mine.id]

    def test_database_failure_raises_index_error(self):
        def broken_factory():
            session = MagicMock()
            session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))
            return session

        with pytest.raises(VectorIndexError):
            DatabaseVectorIndex(broken_factory).query([1.0, 0.0], TENANT, top_k=5)
