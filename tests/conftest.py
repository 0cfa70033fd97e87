"""
Shared fixtures for the inbox matcher test suite.

Uses an in-memory SQLite database (StaticPool, one shared connection) so
repositories, the matching service and the API run against real SQL.
"""

import math
import uuid
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from inbox_matcher import security_logger as security_logger_module
from inbox_matcher.config_manager import ConfigManager
from inbox_matcher.database.connection import DatabaseSettings, create_test_provider
from inbox_matcher.database.models import Base, Document, DocumentStatus, OwnerType, Transaction
from inbox_matcher.database.repositories import EmbeddingRepository
from inbox_matcher.embeddings import EmbeddingProvider, EmbeddingProviderError
from inbox_matcher.security_logger import SecurityLogger

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def unit_vector_with_similarity(similarity: float) -> List[float]:
    """2-d vector whose cosine similarity with [1, 0] is ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity ** 2))]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Returns canned vectors; raises when ``fail`` is set."""

    model = "fake-embedding"

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=None, fail: bool = False):
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0]
        self.fail = fail
        self.calls: List[str] = []

    def embed(self, text, model=None):
        self.calls.append(text)
        if self.fail:
            raise EmbeddingProviderError("provider timed out")
        return self.vectors.get(text, self.default)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT support
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    provider = create_test_provider(engine=engine, settings=DatabaseSettings(url="sqlite://"))
    provider.init()
    yield provider
    provider.close()


@pytest.fixture
def session(db_provider):
    session = db_provider.session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def config(tmp_path):
    """Default configuration (no config file)."""
    ConfigManager.reset_instance()
    cfg = ConfigManager(config_path=str(tmp_path / "missing.yaml"))
    yield cfg
    ConfigManager.reset_instance()


@pytest.fixture(autouse=True)
def security_logger(monkeypatch):
    """Security events go to a console-less, file-less logger during tests."""
    logger = SecurityLogger(enable_file=False)
    monkeypatch.setattr(security_logger_module, "_security_logger", logger)
    return logger


@pytest.fixture
def make_transaction(session):
    def _make(
        tenant_id: str = TENANT,
        amount="100.00",
        currency: Optional[str] = "EUR",
        txn_date: Optional[date] = date(2024, 1, 10),
        counterparty_name: Optional[str] = "ACME GmbH",
        description: Optional[str] = None,
        vector: Optional[List[float]] = None,
    ) -> Transaction:
        transaction = Transaction(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            amount=Decimal(amount) if amount is not None else None,
            currency=currency,
            date=txn_date,
            counterparty_name=counterparty_name,
            description=description,
        )
        session.add(transaction)
        session.flush()
        if vector is not None:
            EmbeddingRepository(session).put(
                OwnerType.TRANSACTION, transaction.id, tenant_id, vector, description, "fake-embedding"
            )
        return transaction
    return _make


@pytest.fixture
def make_document(session):
    def _make(
        tenant_id: str = TENANT,
        amount="100.00",
        currency: Optional[str] = "EUR",
        doc_date: Optional[date] = date(2024, 1, 10),
        counterparty_name: Optional[str] = "ACME GmbH",
        display_name: Optional[str] = "invoice-0042.pdf",
        status: DocumentStatus = DocumentStatus.NEW,
        vector: Optional[List[float]] = None,
    ) -> Document:
        document = Document(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            amount=Decimal(amount) if amount is not None else None,
            currency=currency,
            date=doc_date,
            counterparty_name=counterparty_name,
            display_name=display_name,
            status=status,
        )
        session.add(document)
        session.flush()
        if vector is not None:
            EmbeddingRepository(session).put(
                OwnerType.DOCUMENT, document.id, tenant_id, vector, display_name, "fake-embedding"
            )
        return document
    return _make
