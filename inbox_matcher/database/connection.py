"""
Database Connection Management for the Inbox Matching Engine

Owns the engine and session factory shared by the API, the CLI and the
tests. Services never commit themselves; callers wrap a unit of work in
``session_scope()`` which commits on success and rolls back on error.

Settings come from ``config.yaml`` (``database`` section) with ``DB_*`` and
``DATABASE_URL`` environment variables taking precedence.
"""

import os
import logging
from typing import Generator, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from inbox_matcher.database.models import Base

logger = logging.getLogger(__name__)


@dataclass
class DatabaseSettings:
    """Connection and pool settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "inbox_matcher"
    user: str = "inbox_matcher"
    password: str = "inbox_matcher"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "inbox_matcher"),
            user=os.getenv("DB_USER", "inbox_matcher"),
            password=os.getenv("DB_PASSWORD", "inbox_matcher"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    @classmethod
    def from_config(cls, config) -> 'DatabaseSettings':
        """Settings from the ``database`` section; environment variables still win."""
        db = config.database
        return cls(
            host=os.getenv("DB_HOST", db.host),
            port=int(os.getenv("DB_PORT", str(db.port))),
            database=os.getenv("DB_NAME", db.name),
            user=os.getenv("DB_USER", db.user),
            password=os.getenv("DB_PASSWORD", db.password),
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            echo=db.echo,
            url=db.url,
        )

    def get_url(self) -> str:
        full_url = os.getenv("DATABASE_URL") or self.url
        if full_url:
            return full_url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_options(self) -> dict:
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# Only transient connection failures (server restarting, refused) are retried
db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)


class DatabaseSessionProvider:
    """
    Engine and session factory holder.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_config(config))
        provider.init()
        with provider.session_scope() as session:
            MatchingService(session, config).process_document(document_id)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, echo: Optional[bool] = None) -> None:
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )
        self._initialized = True
        logger.info(f"Database session provider initialized ({self._engine.dialect.name})")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        url = self._settings.get_url()

        if url.startswith("sqlite"):
            engine = create_engine(url, echo=self._settings.echo)

            # Suggestion and embedding rows reference documents/transactions
            @event.listens_for(engine, "connect")
            def enable_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                **self._settings.pool_options()
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on exit and rolls back on exception."""
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables without migrations (development and tests)."""
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def close(self) -> None:
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def set_db_provider(provider: Optional[DatabaseSessionProvider]) -> None:
    """Replace the global provider (CLI bootstrap and tests)."""
    global _db_provider
    _db_provider = provider


def init_db(echo: bool = False, settings: Optional[DatabaseSettings] = None) -> DatabaseSessionProvider:
    """
    Initialize the global database provider. Call during application startup.

    Args:
        echo: If True, log all SQL statements
        settings: Explicit settings, otherwise read from the environment
    """
    global _db_provider
    if settings is not None and _db_provider is None:
        _db_provider = DatabaseSessionProvider(settings=settings)
    provider = get_db_provider()
    provider.init(echo=echo)
    return provider


def close_db() -> None:
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider around a pre-built engine, e.g. in-memory SQLite for tests."""
    return DatabaseSessionProvider(settings=settings, engine=engine)
