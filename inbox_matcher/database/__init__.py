"""
Database Package for the Inbox Matching Engine

This package provides:
- SQLAlchemy ORM models for documents, transactions, embeddings and suggestions
- Engine and session management
- Repository pattern for data access
- Performance monitoring and query timing
"""

from inbox_matcher.database.models import (
    Base,
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
)
from inbox_matcher.database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)
from inbox_matcher.database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    reset_metrics,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Models
    'Document',
    'Transaction',
    'Embedding',
    'MatchSuggestion',
    'AuditLog',
    'TenantMatchCalibration',
    # Enums
    'DocumentStatus',
    'OwnerType',
    'MatchType',
    'SuggestionStatus',
    'AuditAction',
    # Provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    # Initialization
    'init_db',
    'close_db',
    # Testing support
    'create_test_provider',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'reset_metrics',
    'check_health',
    'HealthStatus',
]
