"""
Operational metrics for the matching engine.

Timed operations (candidate window queries, suggestion upserts, bulk expiry)
feed both an in-process stats table exposed on ``/health`` and prometheus
histograms. Matching outcomes and reconciliation results are prometheus
counters only.

Usage:
    from inbox_matcher.database.monitoring import query_timer

    with query_timer("retrieve_candidates"):
        candidates = retriever.retrieve(...)
"""

import logging
import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Optional, Dict, Any

from prometheus_client import Histogram, Counter, Gauge
from sqlalchemy import text

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 1000.0


operation_duration = Histogram(
    'inbox_matcher_operation_duration_seconds',
    'Duration of timed matching and storage operations',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

slow_operations_total = Counter(
    'inbox_matcher_slow_operations_total',
    'Operations slower than the slow threshold',
    ['operation']
)

pool_checked_out = Gauge(
    'inbox_matcher_db_pool_checked_out',
    'Connections checked out at the last health check'
)

match_runs_total = Counter(
    'inbox_matcher_match_runs_total',
    'Document scoring runs by outcome',
    ['outcome']
)

match_degraded_runs_total = Counter(
    'inbox_matcher_match_degraded_runs_total',
    'Scoring runs that fell back to deterministic retrieval',
    ['reason']
)

suggestions_written_total = Counter(
    'inbox_matcher_suggestions_written_total',
    'Suggestion upserts by match type',
    ['match_type']
)

reconciliation_actions_total = Counter(
    'inbox_matcher_reconciliation_actions_total',
    'Reconciliation actions by action and result',
    ['action', 'result']
)


def record_match_run(outcome: str, degraded_reason: Optional[str] = None) -> None:
    """Count one scoring run and, when degraded, the reason it degraded."""
    match_runs_total.labels(outcome=outcome).inc()
    if degraded_reason:
        match_degraded_runs_total.labels(reason=degraded_reason).inc()


def record_suggestion(match_type: str) -> None:
    suggestions_written_total.labels(match_type=match_type).inc()


def record_reconciliation(action: str, result: str) -> None:
    reconciliation_actions_total.labels(action=action, result=result).inc()


class OperationStats:
    """Running totals for one named operation. Callers hold the collector lock."""

    __slots__ = ('count', 'errors', 'slow', 'total_ms', 'max_ms', 'last_run')

    def __init__(self):
        self.count = 0
        self.errors = 0
        self.slow = 0
        self.total_ms = 0.0
        self.max_ms = 0.0
        self.last_run: Optional[datetime] = None

    def add(self, duration_ms: float, failed: bool) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)
        self.last_run = datetime.now()
        if failed:
            self.errors += 1
        if duration_ms > SLOW_OPERATION_MS:
            self.slow += 1

    def snapshot(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'errors': self.errors,
            'slow': self.slow,
            'avg_ms': round(self.total_ms / self.count, 2) if self.count else 0.0,
            'max_ms': round(self.max_ms, 2),
            'last_run': self.last_run.isoformat() if self.last_run else None,
        }


class _StatsTable:

    def __init__(self):
        self._lock = threading.Lock()
        self._ops: Dict[str, OperationStats] = {}
        self._since = datetime.now()

    def add(self, operation: str, duration_ms: float, failed: bool) -> None:
        with self._lock:
            self._ops.setdefault(operation, OperationStats()).add(duration_ms, failed)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': (datetime.now() - self._since).total_seconds(),
                'operations': {name: op.snapshot() for name, op in self._ops.items()},
            }

    def clear(self) -> None:
        with self._lock:
            self._ops.clear()
            self._since = datetime.now()


_stats = _StatsTable()


def get_db_metrics() -> Dict[str, Any]:
    """Per-operation counts and timings since start or the last reset."""
    return _stats.snapshot()


def reset_metrics() -> None:
    _stats.clear()


@contextmanager
def query_timer(operation: str):
    """Time the enclosed block, record it under ``operation`` and warn when slow."""
    started = time.perf_counter()
    failed = False
    try:
        yield
    except Exception:
        failed = True
        raise
    finally:
        elapsed = time.perf_counter() - started
        elapsed_ms = elapsed * 1000
        _stats.add(operation, elapsed_ms, failed)
        operation_duration.labels(
            operation=operation, status="error" if failed else "success"
        ).observe(elapsed)
        if elapsed_ms > SLOW_OPERATION_MS:
            slow_operations_total.labels(operation=operation).inc()
            logger.warning(f"Slow operation {operation}: {elapsed_ms:.0f}ms")


def timed_query(operation: str):
    """Decorator form of ``query_timer`` for repository methods."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator


@dataclass
class HealthStatus:
    healthy: bool
    latency_ms: float
    pool_checked_out: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'pool_checked_out': self.pool_checked_out,
            'error': self.error,
            'timestamp': self.timestamp.isoformat()
        }


def check_health(engine, session_factory) -> HealthStatus:
    """Round-trip ``SELECT 1`` and report latency plus pool usage."""
    started = time.perf_counter()
    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(
            healthy=False,
            latency_ms=(time.perf_counter() - started) * 1000,
            error=str(e)
        )

    # StaticPool (SQLite tests) has no checkout counter
    checkedout = getattr(engine.pool, "checkedout", None)
    in_use = checkedout() if callable(checkedout) else 0
    pool_checked_out.set(in_use)
    return HealthStatus(
        healthy=True,
        latency_ms=(time.perf_counter() - started) * 1000,
        pool_checked_out=in_use
    )
