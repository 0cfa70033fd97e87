"""
FastAPI Inbox Matching API Server

REST endpoints for scoring inbox documents against ledger transactions and
for confirming or declining the resulting suggestions.

Every tenant-scoped route requires the ``X-Tenant-ID`` header; decisions
are attributed to ``X-Actor-ID``.

Usage:
    uvicorn inbox_matcher.api.server:app --reload --port 8000
"""

import os
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from inbox_matcher.api.middleware import (
    RequestLoggingMiddleware,
    setup_cors,
    setup_exception_handlers,
)
from inbox_matcher.api.models import (
    CalibrationResponse,
    ConfirmRequest,
    DecisionResponse,
    DocumentStatusResponse,
    ExpireRequest,
    ExpireResponse,
    HealthResponse,
    MatchRunResponse,
    RescoreResponse,
    StatsResponse,
    SuggestionListResponse,
)
from inbox_matcher.config_manager import ConfigManager, ConfigurationError, configure_logging, get_config
from inbox_matcher.database.connection import DatabaseSettings, get_db_provider, init_db
from inbox_matcher.database.matching_service import (
    MatchingService,
    configure_matching_service,
    get_matching_service,
    suggestion_to_dict,
)
from inbox_matcher.database.monitoring import check_health, get_db_metrics
from inbox_matcher.embeddings import HttpEmbeddingProvider
from inbox_matcher.reconciliation import TenantMismatchError
from inbox_matcher.security_logger import get_security_logger
from inbox_matcher.vector_index import DatabaseVectorIndex

logger = logging.getLogger(__name__)

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        get_security_logger().log_api_key_rejected("missing", request.url.path)
        raise HTTPException(status_code=401, detail="Missing API key. Provide X-API-Key header.")

    if api_key != API_KEY:
        get_security_logger().log_api_key_rejected("invalid", request.url.path)
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_tenant(x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1, max_length=64)) -> str:
    """Tenant the caller acts for."""
    return x_tenant_id


def get_actor(x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-ID", max_length=128)) -> str:
    return x_actor_id or "api"


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def _require_same_tenant(path_tenant: str, caller_tenant: str, actor_id: str, action: str) -> None:
    if path_tenant != caller_tenant:
        get_security_logger().log_tenant_mismatch(
            caller_tenant_id=caller_tenant,
            owner_tenant_id=path_tenant,
            actor_id=actor_id,
            resource_type="tenant",
            resource_id=path_tenant,
            action=action,
        )
        raise TenantMismatchError(f"Caller tenant {caller_tenant} cannot act on tenant {path_tenant}")


app = FastAPI(
    title="Inbox Matching API",
    description="Matches inbound receipts and invoices to ledger transactions",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, connect the database and wire the matching service."""
    global _config, _startup_time

    logger.info("Starting Inbox Matching API...")
    try:
        _config = get_config(CONFIG_PATH)
        configure_logging(_config)
        logger.info(f"Configuration loaded from {CONFIG_PATH}")

        db_provider = init_db(
            echo=_config.database.echo,
            settings=DatabaseSettings.from_config(_config),
        )

        embedding_provider = None
        if _config.embedding.enabled:
            embedding_provider = HttpEmbeddingProvider.from_config(_config)
            logger.info(f"Embedding provider enabled: model={_config.embedding.model}")

        configure_matching_service(
            db_provider,
            _config,
            index=DatabaseVectorIndex(db_provider.session_factory),
            embedding_provider=embedding_provider,
            security_logger=get_security_logger(log_dir=_config.logging.security_log_dir),
        )
        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready")

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Inbox Matching API...")


# ============================================
# DOCUMENTS
# ============================================

@app.post(
    "/api/v1/documents/{document_id}/process",
    response_model=MatchRunResponse,
    summary="Score a document",
    description="Retrieve candidates, score them and store suggestions. Idempotent.",
)
def process_document(
    document_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    return service.process_document(document_id, tenant_id=tenant_id).to_dict()


@app.get(
    "/api/v1/documents/{document_id}/suggestions",
    response_model=SuggestionListResponse,
    summary="List suggestions",
)
def list_suggestions(
    document_id: uuid.UUID,
    include_closed: bool = False,
    tenant_id: str = Depends(get_tenant),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    suggestions = service.list_suggestions(document_id, tenant_id=tenant_id, include_closed=include_closed)
    return SuggestionListResponse(
        document_id=str(document_id),
        count=len(suggestions),
        suggestions=[suggestion_to_dict(s) for s in suggestions],
    )


@app.post(
    "/api/v1/documents/{document_id}/confirm",
    response_model=DecisionResponse,
    summary="Confirm a match",
    description="Link the document to the transaction; competing suggestions become unmatched.",
)
def confirm_match(
    document_id: uuid.UUID,
    body: ConfirmRequest,
    tenant_id: str = Depends(get_tenant),
    actor_id: str = Depends(get_actor),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    suggestion = service.confirm(tenant_id, document_id, body.transaction_id, actor_id)
    return DecisionResponse(
        document_id=str(document_id),
        document_status=suggestion.document.status.value,
        suggestion=suggestion_to_dict(suggestion),
    )


@app.post(
    "/api/v1/documents/{document_id}/suggestions/{suggestion_id}/decline",
    response_model=DecisionResponse,
    summary="Decline a suggestion",
)
def decline_suggestion(
    document_id: uuid.UUID,
    suggestion_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant),
    actor_id: str = Depends(get_actor),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    suggestion = service.decline(tenant_id, document_id, suggestion_id, actor_id)
    return DecisionResponse(
        document_id=str(document_id),
        document_status=suggestion.document.status.value,
        suggestion=suggestion_to_dict(suggestion),
    )


@app.post(
    "/api/v1/documents/{document_id}/archive",
    response_model=DocumentStatusResponse,
    summary="Archive a document",
)
def archive_document(
    document_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant),
    actor_id: str = Depends(get_actor),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    document = service.archive(tenant_id, document_id, actor_id)
    return DocumentStatusResponse(document_id=str(document.id), status=document.status.value)


# ============================================
# TENANTS
# ============================================

@app.post(
    "/api/v1/tenants/{tenant}/rescore",
    response_model=RescoreResponse,
    summary="Rescore all open documents of a tenant",
)
def rescore_tenant(
    tenant: str,
    tenant_id: str = Depends(get_tenant),
    actor_id: str = Depends(get_actor),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    _require_same_tenant(tenant, tenant_id, actor_id, "rescore")
    return service.rescore_all(tenant).to_dict()


@app.post(
    "/api/v1/tenants/{tenant}/calibrate",
    response_model=CalibrationResponse,
    summary="Recalibrate thresholds from feedback",
)
def calibrate_tenant(
    tenant: str,
    tenant_id: str = Depends(get_tenant),
    actor_id: str = Depends(get_actor),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    _require_same_tenant(tenant, tenant_id, actor_id, "calibrate")
    return service.calibrate(tenant).to_dict()


@app.get(
    "/api/v1/tenants/{tenant}/stats",
    response_model=StatsResponse,
    summary="Document and suggestion counts",
)
def tenant_stats(
    tenant: str,
    tenant_id: str = Depends(get_tenant),
    actor_id: str = Depends(get_actor),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    _require_same_tenant(tenant, tenant_id, actor_id, "stats")
    return service.get_stats(tenant)


# ============================================
# MAINTENANCE
# ============================================

@app.post(
    "/api/v1/suggestions/expire",
    response_model=ExpireResponse,
    summary="Expire stale pending suggestions",
)
def expire_suggestions(
    body: Optional[ExpireRequest] = None,
    tenant_id: str = Depends(get_tenant),
    service: MatchingService = Depends(get_matching_service),
    api_key: str = Depends(verify_api_key),
):
    older_than = None
    if body is not None and body.older_than_days is not None:
        older_than = datetime.now(timezone.utc) - timedelta(days=body.older_than_days)
    return ExpireResponse(expired=service.expire(older_than, tenant_id=tenant_id))


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
)
def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Return health status including database latency. Always returns HTTP 200."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    try:
        provider = get_db_provider()
        if not provider.initialized:
            return HealthResponse(
                status="degraded",
                algorithm_version=config.algorithm.version,
                embedding_enabled=config.embedding.enabled,
                uptime_seconds=uptime_seconds,
                error_message="Database not initialized",
            )
        health = check_health(provider.engine, provider.session_factory)
        database = health.to_dict()
        database['queries'] = get_db_metrics()
        return HealthResponse(
            status="healthy" if health.healthy else "degraded",
            database=database,
            algorithm_version=config.algorithm.version,
            embedding_enabled=config.embedding.enabled,
            uptime_seconds=uptime_seconds,
            error_message=health.error,
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponse(status="error", uptime_seconds=uptime_seconds, error_message=str(e))


@app.get("/", include_in_schema=False)
async def root():
    return {"service": "inbox-matcher", "docs": "/api/docs", "health": "/api/v1/health"}
