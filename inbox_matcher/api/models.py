"""
Pydantic request/response schemas for the Inbox Matching API

Mirrors the dictionaries produced by the matching service so routes can
validate and document their payloads.
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SignalScoresResponse(BaseModel):
    """Per-signal sub-scores (0-1); null when the signal could not be computed."""
    embedding: Optional[float] = None
    amount: Optional[float] = None
    currency: Optional[float] = None
    date: Optional[float] = None
    name: Optional[float] = None


class TransactionSummary(BaseModel):
    amount: Optional[float] = None
    currency: Optional[str] = None
    date: Optional[str] = None
    counterparty_name: Optional[str] = None
    description: Optional[str] = None


class SuggestionResponse(BaseModel):
    """One document/transaction pairing."""
    id: str = Field(..., description="Suggestion ID")
    document_id: str
    transaction_id: str
    confidence: float = Field(..., ge=0.0, le=1.0, description="Combined confidence (0-1)")
    match_type: str = Field(..., description="auto_matched, high_confidence or suggested")
    status: str = Field(..., description="pending, confirmed, declined, expired or unmatched")
    rank: int = Field(..., description="Position among the document's candidates, 1 is best")
    scores: SignalScoresResponse
    details: Optional[Dict[str, Any]] = None
    decided_by: Optional[str] = None
    decided_at: Optional[str] = None
    last_scored_at: Optional[str] = None
    transaction: TransactionSummary = Field(default_factory=TransactionSummary)


class SuggestionListResponse(BaseModel):
    document_id: str
    count: int
    suggestions: List[SuggestionResponse] = Field(default_factory=list)


class MatchRunResponse(BaseModel):
    """Outcome of scoring one document."""
    document_id: str
    status: str = Field(..., description="Document status after the run")
    candidates: int = Field(default=0, description="Candidates scored")
    created: int = 0
    updated: int = 0
    reopened: int = 0
    expired: int = 0
    auto_matched_transaction_id: Optional[str] = None
    degraded: bool = Field(default=False, description="True when a dependency failed and a fallback was used")
    degraded_reason: Optional[str] = None
    skipped: bool = Field(default=False, description="True when the document was already closed")
    suggestions: List[SuggestionResponse] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    transaction_id: uuid.UUID = Field(..., description="Transaction to link the document to")


class DecisionResponse(BaseModel):
    """Result of a confirm or decline."""
    document_id: str
    document_status: str
    suggestion: SuggestionResponse


class DocumentStatusResponse(BaseModel):
    document_id: str
    status: str


class RescoreResponse(BaseModel):
    tenant_id: Optional[str] = None
    processed: int = 0
    failed: int = 0
    auto_matched: int = 0
    degraded: int = 0
    statuses: Dict[str, int] = Field(default_factory=dict)


class ThresholdsResponse(BaseModel):
    suggest: float
    high: float
    auto: float


class CalibrationResponse(BaseModel):
    tenant_id: str
    applied: bool = Field(..., description="False when there was not enough feedback")
    thresholds: ThresholdsResponse
    previous: ThresholdsResponse
    feedback: Dict[str, Any] = Field(default_factory=dict)


class StatsResponse(BaseModel):
    tenant_id: str
    documents: Dict[str, int] = Field(default_factory=dict)
    suggestions: Dict[str, int] = Field(default_factory=dict)
    thresholds: ThresholdsResponse
    calibrated: bool = False


class ExpireRequest(BaseModel):
    older_than_days: Optional[int] = Field(
        default=None,
        ge=0,
        description="Expire pending suggestions not rescored for this many days (defaults to config)"
    )


class ExpireResponse(BaseModel):
    expired: int


class HealthResponse(BaseModel):
    """Service health. Always returned with HTTP 200."""
    status: str = Field(..., description="healthy, degraded or error")
    database: Dict[str, Any] = Field(default_factory=dict)
    algorithm_version: str = "unknown"
    embedding_enabled: bool = False
    uptime_seconds: Optional[int] = None
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    timestamp: str
    field: Optional[str] = None
    suggestion: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
