"""
Per-tenant threshold calibration from user feedback

Confirmed suggestions count as correct, declined and unmatched ones as
negatives. The suggest threshold moves by small bounded steps: down when
the tenant's suggestions are mostly right, up when they are mostly wrong.
The high threshold keeps its relative position between suggest and auto.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from inbox_matcher.config_manager import CalibrationConfig
from inbox_matcher.database.models import AuditAction, SuggestionStatus, utcnow
from inbox_matcher.database.repositories import (
    AuditRepository,
    CalibrationRepository,
    SuggestionRepository,
)
from inbox_matcher.scoring import Thresholds

logger = logging.getLogger(__name__)


@dataclass
class FeedbackSummary:
    """Aggregated decisions of one tenant over the lookback window"""
    total: int = 0
    confirmed: int = 0
    declined: int = 0
    unmatched: int = 0
    avg_confidence_confirmed: Optional[float] = None
    avg_confidence_negative: Optional[float] = None

    @property
    def negative(self) -> int:
        return self.declined + self.unmatched

    @property
    def accuracy(self) -> float:
        return self.confirmed / self.total if self.total else 0.0

    @property
    def confidence_gap(self) -> Optional[float]:
        if self.avg_confidence_confirmed is None or self.avg_confidence_negative is None:
            return None
        return self.avg_confidence_confirmed - self.avg_confidence_negative

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'confirmed': self.confirmed,
            'declined': self.declined,
            'unmatched': self.unmatched,
            'accuracy': round(self.accuracy, 4),
            'avg_confidence_confirmed': self.avg_confidence_confirmed,
            'avg_confidence_negative': self.avg_confidence_negative,
        }


def summarize_feedback(rows: Iterable[Tuple[SuggestionStatus, float]]) -> FeedbackSummary:
    summary = FeedbackSummary()
    confirmed_conf = []
    negative_conf = []
    for status, confidence in rows:
        summary.total += 1
        if status == SuggestionStatus.CONFIRMED:
            summary.confirmed += 1
            confirmed_conf.append(confidence)
        elif status == SuggestionStatus.DECLINED:
            summary.declined += 1
            negative_conf.append(confidence)
        elif status == SuggestionStatus.UNMATCHED:
            summary.unmatched += 1
            negative_conf.append(confidence)
    if confirmed_conf:
        summary.avg_confidence_confirmed = round(sum(confirmed_conf) / len(confirmed_conf), 4)
    if negative_conf:
        summary.avg_confidence_negative = round(sum(negative_conf) / len(negative_conf), 4)
    return summary


def calculate_calibrated_thresholds(
    feedback: FeedbackSummary,
    base: Thresholds,
    current: Thresholds,
    cfg: CalibrationConfig
) -> Thresholds:
    """
    Derive new thresholds from feedback.

    Args:
        feedback: Tenant feedback summary
        base: Configured thresholds, used for the high/auto proportion
        current: Thresholds in effect now (previous calibration or base)
        cfg: Calibration bounds and step size

    Returns:
        New thresholds; ``current`` unchanged when there is too little feedback
    """
    if feedback.total < cfg.min_samples:
        return current

    step = cfg.max_adjustment
    accuracy = feedback.accuracy

    def bounded(value: float) -> float:
        return min(cfg.suggest_max, max(cfg.suggest_min, value))

    suggest = current.suggest

    if accuracy > 0.9 and feedback.confirmed >= cfg.conservative_min_samples:
        suggest = bounded(suggest - step)
    elif accuracy > 0.8 and feedback.confirmed >= cfg.min_samples:
        suggest = bounded(suggest - step * 0.66)
    elif accuracy < 0.3 and feedback.negative >= cfg.min_samples:
        suggest = bounded(suggest + step)

    gap = feedback.confidence_gap
    if gap is not None:
        if gap > 0.2:
            suggest = bounded(suggest - step * 0.5)
        elif gap < 0.08 and feedback.total > 10:
            suggest = bounded(suggest + step * 0.5)

    if feedback.confirmed > 25 and accuracy > 0.8:
        suggest = bounded(suggest - step * 0.33)
    if feedback.negative > 20 and accuracy < 0.7:
        suggest = bounded(suggest + step * 0.5)

    # One cycle never moves further than max_adjustment
    suggest = bounded(min(current.suggest + step, max(current.suggest - step, suggest)))

    if accuracy > 0.95 and feedback.confirmed >= 15:
        auto = cfg.excellent_auto_threshold
    else:
        auto = base.auto
    auto = max(suggest, min(cfg.auto_max, max(cfg.auto_min, auto)))

    span = base.auto - base.suggest
    position = (base.high - base.suggest) / span if span > 0 else 0.0
    high = suggest + (auto - suggest) * position

    return Thresholds(
        suggest=round(suggest, 3),
        high=round(min(auto, max(suggest, high)), 3),
        auto=round(auto, 3),
    )


@dataclass
class CalibrationResult:
    tenant_id: str
    thresholds: Thresholds
    previous: Thresholds
    feedback: FeedbackSummary = field(default_factory=FeedbackSummary)
    applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'applied': self.applied,
            'thresholds': self.thresholds.to_dict(),
            'previous': self.previous.to_dict(),
            'feedback': self.feedback.to_dict(),
        }


class CalibrationService:
    """Reads and recalculates a tenant's thresholds."""

    def __init__(self, session: Session, config):
        self.session = session
        self.config = config
        self._calibrations = CalibrationRepository(session)

    @property
    def base(self) -> Thresholds:
        return Thresholds.from_config(self.config.matching)

    def thresholds_for(self, tenant_id: str) -> Thresholds:
        """Thresholds the decision policy uses for ``tenant_id``."""
        if not self.config.calibration.enabled:
            return self.base
        row = self._calibrations.get(tenant_id)
        if row is None:
            return self.base
        return Thresholds(
            suggest=row.suggest_threshold,
            high=row.high_threshold,
            auto=row.auto_threshold,
        )

    def is_calibrated(self, tenant_id: str) -> bool:
        return self._calibrations.get(tenant_id) is not None

    def calibrate(self, tenant_id: str) -> CalibrationResult:
        cfg = self.config.calibration
        current = self.thresholds_for(tenant_id)
        since = utcnow() - timedelta(days=cfg.lookback_days)
        feedback = summarize_feedback(SuggestionRepository(self.session).feedback_since(tenant_id, since))

        result = CalibrationResult(tenant_id=tenant_id, thresholds=current, previous=current, feedback=feedback)
        if not cfg.enabled:
            logger.info(f"Calibration disabled, tenant {tenant_id} keeps configured thresholds")
            return result
        if feedback.total < cfg.min_samples:
            logger.info(
                f"Tenant {tenant_id}: {feedback.total} feedback samples, "
                f"{cfg.min_samples} needed for calibration"
            )
            return result

        thresholds = calculate_calibrated_thresholds(feedback, self.base, current, cfg)
        self._calibrations.save(tenant_id, {
            'suggest_threshold': thresholds.suggest,
            'high_threshold': thresholds.high,
            'auto_threshold': thresholds.auto,
            'total_feedback': feedback.total,
            'confirmed_count': feedback.confirmed,
            'declined_count': feedback.declined,
            'unmatched_count': feedback.unmatched,
            'accuracy': round(feedback.accuracy, 4),
            'avg_confidence_confirmed': feedback.avg_confidence_confirmed,
            'avg_confidence_negative': feedback.avg_confidence_negative,
        })
        AuditRepository(self.session).log(
            action=AuditAction.CALIBRATE,
            resource_type="tenant",
            resource_id=tenant_id,
            tenant_id=tenant_id,
            actor_id="system:calibration",
            details={'previous': current.to_dict(), 'thresholds': thresholds.to_dict(),
                     'feedback': feedback.to_dict()}
        )
        logger.info(
            f"Tenant {tenant_id} calibrated: suggest {current.suggest} -> {thresholds.suggest}, "
            f"auto {current.auto} -> {thresholds.auto} (accuracy {feedback.accuracy:.2f})"
        )

        result.thresholds = thresholds
        result.applied = True
        return result
