"""
Threshold calibration tests.
"""

import pytest

from inbox_matcher.calibration import (
    CalibrationService,
    FeedbackSummary,
    calculate_calibrated_thresholds,
    summarize_feedback,
)
from inbox_matcher.config_manager import CalibrationConfig
from inbox_matcher.database.models import AuditAction, MatchType, SuggestionStatus
from inbox_matcher.database.repositories import AuditRepository, SuggestionRepository
from inbox_matcher.scoring import Thresholds
from tests.conftest import TENANT

BASE = Thresholds(suggest=0.40, high=0.75, auto=0.95)
SCORES = {'embedding': None, 'amount': 0.9, 'currency': 1.0, 'date': 1.0, 'name': None}


def feedback(confirmed=0, declined=0, unmatched=0, conf_ok=None, conf_bad=None):
    rows = (
        [(SuggestionStatus.CONFIRMED, conf_ok or 0.8)] * confirmed
        + [(SuggestionStatus.DECLINED, conf_bad or 0.6)] * declined
        + [(SuggestionStatus.UNMATCHED, conf_bad or 0.6)] * unmatched
    )
    return summarize_feedback(rows)


class TestSummarizeFeedback:

    def test_counts_and_averages(self):
        summary = summarize_feedback([
            (SuggestionStatus.CONFIRMED, 0.9),
            (SuggestionStatus.CONFIRMED, 0.7),
            (SuggestionStatus.DECLINED, 0.5),
            (SuggestionStatus.UNMATCHED, 0.3),
        ])
        assert summary.total == 4
        assert summary.negative == 2
        assert summary.accuracy == 0.5
        assert summary.avg_confidence_confirmed == pytest.approx(0.8)
        assert summary.avg_confidence_negative == pytest.approx(0.4)
        assert summary.confidence_gap == pytest.approx(0.4)

    def test_empty(self):
        summary = FeedbackSummary()
        assert summary.accuracy == 0.0
        assert summary.confidence_gap is None


class TestCalculateThresholds:

    @pytest.fixture
    def cfg(self):
        return CalibrationConfig()

    def test_too_few_samples_keeps_current(self, cfg):
        assert calculate_calibrated_thresholds(feedback(confirmed=3), BASE, BASE, cfg) == BASE

    def test_accurate_tenant_lowers_suggest(self, cfg):
        result = calculate_calibrated_thresholds(feedback(confirmed=10), BASE, BASE, cfg)
        assert result.suggest == pytest.approx(0.37)
        assert result.auto == 0.95
        assert result.suggest <= result.high <= result.auto

    def test_inaccurate_tenant_raises_suggest(self, cfg):
        result = calculate_calibrated_thresholds(
            feedback(confirmed=1, declined=9, conf_ok=0.5, conf_bad=0.5), BASE, BASE, cfg
        )
        assert result.suggest == pytest.approx(0.43)

    def test_move_is_bounded_per_cycle(self, cfg):
        """Several rules firing together still move suggest by at most max_adjustment."""
        result = calculate_calibrated_thresholds(
            feedback(confirmed=30, conf_ok=0.9, declined=1, conf_bad=0.4), BASE, BASE, cfg
        )
        assert result.suggest == pytest.approx(BASE.suggest - cfg.max_adjustment)

    def test_excellent_accuracy_lowers_auto(self, cfg):
        result = calculate_calibrated_thresholds(feedback(confirmed=20), BASE, BASE, cfg)
        assert result.auto == cfg.excellent_auto_threshold

    def test_suggest_respects_floor(self, cfg):
        current = Thresholds(suggest=0.31, high=0.7, auto=0.95)
        result = calculate_calibrated_thresholds(feedback(confirmed=10), BASE, current, cfg)
        assert result.suggest == cfg.suggest_min

    def test_high_keeps_relative_position(self, cfg):
        result = calculate_calibrated_thresholds(feedback(confirmed=10), BASE, BASE, cfg)
        position = (BASE.high - BASE.suggest) / (BASE.auto - BASE.suggest)
        expected = result.suggest + (result.auto - result.suggest) * position
        assert result.high == pytest.approx(expected, abs=1e-3)


class TestCalibrationService:

    def _decide(self, session, make_document, make_transaction, status, count):
        repo = SuggestionRepository(session)
        for _ in range(count):
            document = make_document()
            suggestion, _ = repo.upsert(TENANT, document.id, make_transaction().id, SCORES, 0.8,
                                        MatchType.HIGH_CONFIDENCE)
            repo.set_status(suggestion, status, "user-1")
        session.flush()

    def test_uncalibrated_tenant_uses_config(self, session, config):
        service = CalibrationService(session, config)
        assert service.thresholds_for(TENANT) == BASE
        assert not service.is_calibrated(TENANT)

    def test_not_enough_feedback(self, session, config, make_document, make_transaction):
        self._decide(session, make_document, make_transaction, SuggestionStatus.CONFIRMED, 2)
        result = CalibrationService(session, config).calibrate(TENANT)
        assert not result.applied
        assert result.thresholds == BASE

    def test_calibrate_persists_and_audits(self, session, config, make_document, make_transaction):
        self._decide(session, make_document, make_transaction, SuggestionStatus.CONFIRMED, 10)
        service = CalibrationService(session, config)

        result = service.calibrate(TENANT)

        assert result.applied
        assert result.feedback.confirmed == 10
        assert service.is_calibrated(TENANT)
        assert service.thresholds_for(TENANT).suggest == pytest.approx(0.37)
        _, total = AuditRepository(session).search(action=AuditAction.CALIBRATE, tenant_id=TENANT)
        assert total == 1

    def test_disabled_calibration_ignores_stored_row(self, session, config, make_document, make_transaction):
        self._decide(session, make_document, make_transaction, SuggestionStatus.CONFIRMED, 10)
        CalibrationService(session, config).calibrate(TENANT)

        config.calibration.enabled = False
        assert CalibrationService(session, config).thresholds_for(TENANT) == BASE
