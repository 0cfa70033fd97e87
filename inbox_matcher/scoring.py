"""
Signal scoring and decision policy for document/transaction pairs

The scorer turns one (document, transaction) pair into five independent
sub-scores. Each sub-score is either a float in [0, 1] or None when its
inputs are missing, and None signals are left out of the weighted mean
instead of counting as zero. The policy combines them into a confidence
and classifies the pair.

Usage:
    scorer = SignalScorer(date_decay_days=14)
    policy = DecisionPolicy(weights, Thresholds(0.40, 0.75, 0.95))

    scores = scorer.score(document, transaction, doc_vector, txn_vector)
    confidence, match_type = policy.evaluate(scores)
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from rapidfuzz import fuzz

from inbox_matcher.database.models import MatchType, normalize_currency, normalize_name
from inbox_matcher.embeddings import cosine_similarity

logger = logging.getLogger(__name__)


# ============================================
# SUB-SCORES
# ============================================

@dataclass
class SignalScores:
    """Per-signal sub-scores for one candidate pair"""
    embedding: Optional[float] = None
    amount: Optional[float] = None
    currency: Optional[float] = None
    date: Optional[float] = None
    name: Optional[float] = None

    def __post_init__(self):
        # Out-of-range and non-finite values never leave the scorer
        for signal in ('embedding', 'amount', 'currency', 'date', 'name'):
            setattr(self, signal, clamp_score(getattr(self, signal)))

    def present(self) -> Dict[str, float]:
        """Signals that could be computed."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {k: (round(v, 4) if v is not None else None) for k, v in asdict(self).items()}


def clamp_score(value: Any) -> Optional[float]:
    """Coerce a raw signal into [0, 1]; NaN, infinities and garbage become None."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return min(1.0, max(0.0, value))


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(result) or math.isinf(result) else result


def amount_score(document_amount: Any, transaction_amount: Any) -> Optional[float]:
    """1 for equal amounts, decaying linearly to 0 at a difference of one transaction amount.

    Signs are ignored: expenses are stored negative on the ledger side but
    positive on receipts.
    """
    doc = _as_float(document_amount)
    txn = _as_float(transaction_amount)
    if doc is None or txn is None:
        return None
    doc, txn = abs(doc), abs(txn)
    return 1.0 - min(abs(doc - txn) / max(txn, 1.0), 1.0)


def currency_score(document_currency: Optional[str], transaction_currency: Optional[str]) -> Optional[float]:
    doc = normalize_currency(document_currency)
    txn = normalize_currency(transaction_currency)
    if doc is None or txn is None:
        return None
    return 1.0 if doc == txn else 0.0


def date_score(document_date: Optional[date], transaction_date: Optional[date], decay_days: int) -> Optional[float]:
    if document_date is None or transaction_date is None:
        return None
    days = abs((document_date - transaction_date).days)
    return max(0.0, 1.0 - days / float(decay_days))


def name_score(document_name: Optional[str], transaction_name: Optional[str]) -> Optional[float]:
    """Token-order-insensitive similarity of the normalized counterparty names."""
    left = normalize_name(document_name)
    right = normalize_name(transaction_name)
    if not left or not right:
        return None
    return fuzz.token_sort_ratio(left, right) / 100.0


def document_counterparty(document: Any) -> Optional[str]:
    """Extracted counterparty, falling back to the display name (usually the sender)."""
    return getattr(document, 'counterparty_name', None) or getattr(document, 'display_name', None)


class SignalScorer:
    """Computes the five sub-scores for a (document, transaction) pair."""

    def __init__(self, date_decay_days: int = 14):
        if date_decay_days <= 0:
            raise ValueError("date_decay_days must be positive")
        self.date_decay_days = date_decay_days

    @classmethod
    def from_config(cls, config) -> 'SignalScorer':
        return cls(date_decay_days=config.scoring.date_decay_days)

    def score(
        self,
        document: Any,
        transaction: Any,
        document_vector: Optional[Sequence[float]] = None,
        transaction_vector: Optional[Sequence[float]] = None
    ) -> SignalScores:
        return SignalScores(
            embedding=cosine_similarity(document_vector, transaction_vector),
            amount=amount_score(document.amount, transaction.amount),
            currency=currency_score(document.currency, transaction.currency),
            date=date_score(document.date, transaction.date, self.date_decay_days),
            name=name_score(document_counterparty(document), transaction.counterparty_name),
        )


# ============================================
# DECISION POLICY
# ============================================

def combine_scores(scores: SignalScores, weights: Mapping[str, float]) -> float:
    """
    Weighted mean over the signals that are present.

    Weights are renormalized over present signals, so a missing embedding
    does not drag the confidence down. With nothing to weigh the result is 0.

    Args:
        scores: Sub-scores for one pair
        weights: Signal name -> non-negative weight

    Returns:
        Confidence in [0, 1]
    """
    total_weight = 0.0
    weighted = 0.0
    for signal, value in scores.present().items():
        weight = float(weights.get(signal, 0.0))
        if weight <= 0:
            continue
        total_weight += weight
        weighted += weight * value

    if total_weight == 0:
        return 0.0
    return clamp_score(round(weighted / total_weight, 6)) or 0.0


@dataclass(frozen=True)
class Thresholds:
    """Classification cut-offs, suggest <= high <= auto"""
    suggest: float = 0.40
    high: float = 0.75
    auto: float = 0.95

    @classmethod
    def from_config(cls, matching) -> 'Thresholds':
        return cls(
            suggest=matching.suggest_threshold,
            high=matching.high_threshold,
            auto=matching.auto_threshold,
        )

    def to_dict(self) -> Dict[str, float]:
        return {'suggest': self.suggest, 'high': self.high, 'auto': self.auto}


@dataclass
class ScoredCandidate:
    """A transaction candidate after scoring and classification"""
    transaction: Any
    scores: SignalScores
    confidence: float
    match_type: Optional[MatchType] = None  # None means no_match
    rank: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction_id(self):
        return self.transaction.id

    @property
    def qualifies(self) -> bool:
        return self.match_type is not None


@dataclass
class Decision:
    """Outcome of the policy over all candidates of one document"""
    accepted: List[ScoredCandidate] = field(default_factory=list)
    rejected: List[ScoredCandidate] = field(default_factory=list)

    @property
    def leading(self) -> Optional[ScoredCandidate]:
        return self.accepted[0] if self.accepted else None

    @property
    def auto_match(self) -> Optional[ScoredCandidate]:
        lead = self.leading
        if lead is not None and lead.match_type == MatchType.AUTO_MATCHED:
            return lead
        return None


class DecisionPolicy:
    """Combines sub-scores and classifies candidates for a document."""

    def __init__(self, weights: Mapping[str, float], thresholds: Thresholds = Thresholds()):
        if not 0.0 <= thresholds.suggest <= thresholds.high <= thresholds.auto <= 1.0:
            raise ValueError(f"Invalid thresholds: {thresholds}")
        self.weights = dict(weights)
        self.thresholds = thresholds

    @classmethod
    def from_config(cls, config, thresholds: Optional[Thresholds] = None) -> 'DecisionPolicy':
        return cls(config.matching.weights, thresholds or Thresholds.from_config(config.matching))

    def classify(self, scores: SignalScores, confidence: float) -> Optional[MatchType]:
        t = self.thresholds
        if (
            confidence >= t.auto
            and scores.amount == 1.0
            and scores.currency in (1.0, None)
        ):
            return MatchType.AUTO_MATCHED
        if confidence >= t.high:
            return MatchType.HIGH_CONFIDENCE
        if confidence >= t.suggest:
            return MatchType.SUGGESTED
        return None

    def evaluate(self, scores: SignalScores) -> Tuple[float, Optional[MatchType]]:
        confidence = combine_scores(scores, self.weights)
        return confidence, self.classify(scores, confidence)

    def decide(self, scored: Sequence[Tuple[Any, SignalScores]]) -> Decision:
        """
        Classify and rank every candidate of one document.

        Qualifying candidates are ranked by confidence, then amount score,
        then transaction id. Only rank 1 may stay auto_matched; any other
        candidate that reached the auto threshold is kept as high_confidence
        so a user can still pick it.

        Args:
            scored: (transaction, scores) pairs

        Returns:
            Decision with accepted candidates in rank order
        """
        decision = Decision()
        for transaction, scores in scored:
            confidence, match_type = self.evaluate(scores)
            candidate = ScoredCandidate(
                transaction=transaction,
                scores=scores,
                confidence=confidence,
                match_type=match_type,
            )
            if candidate.qualifies:
                decision.accepted.append(candidate)
            else:
                decision.rejected.append(candidate)

        decision.accepted.sort(key=lambda c: (
            -c.confidence,
            -(c.scores.amount if c.scores.amount is not None else -1.0),
            str(c.transaction_id),
        ))

        for position, candidate in enumerate(decision.accepted, start=1):
            candidate.rank = position
            if position > 1 and candidate.match_type == MatchType.AUTO_MATCHED:
                candidate.match_type = MatchType.HIGH_CONFIDENCE
            candidate.details = {
                'scores': candidate.scores.to_dict(),
                'weights': self.weights,
                'thresholds': self.thresholds.to_dict(),
                'leading': position == 1,
            }

        return decision
