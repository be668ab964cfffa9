"""
clearing_engines.risk -- advisory risk score for a settlement batch.

Responsibility:
    Scores a computed batch from 0 to 100 using additive factors (value,
    concentration, watch-listed counterparties, batch age, dispute rate
    and overdue exposure) and maps the score to a recommendation.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``0 <= score <= 100``.
    - Advisory only: nothing in the settlement state machine reads the
      recommendation.
    - Batch age is measured against an ``as_of`` passed in by the caller.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from clearing_engines.netting import NetPosition
from clearing_engines.tracer import traced_engine
from clearing_kernel.logging_config import get_logger

logger = get_logger("engines.risk")

APPROVE = "APPROVE"
REVIEW_MANUALLY = "REVIEW_MANUALLY"
REJECT_OR_REQUIRE_COLLATERAL = "REJECT_OR_REQUIRE_ADDITIONAL_COLLATERAL"

_ZERO = Decimal("0")


@dataclass(frozen=True)
class RiskPolicy:
    high_value_threshold: Decimal = Decimal("1000000000")
    concentration_ratio: Decimal = Decimal("0.5")
    max_batch_age: timedelta = timedelta(hours=24)
    dispute_rate_percent: Decimal = Decimal("10")
    overdue_ratio: Decimal = Decimal("0.5")
    watchlist_tokens: tuple[str, ...] = ("IPP", "BOST")
    review_above: int = 60
    reject_above: int = 80


@dataclass(frozen=True)
class RiskFactor:
    code: str
    weight: int
    detail: str

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "weight": self.weight, "detail": self.detail}


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    factors: tuple[RiskFactor, ...]
    recommendation: str

    @property
    def factor_codes(self) -> tuple[str, ...]:
        return tuple(f.code for f in self.factors)


def recommendation_for(score: int, policy: RiskPolicy) -> str:
    if score > policy.reject_above:
        return REJECT_OR_REQUIRE_COLLATERAL
    if score > policy.review_above:
        return REVIEW_MANUALLY
    return APPROVE


@traced_engine(
    "risk", "1.0",
    fingerprint_fields=("total_net_amount", "positions", "computed_at", "as_of", "dispute_rate_percent"),
)
def assess_settlement_risk(
    *,
    total_net_amount: Decimal,
    positions: Sequence[NetPosition],
    computed_at: datetime,
    as_of: datetime,
    dispute_rate_percent: Decimal = _ZERO,
    overdue_amount: Decimal = _ZERO,
    total_outstanding: Decimal = _ZERO,
    policy: RiskPolicy | None = None,
) -> RiskAssessment:
    policy = policy or RiskPolicy()
    factors: list[RiskFactor] = []

    if total_net_amount > policy.high_value_threshold:
        factors.append(RiskFactor("HIGH_VALUE_SETTLEMENT", 25, f"net amount {total_net_amount}"))

    # Concentration is measured against the net flow (sum of creditor positions).
    exposure = sum((p.net_position for p in positions if p.net_position > 0), _ZERO)
    if exposure > 0:
        largest = max(abs(p.net_position) for p in positions)
        ratio = largest / exposure
        if ratio > policy.concentration_ratio:
            factors.append(RiskFactor("CONCENTRATION_RISK", 20, f"largest position {ratio:.2%} of net flow"))

    flagged = sorted(
        p.party_name for p in positions
        if any(token in p.party_name for token in policy.watchlist_tokens)
    )
    if flagged:
        factors.append(RiskFactor("COUNTERPARTY_RISK", 15, ", ".join(flagged)))

    if as_of - computed_at > policy.max_batch_age:
        factors.append(RiskFactor("SETTLEMENT_DELAY", 10, f"batch computed at {computed_at.isoformat()}"))

    if dispute_rate_percent > policy.dispute_rate_percent:
        factors.append(RiskFactor("HIGH_DISPUTE_RATE", 20, f"dispute rate {dispute_rate_percent:.1f}%"))

    if total_outstanding > 0 and overdue_amount / total_outstanding > policy.overdue_ratio:
        factors.append(RiskFactor("OVERDUE_EXPOSURE", 10, f"overdue {overdue_amount} of {total_outstanding}"))

    score = min(sum(f.weight for f in factors), 100)
    assessment = RiskAssessment(
        score=score,
        factors=tuple(factors),
        recommendation=recommendation_for(score, policy),
    )
    logger.info(
        "settlement_risk_assessed",
        extra={
            "score": score,
            "factors": list(assessment.factor_codes),
            "recommendation": assessment.recommendation,
        },
    )
    return assessment
