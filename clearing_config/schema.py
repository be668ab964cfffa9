"""
ClearingConfig schema.

Typed, frozen view of a clearing configuration set.  YAML files are
parsed into these types by ``clearing_config.loader``; services receive a
``ClearingConfig`` from ``clearing_config.get_active_config()`` and never
read files themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class MatchingConfig:
    """
    Reconciliation parameters.

    ``rules`` are the ``{type, value, unit}`` mappings accepted by
    ``RuleSet.from_rules``.
    """

    rules: tuple[dict[str, Any], ...] = (
        {"type": "TimeWindow", "value": 7, "unit": "days"},
        {"type": "ToleranceBand", "value": 5, "unit": "percent"},
        {"type": "ContractTermsFactor", "value": 1, "unit": "multiplier"},
    )
    high_variance_percent: Decimal = Decimal("20")
    medium_variance_percent: Decimal = Decimal("10")


@dataclass(frozen=True)
class NettingConfig:
    settlement_currency: str = "GHS"
    epsilon: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class SettlementConfig:
    approver_roles: tuple[str, ...] = ("MOE", "MOF", "CAGD")
    min_approvals: int = 3
    require_distinct_roles: bool = True
    reservation_ttl_hours: int = 24
    reservation_prefix: str = "SETTLEMENT"


@dataclass(frozen=True)
class DisputeConfig:
    sla_days: int = 7
    high_priority_amount: Decimal = Decimal("100000000")
    medium_priority_amount: Decimal = Decimal("50000000")


@dataclass(frozen=True)
class PaymentConfig:
    overpayment_tolerance: Decimal = Decimal("0")


@dataclass(frozen=True)
class AgingBucketDef:
    name: str
    min_days: int
    max_days: int | None = None


@dataclass(frozen=True)
class AgingConfig:
    buckets: tuple[AgingBucketDef, ...] = (
        AgingBucketDef("0-30", 0, 30),
        AgingBucketDef("31-60", 31, 60),
        AgingBucketDef("61-90", 61, 90),
        AgingBucketDef("90+", 91, None),
    )


@dataclass(frozen=True)
class RiskConfig:
    high_value_threshold: Decimal = Decimal("1000000000")
    concentration_ratio: Decimal = Decimal("0.5")
    max_batch_age_hours: int = 24
    dispute_rate_percent: Decimal = Decimal("10")
    overdue_ratio: Decimal = Decimal("0.5")
    watchlist_tokens: tuple[str, ...] = ("IPP", "BOST")
    review_above: int = 60
    reject_above: int = 80


@dataclass(frozen=True)
class ClearingConfig:
    """
    The runtime configuration artifact.

    Guarantees:
        - ``checksum`` is the SHA-256 of the canonical JSON of the source
          document it was parsed from.
    """

    config_id: str
    version: int
    checksum: str = ""
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    netting: NettingConfig = field(default_factory=NettingConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    dispute: DisputeConfig = field(default_factory=DisputeConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    aging: AgingConfig = field(default_factory=AgingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
