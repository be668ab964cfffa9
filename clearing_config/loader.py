"""
Configuration Loader (``clearing_config.loader``).

Responsibility
--------------
Loads a clearing configuration YAML document and parses it into the
frozen ``clearing_config.schema`` dataclasses.  The single public entry
point for runtime config is ``clearing_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Numeric money and percentage values are parsed as ``Decimal`` from
  their string form, never through ``float``.
* ``compute_checksum`` is a deterministic SHA-256 of the source document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError`` from ``validate_config``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from clearing_config.schema import (
    AgingBucketDef,
    AgingConfig,
    ClearingConfig,
    DisputeConfig,
    MatchingConfig,
    NettingConfig,
    PaymentConfig,
    RiskConfig,
    SettlementConfig,
)

_KNOWN_RULE_TYPES = {"timewindow", "toleranceband", "contracttermsfactor"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{name}: expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{name}: expected a number, got {value!r}") from exc


def parse_matching(data: dict[str, Any]) -> MatchingConfig:
    defaults = MatchingConfig()
    rules = data.get("rules")
    return MatchingConfig(
        rules=tuple(dict(rule) for rule in rules) if rules is not None else defaults.rules,
        high_variance_percent=parse_decimal(
            data.get("high_variance_percent", defaults.high_variance_percent),
            "matching.high_variance_percent",
        ),
        medium_variance_percent=parse_decimal(
            data.get("medium_variance_percent", defaults.medium_variance_percent),
            "matching.medium_variance_percent",
        ),
    )


def parse_netting(data: dict[str, Any]) -> NettingConfig:
    defaults = NettingConfig()
    return NettingConfig(
        settlement_currency=str(data.get("settlement_currency", defaults.settlement_currency)).upper(),
        epsilon=parse_decimal(data.get("epsilon", defaults.epsilon), "netting.epsilon"),
    )


def parse_settlement(data: dict[str, Any]) -> SettlementConfig:
    defaults = SettlementConfig()
    return SettlementConfig(
        approver_roles=tuple(str(r) for r in data.get("approver_roles", defaults.approver_roles)),
        min_approvals=int(data.get("min_approvals", defaults.min_approvals)),
        require_distinct_roles=bool(data.get("require_distinct_roles", defaults.require_distinct_roles)),
        reservation_ttl_hours=int(data.get("reservation_ttl_hours", defaults.reservation_ttl_hours)),
        reservation_prefix=str(data.get("reservation_prefix", defaults.reservation_prefix)),
    )


def parse_dispute(data: dict[str, Any]) -> DisputeConfig:
    defaults = DisputeConfig()
    return DisputeConfig(
        sla_days=int(data.get("sla_days", defaults.sla_days)),
        high_priority_amount=parse_decimal(
            data.get("high_priority_amount", defaults.high_priority_amount),
            "dispute.high_priority_amount",
        ),
        medium_priority_amount=parse_decimal(
            data.get("medium_priority_amount", defaults.medium_priority_amount),
            "dispute.medium_priority_amount",
        ),
    )


def parse_payment(data: dict[str, Any]) -> PaymentConfig:
    return PaymentConfig(
        overpayment_tolerance=parse_decimal(
            data.get("overpayment_tolerance", PaymentConfig().overpayment_tolerance),
            "payment.overpayment_tolerance",
        ),
    )


def parse_aging(data: dict[str, Any]) -> AgingConfig:
    buckets = data.get("buckets")
    if buckets is None:
        return AgingConfig()
    return AgingConfig(
        buckets=tuple(
            AgingBucketDef(
                name=str(b["name"]),
                min_days=int(b["min_days"]),
                max_days=int(b["max_days"]) if b.get("max_days") is not None else None,
            )
            for b in buckets
        )
    )


def parse_risk(data: dict[str, Any]) -> RiskConfig:
    defaults = RiskConfig()
    return RiskConfig(
        high_value_threshold=parse_decimal(
            data.get("high_value_threshold", defaults.high_value_threshold), "risk.high_value_threshold"
        ),
        concentration_ratio=parse_decimal(
            data.get("concentration_ratio", defaults.concentration_ratio), "risk.concentration_ratio"
        ),
        max_batch_age_hours=int(data.get("max_batch_age_hours", defaults.max_batch_age_hours)),
        dispute_rate_percent=parse_decimal(
            data.get("dispute_rate_percent", defaults.dispute_rate_percent), "risk.dispute_rate_percent"
        ),
        overdue_ratio=parse_decimal(data.get("overdue_ratio", defaults.overdue_ratio), "risk.overdue_ratio"),
        watchlist_tokens=tuple(str(t) for t in data.get("watchlist_tokens", defaults.watchlist_tokens)),
        review_above=int(data.get("review_above", defaults.review_above)),
        reject_above=int(data.get("reject_above", defaults.reject_above)),
    )


def validate_config(config: ClearingConfig) -> list[str]:
    """Return every structural problem found; empty means valid."""
    errors: list[str] = []

    for rule in config.matching.rules:
        rule_type = str(rule.get("type", ""))
        if rule_type.replace("_", "").replace("-", "").lower() not in _KNOWN_RULE_TYPES:
            errors.append(f"matching.rules: unknown rule type {rule_type!r}")
    if config.matching.medium_variance_percent > config.matching.high_variance_percent:
        errors.append("matching: medium_variance_percent exceeds high_variance_percent")

    if len(config.netting.settlement_currency) != 3:
        errors.append("netting.settlement_currency must be a 3-letter code")
    if config.netting.epsilon <= 0:
        errors.append("netting.epsilon must be > 0")

    settlement = config.settlement
    if settlement.min_approvals < 1:
        errors.append("settlement.min_approvals must be >= 1")
    if len(set(settlement.approver_roles)) != len(settlement.approver_roles):
        errors.append("settlement.approver_roles contains duplicates")
    if settlement.require_distinct_roles and settlement.min_approvals > len(settlement.approver_roles):
        errors.append("settlement.min_approvals exceeds the number of approver roles")
    if settlement.reservation_ttl_hours <= 0:
        errors.append("settlement.reservation_ttl_hours must be > 0")

    if config.dispute.sla_days <= 0:
        errors.append("dispute.sla_days must be > 0")
    if config.payment.overpayment_tolerance < 0:
        errors.append("payment.overpayment_tolerance cannot be negative")

    expected_min = 0
    for bucket in config.aging.buckets:
        if bucket.min_days != expected_min:
            errors.append(f"aging.buckets: {bucket.name} leaves a gap or overlap at day {expected_min}")
        if bucket.max_days is None:
            break
        if bucket.max_days < bucket.min_days:
            errors.append(f"aging.buckets: {bucket.name} ends before it starts")
        expected_min = bucket.max_days + 1
    if not config.aging.buckets or config.aging.buckets[-1].max_days is not None:
        errors.append("aging.buckets must end with an unbounded bucket")

    if config.risk.review_above > config.risk.reject_above:
        errors.append("risk.review_above exceeds risk.reject_above")

    return errors


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_config(data: dict[str, Any]) -> ClearingConfig:
    """
    Parse a full configuration document.

    Raises:
        KeyError: If ``config_id`` or ``version`` is missing.
        ValueError: If any value is malformed or out of range.
    """
    config = ClearingConfig(
        config_id=str(data["config_id"]),
        version=int(data["version"]),
        checksum=compute_checksum(data),
        matching=parse_matching(data.get("matching") or {}),
        netting=parse_netting(data.get("netting") or {}),
        settlement=parse_settlement(data.get("settlement") or {}),
        dispute=parse_dispute(data.get("dispute") or {}),
        payment=parse_payment(data.get("payment") or {}),
        aging=parse_aging(data.get("aging") or {}),
        risk=parse_risk(data.get("risk") or {}),
    )
    errors = validate_config(config)
    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )
    return config


def load_config(path: Path) -> ClearingConfig:
    return parse_config(load_yaml_file(path))
