"""
Module: clearing_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the clearing services: matching, aging and severity, netting, approval
    quorum and settlement risk.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import clearing_kernel/domain, clearing_kernel.exceptions and
    the kernel logger.  MUST NOT import clearing_services.

Invariants enforced:
    - Purity: engines never read the clock; timestamps are parameters.
    - Decimal-only arithmetic for quantities and amounts.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine calls are traced via ``@traced_engine`` (see
    ``clearing_engines.tracer``), emitting CLEARING_ENGINE_TRACE records.
"""

from clearing_engines.aging import (
    AgeBucket,
    AgedInvoice,
    AgingCalculator,
    AgingReport,
    classify_variance_severity,
    dispute_rate,
)
from clearing_engines.approval import (
    QuorumEvaluation,
    QuorumPolicy,
    evaluate_quorum,
    find_duplicate_approval,
    validate_approver_role,
)
from clearing_engines.matching import (
    ContractTermsFactor,
    ExceptionResult,
    MatchResult,
    ReconciliationResult,
    ReconciliationSummary,
    RuleSet,
    TimeWindow,
    ToleranceBand,
    reconcile,
)
from clearing_engines.netting import (
    DebtCycle,
    NetPosition,
    NettingLeg,
    NettingResult,
    NettingSummary,
    compute_net_positions,
    compute_netting,
    debt_matrix,
    find_debt_cycles,
    generate_settlement_legs,
    summarize_netting,
)
from clearing_engines.risk import RiskAssessment, RiskFactor, RiskPolicy, assess_settlement_risk

__all__ = [
    "AgeBucket",
    "AgedInvoice",
    "AgingCalculator",
    "AgingReport",
    "ContractTermsFactor",
    "DebtCycle",
    "ExceptionResult",
    "MatchResult",
    "NetPosition",
    "NettingLeg",
    "NettingResult",
    "NettingSummary",
    "QuorumEvaluation",
    "QuorumPolicy",
    "ReconciliationResult",
    "ReconciliationSummary",
    "RiskAssessment",
    "RiskFactor",
    "RiskPolicy",
    "RuleSet",
    "TimeWindow",
    "ToleranceBand",
    "assess_settlement_risk",
    "classify_variance_severity",
    "compute_net_positions",
    "compute_netting",
    "debt_matrix",
    "dispute_rate",
    "evaluate_quorum",
    "find_debt_cycles",
    "find_duplicate_approval",
    "generate_settlement_legs",
    "reconcile",
    "summarize_netting",
    "validate_approver_role",
]
