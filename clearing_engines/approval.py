"""
clearing_engines.approval -- institutional approval quorum for settlement
batches.

Responsibility:
    Decide whether an approver's role is recognised, whether a new approval
    duplicates an existing one, and whether the approvals collected so far
    meet the quorum.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import clearing_kernel/domain types.

Invariants enforced:
    - Only distinct roles count toward the quorum when
      ``require_distinct_roles`` is set.
    - One approval per approver and one per role on a batch.
    - Purity: no clock access, no I/O, no database.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

from clearing_kernel.domain.dtos import SettlementApprovalRecord

DEFAULT_APPROVER_ROLES: tuple[str, ...] = ("MOE", "MOF", "CAGD")


@dataclass(frozen=True)
class QuorumPolicy:
    """
    Who may approve a batch and how many approvals it needs.

    Guarantees:
        - ``min_approvers >= 1``.
        - ``required_roles`` has no duplicates.
    """

    required_roles: tuple[str, ...] = DEFAULT_APPROVER_ROLES
    min_approvers: int = 3
    require_distinct_roles: bool = True

    def __post_init__(self) -> None:
        if self.min_approvers < 1:
            raise ValueError("min_approvers must be at least 1")
        if len(set(self.required_roles)) != len(self.required_roles):
            raise ValueError("required_roles contains duplicates")


@dataclass(frozen=True)
class QuorumEvaluation:
    is_approved: bool
    required_approvers: int
    current_approvers: int
    missing_roles: tuple[str, ...]
    reason: str


def validate_approver_role(role: str, policy: QuorumPolicy) -> bool:
    """True if ``role`` may approve under ``policy``; an empty role list accepts any."""
    if not policy.required_roles:
        return True
    return role in policy.required_roles


def find_duplicate_approval(
    approvals: Sequence[SettlementApprovalRecord],
    approver_id: UUID,
    role: str,
) -> str | None:
    """Reason text if ``(approver_id, role)`` repeats an existing approval, else None."""
    for approval in approvals:
        if approval.approver_id == approver_id:
            return f"approver {approver_id} has already approved"
        if approval.role == role:
            return f"role {role} has already approved"
    return None


def evaluate_quorum(
    policy: QuorumPolicy,
    approvals: Sequence[SettlementApprovalRecord],
) -> QuorumEvaluation:
    """Count the approvals on a batch against ``policy``."""
    if policy.require_distinct_roles:
        current = len({a.role for a in approvals})
    else:
        current = len(approvals)

    present = {a.role for a in approvals}
    missing = tuple(role for role in policy.required_roles if role not in present)
    is_approved = current >= policy.min_approvers

    return QuorumEvaluation(
        is_approved=is_approved,
        required_approvers=policy.min_approvers,
        current_approvers=current,
        missing_roles=missing,
        reason="Approved" if is_approved else f"{current}/{policy.min_approvers} approvals",
    )
