"""
Module: clearing_engines.netting
Responsibility:
    Multilateral netting: collapses every outstanding invoice of a period
    into one signed position per party, then pays those positions off with
    a small set of debtor-to-creditor settlement legs.
    Debt cycles (A owes B owes C owes A) are reported separately so the
    amount a cycle cancels can be shown before settlement.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import clearing_kernel/domain.

Invariants enforced:
    - Conservation: the net positions of all parties sum to exactly zero.
    - Only strictly positive outstanding balances contribute.
    - Legs never exceed ``debtors + creditors - 1`` and every leg amount is
      strictly positive.
    - Deterministic: ties in position size are broken by party id.
    - Amounts are rounded to the settlement currency's minor unit once,
      per invoice, before aggregation, so positions and legs are exactly
      representable in storage.

Failure modes:
    - InvalidFxRateError when ``fx_rate <= 0``.

Audit relevance:
    The legs produced here are what the settlement batch persists, hashes
    and later executes.  Each invocation is traced via ``@traced_engine``.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from clearing_engines.tracer import traced_engine
from clearing_kernel.domain.dtos import InvoiceRecord, PaymentRecord
from clearing_kernel.domain.values import PaymentStatus
from clearing_kernel.exceptions import InvalidFxRateError
from clearing_kernel.logging_config import get_logger

logger = get_logger("engines.netting")

DEFAULT_SETTLEMENT_CURRENCY = "GHS"
DEFAULT_EPSILON = Decimal("0.01")
MONEY_QUANTUM = Decimal("0.01")
MAX_CYCLE_PARTIES = 6

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class NetPosition:
    party_id: UUID
    party_name: str
    total_receivable: Decimal
    total_payable: Decimal
    net_position: Decimal


@dataclass(frozen=True)
class NettingLeg:
    payer_id: UUID
    payee_id: UUID
    amount: Decimal
    payer_name: str = ""
    payee_name: str = ""


@dataclass(frozen=True)
class NettingSummary:
    """
    Gross versus net comparison for a netting run.

    ``gross_legs`` counts one payment per party with a payable plus one per
    party with a receivable, the bilateral baseline netting is measured
    against.
    """

    total_gross_amount: Decimal
    total_net_amount: Decimal
    cash_reduction: Decimal
    efficiency_gain: Decimal
    gross_legs: int
    net_legs: int
    legs_reduction: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_gross_amount": self.total_gross_amount,
            "total_net_amount": self.total_net_amount,
            "cash_reduction": self.cash_reduction,
            "efficiency_gain": self.efficiency_gain,
            "number_of_legs": {
                "gross": self.gross_legs,
                "net": self.net_legs,
                "reduction": self.legs_reduction,
            },
        }


@dataclass(frozen=True)
class NettingResult:
    currency: str
    fx_rate: Decimal
    positions: tuple[NetPosition, ...]
    legs: tuple[NettingLeg, ...]
    summary: NettingSummary
    invoice_amounts: tuple[tuple[UUID, Decimal], ...]

    @property
    def conservation_residual(self) -> Decimal:
        return sum((p.net_position for p in self.positions), _ZERO)


@dataclass(frozen=True)
class DebtCycle:
    """A closed loop of debts; ``clearable_amount`` can be cancelled on every edge."""

    parties: tuple[UUID, ...]
    edge_amounts: tuple[Decimal, ...]

    @property
    def total_amount(self) -> Decimal:
        return sum(self.edge_amounts, _ZERO)

    @property
    def clearable_amount(self) -> Decimal:
        return min(self.edge_amounts)


def outstanding_amounts(
    invoices: Sequence[InvoiceRecord],
    payments: Sequence[PaymentRecord],
    fx_rate: Decimal = Decimal("1"),
    settlement_currency: str = DEFAULT_SETTLEMENT_CURRENCY,
) -> list[tuple[InvoiceRecord, Decimal]]:
    """
    Invoices with a strictly positive outstanding balance, in settlement
    currency.

    Outstanding is ``total_amount`` minus COMPLETED payments on the
    invoice; foreign-currency balances are multiplied by ``fx_rate``.
    """
    if fx_rate <= 0:
        raise InvalidFxRateError(fx_rate)

    paid: dict[UUID, Decimal] = defaultdict(lambda: _ZERO)
    for payment in payments:
        if payment.status == PaymentStatus.COMPLETED and payment.invoice_id is not None:
            paid[payment.invoice_id] += payment.amount

    result: list[tuple[InvoiceRecord, Decimal]] = []
    for invoice in invoices:
        outstanding = invoice.total_amount - paid[invoice.invoice_id]
        if outstanding <= 0:
            continue
        if invoice.currency != settlement_currency:
            outstanding = outstanding * fx_rate
        outstanding = outstanding.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
        if outstanding > 0:
            result.append((invoice, outstanding))
    return result


@traced_engine("netting.positions", "1.0", fingerprint_fields=("invoices", "payments", "fx_rate"))
def compute_net_positions(
    *,
    invoices: Sequence[InvoiceRecord],
    payments: Sequence[PaymentRecord],
    fx_rate: Decimal = Decimal("1"),
    settlement_currency: str = DEFAULT_SETTLEMENT_CURRENCY,
    party_names: Mapping[UUID, str] | None = None,
) -> list[NetPosition]:
    """
    One signed position per party touched by an outstanding invoice.

    The issuer gains a receivable, the counterparty a payable, of the
    invoice's outstanding amount.  Positions are ordered by party id.
    """
    names = party_names or {}
    receivable: dict[UUID, Decimal] = defaultdict(lambda: _ZERO)
    payable: dict[UUID, Decimal] = defaultdict(lambda: _ZERO)

    for invoice, outstanding in outstanding_amounts(invoices, payments, fx_rate, settlement_currency):
        receivable[invoice.issuer_id] += outstanding
        payable[invoice.counterparty_id] += outstanding

    parties = sorted(set(receivable) | set(payable), key=str)
    return [
        NetPosition(
            party_id=party_id,
            party_name=names.get(party_id, ""),
            total_receivable=receivable[party_id],
            total_payable=payable[party_id],
            net_position=receivable[party_id] - payable[party_id],
        )
        for party_id in parties
    ]


@traced_engine("netting.legs", "1.0", fingerprint_fields=("positions", "epsilon"))
def generate_settlement_legs(
    *,
    positions: Sequence[NetPosition],
    epsilon: Decimal = DEFAULT_EPSILON,
) -> list[NettingLeg]:
    """
    Greedy debtor/creditor pairing.

    Debtors are taken most negative first, creditors most positive first.
    Each step settles ``min(|debtor|, creditor)``; a side is exhausted once
    its remainder is within ``epsilon`` of zero.  Inputs are not mutated.
    """
    debtors = sorted(
        (p for p in positions if p.net_position < 0),
        key=lambda p: (p.net_position, str(p.party_id)),
    )
    creditors = sorted(
        (p for p in positions if p.net_position > 0),
        key=lambda p: (-p.net_position, str(p.party_id)),
    )
    remaining = {p.party_id: p.net_position for p in positions}

    legs: list[NettingLeg] = []
    d = c = 0
    while d < len(debtors) and c < len(creditors):
        debtor = debtors[d]
        creditor = creditors[c]
        amount = min(-remaining[debtor.party_id], remaining[creditor.party_id])

        if amount > 0:
            legs.append(
                NettingLeg(
                    payer_id=debtor.party_id,
                    payee_id=creditor.party_id,
                    amount=amount,
                    payer_name=debtor.party_name,
                    payee_name=creditor.party_name,
                )
            )
            remaining[debtor.party_id] += amount
            remaining[creditor.party_id] -= amount

        if abs(remaining[debtor.party_id]) < epsilon or amount <= 0:
            d += 1
        if remaining[creditor.party_id] < epsilon or amount <= 0:
            c += 1

    return legs


def summarize_netting(
    positions: Sequence[NetPosition],
    legs: Sequence[NettingLeg],
) -> NettingSummary:
    total_receivable = sum((p.total_receivable for p in positions), _ZERO)
    total_payable = sum((p.total_payable for p in positions), _ZERO)
    gross_amount = max(total_receivable, total_payable)
    net_amount = sum((leg.amount for leg in legs), _ZERO)
    gross_legs = (
        sum(1 for p in positions if p.total_payable > 0)
        + sum(1 for p in positions if p.total_receivable > 0)
    )
    efficiency = (gross_amount - net_amount) / gross_amount * _HUNDRED if gross_amount > 0 else _ZERO
    return NettingSummary(
        total_gross_amount=gross_amount,
        total_net_amount=net_amount,
        cash_reduction=gross_amount - net_amount,
        efficiency_gain=efficiency,
        gross_legs=gross_legs,
        net_legs=len(legs),
        legs_reduction=gross_legs - len(legs),
    )


def debt_matrix(
    invoices: Sequence[InvoiceRecord],
    payments: Sequence[PaymentRecord],
    fx_rate: Decimal = Decimal("1"),
    settlement_currency: str = DEFAULT_SETTLEMENT_CURRENCY,
) -> dict[tuple[UUID, UUID], Decimal]:
    """Outstanding debt per ``(payer, payee)`` pair, in settlement currency."""
    matrix: dict[tuple[UUID, UUID], Decimal] = defaultdict(lambda: _ZERO)
    for invoice, outstanding in outstanding_amounts(invoices, payments, fx_rate, settlement_currency):
        matrix[(invoice.counterparty_id, invoice.issuer_id)] += outstanding
    return dict(matrix)


@traced_engine("netting.cycles", "1.0", fingerprint_fields=("debts", "min_amount", "max_parties"))
def find_debt_cycles(
    *,
    debts: Mapping[tuple[UUID, UUID], Decimal],
    min_amount: Decimal = DEFAULT_EPSILON,
    max_parties: int = MAX_CYCLE_PARTIES,
) -> list[DebtCycle]:
    """
    Elementary debt cycles of at least three parties.

    Only edges of at least ``min_amount`` are followed.  Each cycle is
    reported once, rotated to start at its smallest party id, and the
    result is ordered by clearable amount (largest first), then parties.
    """
    graph: dict[UUID, list[UUID]] = defaultdict(list)
    for (payer, payee), amount in debts.items():
        if amount >= min_amount and payer != payee:
            graph[payer].append(payee)
    for targets in graph.values():
        targets.sort(key=str)

    cycles: list[DebtCycle] = []
    for start in sorted(graph, key=str):
        stack: list[tuple[UUID, tuple[UUID, ...]]] = [(start, (start,))]
        while stack:
            node, path = stack.pop()
            for nxt in graph.get(node, ()):
                if nxt == start and len(path) >= 3:
                    edges = tuple(
                        debts[(path[i], path[(i + 1) % len(path)])] for i in range(len(path))
                    )
                    cycles.append(DebtCycle(parties=path, edge_amounts=edges))
                elif str(nxt) > str(start) and nxt not in path and len(path) < max_parties:
                    stack.append((nxt, path + (nxt,)))

    cycles.sort(key=lambda c: (-c.clearable_amount, [str(p) for p in c.parties]))
    if cycles:
        logger.info(
            "debt_cycles_found",
            extra={
                "cycle_count": len(cycles),
                "largest_clearable": str(cycles[0].clearable_amount),
            },
        )
    return cycles


def compute_netting(
    invoices: Sequence[InvoiceRecord],
    payments: Sequence[PaymentRecord],
    fx_rate: Decimal = Decimal("1"),
    settlement_currency: str = DEFAULT_SETTLEMENT_CURRENCY,
    party_names: Mapping[UUID, str] | None = None,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> NettingResult:
    """Positions, legs and summary in one call, plus the per-invoice snapshot."""
    snapshot = outstanding_amounts(invoices, payments, fx_rate, settlement_currency)
    positions = compute_net_positions(
        invoices=invoices,
        payments=payments,
        fx_rate=fx_rate,
        settlement_currency=settlement_currency,
        party_names=party_names,
    )
    legs = generate_settlement_legs(positions=positions, epsilon=epsilon)
    summary = summarize_netting(positions, legs)

    result = NettingResult(
        currency=settlement_currency,
        fx_rate=fx_rate,
        positions=tuple(positions),
        legs=tuple(legs),
        summary=summary,
        invoice_amounts=tuple((inv.invoice_id, amount) for inv, amount in snapshot),
    )
    if result.conservation_residual != 0:
        logger.critical(
            "netting_conservation_violated",
            extra={"residual": str(result.conservation_residual)},
        )
    logger.info(
        "netting_computed",
        extra={
            "party_count": len(positions),
            "leg_count": len(legs),
            "total_gross_amount": str(summary.total_gross_amount),
            "total_net_amount": str(summary.total_net_amount),
        },
    )
    return result
