"""
Commodity quantities declared on invoices.

Invoices arrive with a free-form ``line_items`` mapping as exported by the
billing systems of each market participant.  This module turns that mapping
into a tagged ``CommodityQuantity`` once, at the boundary, so the matching
engine never inspects raw keys.

Selection rule: the first of ``energy``, ``gas``, ``fuel`` holding a
non-zero number wins.  Anything that cannot be read as a finite, non-negative
decimal is treated as absent; if nothing usable remains the quantity is zero and the
result is flagged ``malformed`` when unreadable values were seen.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from clearing_kernel.domain.values import CommodityType

_SELECTION_ORDER: tuple[CommodityType, ...] = (
    CommodityType.ENERGY,
    CommodityType.GAS,
    CommodityType.FUEL,
)

DEFAULT_UNITS: dict[CommodityType, str] = {
    CommodityType.ENERGY: "MWh",
    CommodityType.GAS: "MMBtu",
    CommodityType.FUEL: "litre",
}


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


@dataclass(frozen=True)
class CommodityQuantity:
    """Quantity of one commodity expected to be delivered."""

    commodity: CommodityType | None
    quantity: Decimal
    unit: str | None = None
    malformed: bool = False

    @property
    def is_zero(self) -> bool:
        return self.quantity == 0

    @classmethod
    def none(cls, malformed: bool = False) -> "CommodityQuantity":
        return cls(commodity=None, quantity=Decimal("0"), unit=None, malformed=malformed)

    @classmethod
    def from_line_items(cls, line_items: Mapping[str, Any] | None) -> "CommodityQuantity":
        if not isinstance(line_items, Mapping):
            return cls.none(malformed=line_items is not None)

        saw_unreadable = False
        for commodity in _SELECTION_ORDER:
            if commodity.value not in line_items:
                continue
            quantity = _to_decimal(line_items[commodity.value])
            if quantity is None or quantity < 0:
                saw_unreadable = True
                continue
            if quantity != 0:
                unit = line_items.get(f"{commodity.value}_unit") or DEFAULT_UNITS[commodity]
                return cls(commodity=commodity, quantity=quantity, unit=str(unit))

        return cls.none(malformed=saw_unreadable)
