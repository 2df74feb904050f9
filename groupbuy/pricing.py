# groupbuy/pricing.py
"""
Group-buy tier pricing.

The unit price is picked from the cumulative quantity of *all* orders,
including the one being priced: a large order can pull itself across a
threshold, and then every unit in it is charged at the lower rate.
"""
from __future__ import annotations
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Tuple

MULTIPLE_OF = 10


class TierTableError(ValueError):
    pass


@dataclass(frozen=True)
class Tier:
    min_qty: int
    price: Decimal


@dataclass(frozen=True)
class TierTable:
    """
    Tiers listed from the highest minimum to the lowest; the last one has
    min_qty 0 so that every quantity resolves.
    """
    version: str
    tiers: Tuple[Tier, ...]

    def __post_init__(self):
        if not self.tiers:
            raise TierTableError(f"{self.version}: empty tier table")
        if self.tiers[-1].min_qty != 0:
            raise TierTableError(
                f"{self.version}: last tier must have min_qty 0"
            )
        mins = [t.min_qty for t in self.tiers]
        if any(a <= b for a, b in zip(mins, mins[1:])):
            raise TierTableError(
                f"{self.version}: tier minimums must be strictly decreasing"
            )
        if any(t.price <= 0 for t in self.tiers):
            raise TierTableError(f"{self.version}: prices must be positive")

    @property
    def list_price(self) -> Decimal:
        # the catch-all price is what a lone buyer pays
        return self.tiers[-1].price


def make_table(version: str, pairs: List[Tuple[int, str]]) -> TierTable:
    return TierTable(
        version=version,
        tiers=tuple(Tier(min_qty=m, price=Decimal(p)) for m, p in pairs),
    )


TIER_TABLES: Dict[str, TierTable] = {
    "2026-v1": make_table("2026-v1", [
        (1500, "2.5"),
        (1000, "3.0"),
        (500, "3.5"),
        (300, "5.0"),
        (200, "7.0"),
        (0, "7.0"),
    ]),
    "2026-v2": make_table("2026-v2", [
        (1500, "4.5"),
        (1000, "5.0"),
        (500, "6.0"),
        (300, "7.0"),
        (200, "9.0"),
        (0, "9.0"),
    ]),
}


def get_table(version: str) -> TierTable:
    try:
        return TIER_TABLES[version]
    except KeyError:
        raise TierTableError(
            f"unknown pricing table {version!r}; "
            f"known: {', '.join(sorted(TIER_TABLES))}"
        ) from None


# ----------------------------
# Resolver
# ----------------------------
def active_tier(table: TierTable, cumulative_qty: int) -> Tier:
    for tier in table.tiers:
        if tier.min_qty <= cumulative_qty:
            return tier
    # unreachable for a validated table (catch-all tier has min_qty 0),
    # but negative input lands here
    return table.tiers[-1]


def price_for_quantity(table: TierTable, cumulative_qty: int) -> Decimal:
    return active_tier(table, cumulative_qty).price


def order_total(table: TierTable, committed_qty: int, qty: int) -> int:
    """ceil(price at (committed + qty) * qty); 0 for an empty order."""
    if qty <= 0:
        return 0
    price = price_for_quantity(table, committed_qty + qty)
    return math.ceil(price * qty)


# ----------------------------
# Quotes and display rows
# ----------------------------
@dataclass
class Quote:
    qty_a: int
    qty_b: int
    committed_qty: int
    unit_price: Decimal
    list_price: Decimal
    tier_min: int
    total: int
    warnings: List[str] = field(default_factory=list)

    @property
    def qty(self) -> int:
        return self.qty_a + self.qty_b

    @property
    def grand_total(self) -> int:
        return self.committed_qty + self.qty

    def to_dict(self) -> dict:
        return {
            "qty_a": self.qty_a,
            "qty_b": self.qty_b,
            "qty": self.qty,
            "committed_qty": self.committed_qty,
            "grand_total": self.grand_total,
            "unit_price": float(self.unit_price),
            "list_price": float(self.list_price),
            "tier_min": self.tier_min,
            "total": self.total,
            "warnings": list(self.warnings),
        }


def multiple_of_ten_warnings(qty_a: int, qty_b: int) -> List[str]:
    out = []
    for label, q in (("A", qty_a), ("B", qty_b)):
        if q % MULTIPLE_OF:
            out.append(
                f"design {label}: quantity {q} is not a multiple of "
                f"{MULTIPLE_OF}"
            )
    return out


def quote(table: TierTable, committed_qty: int,
          qty_a: int, qty_b: int) -> Quote:
    qty = qty_a + qty_b
    tier = active_tier(table, committed_qty + qty)
    return Quote(
        qty_a=qty_a,
        qty_b=qty_b,
        committed_qty=committed_qty,
        unit_price=tier.price,
        list_price=table.list_price,
        tier_min=tier.min_qty,
        total=order_total(table, committed_qty, qty),
        warnings=multiple_of_ten_warnings(qty_a, qty_b),
    )


def tier_rows(table: TierTable, grand_total: int) -> List[dict]:
    """
    Rows for the price table, ascending, without the catch-all tier.

    Below the lowest threshold the first row is marked active, since the
    catch-all shares its price.
    """
    shown = sorted(
        (t for t in table.tiers if t.min_qty > 0), key=lambda t: t.min_qty
    )
    current = active_tier(table, grand_total)
    rows = []
    for i, t in enumerate(shown):
        active = t.min_qty == current.min_qty
        if current.min_qty == 0 and i == 0:
            active = True
        rows.append({
            "min_qty": t.min_qty,
            "price": float(t.price),
            "open_ended": i == len(shown) - 1,
            "active": active,
        })
    return rows
