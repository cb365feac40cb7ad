from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, TypeVar

THOUSAND = Decimal("1000")
THOUSANDS_MARKER = "тыс."


@dataclass(frozen=True)
class RankingEntry:
    name: str
    value: Decimal
    formatted: Optional[str] = None


@dataclass(frozen=True)
class RankedItem:
    label: str
    value: Decimal
    display_value: str


Ranked = TypeVar("Ranked", RankingEntry, RankedItem)


def top_n(items: Iterable[Ranked], n: Optional[int] = None) -> List[Ranked]:
    """Return the ``n`` largest items by value.

    ``sorted`` is stable even with ``reverse=True``, so equal values keep
    their input order.
    """
    ordered = sorted(items, key=lambda item: item.value, reverse=True)
    if n is None:
        return ordered
    if n <= 0:
        return []
    return ordered[:n]


def format_compact_value(value: Decimal | int | float | str) -> str:
    amount = _coerce_amount(value)
    if amount >= THOUSAND:
        return f"{_round_half_up(amount / THOUSAND)} {THOUSANDS_MARKER}"
    return str(_round_half_up(amount))


def rank_entries(entries: Sequence[RankingEntry], n: Optional[int] = None) -> List[RankedItem]:
    # Labels formatted by the backend are kept as-is.
    return [
        RankedItem(
            label=entry.name,
            value=_coerce_amount(entry.value),
            display_value=entry.formatted or format_compact_value(entry.value),
        )
        for entry in top_n(entries, n)
    ]


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
