from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from submonitor.currency_conversion import RateTable, convert_amount

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = 12
WEEKS_PER_YEAR = 52
DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class MonthlySpending:
    year: int
    month: int
    total_spending: Decimal
    currency: Optional[str] = None

    @property
    def period(self) -> str:
        return period_key(self.year, self.month)


@dataclass(frozen=True)
class CategorySpending:
    category: str
    total_spending: Decimal


@dataclass(frozen=True)
class MonthlyBucket:
    period: str
    amount: Decimal


@dataclass(frozen=True)
class CategoryBucket:
    category: str
    amount: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class SpendTotals:
    year: Decimal
    month: Decimal
    week: int
    day: int


def period_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def aggregate_monthly(
    records: Iterable[MonthlySpending],
    target_currency: Optional[str] = None,
    rate_table: Optional[RateTable] = None,
) -> List[MonthlyBucket]:
    totals: dict[tuple[int, int], Decimal] = {}
    for record in records:
        amount = _coerce_amount(record.total_spending)
        if target_currency and record.currency:
            amount = convert_amount(amount, record.currency, target_currency, rate_table)
        key = (record.year, record.month)
        totals[key] = totals.get(key, ZERO) + amount
    return [
        MonthlyBucket(period=period_key(year, month), amount=amount)
        for (year, month), amount in sorted(totals.items())
    ]


def aggregate_by_category(records: Iterable[CategorySpending]) -> List[CategoryBucket]:
    totals: dict[str, Decimal] = {}
    for record in records:
        totals[record.category] = totals.get(record.category, ZERO) + _coerce_amount(
            record.total_spending
        )
    grand_total = sum(totals.values(), ZERO)
    return [
        CategoryBucket(
            category=category,
            amount=amount,
            percentage=_percentage(amount, grand_total),
        )
        for category, amount in totals.items()
    ]


def yearly_amount(buckets: Iterable[MonthlyBucket]) -> Decimal:
    return sum((bucket.amount for bucket in buckets), ZERO)


def spend_totals(yearly: Decimal | int | float | str) -> SpendTotals:
    """Derive per-period figures from a yearly amount.

    ``month`` keeps full precision; ``week`` and ``day`` are whole numbers.
    """
    year = _coerce_amount(yearly)
    return SpendTotals(
        year=year,
        month=year / MONTHS_PER_YEAR,
        week=_round_half_up(year / WEEKS_PER_YEAR),
        day=_round_half_up(year / DAYS_PER_YEAR),
    )


def _percentage(amount: Decimal, total: Decimal) -> Decimal:
    if total == ZERO:
        return ZERO
    return (amount / total * HUNDRED).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
