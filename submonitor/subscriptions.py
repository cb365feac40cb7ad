from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from submonitor.currency_conversion import RateTable, convert_amount
from submonitor.ranking import RankedItem, RankingEntry, rank_entries

DAYS_PER_BILLING_MONTH = 30
MONTHS_PER_YEAR = 12
UPCOMING_RENEWAL_DAYS = 7
SUPPORTED_PERIOD_UNITS = {"DAY", "MONTH", "YEAR"}
SUPPORTED_SORT_FIELDS = {"title", "price", "nextPaymentDate"}
SUPPORTED_DIRECTIONS = {"asc", "desc"}
CATEGORIES = (
    "NONE",
    "EDUCATION",
    "VIDEO",
    "STORAGE",
    "COMMUNICATION",
    "MUSIC",
    "BOOKS",
    "INTERNET",
    "GAMES",
    "SOCIAL_NETWORKS",
    "ALL_IN_ONE",
    "APPLICATIONS",
    "FINANCE",
    "TRANSPORT",
    "OTHER",
)


@dataclass(frozen=True)
class Subscription:
    id: int
    title: str
    price: Decimal
    currency: str
    first_payment_date: date
    billing_period_value: int = 1
    billing_period_unit: str = "MONTH"
    next_payment_date: Optional[datetime] = None
    category: str = "NONE"
    auto_renew: bool = True
    is_archived: bool = False


def monthly_cost(subscription: Subscription) -> Decimal:
    """Price of ``subscription`` spread over one month of its billing cycle."""
    price = _coerce_amount(subscription.price)
    unit = _validate_period_unit(subscription.billing_period_unit)
    value = max(subscription.billing_period_value, 1)
    if unit == "DAY":
        return price * DAYS_PER_BILLING_MONTH / value
    if unit == "YEAR":
        return price / (MONTHS_PER_YEAR * value)
    return price if value == 1 else price / value


def monthly_cost_in(
    subscription: Subscription, currency: str, rate_table: Optional[RateTable] = None
) -> Decimal:
    return convert_amount(monthly_cost(subscription), subscription.currency, currency, rate_table)


def active_subscriptions(subscriptions: Iterable[Subscription]) -> List[Subscription]:
    return [sub for sub in subscriptions if not sub.is_archived]


def filter_by_category(
    subscriptions: Iterable[Subscription], category: Optional[str]
) -> List[Subscription]:
    if category is None:
        return list(subscriptions)
    return [sub for sub in subscriptions if sub.category == category]


def sort_subscriptions(
    subscriptions: Iterable[Subscription],
    sort_by: str = "nextPaymentDate",
    direction: str = "asc",
    currency: str = "RUB",
    rate_table: Optional[RateTable] = None,
) -> List[Subscription]:
    if sort_by not in SUPPORTED_SORT_FIELDS:
        raise ValueError("Only title, price, or nextPaymentDate sorting is supported.")
    if direction not in SUPPORTED_DIRECTIONS:
        raise ValueError("Sort direction must be asc or desc.")
    reverse = direction == "desc"

    if sort_by == "title":
        return sorted(subscriptions, key=lambda sub: sub.title.casefold(), reverse=reverse)
    if sort_by == "price":
        return sorted(
            subscriptions,
            key=lambda sub: monthly_cost_in(sub, currency, rate_table),
            reverse=reverse,
        )
    return sorted(subscriptions, key=_next_payment_sort_key, reverse=reverse)


def upcoming_renewals(
    subscriptions: Iterable[Subscription],
    now: datetime,
    days: int = UPCOMING_RENEWAL_DAYS,
) -> List[Subscription]:
    horizon = now + timedelta(days=days)
    upcoming = [
        sub
        for sub in subscriptions
        if not sub.is_archived
        and sub.next_payment_date is not None
        and now < sub.next_payment_date < horizon
    ]
    return sorted(upcoming, key=lambda sub: sub.next_payment_date)


def payments_made(subscription: Subscription, today: date) -> int:
    """Billing occurrences from the first payment date through ``today``."""
    start = subscription.first_payment_date
    if start > today:
        return 0
    unit = _validate_period_unit(subscription.billing_period_unit)
    value = max(subscription.billing_period_value, 1)
    if unit == "DAY":
        return (today - start).days // value + 1

    month_increment = value if unit == "MONTH" else MONTHS_PER_YEAR * value
    months_between = (today.year - start.year) * 12 + (today.month - start.month)
    occurrences = months_between // month_increment
    if _add_months(start, occurrences * month_increment, start.day) > today:
        occurrences -= 1
    return occurrences + 1


def days_active(subscription: Subscription, today: date) -> int:
    return max((today - subscription.first_payment_date).days, 0)


def most_expensive(
    subscriptions: Iterable[Subscription],
    currency: str,
    rate_table: Optional[RateTable] = None,
    n: Optional[int] = None,
) -> List[RankedItem]:
    entries = [
        RankingEntry(name=sub.title, value=monthly_cost_in(sub, currency, rate_table))
        for sub in subscriptions
    ]
    return rank_entries(entries, n)


def longest_running(
    subscriptions: Iterable[Subscription],
    today: date,
    n: Optional[int] = None,
) -> List[RankedItem]:
    entries = [
        RankingEntry(name=sub.title, value=Decimal(days_active(sub, today)))
        for sub in subscriptions
    ]
    return rank_entries(entries, n)


def most_funds_spent(
    subscriptions: Iterable[Subscription],
    today: date,
    currency: str,
    rate_table: Optional[RateTable] = None,
    n: Optional[int] = None,
) -> List[RankedItem]:
    entries = []
    for sub in subscriptions:
        spent = _coerce_amount(sub.price) * payments_made(sub, today)
        entries.append(
            RankingEntry(
                name=sub.title,
                value=convert_amount(spent, sub.currency, currency, rate_table),
            )
        )
    return rank_entries(entries, n)


def _next_payment_sort_key(subscription: Subscription) -> float:
    if subscription.next_payment_date is None:
        return 0.0
    return subscription.next_payment_date.timestamp()


def _validate_period_unit(unit: str) -> str:
    normalized = unit.strip().upper()
    if normalized not in SUPPORTED_PERIOD_UNITS:
        raise ValueError("Only DAY, MONTH, or YEAR billing periods are supported.")
    return normalized


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
