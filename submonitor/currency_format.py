from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import re
from functools import lru_cache

from babel import Locale
from babel.numbers import format_currency as babel_format_currency

from submonitor.currency_conversion import RateTable, convert_amount

CURRENCY_LOCALES: dict[str, str] = {
    "RUB": "ru_RU",
    "USD": "en_US",
    "EUR": "de_DE",
    "JPY": "ja_JP",
    "GBP": "en_GB",
    "CNY": "zh_CN",
    "PLN": "pl_PL",
    "TRY": "tr_TR",
}
DEFAULT_LOCALE = "en_US"
PLACEHOLDER = "—"

_FRACTION_RE = re.compile(r"\.[0#]+")


def get_locale(currency: str) -> str:
    return CURRENCY_LOCALES.get(currency.strip().upper(), DEFAULT_LOCALE)


def format_currency(
    amount: Decimal | int | float | str,
    currency: str,
    original_currency: str = "RUB",
    rate_table: RateTable | None = None,
) -> str:
    """Render ``amount`` (held in ``original_currency``) as whole units of ``currency``."""
    code = currency.strip().upper()
    converted = convert_amount(amount, original_currency, code, rate_table)
    whole_units = converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    locale = get_locale(code)
    return babel_format_currency(
        whole_units,
        code,
        format=_whole_unit_pattern(locale),
        locale=locale,
        currency_digits=False,
    )


def format_amount_or_placeholder(
    amount: Decimal | int | float | str | None,
    currency: str,
    original_currency: str = "RUB",
    rate_table: RateTable | None = None,
) -> str:
    if amount is None:
        return PLACEHOLDER
    return format_currency(amount, currency, original_currency, rate_table)


@lru_cache(maxsize=None)
def _whole_unit_pattern(locale: str) -> str:
    pattern = Locale.parse(locale).currency_formats["standard"].pattern
    return _FRACTION_RE.sub("", pattern)
