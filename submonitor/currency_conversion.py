from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import json
import logging
from types import MappingProxyType
from typing import Mapping
from urllib.request import urlopen

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES: tuple[str, ...] = ("RUB", "USD", "EUR", "JPY", "GBP", "CNY", "PLN", "TRY")

# Rows are "1 unit of the row currency = value units of the key currency".
FALLBACK_RATES: Mapping[str, Mapping[str, Decimal]] = MappingProxyType(
    {
        "RUB": MappingProxyType(
            {
                "USD": Decimal("0.013"),
                "EUR": Decimal("0.011"),
                "JPY": Decimal("1.80"),
                "GBP": Decimal("0.009"),
                "CNY": Decimal("0.09"),
                "PLN": Decimal("0.047"),
                "TRY": Decimal("0.49"),
                "RUB": Decimal("1"),
            }
        ),
        "USD": MappingProxyType(
            {
                "RUB": Decimal("79.7"),
                "EUR": Decimal("0.89"),
                "JPY": Decimal("143.8"),
                "GBP": Decimal("0.75"),
                "CNY": Decimal("7.2"),
                "PLN": Decimal("3.76"),
                "TRY": Decimal("39.0"),
                "USD": Decimal("1"),
            }
        ),
        "EUR": MappingProxyType(
            {
                "RUB": Decimal("89.97"),
                "USD": Decimal("1.13"),
                "JPY": Decimal("162.3"),
                "GBP": Decimal("0.84"),
                "CNY": Decimal("8.14"),
                "PLN": Decimal("4.25"),
                "TRY": Decimal("44.03"),
                "EUR": Decimal("1"),
            }
        ),
    }
)
FALLBACK_BASE = "USD"


class UnsupportedCurrencyError(ValueError):
    """Raised when a currency outside SUPPORTED_CURRENCIES is requested."""


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class RateTable:
    """Exchange rates relative to one base currency.

    ``rates[code]`` is the amount of ``code`` bought by one unit of ``base``.
    """

    base: str
    rates: Mapping[str, Decimal]

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", normalize_currency(self.base))
        object.__setattr__(
            self,
            "rates",
            MappingProxyType(
                {normalize_currency(code): _coerce_amount(value) for code, value in self.rates.items()}
            ),
        )

    def rate_for(self, currency: str) -> Decimal | None:
        rate = self.rates.get(currency)
        if rate is None or rate <= 0:
            return None
        return rate


@dataclass(frozen=True)
class ErApiRateProvider:
    base_url: str = "https://open.er-api.com/v6/latest"
    timeout_seconds: int = 8

    def fetch_rates(self, base_currency: str) -> RateTable:
        base = require_supported_currency(base_currency)
        url = f"{self.base_url.rstrip('/')}/{base}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (OSError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        if not isinstance(payload, dict) or payload.get("result") != "success":
            raise RateProviderUnavailable("Exchange rate API returned an error")
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        filtered: dict[str, Decimal] = {}
        for code in SUPPORTED_CURRENCIES:
            value = rates.get(code)
            if not value:
                continue
            try:
                filtered[code] = _coerce_amount(value)
            except InvalidOperation:
                logger.warning("Ignoring malformed %s rate %r for base %s", code, value, base)
        return RateTable(base=base, rates=filtered)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_table: RateTable | None = None,
) -> Decimal:
    """Convert a monetary amount for display.

    Live rates win when the table covers the pair directly, inversely or
    through its base. Otherwise the static fallback row for the source
    currency is used, and when that has no entry either the amount comes
    back unconverted.
    """
    coerced_amount = _coerce_amount(amount)
    source = _normalize_code(source_currency)
    target = _normalize_code(target_currency)

    if source == target:
        return coerced_amount

    if rate_table is not None:
        live = _convert_with_table(coerced_amount, source, target, rate_table)
        if live is not None:
            return live

    fallback_row = FALLBACK_RATES.get(source) or FALLBACK_RATES[FALLBACK_BASE]
    fallback_rate = fallback_row.get(target)
    if fallback_rate is not None:
        return coerced_amount * fallback_rate
    return coerced_amount


def _convert_with_table(
    amount: Decimal, source: str, target: str, rate_table: RateTable
) -> Decimal | None:
    source_rate = rate_table.rate_for(source)
    target_rate = rate_table.rate_for(target)
    if rate_table.base == source and target_rate is not None:
        return amount * target_rate
    if rate_table.base == target and source_rate is not None:
        return amount / source_rate
    if source_rate is not None and target_rate is not None:
        return amount / source_rate * target_rate
    return None


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def require_supported_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrencyError(f"Unsupported currency: {normalized}")
    return normalized


def _normalize_code(value: str | None) -> str:
    return (value or "").strip().upper()


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
