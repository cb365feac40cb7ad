from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Protocol

from submonitor.currency_conversion import (
    RateProviderUnavailable,
    RateTable,
    require_supported_currency,
)

logger = logging.getLogger(__name__)


class RateProvider(Protocol):
    def fetch_rates(self, base_currency: str) -> RateTable: ...


@dataclass(frozen=True)
class CurrencySnapshot:
    currency: str
    rate_table: RateTable | None


class RateStore:
    """Session-scoped display currency and its exchange-rate snapshot.

    Readers always get the last committed table, even while a refresh is in
    flight. A fetch result is committed only if no newer currency change was
    requested in the meantime and the selection still matches the currency
    the fetch was made for, so the latest request wins.
    """

    def __init__(self, provider: RateProvider, currency: str = "RUB") -> None:
        self._provider = provider
        self._currency = require_supported_currency(currency)
        self._rate_table: RateTable | None = None
        self._latest_token = 0
        self._lock = threading.Lock()

    @property
    def currency(self) -> str:
        return self._currency

    @property
    def rate_table(self) -> RateTable | None:
        return self._rate_table

    def snapshot(self) -> CurrencySnapshot:
        with self._lock:
            return CurrencySnapshot(currency=self._currency, rate_table=self._rate_table)

    def change_currency(self, currency: str) -> CurrencySnapshot:
        """Select ``currency`` and refresh the rate table for it.

        Raises UnsupportedCurrencyError before touching any state, and
        RateProviderUnavailable after the selection has changed but with the
        previous rate table still in place.
        """
        normalized = require_supported_currency(currency)
        token = self.begin_refresh(normalized)
        try:
            rate_table = self._provider.fetch_rates(normalized)
        except RateProviderUnavailable:
            logger.warning("Rate refresh for %s failed; keeping previous rates", normalized)
            raise
        self.commit(token, normalized, rate_table)
        return self.snapshot()

    def begin_refresh(self, currency: str) -> int:
        with self._lock:
            self._latest_token += 1
            self._currency = currency
            return self._latest_token

    def commit(self, token: int, currency: str, rate_table: RateTable) -> bool:
        with self._lock:
            if token != self._latest_token or currency != self._currency:
                logger.info(
                    "Discarding %s rates from superseded request %s (latest %s, selected %s)",
                    currency,
                    token,
                    self._latest_token,
                    self._currency,
                )
                return False
            self._rate_table = rate_table
        logger.info("Committed %s rates for %d currencies", currency, len(rate_table.rates))
        return True
