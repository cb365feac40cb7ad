from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Any, Callable, List, Optional, TypeVar
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from submonitor.ranking import RankingEntry
from submonitor.settings_cache import UserSettings
from submonitor.spend_analytics import CategorySpending, MonthlySpending
from submonitor.subscriptions import SUPPORTED_PERIOD_UNITS, Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

RANKING_PATHS = {
    "most-expensive": "most-expensive",
    "longest-running": "longest-running",
    "most-spent": "most-spent",
}


class BackendUnavailable(RuntimeError):
    """Raised when the SubMonitor backend cannot serve a request."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class SubMonitorClient:
    base_url: str = "http://localhost:8080/api"
    token: Optional[str] = None
    timeout_seconds: int = 15

    def get_monthly_spending(self, user_id: int) -> List[MonthlySpending]:
        payload = self._request("GET", f"/analytics/monthly-spending/user/{user_id}")
        return _parse_rows(parse_monthly_spending, payload)

    def get_category_breakdown(self, user_id: int) -> List[CategorySpending]:
        payload = self._request("GET", f"/analytics/category-breakdown/user/{user_id}")
        return _parse_rows(parse_category_spending, payload)

    def get_ranking(self, user_id: int, kind: str) -> List[RankingEntry]:
        path = RANKING_PATHS.get(kind)
        if path is None:
            raise ValueError(f"Unsupported ranking: {kind}")
        payload = self._request("GET", f"/analytics/{path}/user/{user_id}")
        return _parse_rows(parse_ranking_entry, payload)

    def get_active_subscriptions(self, user_id: int) -> List[Subscription]:
        payload = self._request("GET", f"/subscriptions/active/user/{user_id}")
        return _parse_rows(parse_subscription, payload)

    def get_archived_subscriptions(self, user_id: int) -> List[Subscription]:
        payload = self._request("GET", f"/subscriptions/archived/user/{user_id}")
        return _parse_rows(parse_subscription, payload)

    def get_user_settings(self, user_id: int) -> dict:
        payload = self._request("GET", f"/users/{user_id}")
        return payload if isinstance(payload, dict) else {}

    def update_user_settings(
        self,
        user_id: int,
        default_currency: Optional[str] = None,
        default_timezone: Optional[str] = None,
    ) -> dict:
        body = {}
        if default_currency is not None:
            body["defaultCurrency"] = default_currency
        if default_timezone is not None:
            body["defaultTimezone"] = default_timezone
        payload = self._request("PUT", f"/users/{user_id}/settings", body)
        return payload if isinstance(payload, dict) else {}

    def unlink_telegram(self, user_id: int) -> None:
        self._request("DELETE", f"/telegram-links/{user_id}")

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            token = self.token[7:] if self.token.startswith("Bearer ") else self.token
            headers["Authorization"] = f"Bearer {token}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = Request(url, data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            if exc.code >= 500:
                logger.error("Backend error %s on %s %s", exc.code, method, path)
            raise BackendUnavailable(f"Backend returned {exc.code}", status_code=exc.code) from exc
        except OSError as exc:
            logger.error("Backend unreachable on %s %s: %s", method, path, exc)
            raise BackendUnavailable("Backend unreachable") from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackendUnavailable("Backend returned malformed JSON") from exc


def parse_monthly_spending(item: dict) -> MonthlySpending:
    month_value = item.get("month")
    if isinstance(month_value, str) and "-" in month_value:
        year_text, month_text = month_value.split("-", 1)
        year, month = int(year_text), int(month_text)
    else:
        year, month = int(item["year"]), int(month_value)
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    return MonthlySpending(
        year=year,
        month=month,
        total_spending=_decimal(item.get("totalSpending", item.get("amount"))),
        currency=item.get("currency"),
    )


def parse_category_spending(item: dict) -> CategorySpending:
    return CategorySpending(
        category=str(item.get("category") or "OTHER"),
        total_spending=_decimal(item.get("totalSpending", item.get("amount"))),
    )


def parse_ranking_entry(item: dict) -> RankingEntry:
    return RankingEntry(
        name=str(item.get("name", "")),
        value=_decimal(item.get("value")),
        formatted=item.get("formatted") or None,
    )


def parse_subscription(item: dict) -> Subscription:
    category = item.get("subscriptionCategory") or (item.get("service") or {}).get("category")
    unit = str(item.get("billingPeriodUnit") or "MONTH").upper()
    if unit not in SUPPORTED_PERIOD_UNITS:
        raise ValueError(f"Unsupported billing period unit: {unit}")
    return Subscription(
        id=int(item["id"]),
        title=str(item.get("title", "")),
        price=_decimal(item.get("price")),
        currency=str(item.get("currency") or "RUB"),
        first_payment_date=date.fromisoformat(str(item["firstPaymentDate"])[:10]),
        billing_period_value=int(item.get("billingPeriodValue") or 1),
        billing_period_unit=unit,
        next_payment_date=parse_timestamp(item.get("nextPaymentDate")),
        category=category or "NONE",
        auto_renew=bool(item.get("autoRenew", True)),
        is_archived=bool(item.get("isArchived", False)),
    )


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def settings_from_backend(payload: dict, cached: UserSettings) -> UserSettings:
    """Overlay backend settings on the cached copy; the theme is local-only."""
    return UserSettings(
        notify_before_renewal=payload.get("notifyBeforeRenewal", cached.notify_before_renewal),
        renewal_notification_days=payload.get(
            "renewalNotificationDays", cached.renewal_notification_days
        ),
        notify_on_price_change=payload.get("notifyOnPriceChange", cached.notify_on_price_change),
        default_currency=payload.get("defaultCurrency") or cached.default_currency,
        default_timezone=payload.get("defaultTimezone", cached.default_timezone),
        theme=cached.theme,
        is_telegram_linked=bool(payload.get("isTelegramLinked", cached.is_telegram_linked)),
    )


def _parse_rows(parse: Callable[[dict], T], payload: Any) -> List[T]:
    try:
        return [parse(item) for item in _as_list(payload)]
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        logger.error("Backend returned malformed data: %r", exc)
        raise BackendUnavailable("Backend returned malformed data") from exc


def _as_list(payload: Any) -> list:
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        payload = payload["data"]
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
