import logging
import os
import sys
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import Depends, FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine

from submonitor.api_client import BackendUnavailable, SubMonitorClient, settings_from_backend
from submonitor.currency_conversion import (
    SUPPORTED_CURRENCIES,
    ErApiRateProvider,
    RateProviderUnavailable,
    convert_amount,
    require_supported_currency,
)
from submonitor.currency_format import format_amount_or_placeholder, format_currency
from submonitor.ranking import RankedItem, rank_entries
from submonitor.rate_store import CurrencySnapshot, RateStore
from submonitor.settings_cache import SettingsCache, UserSettings
from submonitor.spend_analytics import (
    aggregate_by_category,
    aggregate_monthly,
    spend_totals,
    yearly_amount,
)
from submonitor.subscriptions import (
    CATEGORIES,
    Subscription,
    filter_by_category,
    longest_running,
    monthly_cost_in,
    most_expensive,
    most_funds_spent,
    sort_subscriptions,
    upcoming_renewals,
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SUBMONITOR_API_URL = os.getenv("SUBMONITOR_API_URL", "http://localhost:8080/api")
RATES_API_URL = os.getenv("RATES_API_URL", "https://open.er-api.com/v6/latest")
# Currency the backend reports analytics amounts in.
BACKEND_CURRENCY = "RUB"

database_url = os.getenv("DATABASE_URL", "sqlite:///./submonitor.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "RUB")
    try:
        return require_supported_currency(raw)
    except ValueError:
        return "RUB"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
SETTINGS_CACHE = SettingsCache(engine)
RATE_STORE = RateStore(
    provider=ErApiRateProvider(base_url=RATES_API_URL),
    currency=SYSTEM_DEFAULT_CURRENCY,
)

RANKING_KINDS = {"most-expensive", "longest-running", "most-spent"}


@app.on_event("startup")
def configure_logging() -> None:
    setup_logging(LOG_LEVEL)


@app.on_event("startup")
def init_db() -> None:
    SETTINGS_CACHE.init_schema()


class ConvertPayload(BaseModel):
    amount: Decimal
    source_currency: str
    target_currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ConvertPayload") -> "ConvertPayload":
        if payload.amount < 0:
            raise ValueError("Amount must not be negative.")
        payload.source_currency = payload.source_currency.strip().upper()
        if payload.target_currency is not None:
            payload.target_currency = payload.target_currency.strip().upper()
        return payload


class ConvertResponse(BaseModel):
    amount: Decimal
    currency: str
    formatted: str


class CurrencyPayload(BaseModel):
    currency: str


class CurrencyResponse(BaseModel):
    currency: str
    supported_currencies: list[str]
    rates_base: str | None = None
    rates: dict[str, Decimal] | None = None
    rates_stale: bool = False


class SettingsPayload(BaseModel):
    default_currency: str | None = None
    default_timezone: str | None = None

    @classmethod
    def validate_payload(cls, payload: "SettingsPayload") -> "SettingsPayload":
        if payload.default_currency is None and payload.default_timezone is None:
            raise ValueError("Nothing to update.")
        if payload.default_currency is not None:
            payload.default_currency = require_supported_currency(payload.default_currency)
        if payload.default_timezone is not None:
            payload.default_timezone = payload.default_timezone.strip() or None
        return payload


class ThemePayload(BaseModel):
    theme: str


class UserSettingsResponse(BaseModel):
    notify_before_renewal: bool
    renewal_notification_days: int
    notify_on_price_change: bool
    default_currency: str
    default_timezone: str | None = None
    theme: str
    is_telegram_linked: bool
    stale: bool = False


class MonthlySpendingResponse(BaseModel):
    period: str
    amount: Decimal
    formatted: str


class CategoryBreakdownResponse(BaseModel):
    category: str
    amount: Decimal
    percentage: Decimal
    formatted: str


class SpendTotalsResponse(BaseModel):
    currency: str
    year: Decimal
    month: Decimal
    week: int
    day: int
    formatted_year: str
    formatted_month: str
    formatted_week: str
    formatted_day: str


class RankedItemResponse(BaseModel):
    label: str
    value: Decimal
    display_value: str


class RankingResponse(BaseModel):
    kind: str
    source: str
    items: list[RankedItemResponse]


class SubscriptionResponse(BaseModel):
    id: int
    title: str
    price: Decimal
    currency: str
    category: str
    billing_period_value: int
    billing_period_unit: str
    next_payment_date: datetime | None = None
    is_archived: bool
    monthly_cost: Decimal
    formatted_monthly_cost: str


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def get_backend_client(authorization: str | None = Header(None)) -> SubMonitorClient:
    return SubMonitorClient(base_url=SUBMONITOR_API_URL, token=authorization)


def get_rate_store() -> RateStore:
    return RATE_STORE


def get_settings_cache() -> SettingsCache:
    return SETTINGS_CACHE


def backend_http_error(exc: BackendUnavailable) -> HTTPException:
    if exc.status_code in {401, 403, 404}:
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    return HTTPException(status_code=502, detail="SubMonitor backend unavailable.")


def currency_response(snapshot: CurrencySnapshot, rates_stale: bool = False) -> CurrencyResponse:
    table = snapshot.rate_table
    return CurrencyResponse(
        currency=snapshot.currency,
        supported_currencies=list(SUPPORTED_CURRENCIES),
        rates_base=table.base if table else None,
        rates=dict(table.rates) if table else None,
        rates_stale=rates_stale,
    )


def settings_response(settings: UserSettings, stale: bool = False) -> UserSettingsResponse:
    return UserSettingsResponse(
        notify_before_renewal=settings.notify_before_renewal,
        renewal_notification_days=settings.renewal_notification_days,
        notify_on_price_change=settings.notify_on_price_change,
        default_currency=settings.default_currency,
        default_timezone=settings.default_timezone,
        theme=settings.theme,
        is_telegram_linked=settings.is_telegram_linked,
        stale=stale,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/currency", response_model=CurrencyResponse)
def get_currency(rate_store: RateStore = Depends(get_rate_store)) -> CurrencyResponse:
    return currency_response(rate_store.snapshot())


@app.put("/currency", response_model=CurrencyResponse)
def change_currency(
    payload: CurrencyPayload,
    rate_store: RateStore = Depends(get_rate_store),
) -> CurrencyResponse:
    try:
        snapshot = rate_store.change_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RateProviderUnavailable:
        return currency_response(rate_store.snapshot(), rates_stale=True)
    return currency_response(snapshot)


@app.post("/convert", response_model=ConvertResponse)
def convert(
    payload: ConvertPayload,
    rate_store: RateStore = Depends(get_rate_store),
) -> ConvertResponse:
    try:
        payload = ConvertPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    snapshot = rate_store.snapshot()
    target = payload.target_currency or snapshot.currency
    return ConvertResponse(
        amount=convert_amount(payload.amount, payload.source_currency, target, snapshot.rate_table),
        currency=target,
        formatted=format_currency(
            payload.amount, target, payload.source_currency, snapshot.rate_table
        ),
    )


@app.get("/settings", response_model=UserSettingsResponse)
def get_settings(
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    cache: SettingsCache = Depends(get_settings_cache),
) -> UserSettingsResponse:
    cached = cache.load(user_id)
    try:
        payload = client.get_user_settings(user_id)
    except BackendUnavailable as exc:
        if exc.status_code in {401, 403}:
            raise backend_http_error(exc) from exc
        logger.warning("Serving cached settings for user %s: %s", user_id, exc)
        return settings_response(cached, stale=True)
    return settings_response(cache.save(user_id, settings_from_backend(payload, cached)))


@app.put("/settings", response_model=UserSettingsResponse)
def update_settings(
    payload: SettingsPayload,
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    cache: SettingsCache = Depends(get_settings_cache),
) -> UserSettingsResponse:
    try:
        payload = SettingsPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        updated = client.update_user_settings(
            user_id,
            default_currency=payload.default_currency,
            default_timezone=payload.default_timezone,
        )
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    cached = cache.load(user_id)
    merged = settings_from_backend(
        {
            "defaultCurrency": payload.default_currency or cached.default_currency,
            "defaultTimezone": payload.default_timezone or cached.default_timezone,
            **updated,
        },
        cached,
    )
    return settings_response(cache.save(user_id, merged))


@app.put("/settings/theme", response_model=UserSettingsResponse)
def update_theme(
    payload: ThemePayload,
    user_id: int = Depends(get_user_id),
    cache: SettingsCache = Depends(get_settings_cache),
) -> UserSettingsResponse:
    try:
        return settings_response(cache.update_theme(user_id, payload.theme))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/settings/telegram", response_model=UserSettingsResponse)
def unlink_telegram(
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    cache: SettingsCache = Depends(get_settings_cache),
) -> UserSettingsResponse:
    try:
        client.unlink_telegram(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    cached = cache.load(user_id)
    return settings_response(
        cache.save(user_id, settings_from_backend({"isTelegramLinked": False}, cached))
    )


@app.get("/analytics/monthly", response_model=list[MonthlySpendingResponse])
def monthly_spending(
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    rate_store: RateStore = Depends(get_rate_store),
) -> list[MonthlySpendingResponse]:
    snapshot = rate_store.snapshot()
    try:
        records = client.get_monthly_spending(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    buckets = aggregate_monthly(records, BACKEND_CURRENCY, snapshot.rate_table)
    return [
        MonthlySpendingResponse(
            period=bucket.period,
            amount=convert_amount(
                bucket.amount, BACKEND_CURRENCY, snapshot.currency, snapshot.rate_table
            ),
            formatted=format_currency(
                bucket.amount, snapshot.currency, BACKEND_CURRENCY, snapshot.rate_table
            ),
        )
        for bucket in buckets
    ]


@app.get("/analytics/categories", response_model=list[CategoryBreakdownResponse])
def category_breakdown(
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    rate_store: RateStore = Depends(get_rate_store),
) -> list[CategoryBreakdownResponse]:
    snapshot = rate_store.snapshot()
    try:
        records = client.get_category_breakdown(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    return [
        CategoryBreakdownResponse(
            category=bucket.category,
            amount=convert_amount(
                bucket.amount, BACKEND_CURRENCY, snapshot.currency, snapshot.rate_table
            ),
            percentage=bucket.percentage,
            formatted=format_currency(
                bucket.amount, snapshot.currency, BACKEND_CURRENCY, snapshot.rate_table
            ),
        )
        for bucket in aggregate_by_category(records)
    ]


@app.get("/analytics/totals", response_model=SpendTotalsResponse)
def spending_totals(
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    rate_store: RateStore = Depends(get_rate_store),
) -> SpendTotalsResponse:
    snapshot = rate_store.snapshot()
    try:
        records = client.get_monthly_spending(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    buckets = aggregate_monthly(records, BACKEND_CURRENCY, snapshot.rate_table)
    yearly = convert_amount(
        yearly_amount(buckets), BACKEND_CURRENCY, snapshot.currency, snapshot.rate_table
    )
    totals = spend_totals(yearly)

    def display(value: Decimal | int) -> str:
        return format_amount_or_placeholder(
            value if buckets else None, snapshot.currency, snapshot.currency
        )

    return SpendTotalsResponse(
        currency=snapshot.currency,
        year=totals.year,
        month=totals.month,
        week=totals.week,
        day=totals.day,
        formatted_year=display(totals.year),
        formatted_month=display(totals.month),
        formatted_week=display(totals.week),
        formatted_day=display(totals.day),
    )


@app.get("/analytics/rankings/{kind}", response_model=RankingResponse)
def ranking(
    kind: str,
    limit: int = Query(5, ge=1, le=50),
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    rate_store: RateStore = Depends(get_rate_store),
) -> RankingResponse:
    if kind not in RANKING_KINDS:
        raise HTTPException(status_code=404, detail="Unknown ranking.")
    try:
        entries = client.get_ranking(user_id, kind)
    except BackendUnavailable as exc:
        if exc.status_code in {401, 403}:
            raise backend_http_error(exc) from exc
        logger.info("Backend ranking %s unavailable for user %s: %s", kind, user_id, exc)
        entries = []
    if entries:
        return ranking_response(kind, "backend", rank_entries(entries, limit))

    snapshot = rate_store.snapshot()
    try:
        subscriptions = client.get_active_subscriptions(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    today = date.today()
    if kind == "most-expensive":
        items = most_expensive(subscriptions, snapshot.currency, snapshot.rate_table, limit)
    elif kind == "longest-running":
        items = longest_running(subscriptions, today, limit)
    else:
        items = most_funds_spent(
            subscriptions, today, snapshot.currency, snapshot.rate_table, limit
        )
    return ranking_response(kind, "client", items)


@app.get("/subscriptions", response_model=list[SubscriptionResponse])
def list_subscriptions(
    category: str | None = Query(None),
    sort_by: str = Query("nextPaymentDate"),
    direction: str = Query("asc"),
    archived: bool = Query(False),
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    rate_store: RateStore = Depends(get_rate_store),
) -> list[SubscriptionResponse]:
    if category is not None and category not in CATEGORIES:
        raise HTTPException(status_code=400, detail="Unknown subscription category.")
    snapshot = rate_store.snapshot()
    try:
        if archived:
            subscriptions = client.get_archived_subscriptions(user_id)
        else:
            subscriptions = client.get_active_subscriptions(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    try:
        ordered = sort_subscriptions(
            filter_by_category(subscriptions, category),
            sort_by=sort_by,
            direction=direction,
            currency=snapshot.currency,
            rate_table=snapshot.rate_table,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [subscription_response(sub, snapshot) for sub in ordered]


@app.get("/subscriptions/upcoming", response_model=list[SubscriptionResponse])
def list_upcoming_renewals(
    days: int = Query(7, ge=1, le=90),
    user_id: int = Depends(get_user_id),
    client: SubMonitorClient = Depends(get_backend_client),
    rate_store: RateStore = Depends(get_rate_store),
) -> list[SubscriptionResponse]:
    snapshot = rate_store.snapshot()
    try:
        subscriptions = client.get_active_subscriptions(user_id)
    except BackendUnavailable as exc:
        raise backend_http_error(exc) from exc
    upcoming = upcoming_renewals(subscriptions, datetime.now(timezone.utc), days=days)
    return [subscription_response(sub, snapshot) for sub in upcoming]


def ranking_response(kind: str, source: str, items: list[RankedItem]) -> RankingResponse:
    return RankingResponse(
        kind=kind,
        source=source,
        items=[
            RankedItemResponse(label=item.label, value=item.value, display_value=item.display_value)
            for item in items
        ],
    )


def subscription_response(sub: Subscription, snapshot: CurrencySnapshot) -> SubscriptionResponse:
    cost = monthly_cost_in(sub, snapshot.currency, snapshot.rate_table)
    return SubscriptionResponse(
        id=sub.id,
        title=sub.title,
        price=sub.price,
        currency=sub.currency,
        category=sub.category,
        billing_period_value=sub.billing_period_value,
        billing_period_unit=sub.billing_period_unit,
        next_payment_date=sub.next_payment_date,
        is_archived=sub.is_archived,
        monthly_cost=cost,
        formatted_monthly_cost=format_currency(cost, snapshot.currency, snapshot.currency),
    )
