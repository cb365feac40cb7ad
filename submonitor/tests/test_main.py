import io
import json
import unittest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from submonitor import main
from submonitor.api_client import BackendUnavailable, SubMonitorClient
from submonitor.currency_conversion import ErApiRateProvider, RateProviderUnavailable, RateTable
from submonitor.ranking import RankingEntry
from submonitor.rate_store import RateStore
from submonitor.spend_analytics import CategorySpending, MonthlySpending
from submonitor.subscriptions import Subscription
from submonitor.settings_cache import SettingsCache

HEADERS = {"x-user-id": "7", "Authorization": "Bearer token"}


def memory_cache() -> SettingsCache:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    cache = SettingsCache(engine)
    cache.init_schema()
    return cache


class FakeProvider:
    def __init__(self) -> None:
        self.fail = False

    def fetch_rates(self, base_currency: str) -> RateTable:
        if self.fail:
            raise RateProviderUnavailable("Down")
        return RateTable(base=base_currency, rates={"RUB": Decimal("100"), "EUR": Decimal("0.5")})


class FakeBackend:
    def __init__(self) -> None:
        self.monthly = [
            MonthlySpending(year=2024, month=2, total_spending=Decimal("2000")),
            MonthlySpending(year=2024, month=1, total_spending=Decimal("1000")),
        ]
        self.categories = [
            CategorySpending(category="VIDEO", total_spending=Decimal("750")),
            CategorySpending(category="MUSIC", total_spending=Decimal("250")),
        ]
        self.rankings = {}
        self.subscriptions = [
            Subscription(
                id=1,
                title="Netflix",
                price=Decimal("799"),
                currency="RUB",
                first_payment_date=date(2024, 1, 1),
                category="VIDEO",
                next_payment_date=datetime.now(timezone.utc) + timedelta(days=2),
            ),
            Subscription(
                id=2,
                title="Apple Developer",
                price=Decimal("26000"),
                currency="RUB",
                first_payment_date=date(2023, 1, 1),
                billing_period_unit="YEAR",
                category="APPLICATIONS",
            ),
        ]
        self.settings = {"defaultCurrency": "EUR", "defaultTimezone": "Europe/Moscow"}
        self.error = None
        self.updates = []

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def get_monthly_spending(self, user_id):
        self._check()
        return self.monthly

    def get_category_breakdown(self, user_id):
        self._check()
        return self.categories

    def get_ranking(self, user_id, kind):
        self._check()
        return self.rankings.get(kind, [])

    def get_active_subscriptions(self, user_id):
        self._check()
        return self.subscriptions

    def get_archived_subscriptions(self, user_id):
        self._check()
        return []

    def get_user_settings(self, user_id):
        self._check()
        return self.settings

    def update_user_settings(self, user_id, default_currency=None, default_timezone=None):
        self._check()
        self.updates.append((user_id, default_currency, default_timezone))
        return {}

    def unlink_telegram(self, user_id):
        self._check()


class AppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = FakeBackend()
        self.provider = FakeProvider()
        self.rate_store = RateStore(provider=self.provider, currency="RUB")
        self.cache = memory_cache()
        main.app.dependency_overrides[main.get_backend_client] = lambda: self.backend
        main.app.dependency_overrides[main.get_rate_store] = lambda: self.rate_store
        main.app.dependency_overrides[main.get_settings_cache] = lambda: self.cache
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        main.app.dependency_overrides.clear()

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_missing_user_identity(self) -> None:
        response = self.client.get("/analytics/monthly")

        self.assertEqual(response.status_code, 401)

    def test_change_currency_commits_rates(self) -> None:
        response = self.client.put("/currency", json={"currency": "usd"})

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["currency"], "USD")
        self.assertEqual(body["rates_base"], "USD")
        self.assertFalse(body["rates_stale"])

    def test_change_currency_rejects_unsupported(self) -> None:
        response = self.client.put("/currency", json={"currency": "CAD"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.rate_store.currency, "RUB")

    def test_change_currency_reports_stale_rates(self) -> None:
        self.provider.fail = True

        response = self.client.put("/currency", json={"currency": "EUR"})

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["currency"], "EUR")
        self.assertIsNone(body["rates"])
        self.assertTrue(body["rates_stale"])

    def test_change_currency_survives_connection_reset(self) -> None:
        main.app.dependency_overrides[main.get_rate_store] = lambda: RateStore(
            provider=ErApiRateProvider(), currency="RUB"
        )
        with mock.patch(
            "submonitor.currency_conversion.urlopen",
            side_effect=ConnectionResetError("reset"),
        ):
            response = self.client.put("/currency", json={"currency": "EUR"})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["rates_stale"])

    def test_convert_uses_fallback_without_rates(self) -> None:
        response = self.client.post(
            "/convert", json={"amount": "100", "source_currency": "USD", "target_currency": "RUB"}
        )

        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("7970"))
        self.assertEqual(body["currency"], "RUB")

    def test_convert_rejects_negative_amount(self) -> None:
        response = self.client.post("/convert", json={"amount": "-1", "source_currency": "USD"})

        self.assertEqual(response.status_code, 400)

    def test_monthly_spending_sorted_periods(self) -> None:
        response = self.client.get("/analytics/monthly", headers=HEADERS)

        body = response.json()
        self.assertEqual([row["period"] for row in body], ["2024-01", "2024-02"])
        self.assertEqual([Decimal(row["amount"]) for row in body], [Decimal("1000"), Decimal("2000")])

    def test_monthly_spending_in_display_currency(self) -> None:
        self.client.put("/currency", json={"currency": "USD"})

        body = self.client.get("/analytics/monthly", headers=HEADERS).json()

        self.assertEqual([Decimal(row["amount"]) for row in body], [Decimal("10"), Decimal("20")])
        self.assertEqual(body[0]["formatted"], "$10")

    def test_category_breakdown_percentages(self) -> None:
        body = self.client.get("/analytics/categories", headers=HEADERS).json()

        self.assertEqual([Decimal(row["percentage"]) for row in body], [Decimal("75"), Decimal("25")])

    def test_totals_from_monthly_records(self) -> None:
        body = self.client.get("/analytics/totals", headers=HEADERS).json()

        self.assertEqual(Decimal(body["year"]), Decimal("3000"))
        self.assertEqual(Decimal(body["month"]), Decimal("250"))
        self.assertEqual(body["week"], 58)
        self.assertEqual(body["day"], 8)

    def test_totals_placeholder_without_data(self) -> None:
        self.backend.monthly = []

        body = self.client.get("/analytics/totals", headers=HEADERS).json()

        self.assertEqual(Decimal(body["year"]), Decimal("0"))
        self.assertEqual(body["formatted_year"], "—")

    def test_backend_failure_maps_to_bad_gateway(self) -> None:
        self.backend.error = BackendUnavailable("Backend unreachable")

        response = self.client.get("/analytics/categories", headers=HEADERS)

        self.assertEqual(response.status_code, 502)

    def test_malformed_backend_rows_map_to_bad_gateway(self) -> None:
        main.app.dependency_overrides[main.get_backend_client] = lambda: SubMonitorClient(
            base_url="http://backend.test/api"
        )
        rows = {
            "/analytics/categories": [{"category": "VIDEO", "totalSpending": "n/a"}],
            "/subscriptions": [{"id": 1, "title": "x", "price": 5}],
        }
        for path, payload in rows.items():
            body = io.BytesIO(json.dumps(payload).encode("utf-8"))
            with mock.patch("submonitor.api_client.urlopen", return_value=body):
                response = self.client.get(path, headers=HEADERS)

            self.assertEqual(response.status_code, 502, path)

    def test_backend_unauthorized_is_forwarded(self) -> None:
        self.backend.error = BackendUnavailable("Backend returned 401", status_code=401)

        response = self.client.get("/analytics/monthly", headers=HEADERS)

        self.assertEqual(response.status_code, 401)

    def test_ranking_prefers_backend_data(self) -> None:
        self.backend.rankings["most-expensive"] = [
            RankingEntry(name="Amazon Music", value=Decimal("833"), formatted="833"),
            RankingEntry(name="Apple Developer", value=Decimal("26000"), formatted="26 тыс."),
        ]

        body = self.client.get("/analytics/rankings/most-expensive", headers=HEADERS).json()

        self.assertEqual(body["source"], "backend")
        self.assertEqual(body["items"][0]["label"], "Apple Developer")
        self.assertEqual(body["items"][0]["display_value"], "26 тыс.")

    def test_ranking_falls_back_to_subscriptions(self) -> None:
        body = self.client.get(
            "/analytics/rankings/most-expensive", headers=HEADERS, params={"limit": 1}
        ).json()

        self.assertEqual(body["source"], "client")
        self.assertEqual(len(body["items"]), 1)
        self.assertEqual(body["items"][0]["label"], "Apple Developer")
        self.assertEqual(body["items"][0]["display_value"], "2 тыс.")

    def test_unknown_ranking(self) -> None:
        response = self.client.get("/analytics/rankings/cheapest", headers=HEADERS)

        self.assertEqual(response.status_code, 404)

    def test_subscriptions_filtered_and_sorted(self) -> None:
        body = self.client.get(
            "/subscriptions",
            headers=HEADERS,
            params={"sort_by": "price", "direction": "desc"},
        ).json()

        self.assertEqual([row["id"] for row in body], [2, 1])

        body = self.client.get(
            "/subscriptions", headers=HEADERS, params={"category": "VIDEO"}
        ).json()
        self.assertEqual([row["id"] for row in body], [1])

    def test_subscriptions_reject_bad_sort(self) -> None:
        response = self.client.get("/subscriptions", headers=HEADERS, params={"sort_by": "color"})

        self.assertEqual(response.status_code, 400)

    def test_upcoming_renewals(self) -> None:
        body = self.client.get("/subscriptions/upcoming", headers=HEADERS).json()

        self.assertEqual([row["id"] for row in body], [1])

    def test_settings_are_cached(self) -> None:
        body = self.client.get("/settings", headers=HEADERS).json()

        self.assertEqual(body["default_currency"], "EUR")
        self.assertFalse(body["stale"])

        self.backend.error = BackendUnavailable("Backend unreachable")
        body = self.client.get("/settings", headers=HEADERS).json()

        self.assertEqual(body["default_currency"], "EUR")
        self.assertEqual(body["default_timezone"], "Europe/Moscow")
        self.assertTrue(body["stale"])

    def test_update_settings(self) -> None:
        response = self.client.put(
            "/settings", headers=HEADERS, json={"default_currency": "pln"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["default_currency"], "PLN")
        self.assertEqual(self.backend.updates, [(7, "PLN", None)])

    def test_update_settings_rejects_unsupported_currency(self) -> None:
        response = self.client.put("/settings", headers=HEADERS, json={"default_currency": "CAD"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.backend.updates, [])

    def test_theme_is_local(self) -> None:
        body = self.client.put("/settings/theme", headers=HEADERS, json={"theme": "dark"}).json()

        self.assertEqual(body["theme"], "dark")
        self.assertEqual(self.cache.load(7).theme, "dark")

    def test_unlink_telegram(self) -> None:
        body = self.client.delete("/settings/telegram", headers=HEADERS).json()

        self.assertFalse(body["is_telegram_linked"])


    def test_logging_is_configured_on_startup(self) -> None:
        with mock.patch.object(main, "setup_logging") as fake_setup, mock.patch.object(
            main, "SETTINGS_CACHE", self.cache
        ):
            with TestClient(main.app):
                pass

        fake_setup.assert_called_once_with(main.LOG_LEVEL)


if __name__ == "__main__":
    unittest.main()
