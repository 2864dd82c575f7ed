"""HTTP tests for /reports."""

from datetime import datetime, timedelta, timezone

from reportcache.errors import FetchError
from reportcache.models import ProviderEnum


def _ago(minutes):
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


class TestGetReport:
    def test_fresh_cache_hit(self, client, fake_store, fake_fetcher):
        fake_store.seed("c1", "2025-10", _ago(5), payload={"spend": 55.0, "campaign_count": 1})

        response = client.get("/reports/c1/meta/2025-10")

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "cached"
        assert data["stale"] is False
        assert data["metrics"]["spend"] == 55.0
        assert fake_fetcher.calls == []

    def test_missing_entry_fetched_live(self, client, fake_fetcher):
        response = client.get("/reports/c1/google/2025-W42")

        data = response.json()
        assert data["source"] == "live"
        assert data["provider"] == "google"
        assert data["metrics"]["reservations"] == 3
        assert fake_fetcher.calls == [("c1", "2025-W42", ProviderEnum.google)]

    def test_unavailable_is_explicit(self, client, fake_fetcher):
        fake_fetcher.default = FetchError("Meta API unreachable", "meta")

        response = client.get("/reports/c1/meta/2025-10")

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "unavailable"
        assert data["metrics"] is None
        assert data["error"] == "Meta API unreachable"

    def test_stale_fallback(self, client, fake_store, fake_fetcher):
        fake_store.seed("c1", "2025-10", _ago(600), payload={"spend": 9.0})
        fake_fetcher.default = FetchError("timeout", "meta")

        data = client.get("/reports/c1/meta/2025-10").json()

        assert data["source"] == "cached"
        assert data["stale"] is True
        assert data["metrics"]["spend"] == 9.0

    def test_custom_range_is_422(self, client):
        assert client.get("/reports/c1/meta/2025-10-01..2025-10-15").status_code == 422

    def test_unknown_provider_is_422(self, client):
        assert client.get("/reports/c1/tiktok/2025-10").status_code == 422


class TestGetYoY:
    def test_deltas_and_no_history(self, client, fake_store):
        fake_store.seed("c1", "2025-10", _ago(5), payload={"spend": 150.0, "clicks": 10.0})
        fake_store.seed("c1", "2024-10", _ago(5), payload={"spend": 100.0})

        response = client.get("/reports/c1/meta/2025-10/yoy")

        assert response.status_code == 200
        data = response.json()
        assert data["comparison_period_id"] == "2024-10"
        deltas = {d["metric_name"]: d for d in data["deltas"]}
        assert deltas["spend"]["change_percent"] == 50.0
        assert deltas["spend"]["status"] == "ok"
        assert deltas["clicks"]["change_percent"] is None
        assert deltas["clicks"]["status"] == "no_history"

    def test_custom_range_is_422(self, client):
        assert client.get("/reports/c1/meta/last_30_days/yoy").status_code == 422
