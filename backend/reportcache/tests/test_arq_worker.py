"""Tests for the ARQ refresh jobs and the enqueue helper.

WHAT:
    process_refresh_job / scheduled_stale_refresh against an in-memory
    store and fetcher, plus payload (de)serialization and enqueueing with a
    fake pool.

WHY:
    The cron job is the only thing that keeps caches fresh overnight; a run
    that overlaps another must be skipped, not doubled.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from reportcache.errors import FetchAuthError
from reportcache.models import ProviderEnum
from reportcache.services.cache_store import CacheKey
from reportcache.services.periods import current_period_ids
from reportcache.services.refresh_orchestrator import LocalRefreshGuard, RefreshOrchestrator
from reportcache.workers.arq_enqueue import enqueue_refresh_job, keys_to_payload
from reportcache.workers.arq_worker import (
    get_redis_settings,
    parse_keys,
    process_refresh_job,
    scheduled_stale_refresh,
)


@pytest.fixture
def ctx(settings, fake_store, fake_fetcher):
    return {
        "settings": settings,
        "cache_store": fake_store,
        "fetcher": fake_fetcher,
        "orchestrator": RefreshOrchestrator(fake_fetcher, fake_store, max_workers=2),
        "refresh_guard": LocalRefreshGuard(),
    }


def _ago(minutes):
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


def _month():
    return current_period_ids(datetime.now(timezone.utc).date())["monthly"]


class TestPayloads:
    def test_parse_keys_defaults_to_meta(self):
        keys = parse_keys([
            {"client_id": "c1", "period_id": "2025-10"},
            {"client_id": 7, "period_id": "2025-W42", "provider": "google"},
        ])
        assert keys == [
            CacheKey("c1", "2025-10", ProviderEnum.meta),
            CacheKey("7", "2025-W42", ProviderEnum.google),
        ]

    def test_enqueue_payload_round_trips(self):
        keys = [CacheKey("c1", "2025-10", ProviderEnum.google)]
        assert parse_keys(keys_to_payload(keys)) == keys

    def test_redis_settings_from_url(self):
        redis_settings = get_redis_settings("rediss://user:pw@cache.internal:6380/2")
        assert redis_settings.host == "cache.internal"
        assert redis_settings.port == 6380
        assert redis_settings.password == "pw"
        assert redis_settings.database == 2
        assert redis_settings.ssl is True


class TestProcessRefreshJob:
    def test_reports_counts_and_errors(self, ctx, fake_fetcher):
        fake_fetcher.responses[("c2", "2025-10", ProviderEnum.meta)] = FetchAuthError("Token expired", "meta")
        keys = [{"client_id": f"c{i}", "period_id": "2025-10"} for i in range(3)]

        result = asyncio.run(process_refresh_job(ctx, keys))

        assert result["success"] is False
        assert (result["total"], result["successful"], result["failed"]) == (3, 2, 1)
        assert result["errors"] == [{"key": "meta:c2:2025-10", "error": "FetchAuthError: Token expired"}]

    def test_skipped_when_refresh_running(self, ctx, fake_fetcher):
        keys = [{"client_id": "c1", "period_id": "2025-10"}]
        with ctx["refresh_guard"].hold():
            result = asyncio.run(process_refresh_job(ctx, keys))

        assert result == {"success": False, "skipped": True, "total": 1}
        assert fake_fetcher.calls == []


class TestScheduledStaleRefresh:
    def test_refreshes_only_stale_entries(self, ctx, fake_store, fake_fetcher):
        month_id = _month()
        fake_store.seed("fresh", month_id, _ago(10))
        fake_store.seed("old", month_id, _ago(300))
        fake_store.seed("old", "2024-10", _ago(60 * 24 * 365))

        result = asyncio.run(scheduled_stale_refresh(ctx))

        assert result["success"] is True
        assert result["total"] == 1
        assert fake_fetcher.calls == [("old", month_id, ProviderEnum.meta)]
        assert fake_store.get("old", month_id).last_updated_at > _ago(5)

    def test_first_entry_for_new_client(self, ctx, fake_store, fake_fetcher):
        """WHAT: A client with no cache rows gets its current month and week fetched.
        WHY: Entries are created by the first successful refresh.
        """
        fake_fetcher.known_clients = [("new-client", ProviderEnum.google)]
        ids = current_period_ids(datetime.now(timezone.utc).date())

        result = asyncio.run(scheduled_stale_refresh(ctx))

        assert result["total"] == 2
        assert sorted(fake_fetcher.calls) == sorted(
            ("new-client", period_id, ProviderEnum.google) for period_id in ids.values()
        )
        assert fake_store.get("new-client", ids["weekly"], ProviderEnum.google) is not None

    def test_nothing_stale(self, ctx, fake_store, fake_fetcher):
        fake_fetcher.known_clients = [("fresh", ProviderEnum.meta)]
        for period_id in current_period_ids(datetime.now(timezone.utc).date()).values():
            fake_store.seed("fresh", period_id, _ago(10))

        assert asyncio.run(scheduled_stale_refresh(ctx)) == {"success": True, "total": 0}
        assert fake_fetcher.calls == []

    def test_failures_reported_to_sentry(self, ctx, fake_store, fake_fetcher, monkeypatch):
        captured = Mock()
        monkeypatch.setattr("reportcache.workers.arq_worker.capture_message", captured)
        fake_store.seed("old", _month(), _ago(400))
        fake_fetcher.responses[("old", _month(), ProviderEnum.meta)] = FetchAuthError("Token expired", "meta")

        result = asyncio.run(scheduled_stale_refresh(ctx))

        assert result["failed"] == 1
        captured.assert_called_once()
        assert captured.call_args.kwargs["level"] == "warning"


class TestEnqueue:
    def test_enqueued(self):
        pool = Mock()
        pool.enqueue_job = AsyncMock(return_value=Mock(job_id="job-1"))

        result = asyncio.run(enqueue_refresh_job([CacheKey("c1", "2025-10")], pool=pool))

        assert result == {"job_id": "job-1", "status": "enqueued"}
        args, kwargs = pool.enqueue_job.call_args
        assert args == ("process_refresh_job", [{"client_id": "c1", "period_id": "2025-10", "provider": "meta"}])
        assert kwargs == {"_queue_name": "arq:queue"}

    def test_duplicate_job(self):
        pool = Mock()
        pool.enqueue_job = AsyncMock(return_value=None)

        result = asyncio.run(enqueue_refresh_job([CacheKey("c1", "2025-10")], pool=pool))

        assert result == {"job_id": None, "status": "skipped_or_duplicate"}
