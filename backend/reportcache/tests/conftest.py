"""Pytest configuration for report cache tests

WHAT: Shared fixtures for service and HTTP endpoint tests
WHY: Consistent database isolation plus in-memory fakes for the cache store
     and the platform fetcher, so no test touches Meta or Google
REFERENCES:
    - reportcache/main.py: FastAPI application
    - reportcache/database.py: Database configuration
    - reportcache/deps.py: Dependency injection
"""

import os
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before reportcache.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from reportcache.models import ProviderEnum  # noqa: E402
from reportcache.services.action_normalizer import (  # noqa: E402
    RawActionRecord,
    RawCampaign,
    RawCampaignPayload,
)
from reportcache.services.cache_store import CacheEntry, CacheKey, as_utc, table_for, get_table  # noqa: E402

ADMIN_SECRET = "test-admin-secret"
NOW = datetime(2025, 10, 19, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory sqlite shared across sessions (StaticPool = one connection)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from reportcache.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Fakes
# ============================================================================

class FakeCacheStore:
    """Thread-safe in-memory CacheStore with the same table routing as SqlCacheStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self.entries: Dict[Tuple[str, str, str], CacheEntry] = {}
        self.put_calls: List[CacheKey] = []
        self.fail_tables: set = set()

    def seed(self, client_id, period_id, last_updated_at, payload=None, provider=ProviderEnum.meta):
        table = table_for(provider, period_id)
        self.entries[(table.name, client_id, period_id)] = CacheEntry(
            client_id=client_id,
            period_id=period_id,
            last_updated_at=as_utc(last_updated_at),
            payload=dict(payload or {}),
            provider=table.provider,
        )

    def get(self, client_id, period_id, provider=ProviderEnum.meta) -> Optional[CacheEntry]:
        table = table_for(provider, period_id)
        with self._lock:
            return self.entries.get((table.name, client_id, period_id))

    def put(self, client_id, period_id, metrics, timestamp, provider=ProviderEnum.meta) -> CacheEntry:
        table = table_for(provider, period_id)
        entry = CacheEntry(client_id, period_id, as_utc(timestamp), dict(metrics), table.provider)
        with self._lock:
            self.entries[(table.name, client_id, period_id)] = entry
            self.put_calls.append(CacheKey(client_id, period_id, table.provider))
        return entry

    def list_entries(self, table_name) -> List[CacheEntry]:
        get_table(table_name)
        if table_name in self.fail_tables:
            raise RuntimeError(f"{table_name} unavailable")
        with self._lock:
            return [e for (t, _, _), e in self.entries.items() if t == table_name]


class FakeFetcher:
    """Returns canned payloads per (client_id, period_id, provider); raises when the canned value is an exception."""

    def __init__(self, responses=None, default=None, delay: float = 0.0):
        self.responses = dict(responses or {})
        self.default = default
        self.delay = delay
        self.calls: List[Tuple[str, str, ProviderEnum]] = []
        # (client_id, provider) pairs reported by client_keys()
        self.known_clients: List[Tuple[str, ProviderEnum]] = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def client_keys(self, period_ids):
        return [
            CacheKey(client_id, period_id, provider)
            for client_id, provider in self.known_clients
            for period_id in period_ids.values()
        ]

    def fetch_campaign_data(self, client_id, period_id, provider):
        with self._lock:
            self.calls.append((client_id, period_id, provider))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            response = self.responses.get((client_id, period_id, provider), self.default)
            if isinstance(response, Exception):
                raise response
            if response is None:
                return RawCampaignPayload(provider=provider, campaigns=[])
            return response
        finally:
            with self._lock:
                self.active -= 1


class FakeRedis:
    """Named non-blocking locks, enough for RedisRefreshGuard in API and worker."""

    def __init__(self):
        self.held: set = set()

    def lock(self, name, timeout=None):
        return FakeRedisLock(self, name)

    def exists(self, name):
        return int(name in self.held)


class FakeRedisLock:
    def __init__(self, redis_client, name):
        self._redis = redis_client
        self._name = name

    def acquire(self, blocking=True):
        if self._name in self._redis.held:
            return False
        self._redis.held.add(self._name)
        return True

    def release(self):
        self._redis.held.discard(self._name)


def make_meta_payload(spend=100, impressions=1000, clicks=50, purchases=3, value=300.0) -> RawCampaignPayload:
    return RawCampaignPayload(
        provider=ProviderEnum.meta,
        campaigns=[
            RawCampaign(
                campaign_id="c1",
                campaign_name="Brand",
                spend=spend,
                impressions=impressions,
                clicks=clicks,
                actions=[
                    RawActionRecord("omni_purchase", purchases),
                    RawActionRecord("offsite_conversion.fb_pixel_purchase", purchases),
                ],
                action_values=[RawActionRecord("omni_purchase", value)],
            )
        ],
    )


@pytest.fixture
def fake_store():
    return FakeCacheStore()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher(default=make_meta_payload())


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fetcher_cls():
    return FakeFetcher


@pytest.fixture
def meta_payload():
    return make_meta_payload


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def settings():
    from reportcache.deps import Settings
    return Settings(ADMIN_SECRET=ADMIN_SECRET, REFRESH_MAX_WORKERS=3)


@pytest.fixture
def app(settings, fake_store, fake_fetcher):
    """FastAPI app with fake store/fetcher wired into app.state."""
    from reportcache.deps import get_settings
    from reportcache.main import create_app
    from reportcache.services.refresh_orchestrator import LocalRefreshGuard, RefreshOrchestrator
    from reportcache.services.report_service import ReportService

    test_app = create_app(settings)
    test_app.dependency_overrides[get_settings] = lambda: settings

    orchestrator = RefreshOrchestrator(fake_fetcher, fake_store, max_workers=settings.REFRESH_MAX_WORKERS)
    test_app.state.cache_store = fake_store
    test_app.state.fetcher = fake_fetcher
    test_app.state.orchestrator = orchestrator
    test_app.state.refresh_guard = LocalRefreshGuard()
    test_app.state.report_service = ReportService(fake_store, orchestrator)
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": ADMIN_SECRET}


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def minutes_ago():
    def _minutes_ago(minutes: float) -> datetime:
        return NOW - timedelta(minutes=minutes)
    return _minutes_ago
