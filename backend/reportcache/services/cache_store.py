"""
Report Cache Store
==================

WHAT:
    Persistence for aggregated report snapshots, one row per
    (client, period) in one of four tables chosen by provider and period
    kind:

        meta   + monthly -> current_month_cache
        meta   + weekly  -> current_week_cache
        google + monthly -> google_ads_current_month_cache
        google + weekly  -> google_ads_current_week_cache

WHY:
    The refresh orchestrator, the report service and the monitoring view all
    depend on the CacheStore protocol only. SqlCacheStore is the production
    implementation; tests use in-memory fakes.

INVARIANTS:
    - Entries are never deleted here
    - last_updated_at never moves backwards for a row
    - Each call opens and closes its own session, so store methods are safe
      to call from refresh worker threads

REFERENCES:
    - reportcache/models.py: CacheEntryMixin and the four tables
    - reportcache/services/cache_health.py: reads list_entries()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Type

from sqlalchemy.orm import Session

from reportcache.models import (
    CacheEntryMixin,
    CurrentMonthCache,
    CurrentWeekCache,
    GoogleAdsCurrentMonthCache,
    GoogleAdsCurrentWeekCache,
    PeriodKindEnum,
    ProviderEnum,
)
from reportcache.services.periods import period_kind

logger = logging.getLogger(__name__)


# =============================================================================
# KEYS, ENTRIES, TABLES
# =============================================================================

@dataclass(frozen=True)
class CacheKey:
    """Identifies one cache entry. Provider + period kind select the table."""
    client_id: str
    period_id: str
    provider: ProviderEnum = ProviderEnum.meta

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.client_id}:{self.period_id}"


@dataclass
class CacheEntry:
    client_id: str
    period_id: str
    last_updated_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    provider: ProviderEnum = ProviderEnum.meta

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.client_id, self.period_id, self.provider)


@dataclass(frozen=True)
class CacheTable:
    name: str
    provider: ProviderEnum
    kind: PeriodKindEnum
    model: Type[CacheEntryMixin]


CACHE_TABLES: List[CacheTable] = [
    CacheTable("current_month_cache", ProviderEnum.meta, PeriodKindEnum.monthly, CurrentMonthCache),
    CacheTable("current_week_cache", ProviderEnum.meta, PeriodKindEnum.weekly, CurrentWeekCache),
    CacheTable(
        "google_ads_current_month_cache", ProviderEnum.google, PeriodKindEnum.monthly, GoogleAdsCurrentMonthCache
    ),
    CacheTable(
        "google_ads_current_week_cache", ProviderEnum.google, PeriodKindEnum.weekly, GoogleAdsCurrentWeekCache
    ),
]

_TABLES_BY_NAME = {table.name: table for table in CACHE_TABLES}


def table_for(provider: ProviderEnum, period_id: str) -> CacheTable:
    """Cache table for a provider and period id.

    Raises:
        UnknownPeriodError: if period_id is not a month or ISO week
    """
    kind = period_kind(period_id)
    provider = ProviderEnum(provider)
    for table in CACHE_TABLES:
        if table.provider == provider and table.kind == kind:
            return table
    raise LookupError(f"No cache table for {provider.value}/{kind.value}")


def get_table(name: str) -> CacheTable:
    try:
        return _TABLES_BY_NAME[name]
    except KeyError:
        raise LookupError(f"Unknown cache table: {name}") from None


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (sqlite reads) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# PROTOCOL
# =============================================================================

class CacheStore(Protocol):
    def get(
        self, client_id: str, period_id: str, provider: ProviderEnum = ProviderEnum.meta
    ) -> Optional[CacheEntry]:
        ...

    def put(
        self,
        client_id: str,
        period_id: str,
        metrics: Dict[str, Any],
        timestamp: datetime,
        provider: ProviderEnum = ProviderEnum.meta,
    ) -> CacheEntry:
        ...

    def list_entries(self, table_name: str) -> List[CacheEntry]:
        ...


# =============================================================================
# SQLALCHEMY IMPLEMENTATION
# =============================================================================

class SqlCacheStore:
    """CacheStore backed by the four SQLAlchemy cache tables."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _to_entry(row: CacheEntryMixin, provider: ProviderEnum) -> CacheEntry:
        return CacheEntry(
            client_id=row.client_id,
            period_id=row.period_id,
            last_updated_at=as_utc(row.last_updated_at),
            payload=dict(row.payload or {}),
            provider=provider,
        )

    def get(
        self, client_id: str, period_id: str, provider: ProviderEnum = ProviderEnum.meta
    ) -> Optional[CacheEntry]:
        table = table_for(provider, period_id)
        db = self._session_factory()
        try:
            row = (
                db.query(table.model)
                .filter(table.model.client_id == client_id, table.model.period_id == period_id)
                .first()
            )
            return self._to_entry(row, table.provider) if row else None
        finally:
            db.close()

    def put(
        self,
        client_id: str,
        period_id: str,
        metrics: Dict[str, Any],
        timestamp: datetime,
        provider: ProviderEnum = ProviderEnum.meta,
    ) -> CacheEntry:
        """Create or update the entry for (client, period).

        An update carrying a timestamp older than the stored one keeps the
        stored timestamp so last_updated_at only moves forward.
        """
        table = table_for(provider, period_id)
        timestamp = as_utc(timestamp)
        db = self._session_factory()
        try:
            row = (
                db.query(table.model)
                .filter(table.model.client_id == client_id, table.model.period_id == period_id)
                .first()
            )
            if row is None:
                row = table.model(
                    client_id=client_id,
                    period_id=period_id,
                    last_updated_at=timestamp,
                    payload=metrics,
                )
                db.add(row)
            else:
                row.payload = metrics
                if timestamp > as_utc(row.last_updated_at):
                    row.last_updated_at = timestamp
            db.commit()
            db.refresh(row)
            logger.debug("[CACHE_STORE] Wrote %s/%s to %s", client_id, period_id, table.name)
            return self._to_entry(row, table.provider)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_entries(self, table_name: str) -> List[CacheEntry]:
        table = get_table(table_name)
        db = self._session_factory()
        try:
            rows = db.query(table.model).order_by(table.model.client_id).all()
            return [self._to_entry(row, table.provider) for row in rows]
        finally:
            db.close()
