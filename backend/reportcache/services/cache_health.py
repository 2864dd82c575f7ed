"""
Cache Health
============

Freshness classification for cache entries and health verdicts for cache
tables, feeding the admin cache monitoring view.

WHAT:
    - classify_entry: fresh/stale from the entry age, recomputed on every read
    - evaluate_table: counts + healthy/warning/critical for one table
    - summarize_system: plain sums over the table summaries
    - get_monitoring_snapshot: all four tables from a CacheStore, current
      month and ISO week only
    - collect_stale_keys: which keys a bulk refresh should cover
    - collect_refresh_keys: stale keys plus expected keys with no entry yet

WHY:
    Status is never stored. An entry becomes stale simply because time
    passed, so it is always derived from `now - last_updated_at`.

    Closed periods (last month, prior-year YoY baselines) also live in the
    cache tables. They are neither monitored nor scheduled for refresh.

    These functions only read. They take no locks and are safe to call from
    any number of concurrent pollers (the UI polls every 60s, which has
    nothing to do with the 180 minute staleness threshold).

REFERENCES:
    - reportcache/services/cache_store.py: CacheStore.list_entries
    - reportcache/routers/cache_monitoring.py: HTTP surface
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from reportcache.models import ProviderEnum
from reportcache.services.cache_store import CACHE_TABLES, CacheEntry, CacheKey, CacheStore, as_utc, table_for
from reportcache.services.periods import current_period_ids
from reportcache.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_STALE_THRESHOLD_MINUTES = 180
DEFAULT_CRITICAL_RATIO = 0.5


class FreshnessStatus(str, enum.Enum):
    fresh = "fresh"
    stale = "stale"


class HealthStatus(str, enum.Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"


@dataclass
class CacheEntryStatus:
    client_id: str
    period_id: str
    last_updated_at: datetime
    age_minutes: float
    status: FreshnessStatus

    @property
    def is_stale(self) -> bool:
        return self.status == FreshnessStatus.stale


@dataclass
class CacheTableSummary:
    table_name: str
    provider: str
    total_entries: int = 0
    fresh_entries: int = 0
    stale_entries: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
    health_status: HealthStatus = HealthStatus.healthy
    clients: List[CacheEntryStatus] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SystemSummary:
    total_caches: int = 0
    healthy_caches: int = 0
    warning_caches: int = 0
    critical_caches: int = 0
    total_entries: int = 0
    fresh_entries: int = 0
    stale_entries: int = 0


@dataclass
class MonitoringSnapshot:
    generated_at: datetime
    tables: List[CacheTableSummary]
    summary: SystemSummary
    # {"monthly": "2025-10", "weekly": "2025-W42"}: the periods the tables were filtered to
    period_ids: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# ENTRY / TABLE / SYSTEM
# =============================================================================

def classify_entry(
    entry: CacheEntry,
    now: datetime,
    threshold_minutes: float = DEFAULT_STALE_THRESHOLD_MINUTES,
) -> CacheEntryStatus:
    """Fresh while age <= threshold, stale after.

    Entries stamped in the future (clock skew) count as age 0.
    """
    updated = as_utc(entry.last_updated_at)
    age_minutes = max(0.0, (as_utc(now) - updated).total_seconds() / 60.0)
    status = FreshnessStatus.stale if age_minutes > threshold_minutes else FreshnessStatus.fresh
    return CacheEntryStatus(
        client_id=entry.client_id,
        period_id=entry.period_id,
        last_updated_at=updated,
        age_minutes=round(age_minutes, 2),
        status=status,
    )


def health_from_counts(total: int, stale: int, critical_ratio: float = DEFAULT_CRITICAL_RATIO) -> HealthStatus:
    if total == 0 or stale == 0:
        return HealthStatus.healthy
    if stale / total >= critical_ratio:
        return HealthStatus.critical
    return HealthStatus.warning


def evaluate_table(
    table_name: str,
    entries: Iterable[CacheEntry],
    now: datetime,
    threshold_minutes: float = DEFAULT_STALE_THRESHOLD_MINUTES,
    critical_ratio: float = DEFAULT_CRITICAL_RATIO,
    provider: str = "",
) -> CacheTableSummary:
    """Summarize one table. An empty table is healthy with zero counts."""
    statuses = [classify_entry(entry, now, threshold_minutes) for entry in entries]
    stale = sum(1 for s in statuses if s.is_stale)
    timestamps = [s.last_updated_at for s in statuses]

    return CacheTableSummary(
        table_name=table_name,
        provider=provider,
        total_entries=len(statuses),
        fresh_entries=len(statuses) - stale,
        stale_entries=stale,
        oldest_entry=min(timestamps) if timestamps else None,
        newest_entry=max(timestamps) if timestamps else None,
        health_status=health_from_counts(len(statuses), stale, critical_ratio),
        clients=statuses,
    )


def summarize_system(tables: Iterable[CacheTableSummary]) -> SystemSummary:
    """Sum table verdicts and entry counts. Ratios are not re-derived."""
    summary = SystemSummary()
    for table in tables:
        summary.total_caches += 1
        if table.health_status == HealthStatus.healthy:
            summary.healthy_caches += 1
        elif table.health_status == HealthStatus.warning:
            summary.warning_caches += 1
        else:
            summary.critical_caches += 1
        summary.total_entries += table.total_entries
        summary.fresh_entries += table.fresh_entries
        summary.stale_entries += table.stale_entries
    return summary


def get_monitoring_snapshot(
    store: CacheStore,
    now: Optional[datetime] = None,
    threshold_minutes: float = DEFAULT_STALE_THRESHOLD_MINUTES,
    critical_ratio: float = DEFAULT_CRITICAL_RATIO,
    period_ids: Optional[Dict[str, str]] = None,
) -> MonitoringSnapshot:
    """Health of every cache table for the current month and ISO week.

    Entries of any other period are left out of counts, verdicts and the
    client list. `period_ids` defaults to the periods containing `now` (UTC).

    Always returns a result: a table that cannot be read is reported as
    critical with zero counts and an `error` message.
    """
    now = now or datetime.now(timezone.utc)
    period_ids = period_ids or current_period_ids(as_utc(now).date())
    tables: List[CacheTableSummary] = []

    for table in CACHE_TABLES:
        try:
            entries = store.list_entries(table.name)
        except Exception as e:
            logger.error("[CACHE_HEALTH] Failed to read %s: %s", table.name, e)
            capture_exception(e, extra={"table": table.name})
            tables.append(
                CacheTableSummary(
                    table_name=table.name,
                    provider=table.provider.value,
                    health_status=HealthStatus.critical,
                    error=str(e),
                )
            )
            continue

        current_id = period_ids[table.kind.value]
        current = [entry for entry in entries if entry.period_id == current_id]
        if len(current) < len(entries):
            logger.debug(
                "[CACHE_HEALTH] %s: skipped %d closed-period entries",
                table.name, len(entries) - len(current),
            )

        tables.append(
            evaluate_table(
                table.name,
                current,
                now,
                threshold_minutes=threshold_minutes,
                critical_ratio=critical_ratio,
                provider=table.provider.value,
            )
        )

    summary = summarize_system(tables)
    logger.info(
        "[CACHE_HEALTH] %d tables: %d healthy, %d warning, %d critical (%d/%d entries stale)",
        summary.total_caches, summary.healthy_caches, summary.warning_caches,
        summary.critical_caches, summary.stale_entries, summary.total_entries,
    )
    return MonitoringSnapshot(generated_at=now, tables=tables, summary=summary, period_ids=dict(period_ids))


def collect_stale_keys(snapshot: MonitoringSnapshot) -> List[CacheKey]:
    """Keys of every stale entry in the snapshot. Empty means no refresh is needed."""
    keys: List[CacheKey] = []
    for table in snapshot.tables:
        for status in table.clients:
            if status.is_stale:
                provider = ProviderEnum(table.provider or ProviderEnum.meta.value)
                keys.append(CacheKey(status.client_id, status.period_id, provider))
    return keys


def collect_refresh_keys(snapshot: MonitoringSnapshot, expected: Iterable[CacheKey]) -> List[CacheKey]:
    """Stale keys, then expected keys that have no entry in the snapshot yet.

    `expected` is usually every active client x current period x provider
    the client has an account for. Keys routed to a table that could not be
    read are skipped; its state is unknown.
    """
    keys = collect_stale_keys(snapshot)
    present = {
        CacheKey(status.client_id, status.period_id, ProviderEnum(table.provider))
        for table in snapshot.tables
        for status in table.clients
    }
    unreadable = {table.table_name for table in snapshot.tables if table.error}

    missing = 0
    for key in expected:
        if key in present or key in keys:
            continue
        if table_for(key.provider, key.period_id).name in unreadable:
            continue
        keys.append(key)
        missing += 1

    if missing:
        logger.info("[CACHE_HEALTH] %d expected entries missing, scheduling first refresh", missing)
    return keys
