"""
Report Service
==============

Read path for cached reports.

WHAT:
    get_report(key) returns the aggregated metrics for a key together with
    where they came from:

    | Situation                              | source      | stale |
    |----------------------------------------|-------------|-------|
    | Fresh entry in the cache               | cached      | False |
    | Entry stale/missing, fetch succeeded   | live        | False |
    | Fetch failed, an older entry exists    | cached      | True  |
    | Fetch failed, nothing cached           | unavailable | -     |

    get_yoy(key) compares the report with the stored snapshot of the same
    calendar period one year earlier.

WHY:
    Callers must be able to tell real numbers from missing ones. When a
    platform is unreachable and nothing is cached the result is
    `unavailable` with no metrics, never placeholder figures.

REFERENCES:
    - reportcache/services/refresh_orchestrator.py: fetch + build_metrics
    - reportcache/services/yoy_comparator.py
    - reportcache/routers/reports.py
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from reportcache.services.cache_health import DEFAULT_STALE_THRESHOLD_MINUTES, classify_entry
from reportcache.services.cache_store import CacheKey, CacheStore
from reportcache.services.metrics_aggregator import AggregatedMetrics
from reportcache.services.refresh_orchestrator import RefreshOrchestrator
from reportcache.services.yoy_comparator import YoYDelta, compare, comparison_period_id
from reportcache.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


class DataSource(str, enum.Enum):
    live = "live"
    cached = "cached"
    unavailable = "unavailable"


@dataclass
class ReportResult:
    key: CacheKey
    source: DataSource
    metrics: Optional[AggregatedMetrics] = None
    last_updated_at: Optional[datetime] = None
    stale: bool = False
    error: Optional[str] = None


@dataclass
class YoYReport:
    key: CacheKey
    comparison_period_id: Optional[str]
    source: DataSource
    deltas: List[YoYDelta] = field(default_factory=list)
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReportService:
    def __init__(
        self,
        store: CacheStore,
        orchestrator: RefreshOrchestrator,
        threshold_minutes: float = DEFAULT_STALE_THRESHOLD_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.threshold_minutes = threshold_minutes
        self.clock = clock

    def get_report(self, key: CacheKey) -> ReportResult:
        """Serve a fresh cached entry, otherwise refetch and write back.

        Raises:
            UnknownPeriodError: if key.period_id is not a month or ISO week
        """
        now = self.clock()
        entry = self.store.get(key.client_id, key.period_id, key.provider)

        if entry is not None and not classify_entry(entry, now, self.threshold_minutes).is_stale:
            return ReportResult(
                key=key,
                source=DataSource.cached,
                metrics=AggregatedMetrics.from_dict(entry.payload),
                last_updated_at=entry.last_updated_at,
            )

        try:
            payload = self.orchestrator.fetch(key)
            metrics = self.orchestrator.build_metrics(payload)
        except Exception as e:
            logger.warning("[REPORT] Live fetch failed for %s: %s", key, e)
            capture_exception(e, extra={
                "operation": "report_live_fetch",
                "client_id": key.client_id,
                "period_id": key.period_id,
                "provider": key.provider.value,
            })
            if entry is not None:
                return ReportResult(
                    key=key,
                    source=DataSource.cached,
                    metrics=AggregatedMetrics.from_dict(entry.payload),
                    last_updated_at=entry.last_updated_at,
                    stale=True,
                    error=str(e),
                )
            return ReportResult(key=key, source=DataSource.unavailable, error=str(e))

        last_updated_at = now
        try:
            written = self.store.put(key.client_id, key.period_id, metrics.to_dict(), now, key.provider)
            last_updated_at = written.last_updated_at
        except Exception as e:
            # The fetched metrics are still served; the next read refetches
            logger.error("[REPORT] Cache write failed for %s: %s", key, e)
            capture_exception(e, extra={
                "operation": "report_cache_write",
                "client_id": key.client_id,
                "period_id": key.period_id,
                "provider": key.provider.value,
            })

        logger.info("[REPORT] Served live data for %s", key)
        return ReportResult(
            key=key,
            source=DataSource.live,
            metrics=metrics,
            last_updated_at=last_updated_at,
        )

    def get_yoy(self, key: CacheKey) -> YoYReport:
        """Year-over-year deltas for a key.

        The prior-year side is read from the cache only; a missing snapshot
        yields NO_HISTORY for every metric.

        Raises:
            ComparisonNotSupportedError: for non calendar-aligned periods
        """
        previous_period = comparison_period_id(key.period_id)
        current = self.get_report(key)
        if current.metrics is None:
            return YoYReport(
                key=key,
                comparison_period_id=previous_period,
                source=current.source,
                error=current.error,
            )

        previous = None
        if previous_period is not None:
            entry = self.store.get(key.client_id, previous_period, key.provider)
            if entry is not None:
                previous = AggregatedMetrics.from_dict(entry.payload).totals()

        return YoYReport(
            key=key,
            comparison_period_id=previous_period,
            source=current.source,
            deltas=compare(current.metrics.totals(), previous),
        )
