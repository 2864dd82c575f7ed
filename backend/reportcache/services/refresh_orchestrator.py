"""
Refresh Orchestrator
====================

Bulk refresh of report cache entries with bounded concurrency.

WHAT:
    For every CacheKey: fetch raw platform data -> normalize -> aggregate ->
    CacheStore.put with a new timestamp. Keys run on a ThreadPoolExecutor
    of fixed width.

WHY:
    - Platform calls are I/O-bound, so threads cut wall time
    - A fixed pool width keeps us under Meta/Google rate limits
    - One failing client must never hide the results of the others

GUARANTEES:
    - refresh_all returns only after every job reached a terminal state
      (success, failure or cancelled)
    - Only successful jobs write; a failed job leaves the previous entry
      and its last_updated_at untouched
    - No retries here. Retry policy belongs to the fetcher
    - Cancellation lets running jobs finish and starts no new ones

    Two overlapping runs are not safe. Callers serialize them through a
    RefreshGuard (in-process lock for the API, Redis lock for the worker).

REFERENCES:
    - reportcache/services/platform_fetcher.py: production Fetcher
    - reportcache/services/cache_store.py: CacheStore / CacheKey
    - reportcache/routers/cache_monitoring.py: refresh-all endpoint
    - reportcache/workers/arq_worker.py: scheduled refresh
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol

from reportcache.errors import FetchError, RefreshInProgressError
from reportcache.models import ProviderEnum
from reportcache.services.action_normalizer import RawCampaignPayload, normalize_payload
from reportcache.services.cache_store import CacheKey, CacheStore
from reportcache.services.coalescer import RequestCoalescer
from reportcache.services.metrics_aggregator import DEFAULT_OFFLINE_CONVERSION_RATE, AggregatedMetrics, aggregate
from reportcache.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

MAX_PARALLEL_REFRESHES = 5


class Fetcher(Protocol):
    def fetch_campaign_data(self, client_id: str, period_id: str, provider: ProviderEnum) -> RawCampaignPayload:
        ...


class RefreshOutcome(str, enum.Enum):
    success = "success"
    failure = "failure"
    cancelled = "cancelled"


@dataclass
class RefreshJobResult:
    key: CacheKey
    outcome: RefreshOutcome
    error: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class RefreshSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    cancelled: int = 0
    results: List[RefreshJobResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @classmethod
    def from_results(cls, results: List[RefreshJobResult], duration_seconds: float = 0.0) -> "RefreshSummary":
        return cls(
            total=len(results),
            successful=sum(1 for r in results if r.outcome == RefreshOutcome.success),
            failed=sum(1 for r in results if r.outcome == RefreshOutcome.failure),
            cancelled=sum(1 for r in results if r.outcome == RefreshOutcome.cancelled),
            results=results,
            duration_seconds=duration_seconds,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(error: Exception) -> str:
    if isinstance(error, FetchError):
        return f"{type(error).__name__}: {error.message}"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class RefreshOrchestrator:
    """Runs fetch -> normalize -> aggregate -> store for many keys."""

    def __init__(
        self,
        fetcher: Fetcher,
        store: CacheStore,
        coalescer: Optional[RequestCoalescer] = None,
        max_workers: int = MAX_PARALLEL_REFRESHES,
        offline_conversion_rate: float = DEFAULT_OFFLINE_CONVERSION_RATE,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.fetcher = fetcher
        self.store = store
        self.coalescer = coalescer
        self.max_workers = max(1, int(max_workers))
        self.offline_conversion_rate = offline_conversion_rate
        self.clock = clock

    def fetch(self, key: CacheKey) -> RawCampaignPayload:
        """Fetch raw data for a key, joining an identical in-flight fetch if any."""
        def _call() -> RawCampaignPayload:
            return self.fetcher.fetch_campaign_data(key.client_id, key.period_id, key.provider)

        if self.coalescer is None:
            return _call()
        return self.coalescer.run(key, _call)

    def build_metrics(self, payload: RawCampaignPayload) -> AggregatedMetrics:
        return aggregate(normalize_payload(payload), offline_conversion_rate=self.offline_conversion_rate)

    def refresh_one(self, key: CacheKey) -> RefreshJobResult:
        """Refresh one key end to end. Never raises."""
        started = time.monotonic()
        try:
            payload = self.fetch(key)
            metrics = self.build_metrics(payload)
            self.store.put(key.client_id, key.period_id, metrics.to_dict(), self.clock(), key.provider)
        except Exception as e:
            duration = time.monotonic() - started
            logger.error("[REFRESH] Job failed for %s after %.2fs: %s", key, duration, e)
            capture_exception(e, extra={
                "operation": "refresh_cache_entry",
                "client_id": key.client_id,
                "period_id": key.period_id,
                "provider": key.provider.value,
            })
            return RefreshJobResult(key, RefreshOutcome.failure, error=_describe(e), duration_seconds=duration)

        duration = time.monotonic() - started
        logger.debug("[REFRESH] Refreshed %s in %.2fs (%d campaigns)", key, duration, metrics.campaign_count)
        return RefreshJobResult(key, RefreshOutcome.success, duration_seconds=duration)

    def refresh_all(
        self,
        keys: Iterable[CacheKey],
        cancel_event: Optional[threading.Event] = None,
    ) -> RefreshSummary:
        """Refresh every key and report per-key outcomes.

        Duplicate keys are refreshed once. Results follow input order.

        Args:
            keys: cache keys to refresh
            cancel_event: once set, jobs that have not started yet are
                reported as cancelled; running jobs finish normally

        Returns:
            RefreshSummary with total == number of distinct keys
        """
        unique_keys = list(dict.fromkeys(keys))
        started = time.monotonic()
        if not unique_keys:
            return RefreshSummary()

        logger.info(
            "[REFRESH] Starting refresh of %d keys with %d workers",
            len(unique_keys), self.max_workers,
        )

        def run_job(key: CacheKey) -> RefreshJobResult:
            if cancel_event is not None and cancel_event.is_set():
                return RefreshJobResult(key, RefreshOutcome.cancelled, error="Refresh run cancelled")
            return self.refresh_one(key)

        results: Dict[CacheKey, RefreshJobResult] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(unique_keys))) as executor:
            futures = {executor.submit(run_job, key): key for key in unique_keys}

            for future in as_completed(futures):
                key = futures[future]
                try:
                    results[key] = future.result()
                except Exception as e:
                    # refresh_one never raises; this only guards against executor errors
                    logger.error("[REFRESH] Future failed for %s: %s", key, e)
                    results[key] = RefreshJobResult(key, RefreshOutcome.failure, error=_describe(e))

        summary = RefreshSummary.from_results(
            [results[key] for key in unique_keys],
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "[REFRESH] Refresh complete: %d keys, %d success, %d failed, %d cancelled in %.1fs",
            summary.total, summary.successful, summary.failed, summary.cancelled, summary.duration_seconds,
        )
        return summary


# =============================================================================
# IN-FLIGHT GUARDS
# =============================================================================

class RefreshGuard:
    """Allows at most one bulk refresh at a time."""

    def acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def is_running(self) -> bool:
        raise NotImplementedError

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the guard for the duration of the block.

        Raises:
            RefreshInProgressError: if another run holds it
        """
        if not self.acquire():
            raise RefreshInProgressError("A cache refresh is already running")
        try:
            yield
        finally:
            self.release()


class LocalRefreshGuard(RefreshGuard):
    """In-process guard for a single API process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    def is_running(self) -> bool:
        return self._lock.locked()


class RedisRefreshGuard(RefreshGuard):
    """Cross-process guard backed by a redis-py Lock.

    The lock expires after `timeout` seconds so a crashed worker cannot
    block refreshes forever.
    """

    LOCK_NAME = "reportcache:refresh_all"

    def __init__(self, redis_client, name: str = LOCK_NAME, timeout: int = 3600):
        self._redis = redis_client
        self._name = name
        self._lock = redis_client.lock(name, timeout=timeout)

    def acquire(self) -> bool:
        return bool(self._lock.acquire(blocking=False))

    def release(self) -> None:
        self._lock.release()

    def is_running(self) -> bool:
        return bool(self._redis.exists(self._name))
