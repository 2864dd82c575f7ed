"""Admin endpoints for report cache monitoring.

WHAT: Health snapshot of the four cache tables, a manual "refresh all" and
      a variant that queues the refresh on the arq worker
WHY: Operators watch cache freshness (the dashboard polls every 60s) and
     trigger a bulk refresh when tables go stale

SECURITY: Protected by the ADMIN_SECRET setting (X-Admin-Secret header)
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from starlette.concurrency import run_in_threadpool

from ..deps import (
    Settings,
    get_cache_store,
    get_fetcher,
    get_orchestrator,
    get_refresh_guard,
    get_settings,
    verify_admin_secret,
)
from ..errors import RefreshInProgressError
from ..schemas import (
    CacheTableSummaryOut,
    EnqueueRefreshOut,
    MonitoringSnapshotOut,
    RefreshAllRequest,
    RefreshJobResultOut,
    RefreshSummaryOut,
    SystemSummaryOut,
)
from ..services.cache_health import collect_refresh_keys, get_monitoring_snapshot
from ..services.cache_store import CacheKey
from ..services.periods import is_calendar_aligned
from ..services.refresh_orchestrator import RefreshSummary
from ..workers.arq_enqueue import enqueue_refresh_job

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/cache-monitoring",
    tags=["Cache Monitoring"],
)


def _resolve_keys(payload: Optional[RefreshAllRequest], settings: Settings, store, fetcher) -> List[CacheKey]:
    """Explicit keys from the body, or every stale or missing current-period entry."""
    if payload is not None and payload.keys is not None:
        invalid = [k.period_id for k in payload.keys if not is_calendar_aligned(k.period_id)]
        if invalid:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Unsupported period ids: {', '.join(invalid)}",
            )
        return [CacheKey(k.client_id, k.period_id, k.provider) for k in payload.keys]

    snapshot = get_monitoring_snapshot(
        store,
        threshold_minutes=settings.CACHE_STALE_THRESHOLD_MINUTES,
        critical_ratio=settings.CACHE_CRITICAL_STALE_RATIO,
    )
    return collect_refresh_keys(snapshot, fetcher.client_keys(snapshot.period_ids))


def _summary_out(summary: RefreshSummary) -> RefreshSummaryOut:
    return RefreshSummaryOut(
        total=summary.total,
        successful=summary.successful,
        failed=summary.failed,
        cancelled=summary.cancelled,
        duration_seconds=round(summary.duration_seconds, 3),
        results=[
            RefreshJobResultOut(
                client_id=r.key.client_id,
                period_id=r.key.period_id,
                provider=r.key.provider,
                outcome=r.outcome,
                error=r.error,
            )
            for r in summary.results
        ],
    )


@router.get(
    "",
    response_model=MonitoringSnapshotOut,
    summary="Cache health snapshot",
    description="""
    Per-table entry counts, fresh/stale split and health status
    (healthy / warning / critical), plus a system-wide summary.

    Read-only and cheap; safe to poll. Requires X-Admin-Secret header.
    """
)
def get_cache_monitoring(
    _: bool = Depends(verify_admin_secret),
    settings: Settings = Depends(get_settings),
    store=Depends(get_cache_store),
    guard=Depends(get_refresh_guard),
):
    snapshot = get_monitoring_snapshot(
        store,
        threshold_minutes=settings.CACHE_STALE_THRESHOLD_MINUTES,
        critical_ratio=settings.CACHE_CRITICAL_STALE_RATIO,
    )
    return MonitoringSnapshotOut(
        generated_at=snapshot.generated_at,
        stale_threshold_minutes=settings.CACHE_STALE_THRESHOLD_MINUTES,
        period_ids=snapshot.period_ids,
        tables=[CacheTableSummaryOut.model_validate(t) for t in snapshot.tables],
        summary=SystemSummaryOut.model_validate(snapshot.summary),
        refresh_in_progress=guard.is_running(),
    )


@router.post(
    "/refresh-all",
    response_model=RefreshSummaryOut,
    summary="Refresh cache entries",
    description="""
    Refresh the given keys. When `keys` is omitted, refresh every stale
    current-period entry plus active clients that have none yet.
    Returns per-key outcomes; one failing client never fails the request.

    Returns 409 while another refresh is running. Requires X-Admin-Secret header.
    """
)
def refresh_all(
    payload: Optional[RefreshAllRequest] = Body(default=None),
    _: bool = Depends(verify_admin_secret),
    settings: Settings = Depends(get_settings),
    store=Depends(get_cache_store),
    guard=Depends(get_refresh_guard),
    orchestrator=Depends(get_orchestrator),
    fetcher=Depends(get_fetcher),
):
    keys = _resolve_keys(payload, settings, store, fetcher)

    try:
        with guard.hold():
            logger.info("[CACHE_MONITORING] Manual refresh of %d keys", len(keys))
            summary = orchestrator.refresh_all(keys)
    except RefreshInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _summary_out(summary)


@router.post(
    "/refresh-all/enqueue",
    response_model=EnqueueRefreshOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a refresh on the background worker",
    description="""
    Same key selection as refresh-all, but the run is handed to the arq
    worker and the request returns immediately with the job id. The worker
    skips the job if another refresh holds the Redis guard.
    Requires X-Admin-Secret header.
    """
)
async def enqueue_refresh_all(
    payload: Optional[RefreshAllRequest] = Body(default=None),
    _: bool = Depends(verify_admin_secret),
    settings: Settings = Depends(get_settings),
    store=Depends(get_cache_store),
    fetcher=Depends(get_fetcher),
):
    keys = await run_in_threadpool(_resolve_keys, payload, settings, store, fetcher)
    if not keys:
        return EnqueueRefreshOut(job_id=None, status="nothing_to_refresh", total=0)

    result = await enqueue_refresh_job(keys)
    logger.info("[CACHE_MONITORING] Enqueued refresh of %d keys: %s", len(keys), result["status"])
    return EnqueueRefreshOut(job_id=result["job_id"], status=result["status"], total=len(keys))
