"""Report endpoints.

WHAT: Cached report reads and year-over-year comparison per client/provider/period
WHY: The reporting views read through the cache; the response always says
     whether the numbers are cached, live or unavailable
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ..deps import get_report_service
from ..errors import ComparisonNotSupportedError, UnknownPeriodError
from ..models import ProviderEnum
from ..schemas import AggregatedMetricsOut, ReportOut, YoYDeltaOut, YoYReportOut
from ..services.cache_store import CacheKey

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/reports",
    tags=["Reports"],
)


@router.get(
    "/{client_id}/{provider}/{period_id}",
    response_model=ReportOut,
    summary="Report for one client, provider and period",
)
def get_report(
    client_id: str,
    provider: ProviderEnum,
    period_id: str,
    service=Depends(get_report_service),
):
    key = CacheKey(client_id, period_id, provider)
    try:
        result = service.get_report(key)
    except UnknownPeriodError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return ReportOut(
        client_id=client_id,
        period_id=period_id,
        provider=provider,
        source=result.source,
        stale=result.stale,
        last_updated_at=result.last_updated_at,
        metrics=AggregatedMetricsOut.model_validate(result.metrics) if result.metrics else None,
        error=result.error,
    )


@router.get(
    "/{client_id}/{provider}/{period_id}/yoy",
    response_model=YoYReportOut,
    summary="Year-over-year comparison",
    description="""
    Compares the period with the same month / ISO week one year earlier.
    Metrics without a usable baseline have `change_percent: null` and
    `status: "no_history"`. Custom date ranges return 422.
    """
)
def get_yoy(
    client_id: str,
    provider: ProviderEnum,
    period_id: str,
    service=Depends(get_report_service),
):
    key = CacheKey(client_id, period_id, provider)
    try:
        report = service.get_yoy(key)
    except (ComparisonNotSupportedError, UnknownPeriodError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return YoYReportOut(
        client_id=client_id,
        period_id=period_id,
        provider=provider,
        comparison_period_id=report.comparison_period_id,
        source=report.source,
        deltas=[YoYDeltaOut(**delta.to_dict()) for delta in report.deltas],
        error=report.error,
    )
