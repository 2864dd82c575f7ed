"""Stateless metric normalization endpoint.

WHAT: Normalize raw platform rows and aggregate them, without touching the cache
WHY: Lets support check how a set of action tags resolves before data lands
     in a report
"""

from fastapi import APIRouter, Depends

from ..deps import Settings, get_settings
from ..schemas import AggregatedMetricsOut, CanonicalMetricSetOut, NormalizeRequest, NormalizeResponse
from ..services.action_normalizer import (
    RawActionRecord,
    RawCampaign,
    RawCampaignPayload,
    TenantTags,
    normalize_payload,
)
from ..services.metrics_aggregator import aggregate

router = APIRouter(
    prefix="/metrics",
    tags=["Metrics"],
)


def _records(items) -> list:
    return [RawActionRecord(tag=item.tag, value=item.value) for item in items]


@router.post("/normalize", response_model=NormalizeResponse)
def normalize_metrics(payload: NormalizeRequest, settings: Settings = Depends(get_settings)):
    raw = RawCampaignPayload(
        provider=payload.provider,
        campaigns=[
            RawCampaign(
                campaign_id=c.campaign_id,
                campaign_name=c.campaign_name,
                spend=c.spend,
                impressions=c.impressions,
                clicks=c.clicks,
                actions=_records(c.actions),
                action_values=_records(c.action_values),
            )
            for c in payload.campaigns
        ],
        tenant_tags=TenantTags(**payload.tenant_tags.model_dump()) if payload.tenant_tags else None,
    )
    campaigns = normalize_payload(raw)
    aggregated = aggregate(campaigns, offline_conversion_rate=settings.OFFLINE_CONVERSION_RATE)
    return NormalizeResponse(
        campaigns=[CanonicalMetricSetOut.model_validate(c) for c in campaigns],
        aggregated=AggregatedMetricsOut.model_validate(aggregated),
    )
