"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .models import ProviderEnum
from .services.cache_health import FreshnessStatus, HealthStatus
from .services.refresh_orchestrator import RefreshOutcome
from .services.report_service import DataSource


# =============================================================================
# CACHE MONITORING
# =============================================================================

class CacheEntryStatusOut(BaseModel):
    """Freshness of one cache entry, computed at read time."""

    client_id: str
    period_id: str
    last_updated_at: datetime
    age_minutes: float = Field(description="Minutes since the last successful refresh")
    status: FreshnessStatus

    model_config = {"from_attributes": True}


class CacheTableSummaryOut(BaseModel):
    """Health of one cache table."""

    table_name: str = Field(examples=["current_month_cache"])
    provider: str = Field(examples=["meta"])
    total_entries: int
    fresh_entries: int
    stale_entries: int
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
    health_status: HealthStatus
    clients: List[CacheEntryStatusOut] = []
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class SystemSummaryOut(BaseModel):
    """Sums over all cache tables."""

    total_caches: int
    healthy_caches: int
    warning_caches: int
    critical_caches: int
    total_entries: int
    fresh_entries: int
    stale_entries: int

    model_config = {"from_attributes": True}


class MonitoringSnapshotOut(BaseModel):
    generated_at: datetime
    stale_threshold_minutes: float
    period_ids: Dict[str, str] = Field(default_factory=dict, description="Current month and ISO week the counts cover")
    tables: List[CacheTableSummaryOut]
    summary: SystemSummaryOut
    refresh_in_progress: bool = False


# =============================================================================
# REFRESH
# =============================================================================

class CacheKeyIn(BaseModel):
    client_id: str = Field(examples=["7f6c1c9e-2a43-4a59-9c55-2f0d4e1d7a10"])
    period_id: str = Field(description="Month (YYYY-MM) or ISO week (YYYY-Www)", examples=["2025-10", "2025-W42"])
    provider: ProviderEnum = ProviderEnum.meta


class RefreshAllRequest(BaseModel):
    """Keys to refresh. Omit `keys` to refresh every stale entry."""

    keys: Optional[List[CacheKeyIn]] = None


class RefreshJobResultOut(BaseModel):
    client_id: str
    period_id: str
    provider: ProviderEnum
    outcome: RefreshOutcome
    error: Optional[str] = None


class RefreshSummaryOut(BaseModel):
    total: int
    successful: int
    failed: int
    cancelled: int
    duration_seconds: float
    results: List[RefreshJobResultOut]


class EnqueueRefreshOut(BaseModel):
    """Background refresh handed to the arq worker."""

    job_id: Optional[str] = None
    status: Literal["enqueued", "skipped_or_duplicate", "nothing_to_refresh"]
    total: int


# =============================================================================
# METRICS
# =============================================================================

class RawActionRecordIn(BaseModel):
    tag: str = Field(examples=["omni_purchase"])
    value: Any = Field(default=0, description="Raw value; coerced to 0 when negative or non-numeric")


class RawCampaignIn(BaseModel):
    campaign_id: str
    campaign_name: str = ""
    spend: Any = 0
    impressions: Any = 0
    clicks: Any = 0
    actions: List[RawActionRecordIn] = []
    action_values: List[RawActionRecordIn] = []


class TenantTagsIn(BaseModel):
    email_tag: Optional[str] = None
    phone_tag: Optional[str] = None


class NormalizeRequest(BaseModel):
    """Raw platform rows to normalize and aggregate."""

    provider: ProviderEnum = ProviderEnum.meta
    campaigns: List[RawCampaignIn] = []
    tenant_tags: Optional[TenantTagsIn] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "provider": "meta",
                "campaigns": [{
                    "campaign_id": "120210000000001",
                    "campaign_name": "Brand",
                    "spend": "100.00",
                    "impressions": "10000",
                    "clicks": "250",
                    "actions": [
                        {"tag": "omni_purchase", "value": "3"},
                        {"tag": "offsite_conversion.fb_pixel_purchase", "value": "3"},
                    ],
                    "action_values": [{"tag": "omni_purchase", "value": "1500.00"}],
                }],
            }
        }
    }


class CanonicalMetricSetOut(BaseModel):
    spend: float
    impressions: float
    clicks: float
    reservations: float
    reservation_value: float
    booking_step_1: float
    booking_step_2: float
    booking_step_3: float
    email_contacts: float
    phone_contacts: float

    model_config = {"from_attributes": True}


class AggregatedMetricsOut(CanonicalMetricSetOut):
    campaign_count: int
    ctr: float = Field(description="Click-through rate in percent")
    cpc: float
    cpm: float
    roas: float
    cpa: float
    potential_offline_reservations: int
    average_reservation_value: float
    potential_offline_value: float
    cost_percentage: float


class NormalizeResponse(BaseModel):
    campaigns: List[CanonicalMetricSetOut]
    aggregated: AggregatedMetricsOut


# =============================================================================
# REPORTS
# =============================================================================

class ReportOut(BaseModel):
    client_id: str
    period_id: str
    provider: ProviderEnum
    source: DataSource
    stale: bool = False
    last_updated_at: Optional[datetime] = None
    metrics: Optional[AggregatedMetricsOut] = None
    error: Optional[str] = None


class YoYDeltaOut(BaseModel):
    """One metric compared with the same period a year earlier.

    `change_percent` is null and `status` is "no_history" when there is no
    prior-year snapshot or the prior value is 0.
    """

    metric_name: str
    current_value: float
    previous_value: Optional[float] = None
    change_percent: Optional[float] = None
    status: Literal["ok", "no_history"]


class YoYReportOut(BaseModel):
    client_id: str
    period_id: str
    provider: ProviderEnum
    comparison_period_id: Optional[str] = None
    source: DataSource
    deltas: List[YoYDeltaOut] = []
    error: Optional[str] = None


# =============================================================================
# HEALTH
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
