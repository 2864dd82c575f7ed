"""
Metrics Aggregator
==================

Sums per-campaign CanonicalMetricSets into one report snapshot and derives
the ratios shown in reports.

WHAT:
    - Field-wise totals (math.fsum, so the result does not depend on the
      order campaigns arrive in)
    - ctr, cpc, cpm, roas, cpa
    - Offline estimates from contact events (email + phone)

WHY:
    Every view reads the same snapshot. Ratios are computed once here with
    the zero-denominator rule (x / 0 == 0) instead of in every consumer.

REFERENCES:
    - reportcache/services/action_normalizer.py: CanonicalMetricSet
    - reportcache/services/cache_store.py: stores AggregatedMetrics.to_dict()
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterable

from reportcache.services.action_normalizer import CanonicalMetricSet

DEFAULT_OFFLINE_CONVERSION_RATE = 0.2


def safe_divide(numerator: float, denominator: float) -> float:
    """numerator / denominator, or exactly 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return numerator / denominator


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class AggregatedMetrics:
    """Totals plus derived ratios for one (client, period, provider)."""
    # Totals
    spend: float = 0.0
    impressions: float = 0.0
    clicks: float = 0.0
    reservations: float = 0.0
    reservation_value: float = 0.0
    booking_step_1: float = 0.0
    booking_step_2: float = 0.0
    booking_step_3: float = 0.0
    email_contacts: float = 0.0
    phone_contacts: float = 0.0
    campaign_count: int = 0

    # Derived
    ctr: float = 0.0  # percent
    cpc: float = 0.0
    cpm: float = 0.0
    roas: float = 0.0
    cpa: float = 0.0

    # Offline estimates
    potential_offline_reservations: int = 0
    average_reservation_value: float = 0.0
    potential_offline_value: float = 0.0
    cost_percentage: float = 0.0

    @property
    def conversions(self) -> float:
        return self.reservations

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregatedMetrics":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def totals(self) -> CanonicalMetricSet:
        """The summed canonical fields, e.g. as YoY comparison input."""
        return CanonicalMetricSet(
            **{f.name: getattr(self, f.name) for f in fields(CanonicalMetricSet)}
        )


def aggregate(
    campaigns: Iterable[CanonicalMetricSet],
    offline_conversion_rate: float = DEFAULT_OFFLINE_CONVERSION_RATE,
) -> AggregatedMetrics:
    """Aggregate campaign metrics and derive ratios.

    Args:
        campaigns: normalized per-campaign metric sets
        offline_conversion_rate: share of email/phone contacts assumed to
            turn into offline reservations

    Returns:
        AggregatedMetrics, identical for any ordering of `campaigns`
    """
    campaigns = list(campaigns)
    totals = {
        f.name: math.fsum(getattr(c, f.name) for c in campaigns)
        for f in fields(CanonicalMetricSet)
    }
    result = AggregatedMetrics(campaign_count=len(campaigns), **totals)

    result.ctr = safe_divide(result.clicks, result.impressions) * 100
    result.cpc = safe_divide(result.spend, result.clicks)
    result.cpm = safe_divide(result.spend, result.impressions) * 1000
    result.roas = safe_divide(result.reservation_value, result.spend)
    result.cpa = safe_divide(result.spend, result.conversions)

    contacts = result.email_contacts + result.phone_contacts
    result.potential_offline_reservations = _round_half_up(contacts * offline_conversion_rate)
    result.average_reservation_value = safe_divide(result.reservation_value, result.reservations)
    result.potential_offline_value = result.potential_offline_reservations * result.average_reservation_value
    result.cost_percentage = safe_divide(
        result.spend, result.potential_offline_value + result.reservation_value
    ) * 100
    return result
