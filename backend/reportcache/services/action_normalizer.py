"""
Action Normalizer
=================

Turns heterogeneous platform "action" rows into one canonical, deduplicated
set of conversion metrics per campaign.

WHAT:
    Meta reports the same real event under several tags (e.g. a purchase as
    both `omni_purchase` and `offsite_conversion.fb_pixel_purchase`). Google
    reports user-named conversion actions ("Step 1 w BE", "Rezerwacja").
    This module resolves both into a CanonicalMetricSet.

WHY:
    Summing synonymous Meta tags double counts conversions. Google actions
    are distinct conversions that must be summed. The difference lives in
    PRECEDENCE_TABLES, not in branching code: adding a platform or a tag
    means adding a table entry.

RULE KINDS:
    - PrecedenceRule: ordered tag list, the first tag present wins and later
      tags are never consulted (Meta).
    - PatternRule: lower-cased name substrings to include/exclude, all
      matching actions are summed, counts rounded to whole numbers (Google).

REFERENCES:
    - reportcache/services/metrics_aggregator.py: consumes CanonicalMetricSet
    - reportcache/services/platform_fetcher.py: produces RawCampaignPayload
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from reportcache.errors import ConfigurationError, NormalizationWarning
from reportcache.models import ProviderEnum

logger = logging.getLogger(__name__)


# =============================================================================
# RAW INPUT
# =============================================================================

@dataclass(frozen=True)
class RawActionRecord:
    """One (tag, value) row as returned by a platform. Value is unvalidated."""
    tag: str
    value: Any


@dataclass(frozen=True)
class TenantTags:
    """Per-client custom Meta event tags that outrank the standard ones."""
    email_tag: Optional[str] = None
    phone_tag: Optional[str] = None

    def get(self, slot: str) -> Optional[str]:
        tag = getattr(self, f"{slot}_tag", None)
        return tag.lower() if tag else None


@dataclass
class RawCampaign:
    """Campaign-level platform row.

    `actions` carries conversion counts per tag, `action_values` the monetary
    value per tag (Meta `action_values`, Google `conversions_value`).
    """
    campaign_id: str
    campaign_name: str = ""
    spend: Any = 0
    impressions: Any = 0
    clicks: Any = 0
    actions: List[RawActionRecord] = field(default_factory=list)
    action_values: List[RawActionRecord] = field(default_factory=list)


@dataclass
class RawCampaignPayload:
    """Everything a Fetcher returns for one (client, period, provider)."""
    provider: ProviderEnum
    campaigns: List[RawCampaign] = field(default_factory=list)
    tenant_tags: Optional[TenantTags] = None


# =============================================================================
# CANONICAL OUTPUT
# =============================================================================

CONVERSION_FIELDS: Tuple[str, ...] = (
    "reservations",
    "reservation_value",
    "booking_step_1",
    "booking_step_2",
    "booking_step_3",
    "email_contacts",
    "phone_contacts",
)


@dataclass
class CanonicalMetricSet:
    """Deduplicated, platform-agnostic metrics for one campaign (all >= 0)."""
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

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalMetricSet":
        known = {f.name for f in fields(cls)}
        return cls(**{k: float(v or 0) for k, v in data.items() if k in known})


# =============================================================================
# PRECEDENCE TABLES
# =============================================================================

@dataclass(frozen=True)
class PrecedenceRule:
    """First present tag wins.

    `tenant_slot` names a TenantTags slot ("email"/"phone") whose tag, when
    configured for the client, is tried before `tags`.
    `source` selects the count map ("actions") or the value map ("values").
    """
    field: str
    tags: Tuple[str, ...]
    tenant_slot: Optional[str] = None
    source: str = "actions"


@dataclass(frozen=True)
class PatternRule:
    """Sum every action whose lower-cased name matches `include` and not `exclude`."""
    field: str
    include: Tuple[str, ...]
    exclude: Tuple[str, ...] = ()
    source: str = "actions"


Rule = Union[PrecedenceRule, PatternRule]

_META_RESERVATION_TAGS = ("omni_purchase", "offsite_conversion.fb_pixel_purchase")

_GOOGLE_RESERVATION_INCLUDE = ("rezerwacja", "reservation", "zakup", "purchase", "complete")
# Booking engine steps are often named "Booking Engine - krok 3"; never count them as purchases
_GOOGLE_RESERVATION_EXCLUDE = ("krok", "step", "booking engine", "booking_step")
_GOOGLE_PHONE_INCLUDE = ("phone", "telefon", "call", "dzwonienie")

PRECEDENCE_TABLES: Dict[ProviderEnum, Tuple[Rule, ...]] = {
    ProviderEnum.meta: (
        PrecedenceRule("reservations", _META_RESERVATION_TAGS),
        PrecedenceRule("reservation_value", _META_RESERVATION_TAGS, source="values"),
        PrecedenceRule("booking_step_1", ("omni_search", "offsite_conversion.fb_pixel_search")),
        PrecedenceRule("booking_step_2", ("omni_view_content", "offsite_conversion.fb_pixel_view_content")),
        PrecedenceRule(
            "booking_step_3",
            ("omni_initiated_checkout", "offsite_conversion.fb_pixel_initiate_checkout"),
        ),
        PrecedenceRule("email_contacts", ("lead", "onsite_conversion.lead_grouped"), tenant_slot="email"),
        PrecedenceRule("phone_contacts", ("click_to_call_call_confirm",), tenant_slot="phone"),
    ),
    ProviderEnum.google: (
        PatternRule("reservations", _GOOGLE_RESERVATION_INCLUDE, _GOOGLE_RESERVATION_EXCLUDE),
        PatternRule(
            "reservation_value",
            _GOOGLE_RESERVATION_INCLUDE,
            _GOOGLE_RESERVATION_EXCLUDE,
            source="values",
        ),
        PatternRule(
            "booking_step_1",
            ("step 1", "step1", "krok 1", "1 krok", "pierwszy krok", "pierwszy_krok", "booking_step_1"),
        ),
        PatternRule(
            "booking_step_2",
            ("step 2", "step2", "krok 2", "2 krok", "drugi krok", "drugi_krok", "booking_step_2"),
        ),
        PatternRule(
            "booking_step_3",
            ("step 3", "step3", "krok 3", "3 krok", "trzeci krok", "trzeci_krok", "booking_step_3"),
        ),
        PatternRule(
            "email_contacts",
            ("email", "e-mail", "mail", "contact", "kontakt", "formularz"),
            # "Kontakt - call" is a phone contact; count it once
            _GOOGLE_PHONE_INCLUDE,
        ),
        PatternRule("phone_contacts", _GOOGLE_PHONE_INCLUDE),
    ),
}


def validate_precedence_tables(tables: Optional[Dict[ProviderEnum, Tuple[Rule, ...]]] = None) -> None:
    """Check every provider table covers each conversion field exactly once.

    Called at API and worker startup.

    Raises:
        ConfigurationError: on a missing provider, a missing/duplicated field,
            an empty rule or an unknown source
    """
    tables = PRECEDENCE_TABLES if tables is None else tables

    for provider in ProviderEnum:
        rules = tables.get(provider)
        if not rules:
            raise ConfigurationError(f"No precedence table configured for provider '{provider.value}'")

        seen = [rule.field for rule in rules]
        missing = set(CONVERSION_FIELDS) - set(seen)
        if missing:
            raise ConfigurationError(
                f"Precedence table for '{provider.value}' is missing fields: {sorted(missing)}"
            )
        duplicated = {name for name in seen if seen.count(name) > 1}
        if duplicated:
            raise ConfigurationError(
                f"Precedence table for '{provider.value}' defines fields more than once: {sorted(duplicated)}"
            )

        for rule in rules:
            if rule.field not in CONVERSION_FIELDS:
                raise ConfigurationError(f"Unknown canonical field '{rule.field}' in '{provider.value}' table")
            if rule.source not in ("actions", "values"):
                raise ConfigurationError(f"Unknown source '{rule.source}' for '{rule.field}'")
            if isinstance(rule, PrecedenceRule) and not rule.tags:
                raise ConfigurationError(f"Empty tag list for '{rule.field}' in '{provider.value}' table")
            if isinstance(rule, PatternRule) and not rule.include:
                raise ConfigurationError(f"Empty include list for '{rule.field}' in '{provider.value}' table")


# =============================================================================
# VALUE COERCION
# =============================================================================

def coerce_value(raw: Any, label: str = "", campaign: str = "") -> float:
    """Return `raw` as a non-negative float, or 0 with a logged warning.

    Platforms send numbers as strings ("12.50"). Missing values (None) count
    as 0 silently; anything negative, NaN or non-numeric is coerced to 0.
    """
    if raw is None:
        return 0.0
    try:
        if isinstance(raw, bool):
            raise TypeError("boolean is not a metric value")
        value = float(raw)
    except (TypeError, ValueError):
        _log_coercion(raw, label, campaign, "non-numeric")
        return 0.0

    if math.isnan(value) or math.isinf(value):
        _log_coercion(raw, label, campaign, "non-finite")
        return 0.0
    if value < 0:
        _log_coercion(raw, label, campaign, "negative")
        return 0.0
    return value


def _log_coercion(raw: Any, label: str, campaign: str, reason: str) -> None:
    logger.warning(
        "[NORMALIZER] Coerced %s value %r for '%s' (campaign=%s) to 0",
        reason, raw, label, campaign or "unknown",
        extra={"category": NormalizationWarning.__name__},
    )


def _sum_by_tag(records: Iterable[RawActionRecord], campaign: str = "") -> Dict[str, float]:
    """Lower-case tag -> summed value. A repeated tag is additive."""
    totals: Dict[str, float] = {}
    for record in records:
        tag = (record.tag or "").strip().lower()
        if not tag:
            continue
        totals[tag] = totals.get(tag, 0.0) + coerce_value(record.value, tag, campaign)
    return totals


# =============================================================================
# RESOLUTION
# =============================================================================

def _resolve_precedence(rule: PrecedenceRule, source: Dict[str, float], tenant_tags: Optional[TenantTags]) -> float:
    candidates: List[str] = []
    if rule.tenant_slot and tenant_tags:
        custom = tenant_tags.get(rule.tenant_slot)
        if custom:
            candidates.append(custom)
    candidates.extend(rule.tags)

    for tag in candidates:
        if tag in source:
            return source[tag]
    return 0.0


def _resolve_pattern(rule: PatternRule, source: Dict[str, float]) -> float:
    total = 0.0
    for name, value in source.items():
        if any(p in name for p in rule.include) and not any(p in name for p in rule.exclude):
            total += value
    if rule.source == "values":
        return round(total, 2)
    return float(math.floor(total + 0.5))


def _check_funnel(metrics: CanonicalMetricSet, campaign: str) -> None:
    """Warn (never correct) when a later funnel step exceeds an earlier one."""
    steps = (
        ("booking_step_1", metrics.booking_step_1),
        ("booking_step_2", metrics.booking_step_2),
        ("booking_step_3", metrics.booking_step_3),
        ("reservations", metrics.reservations),
    )
    for (prev_name, prev_value), (name, value) in zip(steps, steps[1:]):
        if prev_value > 0 and value > prev_value:
            logger.warning(
                "[NORMALIZER] Funnel inversion for campaign '%s': %s (%s) > %s (%s)",
                campaign or "unknown", name, value, prev_name, prev_value,
            )


def normalize(
    records: Iterable[RawActionRecord],
    value_records: Iterable[RawActionRecord] = (),
    tenant_tags: Optional[TenantTags] = None,
    provider: ProviderEnum = ProviderEnum.meta,
    campaign_name: str = "",
) -> CanonicalMetricSet:
    """Resolve one campaign's action rows into canonical conversion metrics.

    Only the conversion fields are populated; spend/impressions/clicks stay 0
    (see normalize_campaign for the full set).

    Args:
        records: conversion counts per tag
        value_records: monetary values per tag
        tenant_tags: client custom tags, used by PrecedenceRule tenant slots
        provider: selects the precedence table
        campaign_name: used in log lines only

    Returns:
        CanonicalMetricSet with non-negative conversion fields
    """
    maps = {
        "actions": _sum_by_tag(records, campaign_name),
        "values": _sum_by_tag(value_records, campaign_name),
    }

    metrics = CanonicalMetricSet()
    for rule in PRECEDENCE_TABLES[ProviderEnum(provider)]:
        source = maps[rule.source]
        if isinstance(rule, PrecedenceRule):
            value = _resolve_precedence(rule, source, tenant_tags)
        else:
            value = _resolve_pattern(rule, source)
        setattr(metrics, rule.field, value)

    _check_funnel(metrics, campaign_name)
    return metrics


def normalize_campaign(
    campaign: RawCampaign,
    provider: ProviderEnum,
    tenant_tags: Optional[TenantTags] = None,
) -> CanonicalMetricSet:
    """Full canonical set for one campaign: delivery fields plus conversions."""
    metrics = normalize(
        campaign.actions,
        campaign.action_values,
        tenant_tags=tenant_tags,
        provider=provider,
        campaign_name=campaign.campaign_name or campaign.campaign_id,
    )
    label = campaign.campaign_name or campaign.campaign_id
    metrics.spend = coerce_value(campaign.spend, "spend", label)
    metrics.impressions = coerce_value(campaign.impressions, "impressions", label)
    metrics.clicks = coerce_value(campaign.clicks, "clicks", label)
    return metrics


def normalize_payload(payload: RawCampaignPayload) -> List[CanonicalMetricSet]:
    """Normalize every campaign of a fetcher payload, preserving order."""
    return [
        normalize_campaign(campaign, payload.provider, payload.tenant_tags)
        for campaign in payload.campaigns
    ]
