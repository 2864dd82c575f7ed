"""Year-over-year comparison of report snapshots.

WHAT:
    Compares a period's totals against the same calendar period one year
    earlier (same month, or same ISO week number).

WHY:
    A missing prior-year snapshot or a zero baseline has no meaningful
    percentage. Those metrics carry the NO_HISTORY sentinel instead of a
    number. A baseline is never synthesised from the current figures.

Custom date ranges are not comparable and raise
ComparisonNotSupportedError; callers disable the comparison.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from reportcache.errors import ComparisonNotSupportedError
from reportcache.services.action_normalizer import CanonicalMetricSet
from reportcache.services.periods import is_calendar_aligned, prior_year_period_id

logger = logging.getLogger(__name__)


class _NoHistory:
    """Sentinel: no usable prior-year baseline for a metric."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_HISTORY"

    def __bool__(self) -> bool:
        return False


NO_HISTORY = _NoHistory()

TRACKED_METRICS = (
    "spend",
    "impressions",
    "clicks",
    "booking_step_1",
    "booking_step_2",
    "booking_step_3",
    "reservations",
)


@dataclass
class YoYDelta:
    metric_name: str
    current_value: float
    previous_value: Optional[float]
    change_percent: Union[float, _NoHistory]

    @property
    def has_history(self) -> bool:
        return self.change_percent is not NO_HISTORY

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape. NO_HISTORY becomes change_percent=None, status="no_history"."""
        return {
            "metric_name": self.metric_name,
            "current_value": self.current_value,
            "previous_value": self.previous_value,
            "change_percent": self.change_percent if self.has_history else None,
            "status": "ok" if self.has_history else "no_history",
        }


def compare(current: CanonicalMetricSet, previous: Optional[CanonicalMetricSet]) -> List[YoYDelta]:
    """Delta per tracked metric.

    NO_HISTORY when `previous` is None or the previous value is 0,
    otherwise (current - previous) / previous * 100.
    """
    deltas: List[YoYDelta] = []
    for name in TRACKED_METRICS:
        current_value = float(getattr(current, name) or 0)
        if previous is None:
            deltas.append(YoYDelta(name, current_value, None, NO_HISTORY))
            continue

        previous_value = float(getattr(previous, name) or 0)
        if previous_value == 0:
            change = NO_HISTORY
        else:
            change = (current_value - previous_value) / previous_value * 100
        deltas.append(YoYDelta(name, current_value, previous_value, change))
    return deltas


def comparison_period_id(period_id: str) -> Optional[str]:
    """Prior-year period to compare against, or None when it does not exist.

    Raises:
        ComparisonNotSupportedError: for custom (non calendar-aligned) ranges
    """
    if not is_calendar_aligned(period_id):
        raise ComparisonNotSupportedError(
            f"Year-over-year comparison is only available for months and ISO weeks, got {period_id!r}"
        )
    previous = prior_year_period_id(period_id)
    if previous is None:
        logger.info("[YOY] %s has no counterpart in the prior year", period_id)
    return previous
