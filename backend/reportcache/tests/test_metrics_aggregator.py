"""Unit tests for metrics aggregation.

WHAT: Totals, derived ratios and offline estimates
WHY: Division by zero must yield 0, never an error or NaN, and the result
     must not depend on campaign order
"""

import itertools

import pytest

from reportcache.services.action_normalizer import CanonicalMetricSet
from reportcache.services.metrics_aggregator import AggregatedMetrics, aggregate, safe_divide


def _campaign(**kwargs):
    return CanonicalMetricSet(**kwargs)


class TestSafeDivide:
    def test_zero_denominator_returns_zero(self):
        assert safe_divide(100, 0) == 0.0

    def test_regular_division(self):
        assert safe_divide(10, 4) == 2.5


class TestAggregate:
    def test_empty_input_is_all_zero(self):
        result = aggregate([])
        assert result.campaign_count == 0
        assert result.spend == 0
        assert result.ctr == result.cpc == result.cpm == result.roas == result.cpa == 0.0

    def test_spend_without_clicks_has_zero_cpc(self):
        """WHAT: spend=100, clicks=0 -> cpc == 0."""
        result = aggregate([_campaign(spend=100, impressions=1000, clicks=0)])
        assert result.cpc == 0.0
        assert result.cpm == pytest.approx(100.0)

    def test_derived_ratios(self):
        result = aggregate([
            _campaign(spend=100, impressions=2000, clicks=40, reservations=4, reservation_value=800),
            _campaign(spend=50, impressions=1000, clicks=20, reservations=1, reservation_value=200),
        ])
        assert result.campaign_count == 2
        assert result.spend == 150
        assert result.ctr == pytest.approx(2.0)
        assert result.cpc == pytest.approx(2.5)
        assert result.cpm == pytest.approx(50.0)
        assert result.roas == pytest.approx(1000 / 150)
        assert result.cpa == pytest.approx(30.0)
        assert result.conversions == 5

    def test_order_does_not_change_result(self):
        campaigns = [
            _campaign(spend=0.1, impressions=10, clicks=1, reservation_value=0.7),
            _campaign(spend=0.2, impressions=20, clicks=2, reservation_value=0.1),
            _campaign(spend=0.3, impressions=30, clicks=3, reservation_value=0.2),
        ]
        expected = aggregate(campaigns).to_dict()
        for permutation in itertools.permutations(campaigns):
            assert aggregate(permutation).to_dict() == expected


class TestOfflineEstimates:
    def test_contacts_drive_offline_reservations(self):
        result = aggregate(
            [_campaign(spend=200, reservations=4, reservation_value=1000, email_contacts=8, phone_contacts=2)],
            offline_conversion_rate=0.2,
        )
        assert result.potential_offline_reservations == 2
        assert result.average_reservation_value == pytest.approx(250.0)
        assert result.potential_offline_value == pytest.approx(500.0)
        assert result.cost_percentage == pytest.approx(200 / 1500 * 100)

    def test_half_rounds_up(self):
        result = aggregate([_campaign(email_contacts=5, phone_contacts=2)], offline_conversion_rate=0.5)
        assert result.potential_offline_reservations == 4

    def test_no_reservations_means_no_offline_value(self):
        result = aggregate([_campaign(spend=50, email_contacts=10)])
        assert result.potential_offline_reservations == 2
        assert result.average_reservation_value == 0.0
        assert result.potential_offline_value == 0.0
        assert result.cost_percentage == 0.0


class TestSerialization:
    def test_dict_round_trip_ignores_unknown_keys(self):
        original = aggregate([_campaign(spend=10, clicks=5, impressions=100)])
        data = original.to_dict()
        data["unexpected"] = 1
        assert AggregatedMetrics.from_dict(data) == original

    def test_totals_returns_canonical_fields(self):
        result = aggregate([_campaign(spend=10, reservations=2), _campaign(spend=5, reservations=1)])
        totals = result.totals()
        assert isinstance(totals, CanonicalMetricSet)
        assert totals.spend == 15
        assert totals.reservations == 3
