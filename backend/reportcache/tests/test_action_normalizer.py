"""Unit tests for the action normalizer.

WHAT:
    Precedence resolution for Meta tags, pattern summing for Google
    conversion actions, value coercion and precedence-table validation.

WHY:
    Summing synonymous Meta tags double counts conversions; these tests pin
    the "first present tag wins" rule and its tenant overrides.

REFERENCES:
    - reportcache/services/action_normalizer.py (module under test)
"""

import logging

import pytest

from reportcache.errors import ConfigurationError
from reportcache.models import ProviderEnum
from reportcache.services.action_normalizer import (
    PRECEDENCE_TABLES,
    PatternRule,
    PrecedenceRule,
    RawActionRecord,
    RawCampaign,
    RawCampaignPayload,
    TenantTags,
    coerce_value,
    normalize,
    normalize_campaign,
    normalize_payload,
    validate_precedence_tables,
)


class TestMetaPrecedence:
    """First present tag wins; synonymous tags are never summed."""

    def test_duplicate_purchase_tags_count_once(self):
        """WHAT: omni_purchase=3 and fb_pixel_purchase=3 for one campaign -> 3 reservations.
        WHY: Both tags describe the same purchases.
        """
        records = [
            RawActionRecord("omni_purchase", 3),
            RawActionRecord("offsite_conversion.fb_pixel_purchase", 3),
        ]
        assert normalize(records).reservations == 3

    @pytest.mark.parametrize("field,winner,loser", [
        ("reservations", "omni_purchase", "offsite_conversion.fb_pixel_purchase"),
        ("booking_step_1", "omni_search", "offsite_conversion.fb_pixel_search"),
        ("booking_step_2", "omni_view_content", "offsite_conversion.fb_pixel_view_content"),
        ("booking_step_3", "omni_initiated_checkout", "offsite_conversion.fb_pixel_initiate_checkout"),
        ("email_contacts", "lead", "onsite_conversion.lead_grouped"),
    ])
    def test_result_equals_highest_precedence_tag_alone(self, field, winner, loser):
        """WHAT: Adding a lower-precedence synonym never changes the result."""
        both = normalize([RawActionRecord(winner, 7), RawActionRecord(loser, 11)])
        alone = normalize([RawActionRecord(winner, 7)])
        assert getattr(both, field) == getattr(alone, field) == 7

    def test_falls_back_to_lower_precedence_tag(self):
        records = [RawActionRecord("offsite_conversion.fb_pixel_search", 12)]
        assert normalize(records).booking_step_1 == 12

    def test_zero_value_winner_does_not_fall_through(self):
        """WHAT: A present tag wins even with value 0.
        WHY: Presence, not value, decides precedence.
        """
        records = [
            RawActionRecord("omni_purchase", 0),
            RawActionRecord("offsite_conversion.fb_pixel_purchase", 5),
        ]
        assert normalize(records).reservations == 0

    def test_repeated_identical_tag_is_additive(self):
        records = [RawActionRecord("omni_purchase", 2), RawActionRecord("omni_purchase", 3)]
        assert normalize(records).reservations == 5

    def test_tags_are_case_insensitive(self):
        assert normalize([RawActionRecord("OMNI_PURCHASE", 4)]).reservations == 4

    def test_reservation_value_uses_value_map(self):
        metrics = normalize(
            [RawActionRecord("omni_purchase", 2)],
            value_records=[
                RawActionRecord("omni_purchase", "450.50"),
                RawActionRecord("offsite_conversion.fb_pixel_purchase", "450.50"),
            ],
        )
        assert metrics.reservation_value == pytest.approx(450.5)

    def test_phone_contacts_from_standard_tag(self):
        assert normalize([RawActionRecord("click_to_call_call_confirm", 9)]).phone_contacts == 9

    def test_unknown_tags_are_ignored(self):
        metrics = normalize([RawActionRecord("link_click", 500), RawActionRecord("video_view", 20)])
        assert metrics.reservations == 0
        assert metrics.email_contacts == 0


class TestTenantTags:
    """Client custom event tags outrank the standard lead/call tags."""

    def test_custom_email_tag_wins_over_lead(self):
        tags = TenantTags(email_tag="offsite_conversion.custom.2770488499782793")
        records = [
            RawActionRecord("lead", 40),
            RawActionRecord("offsite_conversion.custom.2770488499782793", 6),
        ]
        assert normalize(records, tenant_tags=tags).email_contacts == 6

    def test_custom_phone_tag_wins_over_call_confirm(self):
        tags = TenantTags(phone_tag="offsite_conversion.custom.1470262077092668")
        records = [
            RawActionRecord("click_to_call_call_confirm", 15),
            RawActionRecord("offsite_conversion.custom.1470262077092668", 4),
        ]
        assert normalize(records, tenant_tags=tags).phone_contacts == 4

    def test_missing_custom_tag_falls_back_to_standard(self):
        tags = TenantTags(email_tag="offsite_conversion.custom.999")
        assert normalize([RawActionRecord("lead", 8)], tenant_tags=tags).email_contacts == 8

    def test_custom_tag_is_matched_case_insensitively(self):
        tags = TenantTags(phone_tag="Offsite_Conversion.Custom.ABC")
        records = [RawActionRecord("offsite_conversion.custom.abc", 3)]
        assert normalize(records, tenant_tags=tags).phone_contacts == 3


class TestGooglePatterns:
    """Google conversion actions are distinct and summed by name pattern."""

    def test_distinct_reservation_actions_are_summed(self):
        records = [RawActionRecord("Rezerwacja", 2), RawActionRecord("Purchase - website", 3)]
        assert normalize(records, provider=ProviderEnum.google).reservations == 5

    def test_booking_steps_never_count_as_reservations(self):
        """WHAT: "Booking Engine - krok 3" must not match the reservation rule."""
        records = [RawActionRecord("Booking Engine - krok 3 zakup", 10), RawActionRecord("Zakup", 1)]
        metrics = normalize(records, provider=ProviderEnum.google)
        assert metrics.reservations == 1
        assert metrics.booking_step_3 == 10

    def test_booking_steps_by_name(self):
        records = [
            RawActionRecord("Step 1 w BE", 100),
            RawActionRecord("Step 2 w BE", 40),
            RawActionRecord("Step 3 w BE", 12),
        ]
        metrics = normalize(records, provider=ProviderEnum.google)
        assert (metrics.booking_step_1, metrics.booking_step_2, metrics.booking_step_3) == (100, 40, 12)

    def test_fractional_counts_rounded_values_to_cents(self):
        metrics = normalize(
            [RawActionRecord("Rezerwacja", 2.5), RawActionRecord("Purchase", 0.7)],
            value_records=[RawActionRecord("Rezerwacja", 1000.126), RawActionRecord("Purchase", 10.0)],
            provider=ProviderEnum.google,
        )
        assert metrics.reservations == 3
        assert metrics.reservation_value == pytest.approx(1010.13)

    def test_contacts_by_name(self):
        records = [
            RawActionRecord("Kliknięcie w e-mail", 4),
            RawActionRecord("Połączenie telefoniczne", 2),
        ]
        metrics = normalize(records, provider=ProviderEnum.google)
        assert metrics.email_contacts == 4
        assert metrics.phone_contacts == 2

    def test_contact_call_counted_once_as_phone(self):
        """WHAT: "Kontakt - call" matches both contact patterns but is a phone contact.
        WHY: Both fields feed potential offline reservations.
        """
        records = [
            RawActionRecord("Kontakt - call", 3),
            RawActionRecord("Kontakt formularz", 2),
        ]
        metrics = normalize(records, provider=ProviderEnum.google)
        assert metrics.phone_contacts == 3
        assert metrics.email_contacts == 2


class TestCoercion:
    """Bad raw values become 0 and are logged, never propagated."""

    @pytest.mark.parametrize("raw", [-5, "-1.5", "abc", float("nan"), float("inf"), True, [1]])
    def test_bad_values_coerced_to_zero(self, raw):
        assert coerce_value(raw, "omni_purchase") == 0.0

    def test_numeric_strings_are_accepted(self):
        assert coerce_value("12.50", "spend") == 12.5

    def test_none_is_zero_without_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert coerce_value(None, "spend") == 0.0
        assert caplog.records == []

    def test_negative_value_is_logged_with_category(self, caplog):
        with caplog.at_level(logging.WARNING):
            metrics = normalize([RawActionRecord("omni_purchase", -3)])
        assert metrics.reservations == 0
        record = next(r for r in caplog.records if "Coerced" in r.getMessage())
        assert record.category == "NormalizationWarning"

    def test_funnel_inversion_is_logged_not_corrected(self, caplog):
        records = [RawActionRecord("omni_search", 5), RawActionRecord("omni_view_content", 9)]
        with caplog.at_level(logging.WARNING):
            metrics = normalize(records, campaign_name="Spring")
        assert metrics.booking_step_2 == 9
        assert any("Funnel inversion" in r.getMessage() for r in caplog.records)


class TestCampaignNormalization:
    def test_delivery_fields_pass_through(self):
        campaign = RawCampaign(
            campaign_id="1",
            spend="100.00",
            impressions="2000",
            clicks="-4",
            actions=[RawActionRecord("omni_purchase", "2")],
        )
        metrics = normalize_campaign(campaign, ProviderEnum.meta)
        assert metrics.spend == 100.0
        assert metrics.impressions == 2000.0
        assert metrics.clicks == 0.0
        assert metrics.reservations == 2.0

    def test_payload_keeps_campaign_order_and_tenant_tags(self):
        payload = RawCampaignPayload(
            provider=ProviderEnum.meta,
            campaigns=[
                RawCampaign("a", actions=[RawActionRecord("offsite_conversion.custom.1", 2)]),
                RawCampaign("b", actions=[RawActionRecord("lead", 5)]),
            ],
            tenant_tags=TenantTags(email_tag="offsite_conversion.custom.1"),
        )
        result = normalize_payload(payload)
        assert [m.email_contacts for m in result] == [2, 5]


class TestPrecedenceTableValidation:
    def test_shipped_tables_are_valid(self):
        validate_precedence_tables()

    def test_missing_provider_table_is_rejected(self):
        tables = {ProviderEnum.meta: PRECEDENCE_TABLES[ProviderEnum.meta]}
        with pytest.raises(ConfigurationError):
            validate_precedence_tables(tables)

    def test_missing_field_is_rejected(self):
        tables = dict(PRECEDENCE_TABLES)
        tables[ProviderEnum.meta] = tuple(
            r for r in PRECEDENCE_TABLES[ProviderEnum.meta] if r.field != "phone_contacts"
        )
        with pytest.raises(ConfigurationError, match="phone_contacts"):
            validate_precedence_tables(tables)

    def test_duplicate_field_is_rejected(self):
        tables = dict(PRECEDENCE_TABLES)
        tables[ProviderEnum.google] = PRECEDENCE_TABLES[ProviderEnum.google] + (
            PatternRule("reservations", ("order",)),
        )
        with pytest.raises(ConfigurationError, match="more than once"):
            validate_precedence_tables(tables)

    def test_empty_tag_list_is_rejected(self):
        tables = dict(PRECEDENCE_TABLES)
        tables[ProviderEnum.meta] = tuple(
            PrecedenceRule(r.field, ()) if r.field == "reservations" else r
            for r in PRECEDENCE_TABLES[ProviderEnum.meta]
        )
        with pytest.raises(ConfigurationError, match="Empty tag list"):
            validate_precedence_tables(tables)
