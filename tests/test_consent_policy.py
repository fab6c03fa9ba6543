"""Tests for the consent policy resolver (app/services/consent_policy.py)"""
import pytest
from unittest.mock import patch

from app.models.checkout_session import PresentationMode
from app.services.consent_policy import (
    DEFAULT_POLICY,
    ConfirmationStrength,
    CustomerSegment,
    PolicyTable,
    load_policy_table,
    normalize_segment,
    reset_policy_table,
    resolve,
)


ROWS = [
    {"country_code": "GB", "country": "United Kingdom", "widget": "OPT_OUT", "email_method": "SOI"},
    {"country_code": "DE", "country": "Germany", "widget": "OPT_IN", "email_method": "DOI"},
    {"country_code": "FR", "country": "France", "widget": "OPT_IN", "email_method": "SOI"},
    {"country_code": "FR", "country": "France", "customer_type": "repeat", "widget": "OPT_OUT", "email_method": "SOI"},
    {"country": "Narnia", "widget": "NO_CHECKBOX", "email_method": "SOI"},
]


@pytest.fixture
def table():
    t = PolicyTable(ROWS)
    reset_policy_table(t)
    return t


class TestLookupOrder:
    def test_exact_region_code(self, table):
        policy = resolve("DE")
        assert policy.presentation_mode == PresentationMode.OPT_IN
        assert policy.confirmation_strength == ConfirmationStrength.CONFIRMED
        assert policy.is_default is False

    def test_region_code_is_case_insensitive(self, table):
        assert resolve("de").region_code == "DE"

    def test_segment_specific_row_beats_wildcard(self, table):
        policy = resolve("FR", segment=CustomerSegment.REPEAT)
        assert policy.presentation_mode == PresentationMode.OPT_OUT
        assert policy.segment == CustomerSegment.REPEAT

    def test_wildcard_row_used_when_segment_has_no_row(self, table):
        policy = resolve("FR", segment=CustomerSegment.SINGLE)
        assert policy.presentation_mode == PresentationMode.OPT_IN
        assert policy.segment is None

    def test_falls_back_to_region_name(self, table):
        policy = resolve(None, "narnia")
        assert policy.presentation_mode == PresentationMode.NO_CHECKBOX

    def test_unknown_region_gets_default(self, table):
        policy = resolve("ZZ")
        assert policy.is_default is True
        assert policy.region_code == "GB"
        assert policy.presentation_mode == PresentationMode.OPT_OUT
        assert policy.confirmation_strength == ConfirmationStrength.SINGLE

    def test_segment_only_rows_serve_unknown_segment_from_single(self):
        reset_policy_table(PolicyTable([
            {"country_code": "ES", "customer_type": "single", "widget": "OPT_IN", "email_method": "SOI"},
            {"country_code": "ES", "customer_type": "repeat", "widget": "OPT_OUT", "email_method": "SOI"},
        ]))
        assert resolve("ES").presentation_mode == PresentationMode.OPT_IN
        assert resolve("ES", segment=CustomerSegment.REPEAT).presentation_mode == PresentationMode.OPT_OUT

    def test_unknown_segment_with_no_region_gets_default(self, table):
        policy = resolve(None, None, None)
        assert policy.is_default is True
        assert policy.region_code == "GB"


class TestMalformedRows:
    def test_malformed_rows_are_skipped(self):
        t = PolicyTable([
            {"country_code": "DE", "widget": "SIDEWAYS", "email_method": "DOI"},
            {"country_code": "AT", "widget": "OPT_IN"},
            {"widget": "OPT_IN", "email_method": "SOI"},
            {"country_code": "IT", "customer_type": "vip", "widget": "OPT_IN", "email_method": "SOI"},
            {"country_code": "NL", "widget": "OPT_IN", "email_method": "SOI"},
        ])
        reset_policy_table(t)

        assert resolve("DE").is_default is True
        assert resolve("AT").is_default is True
        assert resolve("IT").is_default is True
        assert resolve("NL").presentation_mode == PresentationMode.OPT_IN

    def test_empty_table_returns_fixed_default(self):
        reset_policy_table(PolicyTable([]))
        assert resolve("DE") == DEFAULT_POLICY

    def test_lookup_error_returns_fixed_default(self):
        with patch("app.services.consent_policy.get_policy_table", side_effect=RuntimeError("boom")):
            assert resolve("DE") == DEFAULT_POLICY

    def test_missing_file_loads_empty_table(self, tmp_path):
        t = load_policy_table(tmp_path / "missing.json")
        assert len(t) == 0

    def test_non_list_file_loads_empty_table(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text('{"country_code": "DE"}')
        assert len(load_policy_table(path)) == 0


class TestBundledTable:
    def test_bundled_table_loads(self):
        assert len(load_policy_table()) > 0

    @pytest.mark.parametrize("region", ["FR", "ES", "NL", "SE"])
    def test_unknown_buyer_in_segmented_region_gets_first_time_row(self, region):
        policy = resolve(region)
        assert policy.presentation_mode == PresentationMode.OPT_IN
        assert policy.region_code == region
        assert policy.segment == CustomerSegment.SINGLE
        assert policy.is_default is False

    def test_repeat_buyer_in_segmented_region(self):
        assert resolve("FR", segment="repeat").presentation_mode == PresentationMode.OPT_OUT

    def test_region_missing_from_table_gets_default(self):
        policy = resolve("ZZ")
        assert policy.is_default is True
        assert policy.region_code == "GB"

    def test_germany_requires_double_opt_in(self):
        assert resolve("DE").confirmation_strength == ConfirmationStrength.CONFIRMED

    def test_united_states_shows_no_checkbox(self):
        assert resolve("US").presentation_mode == PresentationMode.NO_CHECKBOX


class TestNormalizeSegment:
    @pytest.mark.parametrize("raw,expected", [
        ("single", CustomerSegment.SINGLE),
        ("first-time", CustomerSegment.SINGLE),
        ("Returning", CustomerSegment.REPEAT),
        (CustomerSegment.REPEAT, CustomerSegment.REPEAT),
        (None, None),
        ("vip", None),
    ])
    def test_aliases(self, raw, expected):
        assert normalize_segment(raw) == expected
