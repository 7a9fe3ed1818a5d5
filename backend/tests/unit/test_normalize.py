"""Unit tests for name, postcode and company number normalization.

Run with: pytest backend/tests/unit/test_normalize.py -v
"""

import pytest

from eris.models.base import BusinessType
from eris.resolution.normalize import (
    clean_company_number,
    detect_business_type,
    extract_postcode,
    normalize_name,
    normalize_postcode,
    postcode_key,
)


class TestNormalizeName:
    """Tests for organization name normalization."""

    @pytest.mark.parametrize(
        "variant",
        [
            "Oyster Yachts Limited",
            "OYSTER YACHTS LTD",
            "Oyster Yachts Ltd.",
            "  oyster   yachts,  limited ",
            "Oyster-Yachts Ltd",
        ],
    )
    def test_cosmetic_variants_collapse(self, variant):
        """Case, punctuation, spacing and suffix variants normalize identically."""
        assert normalize_name(variant) == "oyster yachts"

    def test_deterministic(self):
        name = "Smith & Sons (Builders) PLC"
        assert normalize_name(name) == normalize_name(name)

    def test_ampersand_becomes_and(self):
        assert normalize_name("Smith & Sons Ltd") == "smith and sons"

    def test_apostrophes_dropped(self):
        assert normalize_name("O'Brien's Haulage Ltd") == "obriens haulage"

    def test_accents_folded(self):
        assert normalize_name("Café Rouge Limited") == "cafe rouge"

    def test_stacked_suffixes_stripped(self):
        assert normalize_name("Acme Co Ltd") == "acme"

    def test_suffix_only_name_is_kept(self):
        """A name made only of a suffix is not stripped to nothing."""
        assert normalize_name("Limited") == "limited"

    def test_suffix_inside_name_is_kept(self):
        assert normalize_name("Limited Edition Prints Ltd") == "limited edition prints"

    def test_empty(self):
        assert normalize_name("") == ""
        assert normalize_name(None) == ""


class TestPostcodes:
    """Tests for UK postcode handling."""

    def test_normalize_postcode(self):
        assert normalize_postcode("sw1a1aa") == "SW1A 1AA"
        assert normalize_postcode(" LS1  1AA ") == "LS1 1AA"

    def test_normalize_postcode_invalid(self):
        assert normalize_postcode("not a postcode") is None
        assert normalize_postcode(None) is None

    def test_extract_last_postcode_from_address(self):
        address = "Unit 4, M1 Trading Park, Leeds, LS10 1AB"
        assert extract_postcode(address) == "LS10 1AB"

    def test_extract_postcode_missing(self):
        assert extract_postcode("Somewhere in Yorkshire") is None

    def test_postcode_key_empty_when_unknown(self):
        assert postcode_key(None) == ""
        assert postcode_key("b338th") == "B33 8TH"


class TestCompanyNumbers:
    """Tests for Companies House number cleaning."""

    def test_strips_link_suffix(self):
        assert clean_company_number("01234567 (opens in new tab)") == "01234567"

    def test_pads_legacy_numbers(self):
        assert clean_company_number("1234567") == "01234567"
        assert clean_company_number("123456") == "00123456"

    def test_prefixed_numbers(self):
        assert clean_company_number("sc123456") == "SC123456"

    def test_rejects_garbage(self):
        assert clean_company_number("n/a") is None
        assert clean_company_number("") is None
        assert clean_company_number(None) is None


class TestBusinessType:
    """Tests for legal form detection."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Acme Widgets PLC", BusinessType.PLC),
            ("Smith & Jones LLP", BusinessType.PARTNERSHIP),
            ("Oyster Yachts Limited", BusinessType.LIMITED_COMPANY),
            ("Leeds City Council", BusinessType.OTHER),
            ("John Smith", BusinessType.INDIVIDUAL),
            (None, BusinessType.OTHER),
        ],
    )
    def test_detect(self, name, expected):
        assert detect_business_type(name) == expected
