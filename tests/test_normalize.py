"""Tests for address and entity normalization."""

from datetime import date

import pytest

from konkurs_cli.registry.brreg_client import parse_raw_entity
from konkurs_cli.registry.models import (
    AddressKind,
    CompanyStatus,
    NormalizedAddress,
    RawAddress,
    RawEntity,
)
from konkurs_cli.registry.normalize import (
    addresses_identical,
    derive_status,
    normalize_address,
    normalize_entity,
    normalize_municipality_code,
    parse_date,
)


class TestNormalizeAddress:
    """Tests for address normalization."""

    def test_missing_fields_become_empty_strings(self):
        """Test missing address fields become empty strings."""
        address = normalize_address(RawAddress())

        assert address == NormalizedAddress("", "", "", "", "")
        assert address.is_empty()

    def test_none_address(self):
        """Test a missing address normalizes to None."""
        assert normalize_address(None).is_empty()

    def test_joins_lines_and_trims(self):
        """Test address lines are joined and trimmed."""
        address = normalize_address(RawAddress(
            address_lines=["  Strandgata 3 ", "", "2.  etasje"],
            postal_code=" 4950",
            municipality_code="4201",
            municipality_name="RISØR ",
        ))

        assert address.line == "Strandgata 3, 2. etasje"
        assert address.postal_code == "4950"
        assert address.municipality_name == "RISØR"

    def test_pads_municipality_code(self):
        """Test municipality codes are zero-filled."""
        assert normalize_municipality_code("301") == "0301"
        assert normalize_municipality_code("4201") == "4201"
        assert normalize_municipality_code(None) == ""

    def test_identical_is_exact_and_case_sensitive(self):
        """Test address identity is exact and case-sensitive."""
        a = NormalizedAddress("Main St 1", "0001", "0301", "OSLO")
        b = NormalizedAddress("Main St 1", "0001", "0301", "OSLO")
        c = NormalizedAddress("MAIN ST 1", "0001", "0301", "OSLO")

        assert addresses_identical(a, b)
        assert not addresses_identical(a, c)

    def test_postal_city_does_not_affect_identity(self):
        """Test postal city is not part of address identity."""
        a = NormalizedAddress("Main St 1", "0001", "0301", "OSLO", postal_city="OSLO")
        b = NormalizedAddress("Main St 1", "0001", "0301", "OSLO", postal_city="Oslo")

        assert addresses_identical(a, b)

    def test_format_oneline(self):
        """Test single-line address formatting."""
        address = NormalizedAddress("Kragsgata 12", "4950", "4201", "RISØR", "RISØR")
        assert address.format_oneline() == "Kragsgata 12, 4950 RISØR"
        assert NormalizedAddress().format_oneline() == "(no address)"


class TestDeriveStatus:
    """Tests for lifecycle status derivation."""

    def test_active(self):
        """Test an entity without flags is active."""
        assert derive_status(RawEntity("912345678")) == CompanyStatus.ACTIVE

    def test_bankrupt_flag(self):
        """Test the konkurs flag marks an entity bankrupt."""
        assert derive_status(RawEntity("912345678", bankrupt=True)) == CompanyStatus.BANKRUPT

    def test_bankruptcy_estate_form(self):
        """Test the bankruptcy estate legal form marks an entity bankrupt."""
        assert derive_status(RawEntity("912345678", legal_form="KBO")) == CompanyStatus.BANKRUPT

    @pytest.mark.parametrize("flags", [
        {"under_liquidation": True},
        {"under_forced_liquidation": True},
        {"deletion_date": "2024-01-31"},
    ])
    def test_dissolved(self, flags):
        """Test dissolution flags mark an entity dissolved."""
        assert derive_status(RawEntity("912345678", **flags)) == CompanyStatus.DISSOLVED

    def test_bankruptcy_wins_over_dissolution(self):
        """Test bankruptcy takes precedence over dissolution."""
        raw = RawEntity("912345678", bankrupt=True, deletion_date="2024-01-31")
        assert derive_status(raw) == CompanyStatus.BANKRUPT


class TestNormalizeEntity:
    """Tests for entity normalization."""

    def test_normalize_fixture_entity(self, brreg_page_payload):
        """Test normalization of a fixture entity."""
        entity = normalize_entity(parse_raw_entity(brreg_page_payload["_embedded"]["enheter"][0]))

        assert entity.organization_number == "912345678"
        assert entity.registration_date == date(2013, 5, 21)
        assert entity.status == CompanyStatus.ACTIVE
        assert set(entity.addresses) == {AddressKind.BUSINESS, AddressKind.MAILING}
        assert entity.addresses[AddressKind.BUSINESS].identity() == (
            "Kragsgata 12", "4950", "4201", "RISØR"
        )

    def test_entity_without_addresses(self, brreg_page_payload):
        """Test entities without addresses normalize."""
        entity = normalize_entity(parse_raw_entity(brreg_page_payload["_embedded"]["enheter"][2]))

        assert entity.addresses == {}
        assert entity.primary_address is None
        assert entity.status == CompanyStatus.DISSOLVED

    def test_empty_address_block_is_not_present(self):
        """Test an empty address block counts as absent."""
        entity = normalize_entity(RawEntity("912345678", business_address=RawAddress()))
        assert AddressKind.BUSINESS not in entity.addresses

    def test_primary_address_falls_back_to_mailing(self):
        """Test the primary address falls back to the mailing address."""
        mailing = RawAddress(address_lines=["Postboks 44"], postal_code="4951", municipality_code="4201")
        entity = normalize_entity(RawEntity("912345678", mailing_address=mailing))

        assert entity.primary_address.line == "Postboks 44"

    def test_parse_date(self):
        """Test date parsing."""
        assert parse_date("2024-03-05") == date(2024, 3, 5)
        assert parse_date("2024-03-05T10:00:00") == date(2024, 3, 5)
        assert parse_date("") is None
        assert parse_date("05.03.2024") is None
