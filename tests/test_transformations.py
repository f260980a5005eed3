import pytest

from taxlookup.transformations import (
    ADDRESS_NOT_AVAILABLE,
    construct_full_address,
    describe,
    extract_master_parcel_id,
    format_number,
    format_sale_price,
    has_multiple_buildings,
    parse_after_dash,
    prioritize_value,
    to_name_case,
    to_proper_case,
    total_bathrooms,
)


class TestProperCase:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("ONE FAM DWELLING", "One Fam Dwelling"),
            ("centre street", "Centre Street"),
            ("LLC", "LLC"),
            ("MA", "MA"),
            (None, ""),
            ("   ", ""),
            (1920, "1920"),
        ],
    )
    def test_to_proper_case(self, raw, expected):
        assert to_proper_case(raw) == expected

    def test_name_case_hyphen_and_apostrophe(self):
        assert to_name_case("SMITH-JONES MARY O'NEIL") == "Smith-Jones Mary O'Neil"

    def test_name_case_short_abbreviation(self):
        assert to_name_case("BHA") == "BHA"


class TestParseAfterDash:
    def test_single_separator(self):
        assert parse_after_dash("R1 - ONE FAM DWELLING") == "One Fam Dwelling"

    def test_uses_last_separator(self):
        assert parse_after_dash("A - B - SLATE ROOF") == "Slate Roof"

    def test_no_separator(self):
        assert parse_after_dash("COLONIAL STYLE") == "Colonial Style"

    def test_hyphen_without_spaces_is_kept(self):
        assert parse_after_dash("SEMI-MODERN KITCHEN") == "Semi-Modern Kitchen"

    def test_blank(self):
        assert parse_after_dash("") == ""
        assert describe(None) == ""


class TestConstructFullAddress:
    def test_full_address(self):
        attrs = {
            "street_number": "12",
            "street_number_suffix": "14",
            "street_name": "CENTRE ST",
            "apt_unit": "3",
            "city": "JAMAICA PLAIN",
            "location_zip_code": "02130",
        }
        assert construct_full_address(attrs) == "12-14 Centre St #3, Jamaica Plain, 02130"

    def test_equals_city_is_boston(self):
        attrs = {"street_number": "1", "street_name": "CITY HALL SQ", "city": "=", "location_zip_code": "02201"}
        assert construct_full_address(attrs) == "1 City Hall Sq, Boston, 02201"

    def test_suffix_equal_to_number_is_dropped(self):
        attrs = {"street_number": "12", "street_number_suffix": "12", "street_name": "MAIN ST"}
        assert construct_full_address(attrs) == "12 Main St"

    def test_numeric_street_number(self):
        attrs = {"street_number": 45, "street_name": "ELM STREET"}
        assert construct_full_address(attrs) == "45 Elm Street"

    def test_empty_attributes(self):
        assert construct_full_address({}) == ADDRESS_NOT_AVAILABLE
        assert construct_full_address({"street_number": "", "apt_unit": None}) == ADDRESS_NOT_AVAILABLE


class TestPrioritizeValue:
    def test_residential_wins(self):
        assert prioritize_value("Concrete", "Brick") == "Concrete"

    def test_empty_string_falls_back(self):
        assert prioritize_value("", "Brick") == "Brick"

    def test_zero_is_a_value(self):
        assert prioritize_value(0, 3) == 0

    def test_nothing_present(self):
        assert prioritize_value(None, "") is None


class TestMultipleBuildings:
    def test_single_row(self):
        assert not has_multiple_buildings([{"bedrooms": 3}])

    def test_identical_rows(self):
        rows = [{"bedrooms": 3, "OBJECTID": 1}, {"bedrooms": 3, "OBJECTID": 2}]
        assert not has_multiple_buildings(rows)

    def test_structural_difference(self):
        rows = [{"bedrooms": 3}, {"bedrooms": 2}]
        assert has_multiple_buildings(rows)


def test_extract_master_parcel_id():
    assert extract_master_parcel_id("0301234000 - HARBOR TOWERS") == "0301234000"
    assert extract_master_parcel_id("") is None
    assert extract_master_parcel_id(None) is None


class TestNumbers:
    def test_format_number(self):
        assert format_number(3.0) == "3"
        assert format_number(2.5) == "2.5"
        assert format_number(0) == "0"
        assert format_number(None) is None

    def test_total_bathrooms(self):
        assert total_bathrooms(2, 1) == "2.5"
        assert total_bathrooms(2, 0) == "2"
        assert total_bathrooms(2, None) is None

    def test_format_sale_price(self):
        assert format_sale_price(1250000) == "1,250,000"
        assert format_sale_price("985000") == "985,000"
        assert format_sale_price(0) is None
        assert format_sale_price(None) is None
