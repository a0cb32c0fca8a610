import math

import pytest

from parsing import (
    parse_coordinate,
    parse_coordinate_pair,
    parse_number,
    parse_optional_number,
    parse_year,
    safe_str,
)


class TestParseNumber:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("$45.6M", 45.6),
            ("1,234.5", 1234.5),
            ("12%", 12.0),
            ("  300 ", 300.0),
            ("-7.5", -7.5),
            (42, 42.0),
            (3.25, 3.25),
        ],
    )
    def test_display_formatted_values(self, raw, expected):
        assert parse_number(raw) == pytest.approx(expected)

    def test_unparsable_uses_default(self):
        assert parse_number("n/a") == 0.0
        assert parse_number("n/a", default=-1.0) == -1.0
        assert parse_number(None) == 0.0

    def test_optional_number_is_none_on_failure(self):
        assert parse_optional_number("unknown") is None
        assert parse_optional_number("") is None
        assert parse_optional_number(float("nan")) is None
        assert parse_optional_number(True) is None

    def test_year(self):
        assert parse_year("2035") == 2035
        assert parse_year("2035.0") == 2035
        assert parse_year("soon") is None


class TestCoordinates:
    def test_plain_float(self):
        assert parse_coordinate("12.5") == 12.5
        assert parse_coordinate(0) == 0.0

    def test_no_currency_stripping(self):
        assert parse_coordinate("$12") is None

    def test_rejects_non_finite(self):
        assert parse_coordinate(float("inf")) is None
        assert parse_coordinate("nan") is None

    def test_pair(self):
        assert parse_coordinate_pair("1.5, 103.8") == (1.5, 103.8)
        assert parse_coordinate_pair("1.5") == (None, None)
        assert parse_coordinate_pair("north, 103.8") == (None, None)


def test_safe_str_handles_missing():
    assert safe_str(None) == ""
    assert safe_str(math.nan) == ""
    assert safe_str("  Alpha ") == "Alpha"
    assert safe_str(5) == "5"
