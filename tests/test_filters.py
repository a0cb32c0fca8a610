import pytest

from filters import FilterOptions, apply_filters, capacity_bounds, distinct_values, search_units
from normalize import to_plant_units


@pytest.fixture
def units():
    return to_plant_units([
        {"Plant name": "Alpha", "Unit name": "A1", "Capacity (MW)": "600", "Country/Area": "India", "Latitude": "21", "Longitude": "82",
         "Combustion technology": "subcritical", "Coal type": "bituminous", "Subregion": "South Asia", "Captive": "No",
         "Remaining plant lifetime (years)": "10", "Status": "operating"},
        {"Plant name": "Beta", "Unit name": "B1", "Capacity (MW)": "1,000", "Country/Area": "Indonesia", "Latitude": "-6", "Longitude": "106",
         "Combustion technology": "supercritical", "Coal type": "lignite", "Subregion": "South-eastern Asia", "Captive": "Yes",
         "Remaining plant lifetime (years)": "25", "Status": "operating"},
        {"Plant name": "Gamma", "Unit name": "G1", "Capacity (MW)": "300", "Country/Area": "India", "Latitude": "20", "Longitude": "80",
         "Combustion technology": "subcritical", "Coal type": "bituminous", "Subregion": "South Asia", "Captive": "",
         "Remaining plant lifetime (years)": "unknown", "Status": "retired"},
        {"Plant name": "Delta", "Unit name": "D1", "Capacity (MW)": "450", "Country/Area": "India"},
    ])


def names(result):
    return [u.plant_name for u in result]


class TestApplyFilters:
    def test_no_filters_keeps_mapped_units(self, units):
        assert names(apply_filters(units, FilterOptions())) == ["Alpha", "Beta", "Gamma"]

    def test_coordinates_not_required_for_lists(self, units):
        assert "Delta" in names(apply_filters(units, FilterOptions(), require_coordinates=False))

    def test_capacity_range_inclusive(self, units):
        assert names(apply_filters(units, FilterOptions(capacity_range=(300, 600)))) == ["Alpha", "Gamma"]

    def test_country_and_tech(self, units):
        opts = FilterOptions(countries=frozenset({"India"}), combustion_tech=frozenset({"subcritical"}))
        assert names(apply_filters(units, opts)) == ["Alpha", "Gamma"]

    def test_captive(self, units):
        assert names(apply_filters(units, FilterOptions(captive="yes"))) == ["Beta"]
        assert names(apply_filters(units, FilterOptions(captive="no"))) == ["Alpha", "Gamma"]

    def test_invalid_captive_rejected(self):
        with pytest.raises(ValueError):
            FilterOptions(captive="maybe")

    def test_unknown_lifetime_fails_lifetime_filter(self, units):
        assert names(apply_filters(units, FilterOptions(max_remaining_lifetime=30))) == ["Alpha", "Beta"]

    def test_status_case_insensitive(self, units):
        assert names(apply_filters(units, FilterOptions(status="Retired"))) == ["Gamma"]

    def test_impact_restriction(self, units):
        assert names(apply_filters(units, FilterOptions(impact_plant_names=frozenset({"beta"})))) == ["Beta"]

    def test_adding_a_filter_never_grows_the_result(self, units):
        base = FilterOptions(countries=frozenset({"India", "Indonesia"}))
        narrower = FilterOptions(countries=base.countries, coal_types=frozenset({"bituminous"}))
        wide, narrow = apply_filters(units, base), apply_filters(units, narrower)
        assert set(names(narrow)) <= set(names(wide))


class TestSearch:
    def test_matches_name_unit_or_country(self, units):
        assert names(search_units(units, "indo")) == ["Beta"]
        assert names(search_units(units, "g1")) == ["Gamma"]

    def test_blank_term(self, units):
        assert search_units(units, "   ") == []

    def test_limit(self, units):
        assert len(search_units(units, "a", limit=2)) == 2

    def test_honours_filters(self, units):
        assert names(search_units(units, "india", FilterOptions(status="retired"))) == ["Gamma"]


def test_capacity_bounds(units):
    assert capacity_bounds(units) == (300.0, 1000.0)
    assert capacity_bounds([]) == (0.0, 0.0)


def test_distinct_values(units):
    assert distinct_values(units, "country") == ["India", "Indonesia"]


def test_lifetime_filter_asymmetry():
    unit = to_plant_units([{"Plant name": "Solo", "Latitude": "1", "Longitude": "1", "Capacity (MW)": "n/a"}])
    assert unit[0].remaining_lifetime is None
    assert apply_filters(unit, FilterOptions(max_remaining_lifetime=20)) == []
    assert apply_filters(unit, FilterOptions(max_remaining_lifetime=None)) == unit
