import pytest

from stats import country_rollup, impact_plant_names, match_impact, retirement_year, summary_stats, top_plants


@pytest.fixture
def rows():
    return [
        {"Unique plant name": "Alpha", "Unit name": "U1", "Country": "India", "Avoided CO2 emissions (Mt)": "10", "Investment (USD)": "$45.6M"},
        {"Unique plant name": "Alpha", "Unit name": "U2", "Country": "India", "Avoided CO2 emissions (Mt)": "5", "Investment (USD)": "1,234.5"},
        {"unique_plant_name": "Beta", "unit_name": "B1", "country": "Chile", "avoided_co2_mt": "15", "investment_usd": "n/a"},
        {"Unique plant name": "Gamma", "Unit name": "G1", "Country": "India", "Avoided CO2 emissions (Mt)": "2"},
    ]


class TestSummary:
    def test_totals_parse_display_strings(self, rows):
        s = summary_stats(rows)
        assert s.plant_count == 3
        assert s.unit_count == 4
        assert s.totals["avoided_co2"] == pytest.approx(32.0)
        assert s.totals["investment"] == pytest.approx(45.6 + 1234.5)

    def test_empty(self):
        s = summary_stats([])
        assert s.plant_count == 0
        assert s.totals["avoided_co2"] == 0.0


class TestCountryRollup:
    def test_sums_and_plant_counts(self, rows):
        df = country_rollup(rows)
        assert list(df["country"]) == ["India", "Chile"]
        india = df.iloc[0]
        assert india["plant_count"] == 2
        assert india["avoided_co2"] == pytest.approx(17.0)

    def test_empty(self):
        assert country_rollup([]).empty


class TestTopPlants:
    def test_ranking_sums_units(self, rows):
        df = top_plants(rows, "avoided_co2")
        assert list(df["plant_name"]) == ["Alpha", "Beta", "Gamma"]
        assert df.iloc[0]["unit_count"] == 2

    def test_ties_keep_input_order(self, rows):
        # Alpha and Beta both total 15
        df = top_plants(rows, "avoided_co2", n=2)
        assert list(df["plant_name"]) == ["Alpha", "Beta"]
        asc = top_plants(rows, "avoided_co2", ascending=True)
        assert list(asc["plant_name"]) == ["Gamma", "Alpha", "Beta"]

    def test_names_group_case_insensitively(self, rows):
        rows.append({"Unique plant name": "alpha ", "Unit name": "U3", "Country": "India", "Avoided CO2 emissions (Mt)": "1"})
        df = top_plants(rows, "avoided_co2")
        assert list(df["plant_name"]) == ["Alpha", "Beta", "Gamma"]
        assert df.iloc[0]["unit_count"] == 3
        assert df.iloc[0]["avoided_co2"] == pytest.approx(16.0)
        assert summary_stats(rows).plant_count == len(df)

    def test_n_limits(self, rows):
        assert len(top_plants(rows, n=1)) == 1

    def test_unknown_metric(self, rows):
        with pytest.raises(ValueError):
            top_plants(rows, "sunshine")


def test_impact_plant_names_lowercased(rows):
    assert impact_plant_names(rows) == frozenset({"alpha", "beta", "gamma"})


def test_match_impact_by_plant_and_unit(rows):
    assert len(match_impact(rows, " alpha ")) == 2
    assert len(match_impact(rows, "Alpha", "u2")) == 1
    assert match_impact(rows, "Omega") == []


def test_retirement_year_skips_rows_without_one():
    rows = [
        {"Unique plant name": "Alpha", "Retirement year": ""},
        {"Unique plant name": "Alpha", "retirement_year": "2031"},
        {"Unique plant name": "Alpha", "Retirement year": "2040"},
    ]
    assert retirement_year(rows) == 2031
    assert retirement_year(rows[:1]) is None
    assert retirement_year([]) is None
