from normalize import (
    FIELD_MAP_VERSION,
    EntityKind,
    get_value,
    normalize_row,
    normalize_rows,
    to_plant_unit,
)


class TestNormalizeRow:
    def test_adds_display_aliases_and_keeps_source(self):
        row = normalize_row(EntityKind.PROJECT, {"id": 7, "plant_name": "Alpha", "capacity_mw": "150"})
        assert row["No"] == 7
        assert row["Plant Name"] == "Alpha"
        assert row["plant_name"] == "Alpha"
        assert row["Capacity (MW)"] == "150"

    def test_idempotent(self):
        once = normalize_row(EntityKind.GLOBAL_PLANT, {"plant_name": "Beta", "latitude": "1.0"})
        twice = normalize_row(EntityKind.GLOBAL_PLANT, once)
        assert once == twice

    def test_existing_display_key_survives_missing_source(self):
        row = normalize_row(EntityKind.IMPACT_RESULT, {"Unique plant name": "Gamma"})
        assert row["Unique plant name"] == "Gamma"

    def test_missing_fields_become_none(self):
        row = normalize_row(EntityKind.IMPACT_RESULT, {})
        assert row["Avoided CO2 emissions (Mt)"] is None

    def test_rows_helper_tolerates_none(self):
        assert normalize_rows(EntityKind.PROJECT, None) == []

    def test_version_is_pinned(self):
        assert FIELD_MAP_VERSION == 2


def test_get_value_skips_empty():
    row = {"Plant name": "", "plant_name": "Delta"}
    assert get_value(row, "Plant name", "plant_name") == "Delta"
    assert get_value(row, "missing", default="x") == "x"


class TestToPlantUnit:
    def test_global_row(self):
        u = to_plant_unit({
            "Plant name": "Alpha", "Unit name": "U1", "Capacity (MW)": "1,200",
            "Country/Area": "India", "Latitude": "21.5", "Longitude": "82.1",
            "Status": "operating", "Remaining plant lifetime (years)": "12",
        })
        assert u.capacity_mw == 1200.0
        assert u.latitude == 21.5 and u.longitude == 82.1
        assert u.latitude_raw == "21.5"
        assert u.remaining_lifetime == 12.0
        assert u.has_coordinates

    def test_project_row_falls_back_to_location_pair(self):
        u = to_plant_unit({"plant_name": "Beta", "location_coordinates": "-6.2, 106.8", "capacity_mw": "x"})
        assert (u.latitude, u.longitude) == (-6.2, 106.8)
        assert u.capacity_mw == 0.0

    def test_zero_coordinates_are_valid(self):
        u = to_plant_unit({"plant_name": "Null Island", "latitude": 0, "longitude": 0})
        assert u.has_coordinates

    def test_unparsable_coordinates(self):
        u = to_plant_unit({"plant_name": "Nowhere", "latitude": "n/a", "longitude": "5"})
        assert not u.has_coordinates
