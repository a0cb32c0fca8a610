"""
Row normalization: persisted snake_case rows -> display-schema rows.

Each entity kind has a static, versioned table of (source_key, display_key)
pairs. normalize_row keeps every original key and adds the display keys as
aliases, so callers may read either form. No validation happens here;
numeric-looking fields pass through as whatever type the source gave.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from parsing import parse_coordinate, parse_number, parse_optional_number, parse_year, safe_str

FIELD_MAP_VERSION = 2


class EntityKind(str, Enum):
    PROJECT = "project"
    GLOBAL_PLANT = "global_plant"
    IMPACT_RESULT = "impact_result"


@dataclass(frozen=True)
class FieldMapping:
    source_key: str
    display_key: str


def _table(pairs: List[Tuple[str, str]]) -> Tuple[FieldMapping, ...]:
    return tuple(FieldMapping(s, d) for s, d in pairs)


PROJECT_FIELDS = _table([
    ("id", "No"),
    ("plant_name", "Plant Name"),
    ("unit_name", "Unit name"),
    ("capacity_mw", "Capacity (MW)"),
    ("country", "Country"),
    ("operational_status", "Operational Status"),
    ("start_year", "Start year"),
    ("planned_retirement_year", "Planned retirement year"),
    ("actual_retirement_year", "Actual retirement year"),
    ("location_coordinates", "Location (coordinates)"),
    ("operator", "Operator"),
    ("owner", "Owner"),
    ("parent", "Parent"),
    ("project_name", "Project Name"),
    ("transition_type", "Transition type"),
    ("financial_mechanism", "Financial mechanism"),
    ("lenders_funders_involved", "Lender(s)/ Funder(s) involved"),
    ("planned_post_retirement_status", "Planned post-retirement status"),
    ("intelligence_on_transaction_status", "Intelligence on Transaction Status"),
    ("technical_assistance_provided_to_date", "Technical Assistance provided to date"),
    ("information_status", "Information Status"),
    ("information_owner", "Information Owner"),
    ("email_extension", "Email extension"),
])

GLOBAL_PLANT_FIELDS = _table([
    ("gem_unit_phase_id", "GEM unit/phase ID"),
    ("gem_location_id", "GEM location ID"),
    ("country_area", "Country/Area"),
    ("wiki_url", "Wiki URL"),
    ("plant_name", "Plant name"),
    ("unit_name", "Unit name"),
    ("plant_name_other", "Plant name (other)"),
    ("plant_name_local", "Plant name (local)"),
    ("owner", "Owner"),
    ("parent", "Parent"),
    ("capacity_mw", "Capacity (MW)"),
    ("status", "Status"),
    ("start_year", "Start year"),
    ("retired_year", "Retired year"),
    ("planned_retirement", "Planned retirement"),
    ("combustion_technology", "Combustion technology"),
    ("coal_type", "Coal type"),
    ("coal_source", "Coal source"),
    ("location", "Location"),
    ("latitude", "Latitude"),
    ("longitude", "Longitude"),
    ("subregion", "Subregion"),
    ("region", "Region"),
    ("captive", "Captive"),
    ("plant_age_years", "Plant age (years)"),
    ("capacity_factor", "Capacity factor"),
    ("annual_co2_million_tonnes_annum", "Annual CO2 (million tonnes / annum)"),
    ("remaining_plant_lifetime_years", "Remaining plant lifetime (years)"),
    ("lifetime_co2_million_tonnes", "Lifetime CO2 (million tonnes)"),
])

IMPACT_RESULT_FIELDS = _table([
    ("unique_plant_name", "Unique plant name"),
    ("unit_name", "Unit name"),
    ("country", "Country"),
    ("year", "Year"),
    ("retirement_year", "Retirement year"),
    ("avoided_co2_mt", "Avoided CO2 emissions (Mt)"),
    ("avoided_deaths", "Avoided deaths"),
    ("avoided_work_loss_days", "Avoided work loss days"),
    ("investment_usd", "Investment (USD)"),
    ("economic_spillover_usd", "Economic spillover (USD)"),
    ("permanent_jobs", "Permanent jobs"),
    ("temporary_jobs", "Temporary jobs"),
    ("customer_savings_usd", "Customer savings (USD)"),
])

FIELD_TABLES: Dict[EntityKind, Tuple[FieldMapping, ...]] = {
    EntityKind.PROJECT: PROJECT_FIELDS,
    EntityKind.GLOBAL_PLANT: GLOBAL_PLANT_FIELDS,
    EntityKind.IMPACT_RESULT: IMPACT_RESULT_FIELDS,
}


def normalize_row(kind: EntityKind, row: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(row or {})
    for m in FIELD_TABLES[EntityKind(kind)]:
        # a row already carrying the display key keeps it when the source is absent
        if m.source_key in out:
            out[m.display_key] = out[m.source_key]
        else:
            out.setdefault(m.display_key, None)
    return out


def normalize_rows(kind: EntityKind, rows) -> List[Dict[str, Any]]:
    return [normalize_row(kind, r) for r in rows or []]


def get_value(row: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-empty value among keys (snake_case or display form)."""
    for k in keys:
        v = row.get(k)
        if v is not None and safe_str(v) != "":
            return v
    return default


# Candidate keys per semantic field, display form first. Project rows and
# global-plant rows spell several of these differently.
UNIT_KEYS: Dict[str, Tuple[str, ...]] = {
    "plant_name": ("Plant name", "Plant Name", "plant_name"),
    "unit_name": ("Unit name", "unit_name"),
    "capacity": ("Capacity (MW)", "capacity_mw"),
    "country": ("Country/Area", "Country", "country_area", "country"),
    "latitude": ("Latitude", "latitude", "lat"),
    "longitude": ("Longitude", "longitude", "lon", "lng"),
    "location": ("Location (coordinates)", "location_coordinates"),
    "status": ("Status", "Operational Status", "status", "operational_status"),
    "start_year": ("Start year", "start_year"),
    "planned_retirement": ("Planned retirement", "Planned retirement year", "planned_retirement", "planned_retirement_year"),
    "combustion_technology": ("Combustion technology", "combustion_technology"),
    "coal_type": ("Coal type", "coal_type"),
    "subregion": ("Subregion", "subregion"),
    "captive": ("Captive", "captive"),
    "remaining_lifetime": ("Remaining plant lifetime (years)", "remaining_plant_lifetime_years"),
    "owner": ("Owner", "owner"),
    "parent": ("Parent", "parent"),
    "location_id": ("GEM location ID", "gem_location_id"),
}


@dataclass
class PlantUnit:
    """One generating unit, read from a project row or a global-plant row."""

    plant_name: str
    unit_name: str
    capacity_mw: float
    country: str
    latitude_raw: str
    longitude_raw: str
    latitude: Optional[float]
    longitude: Optional[float]
    status: str = ""
    start_year: Optional[int] = None
    planned_retirement: Optional[int] = None
    combustion_technology: str = ""
    coal_type: str = ""
    subregion: str = ""
    captive: str = ""
    remaining_lifetime: Optional[float] = None
    owner: str = ""
    parent: str = ""
    location_id: str = ""
    row: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def _unit_value(row: Mapping[str, Any], name: str) -> Any:
    return get_value(row, *UNIT_KEYS[name])


def to_plant_unit(row: Mapping[str, Any]) -> PlantUnit:
    lat_v = _unit_value(row, "latitude")
    lon_v = _unit_value(row, "longitude")
    lat_raw, lon_raw = safe_str(lat_v), safe_str(lon_v)
    if lat_v is None and lon_v is None:
        loc = safe_str(_unit_value(row, "location"))
        if "," in loc:
            lat_raw, lon_raw = (p.strip() for p in loc.split(",", 1))

    return PlantUnit(
        plant_name=safe_str(_unit_value(row, "plant_name")),
        unit_name=safe_str(_unit_value(row, "unit_name")),
        capacity_mw=parse_number(_unit_value(row, "capacity"), default=0.0),
        country=safe_str(_unit_value(row, "country")),
        latitude_raw=lat_raw,
        longitude_raw=lon_raw,
        latitude=parse_coordinate(lat_raw),
        longitude=parse_coordinate(lon_raw),
        status=safe_str(_unit_value(row, "status")),
        start_year=parse_year(_unit_value(row, "start_year")),
        planned_retirement=parse_year(_unit_value(row, "planned_retirement")),
        combustion_technology=safe_str(_unit_value(row, "combustion_technology")),
        coal_type=safe_str(_unit_value(row, "coal_type")),
        subregion=safe_str(_unit_value(row, "subregion")),
        captive=safe_str(_unit_value(row, "captive")),
        remaining_lifetime=parse_optional_number(_unit_value(row, "remaining_lifetime")),
        owner=safe_str(_unit_value(row, "owner")),
        parent=safe_str(_unit_value(row, "parent")),
        location_id=safe_str(_unit_value(row, "location_id")),
        row=dict(row),
    )


def to_plant_units(rows) -> List[PlantUnit]:
    return [to_plant_unit(r) for r in rows or []]
