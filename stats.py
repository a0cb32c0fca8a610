"""
Impact statistics: summary totals, country rollup and top-N plant ranking.

Impact rows arrive with display-formatted strings ("$45.6M", "1,204");
every metric is read with tolerant parsing, unparsable cells count as 0.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

import pandas as pd

from normalize import get_value
from parsing import parse_number, parse_year, safe_str

# metric key -> candidate columns (display form first, then snake_case)
METRICS: Dict[str, tuple] = {
    "avoided_co2": ("Avoided CO2 emissions (Mt)", "avoided_co2_mt"),
    "avoided_deaths": ("Avoided deaths", "avoided_deaths"),
    "avoided_wld": ("Avoided work loss days", "avoided_work_loss_days"),
    "investment": ("Investment (USD)", "investment_usd"),
    "spillover": ("Economic spillover (USD)", "economic_spillover_usd"),
    "permanent_jobs": ("Permanent jobs", "permanent_jobs"),
    "temporary_jobs": ("Temporary jobs", "temporary_jobs"),
    "customer_savings": ("Customer savings (USD)", "customer_savings_usd"),
}

METRIC_LABELS = {
    "avoided_co2": "Avoided CO2 (Mt)",
    "avoided_deaths": "Avoided deaths",
    "avoided_wld": "Avoided work-loss days",
    "investment": "Investment",
    "spillover": "Economic spillover",
    "permanent_jobs": "Permanent jobs",
    "temporary_jobs": "Temporary jobs",
    "customer_savings": "Customer savings",
}

PLANT_NAME_KEYS = ("Unique plant name", "unique_plant_name", "Plant name", "plant_name")
UNIT_NAME_KEYS = ("Unit name", "unit_name")
COUNTRY_KEYS = ("Country", "country", "Country/Area", "country_area")


def name_key(value) -> str:
    return safe_str(value).lower()


def impact_frame(rows: Iterable[Mapping]) -> pd.DataFrame:
    """One row per impact record: plant, unit, country and parsed metrics."""
    records = []
    for r in rows:
        rec = {
            "plant_name": safe_str(get_value(r, *PLANT_NAME_KEYS)),
            "unit_name": safe_str(get_value(r, *UNIT_NAME_KEYS)),
            "country": safe_str(get_value(r, *COUNTRY_KEYS)),
        }
        for metric, keys in METRICS.items():
            rec[metric] = parse_number(get_value(r, *keys), default=0.0)
        records.append(rec)
    return pd.DataFrame(records, columns=["plant_name", "unit_name", "country", *METRICS])


@dataclass
class SummaryStats:
    plant_count: int = 0
    unit_count: int = 0
    totals: Dict[str, float] = field(default_factory=lambda: {m: 0.0 for m in METRICS})


def summary_stats(rows: Iterable[Mapping]) -> SummaryStats:
    df = impact_frame(rows)
    if df.empty:
        return SummaryStats()
    return SummaryStats(
        plant_count=int(df["plant_name"].str.lower().str.strip().replace("", pd.NA).dropna().nunique()),
        unit_count=int(len(df)),
        totals={m: float(df[m].sum()) for m in METRICS},
    )


def country_rollup(rows: Iterable[Mapping]) -> pd.DataFrame:
    """Metric sums per country plus distinct plant count, biggest CO2 first."""
    df = impact_frame(rows)
    cols = ["country", "plant_count", *METRICS]
    if df.empty:
        return pd.DataFrame(columns=cols)
    df["_plant"] = df["plant_name"].str.lower().str.strip()
    out = df.groupby("country", sort=False).agg(
        plant_count=("_plant", "nunique"),
        **{m: (m, "sum") for m in METRICS},
    ).reset_index()
    return out.sort_values("avoided_co2", ascending=False, kind="mergesort").reset_index(drop=True)[cols]


def top_plants(rows: Iterable[Mapping], metric: str = "avoided_co2", ascending: bool = False, n: int = 20) -> pd.DataFrame:
    """
    Sum metrics per plant name (case-insensitive, first-seen spelling shown)
    and rank by one metric. Ties keep the order plants first appear in the
    input (stable sort).
    """
    if metric not in METRICS:
        raise ValueError(f"unknown metric {metric!r}. Available: {list(METRICS)}")
    df = impact_frame(rows)
    cols = ["plant_name", "country", "unit_count", *METRICS]
    if df.empty:
        return pd.DataFrame(columns=cols)
    df["_plant"] = df["plant_name"].str.lower().str.strip()
    out = df.groupby("_plant", sort=False).agg(
        plant_name=("plant_name", "first"),
        country=("country", "first"),
        unit_count=("unit_name", "size"),
        **{m: (m, "sum") for m in METRICS},
    ).reset_index()
    out = out.sort_values(metric, ascending=ascending, kind="mergesort")
    return out.head(n).reset_index(drop=True)[cols]


def impact_plant_names(rows: Iterable[Mapping]) -> FrozenSet[str]:
    return frozenset(n for n in (name_key(get_value(r, *PLANT_NAME_KEYS)) for r in rows) if n)


def match_impact(rows: Iterable[Mapping], plant_name: str, unit_name: Optional[str] = None) -> List[Mapping]:
    """Impact rows for a plant (and unit), compared case-insensitively after trimming."""
    want_plant, want_unit = name_key(plant_name), name_key(unit_name)
    out = []
    for r in rows:
        if name_key(get_value(r, *PLANT_NAME_KEYS)) != want_plant:
            continue
        if unit_name is not None and name_key(get_value(r, *UNIT_NAME_KEYS)) != want_unit:
            continue
        out.append(r)
    return out


def retirement_year(rows: Iterable[Mapping]) -> Optional[int]:
    """First retirement year any of the rows carries, else None."""
    for r in rows:
        year = parse_year(get_value(r, "Retirement year", "retirement_year"))
        if year is not None:
            return year
    return None
