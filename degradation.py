from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple


class MetricKind(str, Enum):
    # emissions-volume metrics see both factors
    EMISSIONS = "emissions"
    # health / savings metrics are driven by operating hours: capacity factor only
    OPERATIONAL = "operational"


EMISSIONS_METRICS = {"avoided_co2"}


def metric_kind(metric: str) -> MetricKind:
    return MetricKind.EMISSIONS if metric in EMISSIONS_METRICS else MetricKind.OPERATIONAL


@dataclass(frozen=True)
class YearPoint:
    year: int
    value: float
    cumulative: float


def efficiency_factor(rate_percent: float, years_elapsed: int) -> float:
    return (1 + rate_percent / 100.0) ** years_elapsed


def capacity_factor(rate_percent: float, years_elapsed: int) -> float:
    return (1 - rate_percent / 100.0) ** years_elapsed


def project_series(
    base_annual_value: float,
    start_year: int,
    end_year: int,
    efficiency_rate_percent: float = 0.0,
    capacity_rate_percent: float = 0.0,
    degradation_enabled: bool = True,
    kind: MetricKind = MetricKind.EMISSIONS,
) -> List[YearPoint]:
    """
    Per-year value and running total from start_year to end_year inclusive.
    Efficiency compounds upward, capacity compounds downward; with
    degradation disabled both factors stay at 1.
    """
    points: List[YearPoint] = []
    cumulative = 0.0
    for year in range(start_year, end_year + 1):
        elapsed = year - start_year
        if degradation_enabled:
            eff = efficiency_factor(efficiency_rate_percent, elapsed)
            cap = capacity_factor(capacity_rate_percent, elapsed)
        else:
            eff = cap = 1.0
        value = base_annual_value * cap
        if MetricKind(kind) is MetricKind.EMISSIONS:
            value *= eff
        cumulative += value
        points.append(YearPoint(year=year, value=value, cumulative=cumulative))
    return points


def split_at_retirement(points: List[YearPoint], retirement_year: Optional[int]) -> Tuple[List[YearPoint], List[YearPoint]]:
    """(highlighted, faded): years up to retirement, then the rest. Values are untouched."""
    if retirement_year is None:
        return list(points), []
    return [p for p in points if p.year <= retirement_year], [p for p in points if p.year > retirement_year]


def cumulative_segments(points: List[YearPoint], retirement_year: Optional[int]) -> Tuple[List[Tuple[int, float]], List[Tuple[int, float]]]:
    """
    (year, cumulative) pairs for the chart, split at retirement. The faded
    segment starts at the last highlighted point so the line stays joined.
    """
    highlighted, faded = split_at_retirement(points, retirement_year)
    head = [(p.year, p.cumulative) for p in highlighted]
    tail = head[-1:] + [(p.year, p.cumulative) for p in faded] if faded else []
    return head, tail
