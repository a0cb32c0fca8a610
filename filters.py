from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple

from normalize import PlantUnit

logger = logging.getLogger(__name__)

Predicate = Callable[[PlantUnit], bool]

CAPTIVE_CHOICES = ("all", "yes", "no")


@dataclass(frozen=True)
class FilterOptions:
    capacity_range: Optional[Tuple[float, float]] = None
    countries: FrozenSet[str] = frozenset()
    combustion_tech: FrozenSet[str] = frozenset()
    coal_types: FrozenSet[str] = frozenset()
    subregions: FrozenSet[str] = frozenset()
    captive: str = "all"                          # all / yes / no
    max_remaining_lifetime: Optional[float] = None
    status: str = "all"
    impact_plant_names: FrozenSet[str] = frozenset()  # lower-cased, trimmed

    def __post_init__(self):
        if self.captive not in CAPTIVE_CHOICES:
            raise ValueError(f"captive must be one of {CAPTIVE_CHOICES}, got {self.captive!r}")


def build_predicates(options: FilterOptions) -> List[Predicate]:
    preds: List[Predicate] = []

    if options.capacity_range is not None:
        lo, hi = options.capacity_range
        preds.append(lambda u: lo <= u.capacity_mw <= hi)
    if options.countries:
        preds.append(lambda u: u.country in options.countries)
    if options.combustion_tech:
        preds.append(lambda u: u.combustion_technology in options.combustion_tech)
    if options.coal_types:
        preds.append(lambda u: u.coal_type in options.coal_types)
    if options.subregions:
        preds.append(lambda u: u.subregion in options.subregions)
    if options.captive == "yes":
        preds.append(lambda u: u.captive.lower() == "yes")
    elif options.captive == "no":
        preds.append(lambda u: u.captive.lower() != "yes")
    if options.max_remaining_lifetime is not None:
        ceiling = options.max_remaining_lifetime
        # unknown lifetime fails an "at most N years remaining" filter
        preds.append(lambda u: u.remaining_lifetime is not None and u.remaining_lifetime <= ceiling)
    if options.status and options.status != "all":
        wanted = options.status.lower()
        preds.append(lambda u: u.status.lower() == wanted)
    if options.impact_plant_names:
        preds.append(lambda u: u.plant_name.lower().strip() in options.impact_plant_names)
    return preds


def apply_filters(units: Iterable[PlantUnit], options: FilterOptions, require_coordinates: bool = True) -> List[PlantUnit]:
    """
    Keep units passing every predicate. For map views (require_coordinates)
    a unit without coordinates is dropped before any predicate runs.
    """
    preds = build_predicates(options)
    out: List[PlantUnit] = []
    for u in units:
        if require_coordinates and not u.has_coordinates:
            continue
        if all(p(u) for p in preds):
            out.append(u)
    return out


def search_units(units: Iterable[PlantUnit], term: str, options: Optional[FilterOptions] = None, limit: int = 50) -> List[PlantUnit]:
    term = (term or "").strip().lower()
    if not term:
        return []
    preds = build_predicates(options or FilterOptions())
    out: List[PlantUnit] = []
    for u in units:
        text_hit = term in u.plant_name.lower() or term in u.country.lower() or term in u.unit_name.lower()
        if text_hit and all(p(u) for p in preds):
            out.append(u)
            if len(out) >= limit:
                break
    return out


def capacity_bounds(units: Iterable[PlantUnit]) -> Tuple[float, float]:
    caps = [u.capacity_mw for u in units if u.capacity_mw > 0]
    if not caps:
        return 0.0, 0.0
    return min(caps), max(caps)


def distinct_values(units: Iterable[PlantUnit], attr: str) -> List[str]:
    return sorted({getattr(u, attr) for u in units if getattr(u, attr)})
