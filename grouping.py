from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, TypeVar

from normalize import PlantUnit, get_value
from parsing import parse_coordinate, parse_coordinate_pair, parse_number, safe_str

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Group:
    representative: Any
    members: List[Any] = field(default_factory=list)


def group_by(collection: Iterable[T], key_fn: Callable[[T], Optional[Hashable]]) -> Dict[Hashable, Group]:
    """
    Group in input order. The first member seen becomes the representative.
    Items whose key is None are skipped.
    """
    groups: Dict[Hashable, Group] = {}
    for item in collection:
        key = key_fn(item)
        if key is None:
            continue
        g = groups.get(key)
        if g is None:
            groups[key] = Group(representative=item, members=[item])
        else:
            g.members.append(item)
    return groups


# =========================
# Plants (units -> plants)
# =========================
def plant_key(unit: PlantUnit) -> Optional[str]:
    """
    name + raw lat + raw lon, unrounded: units reported with identical
    coordinates collapse, slightly differing coordinates stay separate.
    """
    if not unit.has_coordinates:
        return None
    return f"{unit.plant_name}_{unit.latitude_raw}_{unit.longitude_raw}"


@dataclass
class UnitDetail:
    unit_name: str
    capacity: float


@dataclass
class Plant:
    key: str
    plant_name: str
    capacity_mw: float
    unit_details: List[UnitDetail]
    country: str
    status: str
    owner: str
    latitude: float
    longitude: float
    start_year: Optional[int] = None
    planned_retirement: Optional[int] = None
    units: List[PlantUnit] = field(default_factory=list, repr=False)

    @property
    def unit_count(self) -> int:
        return len(self.units)


def aggregate_plants(units: Iterable[PlantUnit]) -> List[Plant]:
    units = list(units)
    missing = [u for u in units if not u.has_coordinates]
    for u in missing:
        logger.debug("no usable coordinates for %r / %r, excluded from map", u.plant_name, u.unit_name)
    if missing:
        logger.info("%d of %d units have no coordinates and were left out of plant grouping", len(missing), len(units))

    plants: List[Plant] = []
    for key, g in group_by(units, plant_key).items():
        rep: PlantUnit = g.representative
        plants.append(Plant(
            key=key,
            plant_name=rep.plant_name or "Unknown",
            capacity_mw=sum(u.capacity_mw for u in g.members),
            unit_details=[UnitDetail(u.unit_name, u.capacity_mw) for u in g.members],
            country=rep.country,
            status=rep.status,
            owner=rep.owner,
            latitude=rep.latitude,
            longitude=rep.longitude,
            start_year=rep.start_year,
            planned_retirement=rep.planned_retirement,
            units=list(g.members),
        ))
    return plants


# ======================================
# Transactions (deal plants -> map nodes)
# ======================================
def transaction_plant_key(name: str, lat: float, lng: float) -> str:
    """Coordinates rounded to 3 decimals to absorb jitter between hand-entered records."""
    return f"{safe_str(name).lower()}_{lat:.3f}_{lng:.3f}"


@dataclass
class TransactionPlant:
    name: str
    unit_name: str
    capacity_mw: float
    country: str
    latitude: Optional[float]
    longitude: Optional[float]
    transaction: Mapping[str, Any] = field(repr=False, default_factory=dict)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def load_plants_field(value: Any) -> List[dict]:
    if isinstance(value, list):
        return [p for p in value if isinstance(p, dict)]
    text = safe_str(value)
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug("malformed plants JSON on transaction: %r", text[:80])
        return []
    return [p for p in data if isinstance(p, dict)] if isinstance(data, list) else []


def _entry_coordinates(entry: Mapping[str, Any]):
    lat = parse_coordinate(get_value(entry, "latitude", "Latitude", "lat"))
    lng = parse_coordinate(get_value(entry, "longitude", "Longitude", "lng", "lon"))
    if lat is None or lng is None:
        lat, lng = parse_coordinate_pair(get_value(entry, "location_coordinates", "Location (coordinates)"))
    return lat, lng


def transaction_plants(txn: Mapping[str, Any]) -> List[TransactionPlant]:
    """A transaction with no associated plants stands for one implicit plant."""
    entries = load_plants_field(txn.get("plants")) or [txn]
    out: List[TransactionPlant] = []
    for e in entries:
        lat, lng = _entry_coordinates(e)
        out.append(TransactionPlant(
            name=safe_str(get_value(e, "plant_name", "Plant name", "project_name")) or safe_str(txn.get("project_name")),
            unit_name=safe_str(get_value(e, "unit_name", "Unit name")),
            capacity_mw=parse_number(get_value(e, "capacity_mw", "Capacity (MW)")),
            country=safe_str(get_value(e, "country", "Country/Area", "Country")),
            latitude=lat,
            longitude=lng,
            transaction=txn,
        ))
    return out


@dataclass
class TransactionNode:
    key: str
    name: str
    latitude: float
    longitude: float
    country: str
    capacity_mw: float = 0.0
    plants: List[TransactionPlant] = field(default_factory=list, repr=False)
    transactions: List[Mapping[str, Any]] = field(default_factory=list, repr=False)


def group_transaction_nodes(transactions: Iterable[Mapping[str, Any]]) -> List[TransactionNode]:
    entries = [p for t in transactions for p in transaction_plants(t)]
    nodes: List[TransactionNode] = []
    dropped = 0

    def key_fn(p: TransactionPlant):
        nonlocal dropped
        if not p.has_coordinates or not p.name:
            dropped += 1
            return None
        return transaction_plant_key(p.name, p.latitude, p.longitude)

    for key, g in group_by(entries, key_fn).items():
        rep: TransactionPlant = g.representative
        node = TransactionNode(key=key, name=rep.name, latitude=rep.latitude, longitude=rep.longitude, country=rep.country)
        seen = set()
        for p in g.members:
            node.capacity_mw += p.capacity_mw
            node.plants.append(p)
            tid = p.transaction.get("id", id(p.transaction))
            if tid not in seen:
                seen.add(tid)
                node.transactions.append(p.transaction)
        nodes.append(node)

    if dropped:
        logger.info("%d transaction plant entries lack a name or coordinates and are not mapped", dropped)
    return nodes
