from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping

from db import RowStore
from normalize import EntityKind, get_value, normalize_rows
from parsing import safe_str

logger = logging.getLogger(__name__)

PROJECTS = "project_specific_data"
GLOBAL_PLANTS = "global_coal_plants"
PROJECT_LOGS = "project_logs"
IMPACT_TABLES = {"lifetime": "impact_results_lifetime", "annual": "impact_results_annual"}

OPERATIONAL_STATUSES = ["Operating", "Retired", "Mothballed", "Under Construction", "Planned"]
TRANSITION_TYPES = ["", "Refinance", "Policy-driven retirement", "Market-driven retirement", "Conversion", "Other"]
INFORMATION_STATUSES = [
    "We know of it, and have the information",
    "We know of it, but info owned by others",
    "Unknown",
]


@dataclass(frozen=True)
class ProjectField:
    key: str
    display_key: str
    label: str
    kind: str = "text"           # text / select / textarea
    options: tuple = ()


EDITABLE_FIELDS = (
    ProjectField("operational_status", "Operational Status", "Operational Status", "select", tuple(OPERATIONAL_STATUSES)),
    ProjectField("planned_retirement_year", "Planned retirement year", "Planned Retirement Year"),
    ProjectField("actual_retirement_year", "Actual retirement year", "Actual Retirement Year"),
    ProjectField("transition_type", "Transition type", "Transition Type", "select", tuple(TRANSITION_TYPES)),
    ProjectField("financial_mechanism", "Financial mechanism", "Financial Mechanism"),
    ProjectField("lenders_funders_involved", "Lender(s)/ Funder(s) involved", "Lenders/Funders Involved"),
    ProjectField("planned_post_retirement_status", "Planned post-retirement status", "Planned Post-Retirement Status", "textarea"),
    ProjectField("intelligence_on_transaction_status", "Intelligence on Transaction Status", "Transaction Intelligence", "textarea"),
    ProjectField("technical_assistance_provided_to_date", "Technical Assistance provided to date", "Technical Assistance", "textarea"),
    ProjectField("information_status", "Information Status", "Information Status", "select", tuple(INFORMATION_STATUSES)),
    ProjectField("information_owner", "Information Owner", "Information Owner"),
)

INFO_FIELDS = (
    ProjectField("plant_name", "Plant Name", "Plant Name"),
    ProjectField("unit_name", "Unit name", "Unit Name"),
    ProjectField("capacity_mw", "Capacity (MW)", "Capacity (MW)"),
    ProjectField("country", "Country", "Country"),
    ProjectField("location_coordinates", "Location (coordinates)", "Coordinates"),
    ProjectField("operator", "Operator", "Operator"),
    ProjectField("owner", "Owner", "Owner"),
    ProjectField("parent", "Parent", "Parent Company"),
    ProjectField("start_year", "Start year", "Start Year"),
    ProjectField("project_name", "Project Name", "Project Name"),
)

KEY_COLUMNS = ["No", "Plant Name", "Unit name", "Capacity (MW)", "Country", "Operational Status", "Start year",
               "Planned retirement year", "Transition type", "Financial mechanism"]


# =========================
# Last-good-value cache
# =========================
class DataCache:
    """A failed refresh keeps the previous value and re-raises."""

    def __init__(self):
        self._values: Dict[str, Any] = {}
        self.errors: Dict[str, Exception] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._values

    def refresh(self, key: str, loader: Callable[[], Any]) -> Any:
        try:
            value = loader()
        except Exception as e:
            self.errors[key] = e
            raise
        self._values[key] = value
        self.errors.pop(key, None)
        return value

    def invalidate(self, key: str) -> None:
        self._values.pop(key, None)


# =========================
# Loading
# =========================
def load_projects(store: RowStore) -> List[Dict[str, Any]]:
    return normalize_rows(EntityKind.PROJECT, store.select_all(PROJECTS))


def load_global_plants(store: RowStore) -> List[Dict[str, Any]]:
    return normalize_rows(EntityKind.GLOBAL_PLANT, store.select_all(GLOBAL_PLANTS))


def load_impact_results(store: RowStore, granularity: str = "lifetime") -> List[Dict[str, Any]]:
    if granularity not in IMPACT_TABLES:
        raise ValueError(f"granularity must be one of {list(IMPACT_TABLES)}")
    return normalize_rows(EntityKind.IMPACT_RESULT, store.select_all(IMPACT_TABLES[granularity]))


# =========================
# Change log
# =========================
@dataclass(frozen=True)
class ChangeLogEntry:
    project_id: Any
    plant_name: str
    field_label: str
    old_value: str = ""
    new_value: str = ""
    note: str = ""
    author: str = ""
    timestamp: str = ""

    def to_row(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "plant_name": self.plant_name,
            "field_changed": self.field_label,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "notes": self.note,
            "updated_by": self.author,
            "created_at": self.timestamp or datetime.utcnow().isoformat(),
        }


def project_value(project: Mapping[str, Any], f: ProjectField) -> str:
    return safe_str(get_value(project, f.key, f.display_key, default=""))


def diff_project(project: Mapping[str, Any], edited: Mapping[str, Any], author: str = "") -> List[ChangeLogEntry]:
    """One entry per editable field whose value changed."""
    plant = safe_str(get_value(project, "plant_name", "Plant Name", default=""))
    now = datetime.utcnow().isoformat()
    changes = []
    for f in EDITABLE_FIELDS:
        if f.key not in edited:
            continue
        old, new = project_value(project, f), safe_str(edited.get(f.key))
        if old != new:
            changes.append(ChangeLogEntry(project.get("id"), plant, f.label, old, new, author=author, timestamp=now))
    return changes


def save_project_edits(store: RowStore, project: Mapping[str, Any], edited: Mapping[str, Any], author: str) -> List[ChangeLogEntry]:
    """
    Write the edited fields and log each change in one transaction. Last write
    wins: concurrent edits are not detected. On failure neither the row nor the
    log is written and the caller keeps the form values.
    """
    changes = diff_project(project, edited, author)
    if not changes:
        return []
    patch = {f.key: safe_str(edited.get(f.key)) or None for f in EDITABLE_FIELDS if f.key in edited}
    with store.transaction() as tx:
        tx.update(PROJECTS, project["id"], patch)
        for c in changes:
            tx.insert(PROJECT_LOGS, c.to_row())
    logger.info("project %s: %d field(s) changed by %s", project["id"], len(changes), author)
    return changes


def add_project_note(store: RowStore, project: Mapping[str, Any], note: str, author: str) -> ChangeLogEntry:
    note = (note or "").strip()
    if not note:
        raise ValueError("Note cannot be empty.")
    entry = ChangeLogEntry(
        project_id=project["id"],
        plant_name=safe_str(get_value(project, "plant_name", "Plant Name", default="")),
        field_label="Note Added",
        note=note,
        author=author,
        timestamp=datetime.utcnow().isoformat(),
    )
    store.insert(PROJECT_LOGS, entry.to_row())
    return entry


def load_project_logs(store: RowStore, project_id: Any) -> List[Dict[str, Any]]:
    return store.select(PROJECT_LOGS, filters={"project_id": project_id}, order_by="id", descending=True)


def recent_changes(store: RowStore, limit: int = 20) -> List[Dict[str, Any]]:
    return store.select(PROJECT_LOGS, range=(0, limit - 1), order_by="id", descending=True)


# =========================
# Project creation
# =========================
def project_from_global_plant(plant: Mapping[str, Any]) -> Dict[str, Any]:
    """Pre-fill a new project from a (normalized or raw) global plant row."""
    lat = safe_str(get_value(plant, "latitude", "Latitude", default=""))
    lon = safe_str(get_value(plant, "longitude", "Longitude", default=""))
    owner = safe_str(get_value(plant, "owner", "Owner", default=""))
    return {
        "plant_name": safe_str(get_value(plant, "plant_name", "Plant name", default="")),
        "unit_name": safe_str(get_value(plant, "unit_name", "Unit name", default="")),
        "capacity_mw": safe_str(get_value(plant, "capacity_mw", "Capacity (MW)", default="")),
        "country": safe_str(get_value(plant, "country_area", "Country/Area", default="")),
        "location_coordinates": f"{lat}, {lon}" if lat and lon else "",
        "operator": owner,
        "owner": owner,
        "parent": safe_str(get_value(plant, "parent", "Parent", default="")),
        "start_year": safe_str(get_value(plant, "start_year", "Start year", default="")),
        "planned_retirement_year": safe_str(get_value(plant, "planned_retirement", "Planned retirement", default="")),
        "operational_status": safe_str(get_value(plant, "status", "Status", default="")) or "Operating",
        "project_name": "",
    }


def create_project(store: RowStore, form: Mapping[str, Any], author: str) -> Dict[str, Any]:
    if not safe_str(form.get("project_name")):
        raise ValueError("Please enter a Project Name.")
    if not safe_str(form.get("plant_name")):
        raise ValueError("A project needs a plant name.")
    allowed = {f.key for f in INFO_FIELDS} | {f.key for f in EDITABLE_FIELDS}
    row = {k: (safe_str(v) or None) for k, v in form.items() if k in allowed}
    row["created_by"] = author
    row["created_at"] = datetime.utcnow().isoformat()
    with store.transaction() as tx:
        created = tx.insert(PROJECTS, row)
        entry = ChangeLogEntry(
            project_id=created["id"],
            plant_name=safe_str(created.get("plant_name")),
            field_label="Project Created",
            new_value=safe_str(created.get("project_name")),
            author=author,
            timestamp=row["created_at"],
        )
        tx.insert(PROJECT_LOGS, entry.to_row())
    logger.info("project %s created by %s", created["id"], author)
    return created
