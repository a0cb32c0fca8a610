from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from db import RowStore
from grouping import load_plants_field
from parsing import parse_number, parse_optional_number, safe_str

logger = logging.getLogger(__name__)

TRANSACTIONS = "transactions"
ACTIVITIES = "transaction_activities"

# (id, label) in pipeline order
STAGES = [
    ("ideation", "Ideation"),
    ("screening", "Screening"),
    ("pre_feasibility", "Pre-Feasibility"),
    ("full_feasibility", "Full Feasibility"),
    ("deal_structuring", "Deal Structuring"),
    ("closing", "Closing"),
    ("transaction_complete", "Transaction Complete"),
    ("closed", "Closed"),
]
STAGE_IDS = [s for s, _ in STAGES]
STAGE_LABELS = dict(STAGES)
INACTIVE_STAGES = {"closed", "transaction_complete"}

ENGAGEMENT_STATUSES = [
    ("no_engagement", "No Engagement"),
    ("concept_proposal", "Concept/Proposal Development"),
    ("in_delivery", "In Delivery"),
    ("completed", "Completed"),
]
ENGAGEMENT_IDS = [e for e, _ in ENGAGEMENT_STATUSES]

RAG_STATUSES = ["green", "amber", "red", "closed"]

PRIORITY_LEVELS = [("critical", "Critical"), ("high", "High"), ("medium", "Medium"), ("low", "Low")]

DELIVERY_PARTNERS = ["CSV", "RMI", "CT", "CCSF", "World Bank", "ADB", "IADB", "IFC", "EBRD", "CIF", "GCF", "AFC"]

ACTIVITY_TYPES = ["note", "email", "meeting", "call", "task", "stage_change"]

NUMERIC_FIELDS = (
    "capacity_mw", "start_year", "original_end_of_life_year", "lifetime_co2_tonnes",
    "planned_retirement_year", "actual_retirement_year", "transaction_confidence_rating",
    "estimated_deal_size",
)


# =========================
# Validation
# =========================
def validate_transaction(txn: Mapping[str, Any]) -> None:
    if not safe_str(txn.get("plant_name")):
        raise ValueError("Plant name is required.")
    stage = safe_str(txn.get("transaction_stage"))
    if stage and stage not in STAGE_IDS:
        raise ValueError(f"Unknown stage {stage!r}.")
    rag = safe_str(txn.get("transaction_status"))
    if rag and rag not in RAG_STATUSES:
        raise ValueError(f"Unknown RAG status {rag!r}.")
    conf = parse_optional_number(txn.get("transaction_confidence_rating"))
    if conf is not None and not 0 <= conf <= 100:
        raise ValueError("Confidence rating must be between 0 and 100.")


# =========================
# Next steps
# =========================
@dataclass
class NextStep:
    text: str
    completed: bool = False


def parse_next_steps(value: Any) -> List[NextStep]:
    raw = safe_str(value)
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("malformed next steps JSON: %r", raw[:80])
        return []
    if not isinstance(data, list):
        return []
    return [NextStep(safe_str(d.get("text")), bool(d.get("completed"))) for d in data if isinstance(d, dict)]


def dump_next_steps(steps: Iterable[NextStep]) -> str:
    return json.dumps([{"text": s.text, "completed": s.completed} for s in steps])


def add_next_step(steps: List[NextStep], text: str) -> List[NextStep]:
    text = (text or "").strip()
    if not text:
        return list(steps)
    return list(steps) + [NextStep(text)]


def toggle_next_step(steps: List[NextStep], index: int) -> List[NextStep]:
    return [NextStep(s.text, not s.completed) if i == index else s for i, s in enumerate(steps)]


def remove_next_step(steps: List[NextStep], index: int) -> List[NextStep]:
    return [s for i, s in enumerate(steps) if i != index]


# =========================
# Pipeline views
# =========================
def partners_of(txn: Mapping[str, Any]) -> List[str]:
    value = txn.get("funded_delivery_partners")
    if isinstance(value, list):
        return [safe_str(p) for p in value]
    raw = safe_str(value)
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        return [p.strip() for p in raw.split(",") if p.strip()]
    return [safe_str(p) for p in data] if isinstance(data, list) else []


def transaction_countries(txn: Mapping[str, Any]) -> str:
    """Comma-joined distinct countries of the associated plants, in first-seen order."""
    names: List[str] = []
    for p in load_plants_field(txn.get("plants")):
        c = safe_str(p.get("country") or p.get("Country/Area"))
        if c and c not in names:
            names.append(c)
    return ", ".join(names) or safe_str(txn.get("country"))


def is_active(txn: Mapping[str, Any]) -> bool:
    return safe_str(txn.get("transaction_stage")) not in INACTIVE_STAGES


@dataclass(frozen=True)
class PipelineFilter:
    search: str = ""
    country: str = ""
    rag: str = ""
    partner: str = ""
    engagement: str = ""
    priority: str = ""


def filter_pipeline(transactions: Iterable[Mapping[str, Any]], f: PipelineFilter = PipelineFilter()) -> List[Mapping[str, Any]]:
    term = f.search.strip().lower()
    out = []
    for t in transactions:
        if not is_active(t):
            continue
        if term and not any(term in safe_str(t.get(k)).lower() for k in ("plant_name", "project_name", "owner", "notes")):
            continue
        if f.country and safe_str(t.get("country")) != f.country:
            continue
        if f.rag and safe_str(t.get("transaction_status")) != f.rag:
            continue
        if f.partner and f.partner not in partners_of(t):
            continue
        if f.engagement and safe_str(t.get("engagement_status")) != f.engagement:
            continue
        if f.priority and safe_str(t.get("priority")) != f.priority:
            continue
        out.append(t)
    return out


def group_by_stage(transactions: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    grouped: Dict[str, List[Mapping[str, Any]]] = {s: [] for s in STAGE_IDS}
    for t in transactions:
        stage = safe_str(t.get("transaction_stage"))
        if stage in grouped:
            grouped[stage].append(t)
    return grouped


def group_by_engagement(transactions: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    grouped: Dict[str, List[Mapping[str, Any]]] = {e: [] for e in ENGAGEMENT_IDS}
    for t in transactions:
        eng = safe_str(t.get("engagement_status"))
        if eng in grouped:
            grouped[eng].append(t)
    return grouped


@dataclass(frozen=True)
class PipelineSummary:
    total: int
    total_deal_size: float
    total_capacity_mw: float
    avg_confidence: float
    green: int
    amber: int
    red: int
    in_delivery: int
    countries: int


def pipeline_summary(transactions: Iterable[Mapping[str, Any]]) -> PipelineSummary:
    rows = list(transactions)
    total = len(rows)
    rag = [safe_str(t.get("transaction_status")) for t in rows]
    conf = sum(parse_number(t.get("transaction_confidence_rating")) for t in rows)
    return PipelineSummary(
        total=total,
        total_deal_size=sum(parse_number(t.get("estimated_deal_size")) for t in rows),
        total_capacity_mw=sum(parse_number(t.get("capacity_mw")) for t in rows),
        avg_confidence=conf / total if total else 0.0,
        green=rag.count("green"),
        amber=rag.count("amber"),
        red=rag.count("red"),
        in_delivery=sum(1 for t in rows if safe_str(t.get("engagement_status")) == "in_delivery"),
        countries=len({safe_str(t.get("country")) for t in rows if safe_str(t.get("country"))}),
    )


# =========================
# Persistence
# =========================
def _to_row(txn: Mapping[str, Any]) -> Dict[str, Any]:
    row = dict(txn)
    for k in NUMERIC_FIELDS:
        if k in row:
            row[k] = parse_optional_number(row[k])
    if isinstance(row.get("funded_delivery_partners"), list):
        row["funded_delivery_partners"] = json.dumps(row["funded_delivery_partners"])
    if isinstance(row.get("plants"), list):
        row["plants"] = json.dumps(row["plants"])
    steps = row.get("transaction_next_steps")
    if isinstance(steps, list):
        row["transaction_next_steps"] = dump_next_steps(steps)
    return row


def load_transactions(store: RowStore) -> List[Dict[str, Any]]:
    rows = store.select_all(TRANSACTIONS)
    # most recently touched first
    rows.sort(key=lambda t: safe_str(t.get("updated_at")), reverse=True)
    return rows


def add_activity(store: RowStore, transaction_id: Any, type: str, title: str, description: str = "", author: str = "") -> Dict[str, Any]:
    if type not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown activity type {type!r}.")
    if not (title or "").strip():
        raise ValueError("Activity title is required.")
    return store.insert(ACTIVITIES, {
        "transaction_id": transaction_id,
        "type": type,
        "title": title.strip(),
        "description": description,
        "author": author,
        "created_at": datetime.utcnow().isoformat(),
    })


def load_activities(store: RowStore, transaction_id: Any) -> List[Dict[str, Any]]:
    return store.select(ACTIVITIES, filters={"transaction_id": transaction_id}, order_by="id", descending=True)


def create_transaction(store: RowStore, txn: Mapping[str, Any], author: str) -> Dict[str, Any]:
    validate_transaction(txn)
    row = _to_row({k: v for k, v in txn.items() if k != "id"})
    now = datetime.utcnow().isoformat()
    row.setdefault("transaction_stage", "ideation")
    row["created_by"] = author
    row["created_at"] = now
    row["updated_at"] = now
    created = store.insert(TRANSACTIONS, row)
    logger.info("transaction %s created by %s", created["id"], author)
    return created


def save_transaction(store: RowStore, previous: Mapping[str, Any], txn: Mapping[str, Any], author: str) -> Dict[str, Any]:
    """
    Update an existing transaction; a stage change is recorded as an activity
    in the same database transaction.
    """
    validate_transaction(txn)
    row = _to_row(txn)
    row.pop("created_by", None)
    row.pop("created_at", None)
    row["updated_at"] = datetime.utcnow().isoformat()
    old_stage = safe_str(previous.get("transaction_stage"))
    new_stage = safe_str(row.get("transaction_stage", old_stage))
    with store.transaction() as tx:
        tx.update(TRANSACTIONS, previous["id"], row)
        if new_stage != old_stage:
            add_activity(
                tx, previous["id"], "stage_change",
                f"Stage changed to {STAGE_LABELS.get(new_stage, new_stage)}",
                f"{STAGE_LABELS.get(old_stage, old_stage or 'none')} -> {STAGE_LABELS.get(new_stage, new_stage)}",
                author,
            )
    merged = dict(previous)
    merged.update(row)
    return merged


def delete_transaction(store: RowStore, transaction_id: Any) -> None:
    store.delete(TRANSACTIONS, transaction_id)
    logger.info("transaction %s deleted", transaction_id)


def set_engagement(store: RowStore, txn: Mapping[str, Any], engagement: str) -> Optional[Dict[str, Any]]:
    if engagement not in ENGAGEMENT_IDS:
        raise ValueError(f"Unknown engagement status {engagement!r}.")
    if safe_str(txn.get("engagement_status")) == engagement:
        return None
    now = datetime.utcnow().isoformat()
    store.update(TRANSACTIONS, txn["id"], {"engagement_status": engagement, "updated_at": now})
    merged = dict(txn)
    merged.update(engagement_status=engagement, updated_at=now)
    return merged
