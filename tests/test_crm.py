import json

import pytest

import crm
from db import FetchFailure


def txn(**kw):
    base = {"plant_name": "Alpha", "transaction_stage": "screening", "transaction_status": "green"}
    base.update(kw)
    return base


class TestValidation:
    def test_valid(self):
        crm.validate_transaction(txn(transaction_confidence_rating=100))

    @pytest.mark.parametrize("bad", [
        {"transaction_confidence_rating": 101},
        {"transaction_confidence_rating": -1},
        {"transaction_stage": "dreaming"},
        {"transaction_status": "purple"},
        {"plant_name": ""},
    ])
    def test_invalid(self, bad):
        with pytest.raises(ValueError):
            crm.validate_transaction(txn(**bad))

    def test_eight_stages(self):
        assert len(crm.STAGES) == 8
        assert crm.STAGE_IDS[0] == "ideation" and crm.STAGE_IDS[-1] == "closed"


class TestNextSteps:
    def test_round_trip_and_edits(self):
        steps = crm.add_next_step([], "Call ministry")
        steps = crm.add_next_step(steps, "  ")
        steps = crm.add_next_step(steps, "Draft term sheet")
        steps = crm.toggle_next_step(steps, 0)
        stored = crm.dump_next_steps(steps)
        assert json.loads(stored) == [
            {"text": "Call ministry", "completed": True},
            {"text": "Draft term sheet", "completed": False},
        ]
        steps = crm.remove_next_step(crm.parse_next_steps(stored), 0)
        assert [s.text for s in steps] == ["Draft term sheet"]

    @pytest.mark.parametrize("raw", [None, "", "not json", '{"text": "x"}'])
    def test_malformed_loads_empty(self, raw):
        assert crm.parse_next_steps(raw) == []


class TestPipelineViews:
    @pytest.fixture
    def pipeline(self):
        return [
            txn(id=1, country="India", capacity_mw="600", estimated_deal_size=100.0, transaction_confidence_rating=80,
                engagement_status="in_delivery", priority="high", funded_delivery_partners='["RMI", "ADB"]'),
            txn(id=2, plant_name="Beta", country="Chile", capacity_mw=400, estimated_deal_size=50.0, transaction_confidence_rating=40,
                transaction_status="red", engagement_status="no_engagement", notes="needs owner buy-in"),
            txn(id=3, plant_name="Gamma", transaction_stage="closed"),
            txn(id=4, plant_name="Delta", transaction_stage="transaction_complete"),
        ]

    def test_inactive_stages_excluded(self, pipeline):
        assert [t["id"] for t in crm.filter_pipeline(pipeline)] == [1, 2]

    def test_filters(self, pipeline):
        assert [t["id"] for t in crm.filter_pipeline(pipeline, crm.PipelineFilter(search="OWNER"))] == [2]
        assert [t["id"] for t in crm.filter_pipeline(pipeline, crm.PipelineFilter(partner="ADB"))] == [1]
        assert [t["id"] for t in crm.filter_pipeline(pipeline, crm.PipelineFilter(rag="red"))] == [2]
        assert crm.filter_pipeline(pipeline, crm.PipelineFilter(country="India", priority="low")) == []

    def test_grouping(self, pipeline):
        active = crm.filter_pipeline(pipeline)
        by_stage = crm.group_by_stage(active)
        assert list(by_stage) == crm.STAGE_IDS
        assert [t["id"] for t in by_stage["screening"]] == [1, 2]
        by_eng = crm.group_by_engagement(active)
        assert [t["id"] for t in by_eng["in_delivery"]] == [1]
        assert by_eng["completed"] == []

    def test_summary(self, pipeline):
        s = crm.pipeline_summary(crm.filter_pipeline(pipeline))
        assert s.total == 2
        assert s.total_deal_size == 150.0
        assert s.total_capacity_mw == 1000.0
        assert s.avg_confidence == 60.0
        assert (s.green, s.amber, s.red) == (1, 0, 1)
        assert s.in_delivery == 1
        assert s.countries == 2

    def test_empty_summary(self):
        assert crm.pipeline_summary([]).avg_confidence == 0.0

    def test_countries_from_plants(self):
        plants = [{"country": "India"}, {"country": "Nepal"}, {"country": "India"}]
        assert crm.transaction_countries({"plants": json.dumps(plants), "country": "X"}) == "India, Nepal"
        assert crm.transaction_countries({"country": "Chile"}) == "Chile"


class TestPersistence:
    def test_create_stamps_author(self, store):
        created = crm.create_transaction(store, txn(funded_delivery_partners=["RMI"], capacity_mw="1,200"), "Ana")
        assert created["created_by"] == "Ana"
        assert created["updated_at"]
        assert created["capacity_mw"] == 1200.0
        assert json.loads(created["funded_delivery_partners"]) == ["RMI"]

    def test_create_rejects_invalid(self, store):
        with pytest.raises(ValueError):
            crm.create_transaction(store, txn(transaction_confidence_rating=150), "Ana")
        assert store.select(crm.TRANSACTIONS) == []

    def test_stage_change_adds_activity(self, store):
        created = crm.create_transaction(store, txn(), "Ana")
        edited = dict(created, transaction_stage="full_feasibility",
                      transaction_next_steps=[crm.NextStep("Site visit")])
        saved = crm.save_transaction(store, created, edited, "Ben")
        assert saved["transaction_stage"] == "full_feasibility"
        acts = crm.load_activities(store, created["id"])
        assert [a["type"] for a in acts] == ["stage_change"]
        assert acts[0]["author"] == "Ben"
        row = store.select(crm.TRANSACTIONS, filters={"id": created["id"]})[0]
        assert crm.parse_next_steps(row["transaction_next_steps"])[0].text == "Site visit"
        assert row["created_by"] == "Ana"

    def test_failed_activity_rolls_back_stage_change(self, store, hide_table):
        created = crm.create_transaction(store, txn(), "Ana")
        restore = hide_table(crm.ACTIVITIES)
        with pytest.raises(FetchFailure):
            crm.save_transaction(store, created, dict(created, transaction_stage="closing"), "Ben")
        restore()
        row = store.select(crm.TRANSACTIONS, filters={"id": created["id"]})[0]
        assert row["transaction_stage"] == "screening"
        assert crm.load_activities(store, created["id"]) == []

    def test_same_stage_adds_no_activity(self, store):
        created = crm.create_transaction(store, txn(), "Ana")
        crm.save_transaction(store, created, dict(created, notes="updated"), "Ben")
        assert crm.load_activities(store, created["id"]) == []

    def test_activities_newest_first(self, store):
        created = crm.create_transaction(store, txn(), "Ana")
        crm.add_activity(store, created["id"], "call", "Intro call")
        crm.add_activity(store, created["id"], "email", "Follow-up")
        assert [a["title"] for a in crm.load_activities(store, created["id"])] == ["Follow-up", "Intro call"]
        with pytest.raises(ValueError):
            crm.add_activity(store, created["id"], "fax", "Nope")

    def test_engagement_move_and_delete(self, store):
        created = crm.create_transaction(store, txn(engagement_status="no_engagement"), "Ana")
        moved = crm.set_engagement(store, created, "in_delivery")
        assert moved["engagement_status"] == "in_delivery"
        assert crm.set_engagement(store, moved, "in_delivery") is None
        crm.delete_transaction(store, created["id"])
        assert crm.load_transactions(store) == []
