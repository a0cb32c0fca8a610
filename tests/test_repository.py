import pytest

import repository as repo
from db import FetchFailure


@pytest.fixture
def project(store):
    return store.insert(repo.PROJECTS, {
        "plant_name": "Alpha", "unit_name": "U1", "capacity_mw": "600", "country": "India",
        "operational_status": "Operating", "planned_retirement_year": "2040",
    })


class TestDataCache:
    def test_refresh_stores_value(self):
        cache = repo.DataCache()
        assert cache.refresh("k", lambda: [1, 2]) == [1, 2]
        assert cache.get("k") == [1, 2]

    def test_failed_refresh_keeps_previous_value(self):
        cache = repo.DataCache()
        cache.refresh("k", lambda: ["good"])

        def boom():
            raise FetchFailure("transactions", "select", RuntimeError("offline"))

        with pytest.raises(FetchFailure):
            cache.refresh("k", boom)
        assert cache.get("k") == ["good"]
        assert "k" in cache.errors

    def test_success_clears_error(self):
        cache = repo.DataCache()
        with pytest.raises(ZeroDivisionError):
            cache.refresh("k", lambda: 1 / 0)
        assert not cache.has("k")
        cache.refresh("k", lambda: 5)
        assert "k" not in cache.errors


class TestLoading:
    def test_projects_are_normalized(self, store, project):
        rows = repo.load_projects(store)
        assert rows[0]["Plant Name"] == "Alpha"
        assert rows[0]["No"] == project["id"]

    def test_impact_granularity(self, store):
        store.insert("impact_results_annual", {"unique_plant_name": "Alpha", "avoided_co2_mt": "1.5"})
        assert repo.load_impact_results(store, "lifetime") == []
        annual = repo.load_impact_results(store, "annual")
        assert annual[0]["Avoided CO2 emissions (Mt)"] == "1.5"
        with pytest.raises(ValueError):
            repo.load_impact_results(store, "weekly")


class TestChangeLog:
    def test_one_entry_per_changed_field(self, store, project):
        edited = {
            "operational_status": "Retired",
            "planned_retirement_year": "2040",
            "transition_type": "Refinance",
        }
        changes = repo.save_project_edits(store, project, edited, "Ana Lim")
        assert [c.field_label for c in changes] == ["Operational Status", "Transition Type"]
        assert changes[0].old_value == "Operating" and changes[0].new_value == "Retired"

        logs = repo.load_project_logs(store, project["id"])
        assert [l["field_changed"] for l in logs] == ["Transition Type", "Operational Status"]
        assert all(l["updated_by"] == "Ana Lim" for l in logs)

        saved = store.select(repo.PROJECTS, filters={"id": project["id"]})[0]
        assert saved["operational_status"] == "Retired"
        assert saved["transition_type"] == "Refinance"

    def test_no_changes_writes_nothing(self, store, project):
        assert repo.save_project_edits(store, project, {"operational_status": "Operating"}, "x") == []
        assert repo.load_project_logs(store, project["id"]) == []

    def test_failed_update_logs_nothing(self, broken_store, project):
        with pytest.raises(FetchFailure):
            repo.save_project_edits(broken_store, project, {"operational_status": "Retired"}, "x")

    def test_failed_log_write_rolls_back_edit(self, store, project, hide_table):
        restore = hide_table(repo.PROJECT_LOGS)
        with pytest.raises(FetchFailure):
            repo.save_project_edits(store, project, {"transition_type": "Refinance"}, "Ana")
        restore()

        saved = store.select(repo.PROJECTS, filters={"id": project["id"]})[0]
        assert saved["transition_type"] is None
        assert repo.load_project_logs(store, project["id"]) == []

        # the retry still sees the change and logs it
        changes = repo.save_project_edits(store, project, {"transition_type": "Refinance"}, "Ana")
        assert [c.field_label for c in changes] == ["Transition Type"]
        logs = repo.load_project_logs(store, project["id"])
        assert [l["field_changed"] for l in logs] == ["Transition Type"]

    def test_notes(self, store, project):
        repo.add_project_note(store, project, "  Called the owner  ", "Ana")
        logs = repo.load_project_logs(store, project["id"])
        assert logs[0]["field_changed"] == "Note Added"
        assert logs[0]["notes"] == "Called the owner"
        with pytest.raises(ValueError):
            repo.add_project_note(store, project, "   ", "Ana")

    def test_recent_changes_newest_first(self, store, project):
        for i in range(5):
            repo.add_project_note(store, project, f"n{i}", "Ana")
        recent = repo.recent_changes(store, limit=3)
        assert [r["notes"] for r in recent] == ["n4", "n3", "n2"]


class TestCreateProject:
    GLOBAL = {
        "plant_name": "Beta", "unit_name": "B1", "capacity_mw": "350", "country_area": "Chile",
        "latitude": "-33.4", "longitude": "-70.6", "owner": "Enel", "parent": "Enel SpA",
        "start_year": "1998", "planned_retirement": "2030", "status": "",
    }

    def test_prefill(self):
        form = repo.project_from_global_plant(self.GLOBAL)
        assert form["country"] == "Chile"
        assert form["location_coordinates"] == "-33.4, -70.6"
        assert form["operator"] == form["owner"] == "Enel"
        assert form["operational_status"] == "Operating"
        assert form["project_name"] == ""

    def test_requires_project_name(self, store):
        with pytest.raises(ValueError):
            repo.create_project(store, repo.project_from_global_plant(self.GLOBAL), "Ana")

    def test_creates_row_and_log(self, store):
        form = repo.project_from_global_plant(self.GLOBAL)
        form["project_name"] = "Beta early retirement"
        created = repo.create_project(store, form, "Ana")
        assert created["created_by"] == "Ana"
        assert created["location_coordinates"] == "-33.4, -70.6"
        logs = repo.load_project_logs(store, created["id"])
        assert [l["field_changed"] for l in logs] == ["Project Created"]
        assert logs[0]["new_value"] == "Beta early retirement"

    def test_failed_log_write_creates_nothing(self, store, hide_table):
        form = repo.project_from_global_plant(self.GLOBAL)
        form["project_name"] = "Beta early retirement"
        hide_table(repo.PROJECT_LOGS)
        with pytest.raises(FetchFailure):
            repo.create_project(store, form, "Ana")
        assert store.select(repo.PROJECTS) == []
