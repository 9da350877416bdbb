import os
from datetime import date

import pytest
from dateutil.relativedelta import relativedelta
from fastapi.testclient import TestClient

# Ensure we default to memory backend for tests to avoid filesystem dependencies
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from habits_api.errors import StoreError  # noqa: E402
from habits_api.main import app  # noqa: E402
from habits_api.repositories import InMemoryStore, reset_store  # noqa: E402

client = TestClient(app)

USER = "alice"
TODOS = f"/api/v1/users/{USER}/todos"
RECURRENCES = f"/api/v1/users/{USER}/recurrences"
BASE = f"/api/v1/users/{USER}"


@pytest.fixture(autouse=True)
def fresh_store():
    # Every test starts from an empty in-memory store.
    reset_store(InMemoryStore())
    yield
    reset_store()


def create_todo_payload(name="Test Task", day="2099-01-02"):
    return {"name": name, "date": day}


def create_recurrence_payload(name="Stretch", rrule="FREQ=DAILY", starts_on="2099-01-01"):
    payload = {"name": name, "starts_on": starts_on}
    if rrule is not None:
        payload["rrule"] = rrule
    return payload


def assert_todo_shape(todo: dict):
    for key in ["id", "name", "date", "completed", "is_recurring", "recurrence_id", "created_at", "edited_at"]:
        assert key in todo
    assert isinstance(todo["id"], str)
    assert isinstance(todo["completed"], bool)
    date.fromisoformat(todo["date"])


class TestHealth:
    def test_health_check(self):
        res = client.get("/")
        assert res.status_code == 200
        data = res.json()
        assert data["message"] == "Healthy"
        assert data["backend"] in ("memory", "sqlite")

    def test_client_config(self):
        res = client.get("/api/v1/config")
        assert res.status_code == 200
        data = res.json()
        today = date.today()
        assert data["today"] == today.isoformat()
        months = data["navigation_months_ahead"]
        assert months >= 0
        expected = (today.replace(day=1) + relativedelta(months=months)).isoformat()
        assert data["last_navigable_month"] == expected


class TestTodosCRUD:
    def test_create_todo(self):
        res = client.post(TODOS, json=create_todo_payload(name="Buy milk"))
        assert res.status_code == 201
        todo = res.json()
        assert_todo_shape(todo)
        assert todo["name"] == "Buy milk"
        assert todo["completed"] is False
        assert todo["is_recurring"] is False
        assert todo["recurrence_id"] is None

    def test_create_todo_in_the_past_is_rejected(self):
        res = client.post(TODOS, json=create_todo_payload(day="2000-01-01"))
        assert res.status_code == 422
        body = res.json()
        assert body["error"] == "ValidationError"
        assert body["message"] == "Request validation failed"
        assert isinstance(body["detail"], list) and body["detail"]

    def test_create_todo_blank_name_is_rejected(self):
        res = client.post(TODOS, json=create_todo_payload(name="   "))
        assert res.status_code == 422

    def test_get_todo_and_not_found(self):
        tid = client.post(TODOS, json=create_todo_payload(name="Read book")).json()["id"]

        res_get = client.get(f"{TODOS}/{tid}")
        assert res_get.status_code == 200
        assert res_get.json()["name"] == "Read book"

        res_404 = client.get(f"{TODOS}/does-not-exist")
        assert res_404.status_code == 404
        assert res_404.json()["detail"] == "Todo not found"

    def test_todos_are_scoped_per_user(self):
        tid = client.post(TODOS, json=create_todo_payload()).json()["id"]
        res = client.get(f"/api/v1/users/bob/todos/{tid}")
        assert res.status_code == 404

    def test_patch_completed(self):
        tid = client.post(TODOS, json=create_todo_payload()).json()["id"]
        res = client.patch(f"{TODOS}/{tid}", json={"completed": True})
        assert res.status_code == 200
        patched = res.json()
        assert patched["completed"] is True
        assert patched["edited_at"] is not None

    def test_patch_name_and_date(self):
        tid = client.post(TODOS, json=create_todo_payload(name="Partial")).json()["id"]
        res = client.patch(f"{TODOS}/{tid}", json={"name": "Partial Updated", "date": "2099-02-01"})
        assert res.status_code == 200
        patched = res.json()
        assert patched["name"] == "Partial Updated"
        assert patched["date"] == "2099-02-01"
        assert patched["completed"] is False

        res_nf = client.patch(f"{TODOS}/123456", json={"name": "Nope"})
        assert res_nf.status_code == 404
        assert res_nf.json()["detail"] == "Todo not found"

    def test_delete_todo(self):
        tid = client.post(TODOS, json=create_todo_payload(name="ToDelete")).json()["id"]

        res_del = client.delete(f"{TODOS}/{tid}")
        assert res_del.status_code == 204
        assert res_del.text == ""

        assert client.get(f"{TODOS}/{tid}").status_code == 404
        res_del_again = client.delete(f"{TODOS}/{tid}")
        assert res_del_again.status_code == 404
        assert res_del_again.json()["detail"] == "Todo not found"


class TestListTodos:
    def test_list_by_day_and_range(self):
        client.post(TODOS, json=create_todo_payload(name="a", day="2099-01-02"))
        client.post(TODOS, json=create_todo_payload(name="b", day="2099-01-03"))
        client.post(TODOS, json=create_todo_payload(name="c", day="2099-01-05"))

        day = client.get(TODOS, params={"start": "2099-01-03"})
        assert day.status_code == 200
        assert [t["name"] for t in day.json()] == ["b"]

        ranged = client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-04"})
        assert [t["name"] for t in ranged.json()] == ["a", "b"]

    def test_list_materializes_recurring(self):
        client.post(RECURRENCES, json=create_recurrence_payload())
        res = client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-07"})
        assert res.status_code == 200
        todos = res.json()
        assert len(todos) == 7
        assert all(t["is_recurring"] for t in todos)

        no_refresh = client.get(TODOS, params={"start": "2099-01-08", "refresh": "false"})
        assert no_refresh.json() == []

    def test_invalid_query_params(self):
        assert client.get(TODOS, params={"start": "01/02/2099"}).status_code == 400
        res = client.get(TODOS, params={"start": "2099-01-05", "end": "2099-01-01"})
        assert res.status_code == 400
        assert res.json()["detail"] == "end must not be before start"
        missing = client.get(TODOS)
        assert missing.status_code == 422
        assert missing.json()["error"] == "ValidationError"

    def test_store_failure_is_503(self):
        class BrokenStore(InMemoryStore):
            async def query_instances(self, user_id, query=None):
                raise StoreError("load", "simulated outage")

        reset_store(BrokenStore())
        res = client.get(TODOS, params={"start": "2099-01-01"})
        assert res.status_code == 503
        body = res.json()
        assert body["error"] == "StoreError"
        assert body["message"] == "Failed to load todos"


class TestRecurrences:
    def test_create_with_rule_materializes_first_day(self):
        res = client.post(RECURRENCES, json=create_recurrence_payload())
        assert res.status_code == 201
        pattern = res.json()
        assert pattern["rrule"] == "FREQ=DAILY"
        assert pattern["starts_on"] == "2099-01-01"

        todos = client.get(TODOS, params={"start": "2099-01-01", "refresh": "false"}).json()
        assert [t["id"] for t in todos] == [f"{pattern['id']}_2099-01-01"]
        assert todos[0]["recurrence_id"] == pattern["id"]

    def test_create_with_form(self):
        payload = {
            "name": "Gym",
            "form": {"frequency": "WEEKLY", "weekdays": ["WE", "MO"]},
            "starts_on": "2099-01-01",
        }
        res = client.post(RECURRENCES, json=payload)
        assert res.status_code == 201
        assert res.json()["rrule"] == "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE"

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "Gym", "rrule": "FREQ=WEEKLY", "starts_on": "2099-01-01"},
            {"name": "Gym", "rrule": "FREQ=SOMETIMES"},
            {"name": "Gym"},
            {"name": "Gym", "rrule": "FREQ=DAILY", "form": {"frequency": "DAILY"}},
            {"name": "Gym", "rrule": "FREQ=DAILY", "starts_on": "2000-01-01"},
            {"name": "Gym", "form": {"frequency": "MONTHLY"}},
        ],
    )
    def test_invalid_recurrences(self, payload):
        res = client.post(RECURRENCES, json=payload)
        assert res.status_code == 422
        assert res.json()["error"] == "ValidationError"

    def test_list_get_and_not_found(self):
        first = client.post(RECURRENCES, json=create_recurrence_payload(name="First")).json()
        second = client.post(RECURRENCES, json=create_recurrence_payload(name="Second")).json()

        listed = client.get(RECURRENCES).json()
        assert {p["id"] for p in listed} == {first["id"], second["id"]}

        assert client.get(f"{RECURRENCES}/{first['id']}").json()["name"] == "First"
        res_404 = client.get(f"{RECURRENCES}/nope")
        assert res_404.status_code == 404
        assert res_404.json()["detail"] == "Recurrence not found"

    def test_edit_series_renames_future_instances(self):
        pattern = client.post(RECURRENCES, json=create_recurrence_payload()).json()
        client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-03"})

        res = client.patch(f"{RECURRENCES}/{pattern['id']}", json={"name": "Yoga", "from_date": "2099-01-02"})
        assert res.status_code == 200
        assert res.json()["name"] == "Yoga"

        todos = client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-03", "refresh": "false"}).json()
        assert [t["name"] for t in todos] == ["Stretch", "Yoga", "Yoga"]

    def test_edit_series_not_found(self):
        res = client.patch(f"{RECURRENCES}/nope", json={"name": "Yoga"})
        assert res.status_code == 404

    def test_delete_with_instances(self):
        pattern = client.post(RECURRENCES, json=create_recurrence_payload()).json()
        client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-03"})

        res = client.delete(f"{RECURRENCES}/{pattern['id']}", params={"delete_instances": "true"})
        assert res.status_code == 204
        assert client.get(f"{RECURRENCES}/{pattern['id']}").status_code == 404
        todos = client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-03"}).json()
        assert todos == []

        assert client.delete(f"{RECURRENCES}/{pattern['id']}").status_code == 404


class TestMaintenance:
    def test_refresh(self):
        client.post(RECURRENCES, json=create_recurrence_payload(name="Read"))
        res = client.post(f"{BASE}/refresh", json={"start": "2099-01-01", "end": "2099-01-10"})
        assert res.status_code == 200
        data = res.json()
        # The first day already exists from creation.
        assert data["created"] == 9
        assert data["patterns"][0]["name"] == "Read"

    def test_refresh_rejects_inverted_window(self):
        res = client.post(f"{BASE}/refresh", json={"start": "2099-01-10", "end": "2099-01-01"})
        assert res.status_code == 422

    def test_orphans_and_fix(self):
        pattern = client.post(RECURRENCES, json=create_recurrence_payload()).json()
        client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-04"})
        client.delete(f"{RECURRENCES}/{pattern['id']}")

        report = client.get(f"{BASE}/orphans").json()
        assert report["orphan_count"] == 4
        assert report["total_recurring"] == 4
        assert report["valid_pattern_count"] == 0
        assert report["groups"][0]["recurrence_id"] == pattern["id"]
        assert report["groups"][0]["count"] == 4

        fixed = client.post(f"{BASE}/orphans/fix", json={"action": "mark-non-recurring"})
        assert fixed.status_code == 200
        assert fixed.json() == {"action": "mark-non-recurring", "affected": 4}

        assert client.get(f"{BASE}/orphans").json()["orphan_count"] == 0
        todos = client.get(TODOS, params={"start": "2099-01-01", "end": "2099-01-04"}).json()
        assert len(todos) == 4
        assert not any(t["is_recurring"] for t in todos)

    def test_fix_rejects_unknown_action(self):
        res = client.post(f"{BASE}/orphans/fix", json={"action": "ignore"})
        assert res.status_code == 422

    def test_daily_stats(self):
        tid = client.post(TODOS, json=create_todo_payload(name="a", day="2099-01-02")).json()["id"]
        client.post(TODOS, json=create_todo_payload(name="b", day="2099-01-02"))
        client.patch(f"{TODOS}/{tid}", json={"completed": True})

        res = client.get(f"{BASE}/stats/daily", params={"start": "2099-01-01", "end": "2099-01-31"})
        assert res.status_code == 200
        assert res.json() == [{"date": "2099-01-02", "total": 2, "completed": 1}]

    def test_stats_window_validation(self):
        res = client.get(f"{BASE}/stats/daily", params={"start": "2099-01-31", "end": "2099-01-01"})
        assert res.status_code == 422
        assert res.json()["error"] == "ValidationError"
        res = client.get(f"{BASE}/stats/recurring", params={"start": "bad", "end": "2099-01-01"})
        assert res.status_code == 422

    def test_recurring_stats_future_window_is_empty(self):
        client.post(RECURRENCES, json=create_recurrence_payload())
        res = client.get(f"{BASE}/stats/recurring", params={"start": "2099-01-01", "end": "2099-01-31"})
        assert res.status_code == 200
        assert res.json() == []
