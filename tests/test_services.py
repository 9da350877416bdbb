from datetime import date, timedelta

import pytest

from habits_api.errors import BatchCommitError, NotFoundError
from habits_api.materializer import instance_id_for
from habits_api.repositories import InstanceQuery
from habits_api.services import TodoService

USER = "user-1"


@pytest.fixture
def service(store):
    return TodoService(store)


async def _daily_series(service, name="Read", starts_on="2099-01-01", until="2099-01-05"):
    pattern = await service.add_recurring_todo(USER, name, "FREQ=DAILY", starts_on=starts_on)
    await service.list_todos(USER, starts_on, until)
    return pattern


class TestAddTodos:
    @pytest.mark.asyncio
    async def test_add_todo(self, service):
        todo = await service.add_todo(USER, "Buy milk", "2099-01-02")
        assert todo["date"] == "2099-01-02"
        assert todo["is_recurring"] is False
        assert (await service.get_todo(USER, todo["id"]))["name"] == "Buy milk"

    @pytest.mark.asyncio
    async def test_add_todo_in_the_past(self, service):
        with pytest.raises(ValueError):
            await service.add_todo(USER, "Too late", "2000-01-01")

    @pytest.mark.asyncio
    async def test_add_recurring_materializes_first_day_only(self, service, store):
        pattern = await service.add_recurring_todo(USER, "Read", "FREQ=DAILY", starts_on="2099-01-05")
        assert pattern["starts_on"] == "2099-01-05"
        items = await store.query_instances(USER, InstanceQuery(recurrence_id=pattern["id"]))
        assert [i["id"] for i in items] == [instance_id_for(pattern["id"], "2099-01-05")]

    @pytest.mark.asyncio
    async def test_add_recurring_defaults_to_today(self, service):
        pattern = await service.add_recurring_todo(USER, "Read", "FREQ=DAILY")
        assert pattern["starts_on"] == date.today().isoformat()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rule", ["FREQ=WEEKLY", "FREQ=SOMETIMES"])
    async def test_add_recurring_rejects_bad_rules(self, service, store, rule):
        with pytest.raises(ValueError):
            await service.add_recurring_todo(USER, "Read", rule, starts_on="2099-01-05")
        assert await store.list_patterns(USER) == []


class TestListTodos:
    @pytest.mark.asyncio
    async def test_refresh_materializes_window(self, service):
        await service.add_recurring_todo(USER, "Read", "FREQ=DAILY", starts_on="2099-01-05")
        await service.add_todo(USER, "Buy milk", "2099-01-06")

        todos = await service.list_todos(USER, "2099-01-05", "2099-01-09")
        assert [t["date"] for t in todos] == [
            "2099-01-05",
            "2099-01-06",
            "2099-01-06",
            "2099-01-07",
            "2099-01-08",
            "2099-01-09",
        ]
        again = await service.list_todos(USER, "2099-01-05", "2099-01-09")
        assert len(again) == 6

    @pytest.mark.asyncio
    async def test_single_day_without_refresh(self, service):
        await service.add_recurring_todo(USER, "Read", "FREQ=DAILY", starts_on="2099-01-05")
        assert await service.list_todos(USER, "2099-01-06", refresh=False) == []
        assert len(await service.list_todos(USER, "2099-01-06")) == 1


class TestInstanceEdits:
    @pytest.mark.asyncio
    async def test_set_completed(self, service):
        todo = await service.add_todo(USER, "Buy milk", "2099-01-02")
        assert (await service.set_completed(USER, todo["id"], True))["completed"] is True

    @pytest.mark.asyncio
    async def test_missing_todo(self, service):
        with pytest.raises(NotFoundError):
            await service.set_completed(USER, "nope", True)
        with pytest.raises(NotFoundError):
            await service.get_todo(USER, "nope")
        with pytest.raises(NotFoundError):
            await service.delete_instance(USER, "nope")

    @pytest.mark.asyncio
    async def test_edit_instance_leaves_series_alone(self, service):
        pattern = await _daily_series(service)
        target = instance_id_for(pattern["id"], "2099-01-03")

        edited = await service.edit_instance(USER, target, name="Read twice", day="2099-01-10")

        assert edited["name"] == "Read twice"
        assert edited["date"] == "2099-01-10"
        others = [t for t in await service.list_todos(USER, "2099-01-01", "2099-01-05", refresh=False)]
        assert all(t["name"] == "Read" for t in others)

    @pytest.mark.asyncio
    async def test_edit_instance_without_changes(self, service):
        todo = await service.add_todo(USER, "Buy milk", "2099-01-02")
        assert await service.edit_instance(USER, todo["id"]) == todo

    @pytest.mark.asyncio
    async def test_delete_instance(self, service):
        todo = await service.add_todo(USER, "Buy milk", "2099-01-02")
        await service.delete_instance(USER, todo["id"])
        with pytest.raises(NotFoundError):
            await service.get_todo(USER, todo["id"])


class TestSeriesEdits:
    @pytest.mark.asyncio
    async def test_rename_applies_to_open_future_instances(self, service):
        pattern = await _daily_series(service)
        await service.set_completed(USER, instance_id_for(pattern["id"], "2099-01-04"), True)

        updated = await service.edit_series(USER, pattern["id"], name="Read more", from_date="2099-01-03")

        assert updated["name"] == "Read more"
        names = {t["date"]: t["name"] for t in await service.list_todos(USER, "2099-01-01", "2099-01-05", refresh=False)}
        assert names == {
            "2099-01-01": "Read",
            "2099-01-02": "Read",
            "2099-01-03": "Read more",
            "2099-01-04": "Read",
            "2099-01-05": "Read more",
        }

    @pytest.mark.asyncio
    async def test_rule_change_regenerates_open_future_instances(self, service):
        # 2099-01-01 is a Thursday, so 2099-01-05 is the first Monday.
        pattern = await _daily_series(service)
        await service.set_completed(USER, instance_id_for(pattern["id"], "2099-01-04"), True)

        updated = await service.edit_series(USER, pattern["id"], rrule="FREQ=WEEKLY;BYDAY=MO", from_date="2099-01-03")

        assert updated["rrule"] == "FREQ=WEEKLY;BYDAY=MO"
        todos = await service.list_todos(USER, "2099-01-01", "2099-01-05", refresh=False)
        assert [t["date"] for t in todos] == ["2099-01-01", "2099-01-02", "2099-01-04", "2099-01-05"]
        assert [t["completed"] for t in todos] == [False, False, True, False]

    @pytest.mark.asyncio
    async def test_rule_change_rederives_occurrence_moved_earlier(self, service, store):
        # 2099-01-04 is a Sunday.
        pattern = await _daily_series(service)
        slot = instance_id_for(pattern["id"], "2099-01-04")
        await service.edit_instance(USER, slot, day="2099-01-02")

        await service.edit_series(USER, pattern["id"], rrule="FREQ=WEEKLY;BYDAY=SU", from_date="2099-01-03")

        regenerated = await service.get_todo(USER, slot)
        assert regenerated["date"] == "2099-01-04"
        todos = await store.query_instances(USER, InstanceQuery(recurrence_id=pattern["id"]))
        assert sorted(t["date"] for t in todos) == ["2099-01-01", "2099-01-02", "2099-01-04"]

    @pytest.mark.asyncio
    async def test_failed_series_edit_reports_update(self, failing_batch_store):
        store = failing_batch_store(fail_after=1)
        service = TodoService(store)
        pattern = await _daily_series(service)

        with pytest.raises(BatchCommitError) as exc_info:
            await service.edit_series(USER, pattern["id"], name="Read more", from_date="2099-01-03")

        assert exc_info.value.action == "update"
        assert (await service.get_pattern(USER, pattern["id"]))["name"] == "Read"

    @pytest.mark.asyncio
    async def test_no_changes_returns_pattern(self, service):
        pattern = await service.add_recurring_todo(USER, "Read", "FREQ=DAILY", starts_on="2099-01-01")
        assert await service.edit_series(USER, pattern["id"], name="Read") == pattern

    @pytest.mark.asyncio
    async def test_invalid_rule(self, service):
        pattern = await service.add_recurring_todo(USER, "Read", "FREQ=DAILY", starts_on="2099-01-01")
        with pytest.raises(ValueError):
            await service.edit_series(USER, pattern["id"], rrule="FREQ=WEEKLY")

    @pytest.mark.asyncio
    async def test_missing_pattern(self, service):
        with pytest.raises(NotFoundError):
            await service.edit_series(USER, "nope", name="x")
        with pytest.raises(NotFoundError):
            await service.delete_recurring_todo(USER, "nope")

    @pytest.mark.asyncio
    async def test_delete_recurring_todo(self, service, store):
        pattern = await _daily_series(service)
        assert await service.delete_recurring_todo(USER, pattern["id"], also_delete_instances=True) == 5
        assert await service.list_patterns(USER) == []
        assert await store.query_instances(USER) == []


class TestStats:
    @pytest.mark.asyncio
    async def test_daily_stats(self, service):
        a = await service.add_todo(USER, "a", "2099-01-02")
        await service.add_todo(USER, "b", "2099-01-02")
        await service.add_todo(USER, "c", "2099-01-04")
        await service.set_completed(USER, a["id"], True)

        stats = await service.daily_stats(USER, "2099-01-01", "2099-01-31")
        assert stats == [
            {"date": "2099-01-02", "total": 2, "completed": 1},
            {"date": "2099-01-04", "total": 1, "completed": 0},
        ]

    @pytest.mark.asyncio
    async def test_recurring_stats_stop_at_today(self, service, store):
        today = date.today()
        start = (today - timedelta(days=3)).isoformat()
        walk = await store.create_pattern(USER, {"name": "walk", "rrule": "FREQ=DAILY", "starts_on": start})
        await store.create_pattern(USER, {"name": "Alarm", "rrule": "FREQ=DAILY", "starts_on": start})
        await service.list_todos(USER, start, today.isoformat())
        await service.set_completed(USER, instance_id_for(walk["id"], start), True)

        end = (today + timedelta(days=10)).isoformat()
        stats = await service.recurring_stats(USER, start, end)

        assert [s["name"] for s in stats] == ["Alarm", "walk"]
        walk_stats = stats[1]
        assert walk_stats["total"] == 4
        assert walk_stats["completed"] == 1
        assert walk_stats["completion_rate"] == 25.0
        assert stats[0]["completion_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_recurring_stats_for_future_window(self, service):
        assert await service.recurring_stats(USER, "2099-01-01", "2099-01-31") == []
