from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .deleter import CascadingDeleter
from .errors import NotFoundError
from .materializer import InstanceMaterializer, occurrence_day
from .models import InstanceEntity, PatternEntity
from .orphans import OrphanDetector
from .recurrence import validate_rrule
from .refresh import RefreshCoordinator
from .repositories import InstanceQuery, Store, get_store
from .utils import DateInput, ensure_not_past, format_date, group_by_recurrence, today

logger = logging.getLogger(__name__)


class TodoService:
    """
    User-facing todo operations composed from the store and the recurring
    todo core. Write paths propagate store errors to the caller; read paths
    refresh recurring instances first and tolerate per-pattern failures.
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self.materializer = InstanceMaterializer(store)
        self.refresher = RefreshCoordinator(store, self.materializer)
        self.orphans = OrphanDetector(store)
        self.deleter = CascadingDeleter(store)

    # One-off and recurring creation

    async def add_todo(self, user_id: str, name: str, day: DateInput) -> InstanceEntity:
        data = {
            "name": name,
            "date": ensure_not_past(day, "tasks"),
            "completed": False,
            "is_recurring": False,
            "recurrence_id": None,
        }
        created = await self.store.create_instance(user_id, data)
        logger.info("Todo %s added for user %s on %s", created["id"], user_id, created["date"])
        return created

    async def add_recurring_todo(
        self, user_id: str, name: str, rrule: str, starts_on: Optional[DateInput] = None
    ) -> PatternEntity:
        """Create a pattern and materialize its first day so it shows up immediately."""
        rule_text = validate_rrule(rrule)
        first_day = ensure_not_past(starts_on, "start date") if starts_on is not None else today().isoformat()
        pattern = await self.store.create_pattern(
            user_id, {"name": name, "rrule": rule_text, "starts_on": first_day}
        )
        logger.info("Recurrence pattern %s added for user %s", pattern["id"], user_id)
        await self.materializer.materialize_pattern(user_id, pattern, first_day)
        return pattern

    # Reads

    async def list_todos(
        self, user_id: str, start: DateInput, end: Optional[DateInput] = None, refresh: bool = True
    ) -> List[InstanceEntity]:
        """Instances on ``start`` (or in the inclusive range up to ``end``), ordered by date."""
        start_day = format_date(start)
        end_day = format_date(end) if end is not None else None
        if refresh:
            await self.refresher.refresh(user_id, start_day, end_day, raise_on_error=False)
        if end_day is None:
            query = InstanceQuery(date=start_day)
        else:
            query = InstanceQuery(date_from=start_day, date_to=end_day)
        return await self.store.query_instances(user_id, query)

    async def get_todo(self, user_id: str, instance_id: str) -> InstanceEntity:
        item = await self.store.get_instance(user_id, instance_id)
        if item is None:
            raise NotFoundError("Todo", instance_id)
        return item

    async def list_patterns(self, user_id: str) -> List[PatternEntity]:
        return await self.store.list_patterns(user_id)

    async def get_pattern(self, user_id: str, pattern_id: str) -> PatternEntity:
        pattern = await self.store.get_pattern(user_id, pattern_id)
        if pattern is None:
            raise NotFoundError("Recurrence", pattern_id)
        return pattern

    # Instance edits

    async def set_completed(self, user_id: str, instance_id: str, completed: bool) -> InstanceEntity:
        updated = await self.store.update_instance(user_id, instance_id, {"completed": completed})
        if updated is None:
            raise NotFoundError("Todo", instance_id)
        logger.info("Todo %s updated, completed: %s", instance_id, completed)
        return updated

    async def edit_instance(
        self,
        user_id: str,
        instance_id: str,
        name: Optional[str] = None,
        day: Optional[DateInput] = None,
        completed: Optional[bool] = None,
    ) -> InstanceEntity:
        """Edit one occurrence; the rest of its series is left alone."""
        changes: Dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if day is not None:
            changes["date"] = ensure_not_past(day, "tasks")
        if completed is not None:
            changes["completed"] = completed
        if not changes:
            return await self.get_todo(user_id, instance_id)
        updated = await self.store.update_instance(user_id, instance_id, changes)
        if updated is None:
            raise NotFoundError("Todo", instance_id)
        return updated

    async def delete_instance(self, user_id: str, instance_id: str) -> None:
        if not await self.store.delete_instance(user_id, instance_id):
            raise NotFoundError("Todo", instance_id)
        logger.info("Todo instance %s deleted for user %s", instance_id, user_id)

    # Series edits

    async def edit_series(
        self,
        user_id: str,
        pattern_id: str,
        name: Optional[str] = None,
        rrule: Optional[str] = None,
        starts_on: Optional[DateInput] = None,
        from_date: Optional[DateInput] = None,
    ) -> PatternEntity:
        """
        Edit a recurring series and re-derive its open future instances.

        The pattern change and the instance rewrites are one atomic batch.
        Completed instances and instances before ``from_date`` stay as they are.
        A rule change also re-derives open occurrences generated for a day on
        or after ``from_date`` that were moved to an earlier day.
        """
        pattern = await self.get_pattern(user_id, pattern_id)
        changes: Dict[str, Any] = {}
        if name is not None and name != pattern["name"]:
            changes["name"] = name
        if rrule is not None:
            rule_text = validate_rrule(rrule)
            if rule_text != pattern["rrule"]:
                changes["rrule"] = rule_text
        if starts_on is not None:
            first_day = ensure_not_past(starts_on, "start date")
            if first_day != pattern.get("starts_on"):
                changes["starts_on"] = first_day
        if not changes:
            return pattern

        from_day = format_date(from_date) if from_date is not None else today().isoformat()
        rule_changed = "rrule" in changes or "starts_on" in changes

        def rewritten(inst: InstanceEntity) -> bool:
            if inst["completed"]:
                return False
            if inst["date"] >= from_day:
                return True
            # An occurrence moved before from_day still holds the id of its
            # original day; regeneration could not reuse that id otherwise.
            slot = occurrence_day(pattern_id, inst["id"])
            return rule_changed and slot is not None and slot >= from_day

        open_future = [
            inst
            for inst in await self.store.query_instances(user_id, InstanceQuery(recurrence_id=pattern_id))
            if rewritten(inst)
        ]

        batch = self.store.batch(user_id, "update")
        batch.update_pattern(pattern_id, changes)
        for inst in open_future:
            if rule_changed:
                batch.delete_instance(inst["id"])
            elif "name" in changes:
                batch.update_instance(inst["id"], {"name": changes["name"]})
        await batch.commit()
        logger.info(
            "Series %s edited for user %s (%s); %d future instances re-derived",
            pattern_id,
            user_id,
            ", ".join(sorted(changes)),
            len(open_future),
        )

        updated = await self.get_pattern(user_id, pattern_id)
        if rule_changed and open_future:
            horizon = max(max(inst["date"], occurrence_day(pattern_id, inst["id"]) or "") for inst in open_future)
            await self.materializer.materialize_pattern(user_id, updated, from_day, horizon)
        return updated

    async def delete_recurring_todo(self, user_id: str, pattern_id: str, also_delete_instances: bool = False) -> int:
        await self.get_pattern(user_id, pattern_id)
        return await self.deleter.delete_pattern(user_id, pattern_id, also_delete_instances)

    # Calendar and metrics views

    async def daily_stats(self, user_id: str, start: DateInput, end: DateInput) -> List[Dict[str, Any]]:
        """Per-day total and completed counts for the month grid."""
        stats: Dict[str, Dict[str, Any]] = {}
        for todo in await self.list_todos(user_id, start, end):
            entry = stats.setdefault(todo["date"], {"date": todo["date"], "total": 0, "completed": 0})
            entry["total"] += 1
            if todo["completed"]:
                entry["completed"] += 1
        return [stats[d] for d in sorted(stats)]

    async def recurring_stats(self, user_id: str, start: DateInput, end: DateInput) -> List[Dict[str, Any]]:
        """
        Completion rate per recurring habit over ``[start, min(end, today)]``;
        future occurrences are not counted against the habit.
        """
        start_day = format_date(start)
        end_day = min(format_date(end), today().isoformat())
        if end_day < start_day:
            return []
        todos = await self.list_todos(user_id, start_day, end_day)
        groups = group_by_recurrence(t for t in todos if t["is_recurring"])
        stats = []
        for recurrence_id, items in groups.items():
            completed = sum(1 for t in items if t["completed"])
            stats.append(
                {
                    "recurrence_id": recurrence_id,
                    "name": items[0]["name"],
                    "total": len(items),
                    "completed": completed,
                    "completion_rate": completed / len(items) * 100 if items else 0.0,
                }
            )
        return sorted(stats, key=lambda s: s["name"].lower())


# PUBLIC_INTERFACE
def get_service() -> TodoService:
    """FastAPI dependency returning a service bound to the configured store."""
    return TodoService(get_store())
