from __future__ import annotations

import asyncio
import logging
from datetime import date, timezone
from typing import Any, Dict, Optional

from .models import PatternEntity
from .recurrence import parse_rule
from .repositories import InstanceQuery, Store
from .utils import DateInput

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
def instance_id_for(pattern_id: str, day: str) -> str:
    """Deterministic id of the occurrence of ``pattern_id`` on ``day`` ('YYYY-MM-DD')."""
    return f"{pattern_id}_{day}"


def occurrence_day(pattern_id: str, instance_id: str) -> Optional[str]:
    """The day an instance id was generated for, or None when it is not one of ``pattern_id``'s ids."""
    prefix = f"{pattern_id}_"
    return instance_id[len(prefix):] if instance_id.startswith(prefix) else None


def pattern_anchor(pattern: PatternEntity) -> Optional[date]:
    """
    Creation date bounding legacy patterns that carry no ``starts_on``.

    The creation timestamp is stored in UTC; generation follows the local
    calendar, so it is converted before taking the date.
    """
    created = pattern.get("created_at")
    if created is None:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created.astimezone().date()


class InstanceMaterializer:
    """
    Turns a pattern and a date window into persisted instance documents.

    Dates already materialized for the pattern are skipped, and each new
    occurrence is written under a deterministic id with create-if-absent,
    so concurrent calls over overlapping windows cannot duplicate a date.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def materialize(
        self,
        user_id: str,
        pattern_id: str,
        name: str,
        rrule: str,
        window_start: DateInput,
        window_end: Optional[DateInput] = None,
        starts_on: Optional[DateInput] = None,
        fallback_anchor: Optional[DateInput] = None,
    ) -> int:
        """
        Materialize the rule's occurrences in ``[window_start, window_end]``
        (or the single day ``window_start``). Returns the number of instances
        created. An unparseable rule creates nothing.
        """
        rule = parse_rule(rrule, starts_on=starts_on, fallback_anchor=fallback_anchor)
        if rule is None:
            return 0

        dates = rule.expand(window_start, window_end)
        if not dates:
            logger.debug("Pattern %s has no occurrences in window %s..%s", pattern_id, window_start, window_end)
            return 0

        existing = await self.store.query_instances(user_id, InstanceQuery(recurrence_id=pattern_id))
        existing_dates = {item["date"] for item in existing}
        missing = [d for d in dates if d not in existing_dates]
        if not missing:
            return 0

        results = await asyncio.gather(
            *(
                self.store.create_instance_if_absent(
                    user_id, instance_id_for(pattern_id, day), self._instance_data(pattern_id, name, day)
                )
                for day in missing
            )
        )
        created = sum(1 for r in results if r is not None)
        if created < len(missing):
            logger.info(
                "Pattern %s: %d of %d dates were materialized concurrently by another caller",
                pattern_id,
                len(missing) - created,
                len(missing),
            )
        logger.info("Materialized %d instances for pattern %s (user %s)", created, pattern_id, user_id)
        return created

    async def materialize_pattern(
        self,
        user_id: str,
        pattern: PatternEntity,
        window_start: DateInput,
        window_end: Optional[DateInput] = None,
    ) -> int:
        """Materialize a stored pattern, honoring its start date (or creation date on legacy patterns)."""
        return await self.materialize(
            user_id,
            pattern["id"],
            pattern["name"],
            pattern["rrule"],
            window_start,
            window_end,
            starts_on=pattern.get("starts_on"),
            fallback_anchor=pattern_anchor(pattern),
        )

    @staticmethod
    def _instance_data(pattern_id: str, name: str, day: str) -> Dict[str, Any]:
        return {
            "name": name,
            "date": day,
            "completed": False,
            "is_recurring": True,
            "recurrence_id": pattern_id,
        }

