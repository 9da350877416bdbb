"""Reconciliation of recurring instances against their recurrence patterns.

``recurrence_id`` is a soft reference: the store does not enforce it, so an
instance can outlive its pattern (pattern deleted without its instances,
a concurrent insert racing a cascading delete, out-of-band edits). The
detector finds those orphans; nothing here runs automatically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .models import InstanceEntity
from .repositories import InstanceQuery, Store
from .utils import group_by_recurrence

logger = logging.getLogger(__name__)

MARK_NON_RECURRING = "mark-non-recurring"
DELETE = "delete"
FIX_ACTIONS = (MARK_NON_RECURRING, DELETE)


@dataclass
class OrphanReport:
    user_id: str
    total_recurring: int = 0
    valid_pattern_count: int = 0
    orphans: List[InstanceEntity] = field(default_factory=list)

    @property
    def groups(self) -> Dict[str, List[InstanceEntity]]:
        return group_by_recurrence(self.orphans)


class OrphanDetector:
    """Read-only orphan scan plus an explicit, opt-in repair."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def scan(self, user_id: str) -> OrphanReport:
        report = OrphanReport(user_id=user_id)
        recurring = await self.store.query_instances(user_id, InstanceQuery(is_recurring=True))
        report.total_recurring = len(recurring)
        if not recurring:
            logger.debug("No recurring instances for user %s", user_id)
            return report

        valid_ids = {p["id"] for p in await self.store.list_patterns(user_id)}
        report.valid_pattern_count = len(valid_ids)
        report.orphans = [
            inst for inst in recurring if inst["recurrence_id"] and inst["recurrence_id"] not in valid_ids
        ]
        if report.orphans:
            logger.info(
                "Found %d orphaned instances out of %d recurring instances for user %s",
                len(report.orphans),
                report.total_recurring,
                user_id,
            )
        return report

    async def find_orphans(self, user_id: str) -> List[InstanceEntity]:
        """Recurring instances whose recurrence_id names no existing pattern."""
        return (await self.scan(user_id)).orphans

    async def fix_orphans(self, user_id: str, action: str = MARK_NON_RECURRING) -> int:
        """
        Repair every current orphan in one atomic batch and return how many
        were touched.

        - mark-non-recurring: keep the todo, drop its recurrence link
        - delete: remove the instance
        """
        if action not in FIX_ACTIONS:
            raise ValueError(f"action must be one of: {', '.join(FIX_ACTIONS)}")
        orphans = await self.find_orphans(user_id)
        if not orphans:
            return 0
        batch = self.store.batch(user_id, "delete" if action == DELETE else "update")
        for inst in orphans:
            if action == DELETE:
                batch.delete_instance(inst["id"])
            else:
                batch.update_instance(inst["id"], {"is_recurring": False, "recurrence_id": None})
        await batch.commit()
        logger.info("Applied %s to %d orphaned instances for user %s", action, len(orphans), user_id)
        return len(orphans)
