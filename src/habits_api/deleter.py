from __future__ import annotations

import logging

from .repositories import InstanceQuery, Store

logger = logging.getLogger(__name__)


class CascadingDeleter:
    """
    Deletes a recurrence pattern and, optionally, every instance that
    references it, as one atomic batch.

    An instance inserted by another writer after the instance query but
    before the commit is not part of the batch and becomes an orphan.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def delete_pattern(self, user_id: str, pattern_id: str, also_delete_instances: bool = False) -> int:
        """Delete the pattern (and its instances when asked). Returns the number of instances deleted."""
        batch = self.store.batch(user_id, "delete")
        batch.delete_pattern(pattern_id)

        instance_count = 0
        if also_delete_instances:
            instances = await self.store.query_instances(user_id, InstanceQuery(recurrence_id=pattern_id))
            logger.debug("Found %d instances of pattern %s to delete", len(instances), pattern_id)
            for inst in instances:
                batch.delete_instance(inst["id"])
            instance_count = len(instances)

        await batch.commit()
        logger.info(
            "Deleted recurrence pattern %s for user %s with %d instances",
            pattern_id,
            user_id,
            instance_count,
        )
        return instance_count
