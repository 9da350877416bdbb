from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import RefreshError
from .materializer import InstanceMaterializer
from .repositories import Store
from .utils import DateInput

logger = logging.getLogger(__name__)


@dataclass
class PatternRefresh:
    """Result of materializing one pattern during a refresh."""
    pattern_id: str
    name: str
    created: int = 0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RefreshOutcome:
    """Aggregate result of a refresh, one entry per pattern in store order."""
    results: List[PatternRefresh] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(r.created for r in self.results)

    @property
    def failures(self) -> List[PatternRefresh]:
        return [r for r in self.results if not r.ok]

    @property
    def first_error(self) -> Optional[BaseException]:
        failed = self.failures
        return failed[0].error if failed else None


class RefreshCoordinator:
    """
    Materializes every pattern of a user over the same window, concurrently.

    Patterns are independent: a failing pattern neither stops nor rolls back
    the others. Stale instances are never removed here.
    """

    def __init__(self, store: Store, materializer: Optional[InstanceMaterializer] = None) -> None:
        self.store = store
        self.materializer = materializer or InstanceMaterializer(store)

    async def refresh(
        self,
        user_id: str,
        window_start: DateInput,
        window_end: Optional[DateInput] = None,
        raise_on_error: bool = True,
    ) -> RefreshOutcome:
        """
        Run the materializer for all of the user's patterns and wait for all
        of them. When any failed and ``raise_on_error`` is set, raise
        RefreshError carrying the first failure and the full outcome.
        """
        patterns = await self.store.list_patterns(user_id)
        outcome = RefreshOutcome()
        if not patterns:
            logger.debug("No recurrence patterns for user %s", user_id)
            return outcome

        results = await asyncio.gather(
            *(self.materializer.materialize_pattern(user_id, p, window_start, window_end) for p in patterns),
            return_exceptions=True,
        )
        for pattern, result in zip(patterns, results):
            entry = PatternRefresh(pattern_id=pattern["id"], name=pattern["name"])
            if isinstance(result, BaseException):
                entry.error = result
                logger.warning("Refresh of pattern %s for user %s failed: %s", pattern["id"], user_id, result)
            else:
                entry.created = result
            outcome.results.append(entry)

        logger.info(
            "Refreshed %d recurrence patterns for user %s (%d created, %d failed)",
            len(patterns),
            user_id,
            outcome.created,
            len(outcome.failures),
        )
        first_error = outcome.first_error
        if first_error is not None and raise_on_error:
            raise RefreshError(first_error, outcome) from first_error
        return outcome
