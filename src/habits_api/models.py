from __future__ import annotations

from datetime import datetime
from typing import Optional, TypedDict


# PUBLIC_INTERFACE
class InstanceEntity(TypedDict):
    """
    A single dated todo occurrence as stored in ``users/{user_id}/instances``.

    Fields:
    - id: Store-assigned identifier (deterministic for materialized occurrences)
    - name: Todo name
    - date: Calendar date as a 'YYYY-MM-DD' string (no time component)
    - completed: Completion flag
    - is_recurring: True when generated from a recurrence pattern
    - recurrence_id: Owning pattern id; None for one-off todos. May dangle
      after the pattern is deleted without its instances (orphan).
    - created_at: Store-assigned creation timestamp (UTC)
    - edited_at: Last edit timestamp (UTC) or None
    """

    id: str
    name: str
    date: str
    completed: bool
    is_recurring: bool
    recurrence_id: Optional[str]
    created_at: datetime
    edited_at: Optional[datetime]


# PUBLIC_INTERFACE
class PatternEntity(TypedDict):
    """
    A recurrence rule bound to a habit name, stored in ``users/{user_id}/recurrences``.

    Fields:
    - id: Store-assigned identifier
    - name: Habit name copied onto every materialized instance
    - rrule: Recurrence rule expression (RFC 5545 RRULE grammar)
    - starts_on: Earliest occurrence date 'YYYY-MM-DD'; None on legacy
      patterns, where the creation date bounds generation instead
    - created_at: Store-assigned creation timestamp (UTC)
    - edited_at: Last edit timestamp (UTC) or None
    """

    id: str
    name: str
    rrule: str
    starts_on: Optional[str]
    created_at: datetime
    edited_at: Optional[datetime]
