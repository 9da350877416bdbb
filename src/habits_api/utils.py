from __future__ import annotations

from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .models import InstanceEntity

DateInput = Union[date, datetime, str]


# PUBLIC_INTERFACE
def parse_iso_date(value: DateInput) -> date:
    """
    Normalize a calendar date input into a ``date``.

    Accepts a ``date``, a ``datetime`` (its local date part is used) or a
    strict 'YYYY-MM-DD' string. Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        try:
            if len(s) != 10:
                raise ValueError(s)
            return date.fromisoformat(s)
        except ValueError as e:
            raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD.") from e
    raise ValueError("Invalid type for date; expected date, datetime, or YYYY-MM-DD string.")


# PUBLIC_INTERFACE
def format_date(value: DateInput) -> str:
    """Return the 'YYYY-MM-DD' form used for the stored ``date`` field."""
    return parse_iso_date(value).isoformat()


def today() -> date:
    """Local wall-clock date."""
    return date.today()


def ensure_not_past(value: DateInput, what: str = "date") -> str:
    """Return the 'YYYY-MM-DD' form of ``value``; raise ValueError if it is before today."""
    day = parse_iso_date(value)
    if day < today():
        raise ValueError(f"Cannot set {what} in the past. Please select today or a future date.")
    return day.isoformat()


# PUBLIC_INTERFACE
def normalize_window(start: DateInput, end: Optional[DateInput] = None) -> Tuple[datetime, datetime]:
    """
    Expand a date window into inclusive local datetime bounds.

    The start is moved to midnight; the end (or the start day when no end is
    given) is moved to the last instant of its day, so a same-day window
    still covers that day's occurrence.
    """
    start_day = parse_iso_date(start)
    end_day = parse_iso_date(end) if end is not None else start_day
    return datetime.combine(start_day, time.min), datetime.combine(end_day, time.max)


def group_by_recurrence(instances: Iterable[InstanceEntity]) -> Dict[str, List[InstanceEntity]]:
    """
    Group instances by ``recurrence_id`` preserving first-seen order.

    Instances without a recurrence id are left out.
    """
    groups: Dict[str, List[InstanceEntity]] = {}
    for inst in instances:
        rid = inst.get("recurrence_id")
        if not rid:
            continue
        groups.setdefault(rid, []).append(inst)
    return groups
