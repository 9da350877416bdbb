"""Recurrence rule parsing and expansion.

Rules use the RFC 5545 RRULE grammar (``FREQ=WEEKLY;BYDAY=MO,WE,FR``) and are
expanded with ``dateutil.rrule`` into local wall-clock calendar dates. Time
zone suffixes in DTSTART/UNTIL are ignored.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional, Tuple, Union

from dateutil.rrule import rrule as DateutilRule
from dateutil.rrule import rrulestr

from .errors import RuleParseError
from .utils import DateInput, normalize_window, parse_iso_date

logger = logging.getLogger(__name__)

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
SUPPORTED_PARTS = {"FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYSETPOS", "BYMONTH", "COUNT", "UNTIL", "WKST"}
# February counts its leap day.
MONTH_LENGTHS = (31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)


def _split_lines(text: str) -> List[str]:
    # Stored rules sometimes carry an escaped newline instead of a real one.
    normalized = text.replace("\\n", "\n").replace("\r", "\n")
    return [line.strip() for line in normalized.split("\n") if line.strip()]


def _parse_dtstart(line: str) -> date:
    # DTSTART:20250101T000000Z, DTSTART;TZID=Europe/Paris:20250101T090000, DTSTART;VALUE=DATE:20250101
    value = line.split(":", 1)[1].strip() if ":" in line else ""
    try:
        return datetime.strptime(value[:8], "%Y%m%d").date()
    except ValueError as e:
        raise RuleParseError(f"invalid DTSTART: {line!r}") from e


def _parse_parts(body: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for chunk in body.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" not in chunk:
            raise RuleParseError(f"malformed rule part: {chunk!r}")
        key, value = chunk.split("=", 1)
        key = key.strip().upper()
        if key not in SUPPORTED_PARTS:
            raise RuleParseError(f"unsupported rule part: {key}")
        parts[key] = value.strip().upper()
    if parts.get("FREQ") not in FREQUENCIES:
        raise RuleParseError(f"unsupported or missing FREQ in {body!r}")
    return parts


def _int_values(parts: Dict[str, str], key: str) -> List[int]:
    return [int(v) for v in parts.get(key, "").split(",") if v.strip()]


def _period_capacity(parts: Dict[str, str]) -> int:
    """Upper bound on the days one FREQ period can offer to BYSETPOS."""
    freq = parts["FREQ"]
    weekdays = len([d for d in parts.get("BYDAY", "").split(",") if d.strip()])
    months = len(_int_values(parts, "BYMONTH"))
    if freq == "DAILY":
        return 1
    if freq == "WEEKLY":
        return weekdays or 1
    if freq == "MONTHLY":
        return min(31, 5 * weekdays) if weekdays and "BYMONTHDAY" not in parts else 31
    if weekdays and "BYMONTHDAY" not in parts:
        return min(366, 5 * weekdays * months) if months else min(366, 53 * weekdays)
    return 366


def _can_match(parts: Dict[str, str]) -> bool:
    """
    Reject rules whose filters select no calendar day at all.

    dateutil searches such a rule until year 9999 before giving up, so they
    are caught here instead: BYMONTH/BYMONTHDAY pairs that never exist
    (February 30) and BYSETPOS values past what one period can hold.
    """
    months = _int_values(parts, "BYMONTH") or range(1, 13)
    month_days = _int_values(parts, "BYMONTHDAY")
    if month_days and not any(abs(d) <= MONTH_LENGTHS[m - 1] for m in months for d in month_days):
        return False
    positions = _int_values(parts, "BYSETPOS")
    if positions and not any(abs(p) <= _period_capacity(parts) for p in positions):
        return False
    return True


class RecurrenceRule:
    """
    A parsed recurrence rule anchored at a start date.

    Instances are immutable; ``expand`` is a pure function of the rule and
    the window, so the same rule can be expanded repeatedly.
    """

    def __init__(self, body: str, parts: Dict[str, str], anchor: Optional[date]) -> None:
        self.body = body
        self.parts = parts
        self.anchor = anchor

    @property
    def frequency(self) -> str:
        return self.parts["FREQ"]

    @property
    def interval(self) -> int:
        return int(self.parts.get("INTERVAL", "1"))

    @property
    def weekdays(self) -> List[str]:
        raw = self.parts.get("BYDAY", "")
        return [d.strip() for d in raw.split(",") if d.strip()]

    @classmethod
    def from_string(
        cls,
        text: str,
        starts_on: Optional[DateInput] = None,
        fallback_anchor: Optional[DateInput] = None,
    ) -> "RecurrenceRule":
        """
        Parse a rule string strictly. Raises RuleParseError on malformed input.

        The anchor (first candidate date, and the origin for INTERVAL
        stepping) is ``starts_on`` when given, else the rule's own DTSTART,
        else ``fallback_anchor``. A rule with no anchor at all is anchored
        at the start of each window it is expanded over.
        """
        if not isinstance(text, str) or not text.strip():
            raise RuleParseError("empty rule")

        body: Optional[str] = None
        embedded: Optional[date] = None
        for line in _split_lines(text):
            upper = line.upper()
            if upper.startswith("DTSTART"):
                embedded = _parse_dtstart(line)
            elif upper.startswith("RRULE:"):
                body = line.split(":", 1)[1].strip()
            elif "FREQ=" in upper and body is None:
                body = line
        if body is None:
            raise RuleParseError(f"no RRULE found in {text!r}")

        parts = _parse_parts(body)
        try:
            if int(parts.get("INTERVAL", "1")) < 1:
                raise RuleParseError("INTERVAL must be >= 1")
        except ValueError as e:
            raise RuleParseError(f"invalid INTERVAL in {body!r}") from e

        anchor: Optional[date] = None
        if starts_on is not None:
            anchor = parse_iso_date(starts_on)
        elif embedded is not None:
            anchor = embedded
        elif fallback_anchor is not None:
            anchor = parse_iso_date(fallback_anchor)

        rule = cls(body, parts, anchor)
        # Build once so dateutil rejects bad BYxxx values at parse time.
        rule._build(anchor or date(2000, 1, 1))
        if not _can_match(parts):
            raise RuleParseError(f"rule {body!r} never matches a calendar day")
        return rule

    def _build(self, anchor: date) -> DateutilRule:
        try:
            built = rrulestr(self.body, dtstart=datetime.combine(anchor, time.min), ignoretz=True)
        except (ValueError, TypeError, KeyError) as e:
            raise RuleParseError(f"invalid rule {self.body!r}: {e}") from e
        return built  # type: ignore[return-value]

    def expand(self, window_start: DateInput, window_end: Optional[DateInput] = None) -> List[str]:
        """
        Return the 'YYYY-MM-DD' dates inside the inclusive window that match
        the rule, ascending and without duplicates.

        Day-of-month values missing from a month (the 31st in February) are
        skipped for that month.
        """
        start_dt, end_dt = normalize_window(window_start, window_end)
        if end_dt < start_dt:
            return []
        built = self._build(self.anchor or start_dt.date())
        occurrences = built.between(start_dt, end_dt, inc=True)
        return list(dict.fromkeys(o.date().isoformat() for o in occurrences))

    def __repr__(self) -> str:
        return f"RecurrenceRule({self.body!r}, anchor={self.anchor})"


# PUBLIC_INTERFACE
def parse_rule(
    text: Optional[str],
    starts_on: Optional[DateInput] = None,
    fallback_anchor: Optional[DateInput] = None,
) -> Optional[RecurrenceRule]:
    """Parse a rule, returning None (and logging) instead of raising."""
    if not text:
        return None
    try:
        return RecurrenceRule.from_string(text, starts_on=starts_on, fallback_anchor=fallback_anchor)
    except (RuleParseError, ValueError) as e:
        logger.warning("Ignoring unparseable recurrence rule %r: %s", text, e)
        return None


# PUBLIC_INTERFACE
def expand(
    rule: Union[str, RecurrenceRule, None],
    window_start: DateInput,
    window_end: Optional[DateInput] = None,
    starts_on: Optional[DateInput] = None,
) -> List[str]:
    """
    Expand a rule (string or parsed) over an inclusive window.

    An unparseable rule yields no dates.
    """
    parsed = rule if isinstance(rule, RecurrenceRule) else parse_rule(rule, starts_on=starts_on)
    if parsed is None:
        return []
    return parsed.expand(window_start, window_end)


def _weekday_code(value: Union[str, int]) -> str:
    if isinstance(value, int):
        if not 0 <= value <= 6:
            raise ValueError(f"weekday index out of range: {value}")
        return WEEKDAY_CODES[value]
    code = value.strip().upper()[:2]
    if code not in WEEKDAY_CODES:
        raise ValueError(f"unknown weekday: {value!r}")
    return code


# PUBLIC_INTERFACE
def build_rrule(
    frequency: str,
    interval: int = 1,
    weekdays: Optional[Iterable[Union[str, int]]] = None,
    month_day: Optional[int] = None,
    week_position: Optional[int] = None,
    weekday: Optional[Union[str, int]] = None,
    month: Optional[int] = None,
) -> str:
    """
    Compose a rule string from recurrence form fields.

    - DAILY: interval only
    - WEEKLY: ``weekdays`` (codes like 'MO' or indexes with Monday=0), at least one
    - MONTHLY: either ``month_day`` (1..31) or ``week_position`` (1..4, or -1
      for "last") together with ``weekday``
    - YEARLY: ``month`` (1..12) and ``month_day``

    Raises ValueError when the combination is invalid.
    """
    freq = frequency.strip().upper()
    if freq not in FREQUENCIES:
        raise ValueError(f"frequency must be one of {', '.join(FREQUENCIES)}")
    if interval < 1:
        raise ValueError("interval must be at least 1")

    parts: List[Tuple[str, str]] = [("FREQ", freq), ("INTERVAL", str(interval))]
    if freq == "WEEKLY":
        codes = list(dict.fromkeys(_weekday_code(d) for d in (weekdays or [])))
        if not codes:
            raise ValueError("a weekly rule needs at least one weekday")
        codes.sort(key=WEEKDAY_CODES.index)
        parts.append(("BYDAY", ",".join(codes)))
    elif freq == "MONTHLY":
        if month_day is not None and week_position is not None:
            raise ValueError("monthly rules use either month_day or week_position, not both")
        if month_day is not None:
            if not 1 <= month_day <= 31:
                raise ValueError("month_day must be between 1 and 31")
            parts.append(("BYMONTHDAY", str(month_day)))
        elif week_position is not None:
            if week_position not in (1, 2, 3, 4, -1):
                raise ValueError("week_position must be 1..4 or -1 (last)")
            if weekday is None:
                raise ValueError("week_position requires a weekday")
            parts.append(("BYDAY", _weekday_code(weekday)))
            parts.append(("BYSETPOS", str(week_position)))
        else:
            raise ValueError("a monthly rule needs month_day or week_position")
    elif freq == "YEARLY":
        if month is None or month_day is None:
            raise ValueError("a yearly rule needs month and month_day")
        if not 1 <= month <= 12:
            raise ValueError("month must be between 1 and 12")
        if not 1 <= month_day <= 31:
            raise ValueError("month_day must be between 1 and 31")
        parts.append(("BYMONTH", str(month)))
        parts.append(("BYMONTHDAY", str(month_day)))
    return ";".join(f"{k}={v}" for k, v in parts)


# PUBLIC_INTERFACE
def validate_rrule(text: str) -> str:
    """
    Check a rule before it is saved on a pattern; return it stripped.

    Raises ValueError when the rule does not parse or cannot match any day.
    A weekly rule without selected weekdays is rejected too.
    """
    try:
        rule = RecurrenceRule.from_string(text)
    except RuleParseError as e:
        raise ValueError(f"invalid recurrence rule: {e}") from e
    if rule.frequency == "WEEKLY" and not rule.weekdays:
        raise ValueError("a weekly rule needs at least one weekday")
    return text.strip()

