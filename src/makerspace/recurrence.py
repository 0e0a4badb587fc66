"""Recurrence rules: parsing, date generation and conflict-aware expansion."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from datetime import date, datetime, time, timedelta
from itertools import islice

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, FR, MO, SA, SU, TH, TU, WE, WEEKLY, rrule, rrulestr
from pydantic import ValidationError

from . import config
from .errors import ErrorCode, HoursClosedError, InvalidRecurrenceError
from .models import (
    ExpansionResult,
    PlannedInstance,
    RecurrenceRule,
    Resource,
    SkippedInstance,
)
from .scheduling import (
    OverlapStatus,
    Scheduled,
    TimeRange,
    check_hours,
    check_overlap,
    parse_date,
    validate_range,
)

_RRULE_KEYS = {"FREQ", "BYDAY", "COUNT", "UNTIL", "INTERVAL"}
_FREQUENCIES = {"DAILY": DAILY, "WEEKLY": WEEKLY}
_BYDAY = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _split_rrule(text: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for part in filter(None, (p.strip() for p in text.split(";"))):
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        if not sep or key not in _RRULE_KEYS:
            raise InvalidRecurrenceError(f"Unsupported recurrence part: {part}", rule=text)
        parts[key] = value.strip().upper()
    return parts


def parse_rrule(text: str, start_date: str | None) -> RecurrenceRule:
    """Parse "FREQ=WEEKLY;BYDAY=MO,WE,FR;COUNT=10" into a rule anchored on start_date.

    UNTIL takes either RFC 5545 form (20260301, 20260301T000000Z) or an ISO date.
    """
    if not start_date:
        raise InvalidRecurrenceError("start_date is required with an RRULE string")

    parts = _split_rrule(text)
    normalized = ";".join(f"{key}={value}" for key, value in parts.items())
    try:
        rrulestr(normalized, dtstart=_midnight(parse_date(start_date)), ignoretz=True)
        until = date_parser.isoparse(parts["UNTIL"]).date() if "UNTIL" in parts else None
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidRecurrenceError("Invalid recurrence pattern", rule=text, errors=[str(exc)]) from exc

    fields: dict[str, object] = {"start_date": start_date, "frequency": parts.get("FREQ")}
    if "BYDAY" in parts:
        fields["by_weekday"] = [d for d in parts["BYDAY"].split(",") if d]
    if until is not None:
        fields["end_date"] = until.isoformat()
    if "COUNT" in parts:
        fields["count"] = parts["COUNT"]
    if "INTERVAL" in parts:
        fields["interval"] = parts["INTERVAL"]

    try:
        return RecurrenceRule.model_validate(fields)
    except ValidationError as exc:
        raise InvalidRecurrenceError(
            "Invalid recurrence pattern", rule=text, errors=[e["msg"] for e in exc.errors()]
        ) from exc


def validate_rule(rule: RecurrenceRule) -> None:
    start = parse_date(rule.start_date)
    if rule.end_date is not None and parse_date(rule.end_date) < start:
        raise InvalidRecurrenceError("end_date is before start_date", end_date=rule.end_date)
    if rule.by_weekday and rule.frequency != "WEEKLY":
        raise InvalidRecurrenceError("by_weekday only applies to WEEKLY rules")


def _monthly(start: date, interval: int, limit: int, last: date | None) -> Iterator[date]:
    # relativedelta clamps the 31st to the month's last day; such a month is
    # rejected, but only once the sequence has actually reached it
    for step in range(limit):
        day = start + relativedelta(months=step * interval)
        clamped = day.day != start.day
        if last is not None and (day > last or (clamped and day >= last)):
            return
        if clamped:
            month = f"{day.year}-{day.month:02d}"
            raise InvalidRecurrenceError(f"Day {start.day} does not exist in {month}", month=month)
        yield day


def occurrences(rule: RecurrenceRule, max_instances: int | None = None) -> Iterator[date]:
    """Yield the rule's dates in order; each call starts a fresh sequence."""
    validate_rule(rule)
    start = parse_date(rule.start_date)
    if rule.end_date is not None:
        last: date | None = parse_date(rule.end_date)
    elif rule.count is None:
        last = start + timedelta(days=config.DEFAULT_HORIZON_DAYS)
    else:
        last = None

    limit = max_instances or config.MAX_SERIES_INSTANCES
    if rule.count is not None:
        limit = min(limit, rule.count)

    if rule.frequency == "MONTHLY":
        yield from _monthly(start, rule.interval, limit, last)
        return

    dates = rrule(
        _FREQUENCIES[rule.frequency],
        dtstart=_midnight(start),
        interval=rule.interval,
        wkst=MO,
        byweekday=[_BYDAY[day] for day in rule.by_weekday] or None,
        until=_midnight(last) if last is not None else None,
    )
    for moment in islice(dates, limit):
        yield moment.date()


def expand_recurrence(
    rule: RecurrenceRule,
    start_time: str,
    end_time: str,
    resource: Resource,
    bookings_on: Callable[[str], Iterable[Scheduled]],
    until: date | None = None,
    max_instances: int | None = None,
) -> ExpansionResult:
    """Plan the bookings of a series without writing anything.

    Every date inside the window is checked against the bookings already on
    the resource that day. Full slots are skipped and reported, shared slots
    are planned with a warning flag, dates after ``until`` are deferred.
    """
    base = validate_range(rule.start_date, start_time, end_time)
    dates = list(occurrences(rule, max_instances))
    if not dates:
        raise InvalidRecurrenceError("No valid dates generated from recurrence pattern")

    materialized: list[PlannedInstance] = []
    skipped: list[SkippedInstance] = []
    deferred: list[str] = []
    for day in dates:
        iso = day.isoformat()
        if until is not None and day > until:
            deferred.append(iso)
            continue

        candidate = TimeRange(day, base.start, base.end)
        try:
            check_hours(resource, candidate)
        except HoursClosedError:
            skipped.append(SkippedInstance(date=iso, reason=ErrorCode.HOURS_CLOSED.value))
            continue

        report = check_overlap(candidate, bookings_on(iso), resource.max_concurrent)
        if report.status is OverlapStatus.SLOT_TAKEN:
            skipped.append(
                SkippedInstance(
                    date=iso,
                    reason=ErrorCode.SLOT_TAKEN.value,
                    conflicting_booking_ids=report.conflicting_ids,
                )
            )
            continue
        materialized.append(
            PlannedInstance(
                date=iso,
                start_time=start_time,
                end_time=end_time,
                overlap_warning=report.status is OverlapStatus.OVERLAP_WARNING,
            )
        )

    return ExpansionResult(materialized=materialized, skipped=skipped, deferred=deferred)
