"""Time-range validation and capacity-aware overlap detection.

Everything here is pure: callers fetch bookings and resources, these functions
only compare them. Ranges are half-open, so a booking ending at 10:00 never
conflicts with one starting at 10:00.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import date, datetime, time
from enum import StrEnum
from typing import NamedTuple, Protocol

from .errors import (
    CertificationRequiredError,
    HoursClosedError,
    InvalidDateError,
    InvalidRangeError,
    OverlapWarningError,
    ResourceUnavailableError,
    SlotTakenError,
)
from .models import WEEKDAYS, Resource
from .roles import Identity

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")

# Statuses that no longer hold capacity
INACTIVE_STATUSES = frozenset({"cancelled", "rejected"})


class Scheduled(Protocol):
    booking_id: str
    start_time: str
    end_time: str
    status: str


class TimeRange(NamedTuple):
    day: date
    start: time
    end: time

    def overlaps(self, start: time, end: time) -> bool:
        return self.start < end and start < self.end


class OverlapStatus(StrEnum):
    OK = "OK"
    OVERLAP_WARNING = "OVERLAP_WARNING"
    SLOT_TAKEN = "SLOT_TAKEN"


class OverlapReport(NamedTuple):
    status: OverlapStatus
    peak: int
    max_concurrent: int
    conflicting_ids: list[str]


def parse_date(value: str) -> date:
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise InvalidDateError(f"Date must be in YYYY-MM-DD format: {value!r}", date=value)
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidDateError(f"Not a calendar date: {value}", date=value) from exc


def parse_time(value: str) -> time:
    if not isinstance(value, str) or not _TIME_RE.match(value):
        raise InvalidRangeError(f"Time must be in HH:MM format: {value!r}", time=value)
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError as exc:
        raise InvalidRangeError(f"Not a 24-hour time: {value}", time=value) from exc


def validate_range(day: str, start_time: str, end_time: str) -> TimeRange:
    parsed_day = parse_date(day)
    start = parse_time(start_time)
    end = parse_time(end_time)
    if end <= start:
        raise InvalidRangeError(
            "End time must be after start time", start_time=start_time, end_time=end_time
        )
    return TimeRange(parsed_day, start, end)


def check_overlap(
    candidate: TimeRange, existing: Iterable[Scheduled], max_concurrent: int
) -> OverlapReport:
    """Measure how crowded the candidate's range would be.

    The peak is the largest number of bookings active at a single instant of
    the candidate range, candidate included. Concurrency can only rise at a
    start point, so it is enough to sample at every overlapping booking's
    start (clipped to the candidate's own start).
    """
    overlapping: list[tuple[time, time, str]] = []
    for booking in existing:
        if booking.status in INACTIVE_STATUSES:
            continue
        start, end = parse_time(booking.start_time), parse_time(booking.end_time)
        if candidate.overlaps(start, end):
            overlapping.append((start, end, booking.booking_id))

    peak = 1
    for start, _, _ in overlapping:
        instant = max(start, candidate.start)
        active = 1 + sum(1 for s, e, _ in overlapping if s <= instant < e)
        peak = max(peak, active)

    if peak > max_concurrent:
        status = OverlapStatus.SLOT_TAKEN
    elif overlapping:
        status = OverlapStatus.OVERLAP_WARNING
    else:
        status = OverlapStatus.OK
    return OverlapReport(status, peak, max_concurrent, [bid for _, _, bid in overlapping])


def ensure_bookable(report: OverlapReport, confirm_overlap: bool = False) -> None:
    if report.status is OverlapStatus.SLOT_TAKEN:
        raise SlotTakenError(
            "Time slot is fully booked",
            max_concurrent=report.max_concurrent,
            current_bookings=report.peak - 1,
            conflicting_booking_ids=report.conflicting_ids,
        )
    if report.status is OverlapStatus.OVERLAP_WARNING and not confirm_overlap:
        raise OverlapWarningError(
            "Other bookings share this time slot",
            requires_confirmation=True,
            confirm_param="confirm_overlap",
            conflicting_booking_ids=report.conflicting_ids,
        )


def check_hours(resource: Resource, candidate: TimeRange) -> None:
    window = resource.availability.get(WEEKDAYS[candidate.day.weekday()])
    if window is None:
        return
    if candidate.start < parse_time(window.start) or candidate.end > parse_time(window.end):
        raise HoursClosedError(
            f"{resource.name} is open {window.start}-{window.end} on that day",
            opens=window.start,
            closes=window.end,
        )


def check_resource_bookable(resource: Resource, identity: Identity) -> None:
    if resource.status != "active":
        raise ResourceUnavailableError(
            f"{resource.name} is {resource.status}",
            resource_status=resource.status,
            maintenance_notes=resource.maintenance_notes,
        )
    if resource.requires_cert and not identity.is_tender:
        if not identity.holds(resource.certification_id or resource.resource_id):
            raise CertificationRequiredError(
                f"Certification required to book {resource.name}",
                certification_id=resource.certification_id or resource.resource_id,
            )
