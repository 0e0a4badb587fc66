"""Usage reporting over the bookings table."""
from __future__ import annotations

from collections import Counter
from datetime import datetime

from . import dal
from .errors import InvalidDateError
from .models import WEEKDAYS, UtilizationReport
from .scheduling import INACTIVE_STATUSES, TimeRange, parse_date, validate_range


def _hours(span: TimeRange) -> float:
    delta = datetime.combine(span.day, span.end) - datetime.combine(span.day, span.start)
    return delta.total_seconds() / 3600


def utilization_report(start_date: str, end_date: str, resource_id: str | None = None) -> UtilizationReport:
    if parse_date(end_date) < parse_date(start_date):
        raise InvalidDateError("end_date is before start_date", start_date=start_date, end_date=end_date)

    bookings = dal.list_bookings_between(start_date, end_date, resource_id)
    by_weekday: Counter[str] = Counter()
    by_hour: Counter[str] = Counter()
    hours_by_resource: Counter[str] = Counter()
    users: set[str] = set()

    # cancelled and rejected bookings are counted by status but hold no hours
    active = [b for b in bookings if b.status not in INACTIVE_STATUSES]
    for booking in active:
        span = validate_range(booking.date, booking.start_time, booking.end_time)
        hours_by_resource[booking.resource_id] += _hours(span)
        by_weekday[WEEKDAYS[span.day.weekday()]] += 1
        by_hour[f"{span.start.hour:02d}:00"] += 1
        users.add(booking.user_id)

    total_hours = sum(hours_by_resource.values())
    return UtilizationReport(
        start_date=start_date,
        end_date=end_date,
        resource_id=resource_id,
        total_bookings=len(bookings),
        by_status=dict(Counter(b.status for b in bookings)),
        hours_booked=round(total_hours, 2),
        avg_duration_hours=round(total_hours / len(active), 2) if active else 0.0,
        hours_by_resource={k: round(v, 2) for k, v in sorted(hours_by_resource.items())},
        bookings_by_weekday={day: by_weekday[day] for day in WEEKDAYS if by_weekday[day]},
        bookings_by_hour=dict(sorted(by_hour.items())),
        unique_users=len(users),
        peak_weekday=by_weekday.most_common(1)[0][0] if by_weekday else None,
        peak_hour=by_hour.most_common(1)[0][0] if by_hour else None,
    )
