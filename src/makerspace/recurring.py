"""Recurring series: creation as one all-or-nothing batch, lifecycle, rolling generation."""
from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    DynamoDBTable = Any  # type: ignore[assignment]

from . import config, dal, waitlist
from .errors import (
    ForbiddenError,
    InvalidTransitionError,
    ResourceUnavailableError,
    SchedulingError,
    StorageFailureError,
    VersionMismatchError,
)
from .models import (
    Booking,
    ExpansionResult,
    PlannedInstance,
    RecurrenceRule,
    RecurringSeries,
    SeriesCancelled,
    SeriesCreate,
    SeriesCreated,
    SeriesStatus,
)
from .recurrence import expand_recurrence, parse_rrule
from .roles import Identity
from .scheduling import check_resource_bookable

logger = Logger()

_table: DynamoDBTable = boto3.resource("dynamodb").Table(config.SERIES_TABLE)

SERIES_NOT_FOUND = "Series not found"

SERIES_TRANSITIONS: dict[str, tuple[frozenset[str], SeriesStatus]] = {
    "pause": (frozenset({"active"}), "paused"),
    "resume": (frozenset({"paused"}), "active"),
    "cancel": (frozenset({"active", "paused"}), "cancelled"),
}


def _today() -> date:
    return datetime.now(UTC).date()


def _window_end(today: date) -> date:
    return today + timedelta(weeks=config.GENERATE_WEEKS_AHEAD)


def resolve_rule(payload: SeriesCreate) -> RecurrenceRule:
    if isinstance(payload.rule, str):
        return parse_rrule(payload.rule, payload.start_date)
    return payload.rule


def _plan(payload: SeriesCreate, user: Identity, today: date) -> tuple[RecurrenceRule, ExpansionResult, bool]:
    rule = resolve_rule(payload)
    resource = dal.get_resource(payload.resource_id)
    check_resource_bookable(resource, user)

    result = expand_recurrence(
        rule,
        payload.start_time,
        payload.end_time,
        resource,
        lambda day: dal.list_bookings_for_resource(resource.resource_id, day),
        until=_window_end(today),
    )
    auto_approve = user.can_manage(resource.resource_id) or not resource.requires_approval
    return rule, result, auto_approve


def preview_series(payload: SeriesCreate, user: Identity, today: date | None = None) -> ExpansionResult:
    _, result, _ = _plan(payload, user, today or _today())
    return result


def _booking_items(series: RecurringSeries, instances: list[PlannedInstance]) -> list[dal.BookingItem]:
    return [
        dal.new_booking_item(
            series.resource_id,
            series.user_id,
            instance.date,
            instance.start_time,
            instance.end_time,
            series.purpose,
            approved_by=series.user_id if series.auto_approve else None,
            series_id=series.series_id,
            overlap_confirmed=instance.overlap_warning,
        )
        for instance in instances
    ]


def _put_bookings(items: list[dal.BookingItem]) -> list[str]:
    """Write every item or none: on failure the already-written ones are deleted."""
    written: list[str] = []
    try:
        for item in items:
            dal.put_booking_item(item)
            written.append(item["booking_id"])
    except ClientError as exc:
        logger.exception("Batch write failed, rolling back", extra={"written": len(written)})
        dal.delete_bookings(written)
        raise StorageFailureError(
            "Could not save the series bookings; nothing was created",
            would_create=[item["date"] for item in items],
        ) from exc
    return written


def create_series(payload: SeriesCreate, user: Identity, today: date | None = None) -> SeriesCreated:
    rule, result, auto_approve = _plan(payload, user, today or _today())
    now = dal.now_iso()
    series = RecurringSeries(
        series_id=str(uuid.uuid4()),
        user_id=user.user_id,
        resource_id=payload.resource_id,
        rule=rule,
        start_time=payload.start_time,
        end_time=payload.end_time,
        purpose=payload.purpose,
        total_instances=result.planned_total,
        created_instances=len(result.materialized),
        skipped_dates=[s.date for s in result.skipped],
        auto_approve=auto_approve,
        created_at=now,
        updated_at=now,
    )
    items = _booking_items(series, result.materialized)

    written = _put_bookings(items)
    try:
        _table.put_item(  # type: ignore
            Item=series.model_dump(mode="json", exclude_none=True),
            ConditionExpression="attribute_not_exists(series_id)",
        )
    except ClientError as exc:
        logger.exception("Series write failed, rolling back", extra={"series_id": series.series_id})
        dal.delete_bookings(written)
        raise StorageFailureError(
            "Could not save the series; nothing was created",
            would_create=[item["date"] for item in items],
        ) from exc

    logger.info(
        "Series created",
        extra={
            "series_id": series.series_id,
            "materialized": len(items),
            "skipped": len(result.skipped),
            "deferred": len(result.deferred),
        },
    )
    dal.log_activity(
        "series.created", user.user_id, "series", series.series_id,
        resource_id=series.resource_id, frequency=rule.frequency,
        total_instances=series.total_instances, created_instances=series.created_instances,
    )
    return SeriesCreated(
        series=series,
        bookings=[dal.get_booking(booking_id) for booking_id in written],
        skipped=result.skipped,
        deferred=result.deferred,
    )


def get_series(series_id: str, user: Identity | None = None) -> RecurringSeries:
    """Fetch a series; with a user, only its owner or a manager of its resource may read it."""
    resp = cast(dict[str, Any], _table.get_item(Key={"series_id": series_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(SERIES_NOT_FOUND)
    series = RecurringSeries.model_validate(item)
    if user is not None:
        _authorize(series, user)
    return series


def list_series_bookings(series_id: str, user: Identity | None = None) -> list[Booking]:
    get_series(series_id, user)
    return dal.list_series_bookings(series_id)


def list_series_for_user(user_id: str) -> list[RecurringSeries]:
    items = dal.query_all(
        _table,
        IndexName="user_id_index",
        KeyConditionExpression="user_id = :uid",
        ExpressionAttributeValues={":uid": user_id},
    )
    series = [RecurringSeries.model_validate(item) for item in items]
    return sorted(series, key=lambda s: (s.created_at or "", s.series_id), reverse=True)


def _write_series(series: RecurringSeries, attrs: dict[str, Any]) -> RecurringSeries:
    attrs = {**attrs, "version": series.version + 1, "updated_at": dal.now_iso()}
    try:
        new_item = dal.update_attrs(
            _table,
            {"series_id": series.series_id},
            attrs,
            "attribute_exists(series_id) AND #_version = :expected_version",
            {":expected_version": series.version},
        )
    except ClientError as exc:
        if dal.is_condition_failure(exc):
            raise VersionMismatchError(
                "Series was modified by another request. Please refresh and try again.",
                your_version=series.version,
            ) from exc
        raise
    return RecurringSeries.model_validate(new_item)


def _authorize(series: RecurringSeries, user: Identity) -> None:
    if series.user_id != user.user_id and not user.can_manage(series.resource_id):
        raise ForbiddenError("Not authorized to access this series")


def _transition(series: RecurringSeries, action: str, user: Identity) -> RecurringSeries:
    allowed, target = SERIES_TRANSITIONS[action]
    if series.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} a {series.status} series", current_status=series.status
        )
    updated = _write_series(series, {"status": target})
    dal.log_activity(
        f"series.{target}", user.user_id, "series", series.series_id, previous_status=series.status
    )
    return updated


def pause_series(series_id: str, user: Identity) -> RecurringSeries:
    series = get_series(series_id)
    _authorize(series, user)
    return _transition(series, "pause", user)


def resume_series(series_id: str, user: Identity) -> RecurringSeries:
    series = get_series(series_id)
    _authorize(series, user)
    return _transition(series, "resume", user)


def cancel_series(series_id: str, user: Identity, today: date | None = None) -> SeriesCancelled:
    """Cancel the series and its bookings from today on; past bookings are kept as they are."""
    series = get_series(series_id)
    _authorize(series, user)
    allowed, _ = SERIES_TRANSITIONS["cancel"]
    if series.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot cancel a {series.status} series", current_status=series.status
        )

    cutoff = (today or _today()).isoformat()
    cancelled: list[str] = []
    # bookings first, so a failed run can simply be retried
    for booking in dal.list_series_bookings(series_id):
        if booking.date >= cutoff and booking.status in dal.BOOKING_TRANSITIONS["cancel"][0]:
            freed = dal.cancel_booking(booking.booking_id, user, reason="Series cancelled")
            waitlist.promote_next(freed)
            cancelled.append(booking.booking_id)

    updated = _transition(series, "cancel", user)
    logger.info("Series cancelled", extra={"series_id": series_id, "cancelled": len(cancelled)})
    return SeriesCancelled(series=updated, cancelled_booking_ids=cancelled)


def generate_future_instances(today: date | None = None) -> dict[str, int]:
    """Materialize the rolling window for every active series."""
    today = today or _today()
    items = dal.scan_all(
        _table,
        FilterExpression="#status = :status",
        ExpressionAttributeNames={"#status": "status"},
        ExpressionAttributeValues={":status": "active"},
    )
    summary = {"processed_series": 0, "created_instances": 0, "failed_series": 0}
    for item in items:
        series = RecurringSeries.model_validate(item)
        summary["processed_series"] += 1
        try:
            summary["created_instances"] += _extend_series(series, today)
        except (SchedulingError, ClientError, KeyError):
            logger.exception("Could not extend series", extra={"series_id": series.series_id})
            summary["failed_series"] += 1
    return summary


def _extend_series(series: RecurringSeries, today: date) -> int:
    resource = dal.get_resource(series.resource_id)
    if resource.status != "active":
        raise ResourceUnavailableError(
            f"{resource.name} is {resource.status}", resource_status=resource.status
        )

    existing = {b.date for b in dal.list_series_bookings(series.series_id)}
    result = expand_recurrence(
        series.rule,
        series.start_time,
        series.end_time,
        resource,
        lambda day: dal.list_bookings_for_resource(resource.resource_id, day),
        until=_window_end(today),
    )
    room = max(0, series.total_instances - series.created_instances)
    due = [
        instance for instance in result.materialized
        if instance.date >= today.isoformat() and instance.date not in existing
    ][:room]
    if not due:
        return 0

    items = _booking_items(series, due)
    written = _put_bookings(items)
    try:
        _write_series(series, {"created_instances": series.created_instances + len(written)})
    except VersionMismatchError:
        dal.delete_bookings(written)
        raise
    except ClientError as exc:
        dal.delete_bookings(written)
        raise StorageFailureError(
            "Could not update the series; new bookings were rolled back",
            series_id=series.series_id,
        ) from exc
    logger.info("Series extended", extra={"series_id": series.series_id, "created": len(written)})
    return len(written)
