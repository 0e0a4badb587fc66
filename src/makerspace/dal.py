from __future__ import annotations

import uuid
from datetime import UTC, datetime, time
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from . import config
from .errors import (
    ForbiddenError,
    InvalidTransitionError,
    ResourceExistsError,
    SlotTakenError,
    VersionMismatchError,
    VersionRequiredError,
)
from .models import (
    Booking,
    BookingCreate,
    BookingStatus,
    BookingUpdate,
    BulkApproveResult,
    BulkFailure,
    Resource,
    ResourceCreate,
    ResourceStatus,
    ResourceUpdate,
    SlotAvailability,
    SlotInfo,
)
from .roles import Identity
from .scheduling import (
    INACTIVE_STATUSES,
    OverlapStatus,
    TimeRange,
    check_hours,
    check_overlap,
    check_resource_bookable,
    ensure_bookable,
    parse_date,
    parse_time,
    validate_range,
)

logger = Logger()

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
_bookings: DynamoDBTable = _dynamodb.Table(config.BOOKINGS_TABLE)
_resources: DynamoDBTable = _dynamodb.Table(config.RESOURCES_TABLE)
_activity: DynamoDBTable = _dynamodb.Table(config.ACTIVITY_TABLE)

BOOKING_NOT_FOUND = "Booking not found"
RESOURCE_NOT_FOUND = "Resource not found"

# action -> (statuses it may start from, resulting status)
BOOKING_TRANSITIONS: dict[str, tuple[frozenset[str], BookingStatus]] = {
    "approve": (frozenset({"pending"}), "approved"),
    "reject": (frozenset({"pending", "approved"}), "rejected"),
    "complete": (frozenset({"approved"}), "completed"),
    "cancel": (frozenset({"pending", "approved"}), "cancelled"),
}


class BookingItem(TypedDict, total=False):
    booking_id: str
    user_id: str
    resource_id: str
    date: str
    start_time: str
    end_time: str
    status: str
    purpose: str
    series_id: str
    version: int
    overlap_confirmed: bool
    approved_by: str
    created_at: str
    updated_at: str


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def is_condition_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def query_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], table.query(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def scan_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], table.scan(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def update_attrs(
    table: DynamoDBTable,
    key: dict[str, str],
    attrs: dict[str, Any],
    condition: str,
    condition_values: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """SET every attribute in ``attrs`` under ``condition``; returns the new item."""
    set_parts: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, Any] = dict(condition_values or {})

    for name, value in attrs.items():
        names[f"#_{name}"] = name
        values[f":{name}"] = value
        set_parts.append(f"#_{name} = :{name}")

    resp = cast(
        dict[str, Any],
        table.update_item(
            Key=key,
            UpdateExpression="SET " + ", ".join(set_parts),
            ConditionExpression=condition,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        ),
    )
    return cast(dict[str, Any], resp.get("Attributes") or {})


# Activity log


def log_activity(action: str, actor_id: str, target_type: str, target_id: str, **details: Any) -> None:
    item = {
        "activity_id": str(uuid.uuid4()),
        "timestamp": now_iso(),
        "action": action,
        "actor_id": actor_id,
        "target_type": target_type,
        "target_id": target_id,
        "details": {k: v for k, v in details.items() if v is not None},
    }
    logger.info("Activity", extra={"action": action, "target_id": target_id})
    _activity.put_item(Item=item)  # type: ignore


def list_activity(limit: int = 50, target_id: str | None = None) -> list[dict[str, Any]]:
    kwargs: dict[str, Any] = {}
    if target_id is not None:
        kwargs = {
            "FilterExpression": "#target_id = :target_id",
            "ExpressionAttributeNames": {"#target_id": "target_id"},
            "ExpressionAttributeValues": {":target_id": target_id},
        }
    items = scan_all(_activity, **kwargs)
    items.sort(key=lambda it: it.get("timestamp", ""), reverse=True)
    return items[:limit]


# Resources


def create_resource(payload: ResourceCreate, user: Identity) -> Resource:
    if not user.is_tender:
        raise ForbiddenError("Only tenders can add resources")
    now = now_iso()
    item = {
        **payload.model_dump(mode="json", exclude_none=True),
        "created_at": now,
        "updated_at": now,
    }
    try:
        _resources.put_item(Item=item, ConditionExpression="attribute_not_exists(resource_id)")  # type: ignore
    except ClientError as exc:
        if is_condition_failure(exc):
            raise ResourceExistsError(
                f"Resource {payload.resource_id} already exists", resource_id=payload.resource_id
            ) from exc
        raise
    log_activity("resource.created", user.user_id, "resource", payload.resource_id, name=payload.name)
    return Resource.model_validate(item)


def get_resource(resource_id: str) -> Resource:
    resp = cast(dict[str, Any], _resources.get_item(Key={"resource_id": resource_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(RESOURCE_NOT_FOUND)
    return Resource.model_validate(item)


def list_resources(status: str | None = None, category: str | None = None) -> list[Resource]:
    resources = [Resource.model_validate(it) for it in scan_all(_resources)]
    if status is not None:
        resources = [r for r in resources if r.status == status]
    if category is not None:
        resources = [r for r in resources if r.category == category]
    return sorted(resources, key=lambda r: r.name)


def _write_resource(resource_id: str, attrs: dict[str, Any]) -> Resource:
    try:
        attrs = update_attrs(
            _resources,
            {"resource_id": resource_id},
            {**attrs, "updated_at": now_iso()},
            "attribute_exists(resource_id)",
        )
    except ClientError as exc:
        if is_condition_failure(exc):
            raise KeyError(RESOURCE_NOT_FOUND) from exc
        raise
    return Resource.model_validate(attrs)


def update_resource(resource_id: str, payload: ResourceUpdate, user: Identity) -> Resource:
    if not user.can_manage(resource_id):
        raise ForbiddenError("Not authorized to manage this resource")
    changes = payload.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if not changes:
        return get_resource(resource_id)
    resource = _write_resource(resource_id, changes)
    log_activity("resource.updated", user.user_id, "resource", resource_id, fields=sorted(changes))
    return resource


def set_resource_status(
    resource_id: str, status: ResourceStatus, user: Identity, notes: str | None = None
) -> Resource:
    if not user.can_manage(resource_id):
        raise ForbiddenError("Not authorized to manage this resource")
    resource = _write_resource(resource_id, {"status": status, "maintenance_notes": notes})
    logger.info("Resource status changed", extra={"resource_id": resource_id, "status": status})
    log_activity(f"resource.{status}", user.user_id, "resource", resource_id, notes=notes)
    return resource


# Bookings


def new_booking_item(
    resource_id: str,
    user_id: str,
    day: str,
    start_time: str,
    end_time: str,
    purpose: str,
    approved_by: str | None = None,
    series_id: str | None = None,
    overlap_confirmed: bool = False,
) -> BookingItem:
    now = now_iso()
    item: BookingItem = {
        "booking_id": str(uuid.uuid4()),
        "user_id": user_id,
        "resource_id": resource_id,
        "date": day,
        "start_time": start_time,
        "end_time": end_time,
        "status": "approved" if approved_by else "pending",
        "purpose": purpose,
        "version": 1,
        "overlap_confirmed": overlap_confirmed,
        "created_at": now,
        "updated_at": now,
    }
    if approved_by:
        item["approved_by"] = approved_by
    if series_id:
        item["series_id"] = series_id
    return item


def put_booking_item(item: BookingItem) -> None:
    _bookings.put_item(Item=item, ConditionExpression="attribute_not_exists(booking_id)")  # type: ignore


def delete_bookings(booking_ids: list[str]) -> None:
    """Physically remove bookings; only used to roll back an unfinished batch."""
    for booking_id in booking_ids:
        _bookings.delete_item(Key={"booking_id": booking_id})


def create_booking(payload: BookingCreate, user: Identity) -> Booking:
    resource = get_resource(payload.resource_id)
    check_resource_bookable(resource, user)
    candidate = validate_range(payload.date, payload.start_time, payload.end_time)
    check_hours(resource, candidate)

    existing = list_bookings_for_resource(resource.resource_id, payload.date)
    report = check_overlap(candidate, existing, resource.max_concurrent)
    ensure_bookable(report, payload.confirm_overlap)

    auto_approve = user.can_manage(resource.resource_id) or not resource.requires_approval
    item = new_booking_item(
        resource.resource_id,
        user.user_id,
        payload.date,
        payload.start_time,
        payload.end_time,
        payload.purpose,
        approved_by=user.user_id if auto_approve else None,
        overlap_confirmed=report.status is OverlapStatus.OVERLAP_WARNING,
    )

    logger.info(
        "Creating booking",
        extra={"booking_id": item["booking_id"], "resource_id": resource.resource_id, "status": item["status"]},
    )
    put_booking_item(item)
    log_activity(
        "booking.created", user.user_id, "booking", item["booking_id"],
        resource_id=resource.resource_id, date=payload.date, auto_approved=auto_approve,
    )
    return get_booking(item["booking_id"])


def get_booking(booking_id: str) -> Booking:
    resp = cast(dict[str, Any], _bookings.get_item(Key={"booking_id": booking_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(BOOKING_NOT_FOUND)
    return _to_model(cast(BookingItem, item))


def list_bookings_for_user(user_id: str) -> list[Booking]:
    items = query_all(
        _bookings,
        IndexName="user_id_index",
        KeyConditionExpression="user_id = :uid",
        ExpressionAttributeValues={":uid": user_id},
    )
    return _sorted(items)


def list_bookings_for_resource(resource_id: str, day: str) -> list[Booking]:
    items = query_all(
        _bookings,
        IndexName="resource_date_index",
        KeyConditionExpression="resource_id = :rid AND #date = :date",
        ExpressionAttributeNames={"#date": "date"},
        ExpressionAttributeValues={":rid": resource_id, ":date": day},
    )
    return _sorted(items)


def list_series_bookings(series_id: str) -> list[Booking]:
    items = query_all(
        _bookings,
        IndexName="series_id_index",
        KeyConditionExpression="series_id = :sid",
        ExpressionAttributeValues={":sid": series_id},
    )
    return _sorted(items)


def list_bookings_between(start_date: str, end_date: str, resource_id: str | None = None) -> list[Booking]:
    expression = "#date >= :start AND #date <= :end"
    names = {"#date": "date"}
    values: dict[str, Any] = {":start": start_date, ":end": end_date}
    if resource_id is not None:
        expression += " AND #resource_id = :rid"
        names["#resource_id"] = "resource_id"
        values[":rid"] = resource_id
    items = scan_all(
        _bookings, FilterExpression=expression, ExpressionAttributeNames=names, ExpressionAttributeValues=values
    )
    return _sorted(items)


def list_pending_bookings() -> list[Booking]:
    items = scan_all(
        _bookings,
        FilterExpression="#status = :status",
        ExpressionAttributeNames={"#status": "status"},
        ExpressionAttributeValues={":status": "pending"},
    )
    return _sorted(items)


def _write_booking(booking: Booking, attrs: dict[str, Any]) -> Booking:
    """Conditional write guarded by the version the caller read."""
    attrs = {**attrs, "version": booking.version + 1, "updated_at": now_iso()}
    try:
        new_item = update_attrs(
            _bookings,
            {"booking_id": booking.booking_id},
            attrs,
            "attribute_exists(booking_id) AND #_version = :expected_version",
            {":expected_version": booking.version},
        )
    except ClientError as exc:
        if is_condition_failure(exc):
            raise VersionMismatchError(
                "Booking was modified by another request. Please refresh and try again.",
                your_version=booking.version,
            ) from exc
        raise
    return _to_model(cast(BookingItem, new_item))


def _check_version(booking: Booking, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != booking.version:
        raise VersionMismatchError(
            "Booking was modified by another request. Please refresh and try again.",
            current_version=booking.version,
            your_version=expected_version,
        )


def update_booking(
    booking_id: str, payload: BookingUpdate, user: Identity, expected_version: int | None = None
) -> Booking:
    current = get_booking(booking_id)
    manages = user.can_manage(current.resource_id)
    if current.user_id != user.user_id and not manages:
        raise ForbiddenError("Not authorized to edit this booking")
    if current.status not in ("pending", "approved"):
        raise InvalidTransitionError(
            f"Cannot edit a {current.status} booking", current_status=current.status
        )
    expected = expected_version if expected_version is not None else payload.version
    if expected is None:
        raise VersionRequiredError(
            "Send the version you read, as If-Match or in the body", current_version=current.version
        )
    _check_version(current, expected)

    changes = payload.model_dump(exclude_none=True, exclude={"version", "confirm_overlap"})
    changes = {k: v for k, v in changes.items() if getattr(current, k) != v}
    if not changes:
        return current

    if any(k in changes for k in ("resource_id", "date", "start_time", "end_time")):
        merged = current.model_copy(update=changes)
        resource = get_resource(merged.resource_id)
        check_resource_bookable(resource, user)
        candidate = validate_range(merged.date, merged.start_time, merged.end_time)
        check_hours(resource, candidate)
        others = [
            b for b in list_bookings_for_resource(merged.resource_id, merged.date)
            if b.booking_id != booking_id
        ]
        report = check_overlap(candidate, others, resource.max_concurrent)
        ensure_bookable(report, payload.confirm_overlap)
        changes["overlap_confirmed"] = report.status is OverlapStatus.OVERLAP_WARNING

        # participants re-enter the approval queue after moving an approved slot
        if current.status == "approved" and not user.can_manage(merged.resource_id):
            if resource.requires_approval:
                changes["status"] = "pending"
                changes["approved_by"] = None

    updated = _write_booking(current, changes)
    log_activity(
        "booking.updated", user.user_id, "booking", booking_id,
        fields=sorted(changes), status=updated.status,
    )
    return updated


def _transition(booking: Booking, action: str, user: Identity, **attrs: Any) -> Booking:
    allowed, target = BOOKING_TRANSITIONS[action]
    if booking.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} a {booking.status} booking", current_status=booking.status
        )
    updated = _write_booking(booking, {"status": target, **attrs})
    logger.info("Booking transition", extra={"booking_id": booking.booking_id, "status": target})
    log_activity(
        f"booking.{updated.status}", user.user_id, "booking", booking.booking_id,
        previous_status=booking.status, **{k: v for k, v in attrs.items() if k.endswith("reason")},
    )
    return updated


def _require_manager(booking: Booking, user: Identity) -> None:
    if not user.can_manage(booking.resource_id):
        raise ForbiddenError("Not authorized to manage bookings for this resource")


def approve_booking(booking_id: str, user: Identity) -> Booking:
    booking = get_booking(booking_id)
    _require_manager(booking, user)
    return _transition(booking, "approve", user, approved_by=user.user_id)


def reject_booking(booking_id: str, user: Identity, reason: str) -> Booking:
    booking = get_booking(booking_id)
    _require_manager(booking, user)
    return _transition(booking, "reject", user, rejected_by=user.user_id, rejection_reason=reason)


def complete_booking(booking_id: str, user: Identity) -> Booking:
    booking = get_booking(booking_id)
    _require_manager(booking, user)
    return _transition(booking, "complete", user)


def cancel_booking(booking_id: str, user: Identity, reason: str | None = None) -> Booking:
    booking = get_booking(booking_id)
    if booking.user_id != user.user_id and not user.can_manage(booking.resource_id):
        raise ForbiddenError("Not authorized to cancel this booking")
    return _transition(
        booking, "cancel", user,
        previous_status=booking.status, cancelled_by=user.user_id, cancel_reason=reason,
    )


def restore_booking(booking_id: str, user: Identity, expected_version: int | None = None) -> Booking:
    """Reverse a cancellation, provided nothing else touched the booking since."""
    booking = get_booking(booking_id)
    if booking.status != "cancelled":
        raise InvalidTransitionError(
            "Only cancelled bookings can be restored", current_status=booking.status
        )
    _check_version(booking, expected_version)

    resource = get_resource(booking.resource_id)
    candidate = validate_range(booking.date, booking.start_time, booking.end_time)
    check_resource_bookable(resource, user)
    check_hours(resource, candidate)
    others = [
        b for b in list_bookings_for_resource(booking.resource_id, booking.date)
        if b.booking_id != booking_id
    ]
    report = check_overlap(candidate, others, resource.max_concurrent)
    if report.status is OverlapStatus.SLOT_TAKEN:
        raise SlotTakenError(
            "The slot was taken while the booking was cancelled",
            conflicting_booking_ids=report.conflicting_ids,
        )

    restored = _write_booking(
        booking,
        {
            "status": booking.previous_status or "pending",
            "previous_status": None,
            "cancelled_by": None,
            "cancel_reason": None,
        },
    )
    log_activity("booking.restored", user.user_id, "booking", booking_id, status=restored.status)
    return restored


def bulk_approve(booking_ids: list[str], user: Identity) -> BulkApproveResult:
    result = BulkApproveResult()
    for booking_id in booking_ids:
        try:
            approve_booking(booking_id, user)
        except KeyError:
            result.failed.append(BulkFailure(booking_id=booking_id, reason=BOOKING_NOT_FOUND))
        except (ForbiddenError, InvalidTransitionError, VersionMismatchError) as exc:
            result.failed.append(BulkFailure(booking_id=booking_id, reason=exc.message))
        else:
            result.approved.append(booking_id)
    return result


def slot_availability(resource_id: str, day: str) -> SlotAvailability:
    resource = get_resource(resource_id)
    parsed_day = parse_date(day)
    active = [
        b for b in list_bookings_for_resource(resource_id, day) if b.status not in INACTIVE_STATUSES
    ]

    slots: list[SlotInfo] = []
    for hour in range(24):
        hour_range = TimeRange(parsed_day, time(hour), time(hour + 1) if hour < 23 else time.max)
        inside = [
            b for b in active
            if hour_range.overlaps(parse_time(b.start_time), parse_time(b.end_time))
        ]
        available = resource.max_concurrent - len(inside)
        slots.append(
            SlotInfo(
                hour=f"{hour:02d}:00",
                active=len(inside),
                approved=sum(1 for b in inside if b.status == "approved"),
                pending=sum(1 for b in inside if b.status == "pending"),
                available=max(0, available),
                is_full=available <= 0,
                booking_ids=[b.booking_id for b in inside],
            )
        )
    return SlotAvailability(
        resource_id=resource_id,
        date=day,
        max_concurrent=resource.max_concurrent,
        resource_status=resource.status,
        slots=slots,
    )


def _sorted(items: list[dict[str, Any]]) -> list[Booking]:
    bookings = [_to_model(cast(BookingItem, it)) for it in items]
    return sorted(bookings, key=lambda b: (b.date, b.start_time, b.booking_id))


def _to_model(item: BookingItem) -> Booking:
    return Booking.model_validate(item)
