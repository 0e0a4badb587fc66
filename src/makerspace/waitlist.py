"""Waitlists for full slots: join with a position, promote when the slot frees up."""
from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    DynamoDBTable = Any  # type: ignore[assignment]

from . import config, dal
from .errors import AlreadyWaitlistedError, ForbiddenError, InvalidTransitionError
from .models import (
    Booking,
    BookingCreate,
    WaitlistConverted,
    WaitlistEntry,
    WaitlistJoin,
    WaitlistStats,
)
from .roles import Identity
from .scheduling import check_hours, check_resource_bookable, validate_range

logger = Logger()

_table: DynamoDBTable = boto3.resource("dynamodb").Table(config.WAITLIST_TABLE)

ENTRY_NOT_FOUND = "Waitlist entry not found"


def slot_key(resource_id: str, day: str, start_time: str) -> str:
    return f"{resource_id}#{day}#{start_time}"


def _queue_order(entry: WaitlistEntry) -> tuple[int, str]:
    return entry.position, entry.created_at or ""


def _entries_on(resource_id: str, day: str) -> list[WaitlistEntry]:
    items = dal.query_all(
        _table,
        IndexName="resource_date_index",
        KeyConditionExpression="resource_id = :rid AND #date = :date",
        ExpressionAttributeNames={"#date": "date"},
        ExpressionAttributeValues={":rid": resource_id, ":date": day},
    )
    return [WaitlistEntry.model_validate(item) for item in items]


def slot_queue(resource_id: str, day: str, start_time: str) -> list[WaitlistEntry]:
    """Entries still waiting for one slot, head of the queue first."""
    key = slot_key(resource_id, day, start_time)
    waiting = [e for e in _entries_on(resource_id, day) if e.slot_key == key and e.status == "waiting"]
    return sorted(waiting, key=_queue_order)


def get_entry(entry_id: str) -> WaitlistEntry:
    resp = cast(dict[str, Any], _table.get_item(Key={"entry_id": entry_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(ENTRY_NOT_FOUND)
    return WaitlistEntry.model_validate(item)


def list_waitlist_for_user(user_id: str) -> list[WaitlistEntry]:
    items = dal.query_all(
        _table,
        IndexName="user_id_index",
        KeyConditionExpression="user_id = :uid",
        ExpressionAttributeValues={":uid": user_id},
    )
    entries = [WaitlistEntry.model_validate(item) for item in items]
    return sorted(entries, key=lambda e: (e.date, e.start_time, e.created_at or ""))


def list_waitlist_for_resource(resource_id: str, day: str) -> list[WaitlistEntry]:
    dal.get_resource(resource_id)
    open_entries = [e for e in _entries_on(resource_id, day) if e.status != "converted"]
    return sorted(open_entries, key=lambda e: (e.start_time, e.status != "promoted", *_queue_order(e)))


def join_waitlist(payload: WaitlistJoin, user: Identity) -> WaitlistEntry:
    resource = dal.get_resource(payload.resource_id)
    check_resource_bookable(resource, user)
    candidate = validate_range(payload.date, payload.start_time, payload.end_time)
    check_hours(resource, candidate)

    key = slot_key(resource.resource_id, payload.date, payload.start_time)
    on_slot = [e for e in _entries_on(resource.resource_id, payload.date) if e.slot_key == key]
    if any(e.user_id == user.user_id and e.status != "converted" for e in on_slot):
        raise AlreadyWaitlistedError("You are already on this waitlist", slot_key=key)

    now = dal.now_iso()
    item: dict[str, Any] = {
        "entry_id": str(uuid.uuid4()),
        "slot_key": key,
        "user_id": user.user_id,
        "resource_id": resource.resource_id,
        "date": payload.date,
        "start_time": payload.start_time,
        "end_time": payload.end_time,
        "position": sum(1 for e in on_slot if e.status == "waiting") + 1,
        "status": "waiting",
        "created_at": now,
        "updated_at": now,
    }
    if payload.notes:
        item["notes"] = payload.notes
    _table.put_item(Item=item, ConditionExpression="attribute_not_exists(entry_id)")  # type: ignore

    dal.log_activity(
        "waitlist.joined", user.user_id, "waitlist", item["entry_id"],
        resource_id=resource.resource_id, date=payload.date, position=item["position"],
    )
    return WaitlistEntry.model_validate(item)


def _reorder(resource_id: str, day: str, start_time: str) -> None:
    for position, entry in enumerate(slot_queue(resource_id, day, start_time), start=1):
        if entry.position != position:
            dal.update_attrs(
                _table,
                {"entry_id": entry.entry_id},
                {"position": position, "updated_at": dal.now_iso()},
                "attribute_exists(entry_id)",
            )


def leave_waitlist(entry_id: str, user: Identity) -> None:
    entry = get_entry(entry_id)
    if entry.user_id != user.user_id and not user.can_manage(entry.resource_id):
        raise ForbiddenError("Not authorized to remove this waitlist entry")
    _table.delete_item(Key={"entry_id": entry_id})
    _reorder(entry.resource_id, entry.date, entry.start_time)
    dal.log_activity("waitlist.left", user.user_id, "waitlist", entry_id, slot_key=entry.slot_key)


def _set_status(entry: WaitlistEntry, expected: str, attrs: dict[str, Any]) -> WaitlistEntry | None:
    try:
        item = dal.update_attrs(
            _table,
            {"entry_id": entry.entry_id},
            {**attrs, "updated_at": dal.now_iso()},
            "attribute_exists(entry_id) AND #_status = :expected_status",
            {":expected_status": expected},
        )
    except ClientError as exc:
        if dal.is_condition_failure(exc):
            return None
        raise
    return WaitlistEntry.model_validate(item)


def promote_next(freed: Booking) -> list[WaitlistEntry]:
    """Promote the head of every queue whose slot overlaps a freed booking.

    A promoted entry may be turned into a booking by its owner. Nobody is
    notified from here; clients read the promotion from the waitlist routes.
    """
    heads: dict[str, WaitlistEntry] = {}
    for entry in _entries_on(freed.resource_id, freed.date):
        if entry.status != "waiting":
            continue
        if not (entry.start_time < freed.end_time and freed.start_time < entry.end_time):
            continue
        head = heads.get(entry.slot_key)
        if head is None or _queue_order(entry) < _queue_order(head):
            heads[entry.slot_key] = entry

    promoted: list[WaitlistEntry] = []
    for head in heads.values():
        updated = _set_status(head, "waiting", {"status": "promoted", "promoted_at": dal.now_iso()})
        if updated is None:
            continue
        promoted.append(updated)
        _reorder(head.resource_id, head.date, head.start_time)
        logger.info("Waitlist entry promoted", extra={"entry_id": head.entry_id, "booking_id": freed.booking_id})
        dal.log_activity(
            "waitlist.promoted", head.user_id, "waitlist", head.entry_id, freed_booking_id=freed.booking_id
        )
    return promoted


def demote(entries: list[WaitlistEntry]) -> None:
    """Send promotions back to the queue after the freeing cancellation was undone."""
    for entry in entries:
        if _set_status(entry, "promoted", {"status": "waiting", "promoted_at": None}) is not None:
            _reorder(entry.resource_id, entry.date, entry.start_time)


def convert_entry(entry_id: str, user: Identity, purpose: str | None = None) -> WaitlistConverted:
    entry = get_entry(entry_id)
    if entry.user_id != user.user_id:
        raise ForbiddenError("Only the waiting member can book this slot")
    if entry.status != "promoted":
        raise InvalidTransitionError(
            f"Cannot book from a {entry.status} waitlist entry", current_status=entry.status
        )

    booking = dal.create_booking(
        BookingCreate(
            resource_id=entry.resource_id,
            date=entry.date,
            start_time=entry.start_time,
            end_time=entry.end_time,
            purpose=purpose or entry.notes or "Booked from waitlist",
        ),
        user,
    )
    updated = _set_status(entry, "promoted", {"status": "converted", "booking_id": booking.booking_id})
    if updated is None:
        dal.delete_bookings([booking.booking_id])
        raise InvalidTransitionError("Waitlist entry changed while booking", entry_id=entry_id)
    dal.log_activity(
        "waitlist.converted", user.user_id, "waitlist", entry_id, booking_id=booking.booking_id
    )
    return WaitlistConverted(entry=updated, booking=booking)


def waitlist_stats(resource_id: str) -> WaitlistStats:
    items = dal.scan_all(
        _table,
        FilterExpression="#resource_id = :rid",
        ExpressionAttributeNames={"#resource_id": "resource_id"},
        ExpressionAttributeValues={":rid": resource_id},
    )
    entries = [WaitlistEntry.model_validate(item) for item in items]
    stats = WaitlistStats(resource_id=resource_id, total=len(entries))
    for entry in entries:
        setattr(stats, entry.status, getattr(stats, entry.status) + 1)
    if entries:
        stats.avg_position = round(sum(e.position for e in entries) / len(entries), 2)
    return stats
