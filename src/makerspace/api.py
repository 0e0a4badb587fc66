from __future__ import annotations

import re
from typing import Annotated, Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from makerspace import analytics, config, dal, recurring, waitlist
from makerspace.errors import SchedulingError
from makerspace.models import (
    DATE_PATTERN,
    ActivityEntry,
    Booking,
    BookingCreate,
    BookingUpdate,
    BulkApproveRequest,
    BulkApproveResult,
    CancelRequest,
    CancelResponse,
    ExpansionResult,
    MaintenanceRequest,
    RecurringSeries,
    RejectRequest,
    Resource,
    ResourceCreate,
    ResourceUpdate,
    SeriesCancelled,
    SeriesCreate,
    SeriesCreated,
    SlotAvailability,
    UndoOffer,
    UndoRequest,
    UtilizationReport,
    WaitlistConverted,
    WaitlistConvertRequest,
    WaitlistEntry,
    WaitlistJoin,
    WaitlistStats,
)
from makerspace.roles import Identity
from makerspace.scheduling import parse_date
from makerspace.undo import UndoSessions

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace=config.METRICS_NAMESPACE)

app = FastAPI(title="Makerspace Scheduler API", version="0.1.0")
app.state.undo_sessions = UndoSessions()

_ETAG_RE = re.compile(r'^(?:W/)?"?v?(\d+)"?$')


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    logger.info("Request refused", extra={"code": str(exc.code), "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _split(value: str | None) -> frozenset[str]:
    return frozenset(v.strip() for v in (value or "").split(",") if v.strip())


def current_identity(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
    x_user_certifications: Annotated[str | None, Header()] = None,
    x_tool_grants: Annotated[str | None, Header()] = None,
) -> Identity:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Identity(
        user_id=x_user_id,
        email=x_user_email,
        role=x_user_role,
        certifications=_split(x_user_certifications),
        tool_grants=_split(x_tool_grants),
    )


CurrentUser = Annotated[Identity, Depends(current_identity)]


def _require_tender(user: Identity) -> None:
    if not user.is_tender:
        raise HTTPException(status_code=403, detail="Tender access required")


def _not_found(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=404, detail=exc.args[0] if exc.args else "Not found")


def _parse_if_match(value: str | None) -> int | None:
    if not value or value.strip() == "*":
        return None
    match = _ETAG_RE.match(value.strip())
    if match is None:
        raise HTTPException(status_code=400, detail="Malformed If-Match header")
    return int(match.group(1))


def _with_etag(booking: Booking, response: Response) -> Booking:
    response.headers["ETag"] = booking.etag
    return booking


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# Resources


@tracer.capture_method
@app.post("/resources", response_model=Resource, status_code=201)
def create_resource(payload: ResourceCreate, user: CurrentUser) -> Resource:
    return dal.create_resource(payload, user)


@tracer.capture_method
@app.get("/resources", response_model=list[Resource])
def list_resources(status: str | None = None, category: str | None = None) -> list[Resource]:
    return dal.list_resources(status=status, category=category)


@tracer.capture_method
@app.get("/resources/{resource_id}", response_model=Resource)
def get_resource(resource_id: str) -> Resource:
    try:
        return dal.get_resource(resource_id)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.put("/resources/{resource_id}", response_model=Resource)
def update_resource(resource_id: str, payload: ResourceUpdate, user: CurrentUser) -> Resource:
    try:
        return dal.update_resource(resource_id, payload, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/resources/{resource_id}/maintenance", response_model=Resource)
def start_maintenance(resource_id: str, payload: MaintenanceRequest, user: CurrentUser) -> Resource:
    try:
        return dal.set_resource_status(resource_id, "maintenance", user, notes=payload.notes)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/resources/{resource_id}/activate", response_model=Resource)
def activate_resource(resource_id: str, user: CurrentUser) -> Resource:
    try:
        return dal.set_resource_status(resource_id, "active", user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.get("/resources/{resource_id}/slots/{day}", response_model=SlotAvailability)
def slot_availability(resource_id: str, day: str) -> SlotAvailability:
    try:
        return dal.slot_availability(resource_id, day)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.get("/resources/{resource_id}/bookings/{day}", response_model=list[Booking])
def list_resource_bookings(resource_id: str, day: str, user: CurrentUser) -> list[Booking]:
    parse_date(day)
    try:
        dal.get_resource(resource_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return dal.list_bookings_for_resource(resource_id, day)


# Bookings


@tracer.capture_method
@app.post("/bookings", response_model=Booking, status_code=201)
def create_booking(payload: BookingCreate, user: CurrentUser, response: Response) -> Booking:
    try:
        booking = dal.create_booking(payload, user)
    except KeyError as exc:
        raise _not_found(exc) from exc
    metrics.add_metric(name="CreateBooking", value=1, unit=MetricUnit.Count)
    return _with_etag(booking, response)


@tracer.capture_method
@app.get("/bookings/pending", response_model=list[Booking])
def list_pending(user: CurrentUser) -> list[Booking]:
    _require_tender(user)
    return [b for b in dal.list_pending_bookings() if user.can_manage(b.resource_id)]


@tracer.capture_method
@app.post("/bookings/bulk/approve", response_model=BulkApproveResult)
def bulk_approve(payload: BulkApproveRequest, user: CurrentUser) -> BulkApproveResult:
    _require_tender(user)
    return dal.bulk_approve(payload.booking_ids, user)


@tracer.capture_method
@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, user: CurrentUser, response: Response) -> Booking:
    try:
        booking = dal.get_booking(booking_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    if booking.user_id != user.user_id and not user.can_manage(booking.resource_id):
        raise HTTPException(status_code=403, detail="Not authorized to view this booking")
    return _with_etag(booking, response)


@tracer.capture_method
@app.get("/users/{user_id}/bookings", response_model=list[Booking])
def list_bookings(user_id: str, user: CurrentUser) -> list[Booking]:
    if user_id != user.user_id and not user.is_tender:
        raise HTTPException(status_code=403, detail="Not authorized to list these bookings")
    return dal.list_bookings_for_user(user_id)


@tracer.capture_method
@app.put("/bookings/{booking_id}", response_model=Booking)
def update_booking(
    booking_id: str,
    payload: BookingUpdate,
    user: CurrentUser,
    response: Response,
    if_match: Annotated[str | None, Header()] = None,
) -> Booking:
    try:
        booking = dal.update_booking(booking_id, payload, user, _parse_if_match(if_match))
    except KeyError as exc:
        raise _not_found(exc) from exc
    return _with_etag(booking, response)


@tracer.capture_method
@app.post("/bookings/{booking_id}/approve", response_model=Booking)
def approve_booking(booking_id: str, user: CurrentUser, response: Response) -> Booking:
    try:
        return _with_etag(dal.approve_booking(booking_id, user), response)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/bookings/{booking_id}/reject", response_model=Booking)
def reject_booking(booking_id: str, payload: RejectRequest, user: CurrentUser, response: Response) -> Booking:
    try:
        booking = dal.reject_booking(booking_id, user, payload.reason)
    except KeyError as exc:
        raise _not_found(exc) from exc
    waitlist.promote_next(booking)
    return _with_etag(booking, response)


@tracer.capture_method
@app.post("/bookings/{booking_id}/complete", response_model=Booking)
def complete_booking(booking_id: str, user: CurrentUser, response: Response) -> Booking:
    try:
        return _with_etag(dal.complete_booking(booking_id, user), response)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/bookings/{booking_id}/cancel", response_model=CancelResponse)
def cancel_booking(
    booking_id: str, user: CurrentUser, request: Request, payload: CancelRequest | None = None
) -> CancelResponse:
    try:
        booking = dal.cancel_booking(booking_id, user, payload.reason if payload else None)
    except KeyError as exc:
        raise _not_found(exc) from exc

    promoted = waitlist.promote_next(booking)

    def undo() -> Booking:
        restored = dal.restore_booking(booking_id, user, expected_version=booking.version)
        waitlist.demote(promoted)
        return restored

    registry = request.app.state.undo_sessions.for_user(user.user_id)
    token = f"booking:{booking_id}"
    invoker = registry.register(token, undo, config.UNDO_WINDOW_MS)
    return CancelResponse(
        booking=booking,
        waitlist_promoted=[entry.entry_id for entry in promoted],
        undo=UndoOffer(
            token=token,
            expires_at=invoker.expires_at.isoformat(),
            window_seconds=config.UNDO_WINDOW_MS / 1000,
        ),
    )


@tracer.capture_method
@app.post("/bookings/{booking_id}/undo", response_model=Booking)
def undo_cancel(booking_id: str, payload: UndoRequest, user: CurrentUser, request: Request) -> Booking:
    if payload.token != f"booking:{booking_id}":
        raise HTTPException(status_code=400, detail="Undo token does not match this booking")
    registry = request.app.state.undo_sessions.for_user(user.user_id)
    try:
        return registry.invoke(payload.token)
    except KeyError as exc:
        raise _not_found(exc) from exc


# Series


@tracer.capture_method
@app.post("/series/preview", response_model=ExpansionResult)
def preview_series(payload: SeriesCreate, user: CurrentUser) -> ExpansionResult:
    try:
        return recurring.preview_series(payload, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/series", response_model=SeriesCreated, status_code=201)
def create_series(payload: SeriesCreate, user: CurrentUser) -> SeriesCreated:
    try:
        created = recurring.create_series(payload, user)
    except KeyError as exc:
        raise _not_found(exc) from exc
    metrics.add_metric(name="CreateSeries", value=1, unit=MetricUnit.Count)
    metrics.add_metric(name="SeriesInstances", value=len(created.bookings), unit=MetricUnit.Count)
    return created


@tracer.capture_method
@app.get("/series", response_model=list[RecurringSeries])
def list_my_series(user: CurrentUser) -> list[RecurringSeries]:
    return recurring.list_series_for_user(user.user_id)


@tracer.capture_method
@app.get("/series/{series_id}", response_model=RecurringSeries)
def get_series(series_id: str, user: CurrentUser) -> RecurringSeries:
    try:
        return recurring.get_series(series_id, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.get("/series/{series_id}/bookings", response_model=list[Booking])
def list_series_bookings(series_id: str, user: CurrentUser) -> list[Booking]:
    try:
        return recurring.list_series_bookings(series_id, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/series/{series_id}/pause", response_model=RecurringSeries)
def pause_series(series_id: str, user: CurrentUser) -> RecurringSeries:
    try:
        return recurring.pause_series(series_id, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/series/{series_id}/resume", response_model=RecurringSeries)
def resume_series(series_id: str, user: CurrentUser) -> RecurringSeries:
    try:
        return recurring.resume_series(series_id, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


@tracer.capture_method
@app.post("/series/{series_id}/cancel", response_model=SeriesCancelled)
def cancel_series(series_id: str, user: CurrentUser) -> SeriesCancelled:
    try:
        return recurring.cancel_series(series_id, user)
    except KeyError as exc:
        raise _not_found(exc) from exc


# Waitlist


@tracer.capture_method
@app.post("/waitlist", response_model=WaitlistEntry, status_code=201)
def join_waitlist(payload: WaitlistJoin, user: CurrentUser) -> WaitlistEntry:
    try:
        entry = waitlist.join_waitlist(payload, user)
    except KeyError as exc:
        raise _not_found(exc) from exc
    metrics.add_metric(name="WaitlistJoined", value=1, unit=MetricUnit.Count)
    return entry


@tracer.capture_method
@app.get("/waitlist", response_model=list[WaitlistEntry])
def list_my_waitlist(user: CurrentUser) -> list[WaitlistEntry]:
    return waitlist.list_waitlist_for_user(user.user_id)


@tracer.capture_method
@app.delete("/waitlist/{entry_id}", status_code=204)
def leave_waitlist(entry_id: str, user: CurrentUser) -> Response:
    try:
        waitlist.leave_waitlist(entry_id, user)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return Response(status_code=204)


@tracer.capture_method
@app.post("/waitlist/{entry_id}/convert", response_model=WaitlistConverted, status_code=201)
def convert_waitlist_entry(
    entry_id: str, user: CurrentUser, payload: WaitlistConvertRequest | None = None
) -> WaitlistConverted:
    try:
        converted = waitlist.convert_entry(entry_id, user, payload.purpose if payload else None)
    except KeyError as exc:
        raise _not_found(exc) from exc
    metrics.add_metric(name="WaitlistConverted", value=1, unit=MetricUnit.Count)
    return converted


@tracer.capture_method
@app.get("/resources/{resource_id}/waitlist/{day}", response_model=list[WaitlistEntry])
def list_resource_waitlist(resource_id: str, day: str, user: CurrentUser) -> list[WaitlistEntry]:
    parse_date(day)
    try:
        return waitlist.list_waitlist_for_resource(resource_id, day)
    except KeyError as exc:
        raise _not_found(exc) from exc


# Analytics


@tracer.capture_method
@app.get("/resources/{resource_id}/waitlist-stats", response_model=WaitlistStats)
def get_waitlist_stats(resource_id: str, user: CurrentUser) -> WaitlistStats:
    _require_tender(user)
    return waitlist.waitlist_stats(resource_id)


@tracer.capture_method
@app.get("/analytics/utilization", response_model=UtilizationReport)
def get_utilization(
    user: CurrentUser,
    start_date: Annotated[str, Query(pattern=DATE_PATTERN)],
    end_date: Annotated[str, Query(pattern=DATE_PATTERN)],
    resource_id: str | None = None,
) -> UtilizationReport:
    _require_tender(user)
    return analytics.utilization_report(start_date, end_date, resource_id)


# Audit


@tracer.capture_method
@app.get("/activity", response_model=list[ActivityEntry])
def list_activity(
    user: CurrentUser,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    target_id: str | None = None,
) -> list[dict[str, Any]]:
    _require_tender(user)
    return dal.list_activity(limit=limit, target_id=target_id)
