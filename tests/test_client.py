from __future__ import annotations

from datetime import date
from http import HTTPStatus
from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from makerspace import recurring
from makerspace.api import app
from makerspace.errors import SlotTakenError, VersionMismatchError
from makerspace.models import (
    Booking,
    ExpansionResult,
    PlannedInstance,
    RecurringSeries,
    SeriesCreate,
    SeriesCreated,
    SkippedInstance,
)
from makerspace.roles import Identity
from makerspace.undo import UndoSessions

MEMBER = {"X-User-Id": "u-1", "X-User-Role": "member"}
TENDER = {"X-User-Id": "t-1", "X-User-Role": "admin"}


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock(monkeypatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr(app.state, "undo_sessions", UndoSessions(fake))
    return fake


def booking_factory(**overrides: Any) -> Booking:
    base = dict(
        booking_id="b-123",
        user_id="u-1",
        resource_id="laser",
        date="2030-01-07",
        start_time="09:00",
        end_time="10:00",
        status="approved",
        purpose="Engrave signs",
        version=1,
    )
    base.update(overrides)
    return Booking(**base)


def booking_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "resource_id": "laser",
        "date": "2030-01-07",
        "start_time": "09:00",
        "end_time": "10:00",
        "purpose": "Engrave signs",
    }
    payload.update(overrides)
    return payload


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == HTTPStatus.OK
    assert resp.json() == {"status": "ok"}


def test_missing_identity_is_unauthorized(client: TestClient) -> None:
    resp = client.post("/bookings", json=booking_payload())
    assert resp.status_code == HTTPStatus.UNAUTHORIZED


def test_create_booking_route(client: TestClient) -> None:
    with patch("makerspace.api.dal.create_booking") as mock_create:
        mock_create.return_value = booking_factory()
        resp = client.post("/bookings", json=booking_payload(), headers=MEMBER)
        assert resp.status_code == HTTPStatus.CREATED
        assert resp.json()["booking_id"] == "b-123"
        assert resp.headers["ETag"] == '"v1"'
        _, user = mock_create.call_args.args
        assert user.user_id == "u-1"


def test_create_booking_identity_headers(client: TestClient) -> None:
    headers = {**MEMBER, "X-User-Certifications": "laser-101, kiln-201", "X-Tool-Grants": ""}
    with patch("makerspace.api.dal.create_booking") as mock_create:
        mock_create.return_value = booking_factory()
        client.post("/bookings", json=booking_payload(), headers=headers)
        _, user = mock_create.call_args.args
        assert user.certifications == frozenset({"laser-101", "kiln-201"})
        assert user.role == "participant"


def test_create_booking_validation_error(client: TestClient) -> None:
    resp = client.post("/bookings", json=booking_payload(start_time="9am"), headers=MEMBER)
    assert resp.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


def test_create_booking_slot_taken_maps_to_conflict(client: TestClient) -> None:
    with patch("makerspace.api.dal.create_booking") as mock_create:
        mock_create.side_effect = SlotTakenError(
            "Time slot is fully booked", max_concurrent=1, conflicting_booking_ids=["b-9"]
        )
        resp = client.post("/bookings", json=booking_payload(), headers=MEMBER)
        assert resp.status_code == HTTPStatus.CONFLICT
        body = resp.json()
        assert body["code"] == "SLOT_TAKEN"
        assert body["conflicting_booking_ids"] == ["b-9"]


def test_get_booking_route_found(client: TestClient) -> None:
    with patch("makerspace.api.dal.get_booking") as mock_get:
        mock_get.return_value = booking_factory(booking_id="b-42", version=3)
        resp = client.get("/bookings/b-42", headers=MEMBER)
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["booking_id"] == "b-42"
        assert resp.headers["ETag"] == '"v3"'


def test_get_booking_route_not_found(client: TestClient) -> None:
    with patch("makerspace.api.dal.get_booking") as mock_get:
        mock_get.side_effect = KeyError("Booking not found")
        resp = client.get("/bookings/missing", headers=MEMBER)
        assert resp.status_code == HTTPStatus.NOT_FOUND
        assert resp.json()["detail"] == "Booking not found"


def test_get_someone_elses_booking_is_forbidden(client: TestClient) -> None:
    with patch("makerspace.api.dal.get_booking") as mock_get:
        mock_get.return_value = booking_factory(user_id="u-2")
        assert client.get("/bookings/b-123", headers=MEMBER).status_code == HTTPStatus.FORBIDDEN
        assert client.get("/bookings/b-123", headers=TENDER).status_code == HTTPStatus.OK


def test_list_bookings_route(client: TestClient) -> None:
    with patch("makerspace.api.dal.list_bookings_for_user") as mock_list:
        mock_list.return_value = [booking_factory(booking_id="b1"), booking_factory(booking_id="b2")]
        resp = client.get("/users/u-1/bookings", headers=MEMBER)
        assert resp.status_code == HTTPStatus.OK
        assert [b["booking_id"] for b in resp.json()] == ["b1", "b2"]
        assert client.get("/users/u-2/bookings", headers=MEMBER).status_code == HTTPStatus.FORBIDDEN


def test_update_booking_passes_if_match_version(client: TestClient) -> None:
    with patch("makerspace.api.dal.update_booking") as mock_update:
        mock_update.return_value = booking_factory(purpose="Cut acrylic", version=4)
        resp = client.put(
            "/bookings/b-123", json={"purpose": "Cut acrylic"}, headers={**MEMBER, "If-Match": '"v3"'}
        )
        assert resp.status_code == HTTPStatus.OK
        assert resp.headers["ETag"] == '"v4"'
        assert mock_update.call_args.args[3] == 3


def test_update_booking_version_mismatch(client: TestClient) -> None:
    with patch("makerspace.api.dal.update_booking") as mock_update:
        mock_update.side_effect = VersionMismatchError(
            "Booking was modified by another request. Please refresh and try again.",
            current_version=5,
            your_version=3,
        )
        resp = client.put("/bookings/b-123", json={"purpose": "x"}, headers={**MEMBER, "If-Match": "3"})
        assert resp.status_code == HTTPStatus.CONFLICT
        assert resp.json()["code"] == "VERSION_MISMATCH"
        assert resp.json()["current_version"] == 5


def test_update_booking_malformed_if_match(client: TestClient) -> None:
    resp = client.put("/bookings/b-123", json={"purpose": "x"}, headers={**MEMBER, "If-Match": "abc"})
    assert resp.status_code == HTTPStatus.BAD_REQUEST


def test_update_booking_route_not_found(client: TestClient) -> None:
    with patch("makerspace.api.dal.update_booking") as mock_update:
        mock_update.side_effect = KeyError("Booking not found")
        resp = client.put("/bookings/missing", json={"purpose": "x"}, headers=MEMBER)
        assert resp.status_code == HTTPStatus.NOT_FOUND


def test_update_booking_without_version_is_precondition_required(client: TestClient, make_resource) -> None:
    make_resource()
    booking_id = client.post("/bookings", json=booking_payload(), headers=MEMBER).json()["booking_id"]

    blind = client.put(f"/bookings/{booking_id}", json={"purpose": "blind overwrite"}, headers=MEMBER)
    assert blind.status_code == HTTPStatus.PRECONDITION_REQUIRED
    assert blind.json()["code"] == "VERSION_REQUIRED"
    wildcard = client.put(
        f"/bookings/{booking_id}", json={"purpose": "blind overwrite"}, headers={**MEMBER, "If-Match": "*"}
    )
    assert wildcard.status_code == HTTPStatus.PRECONDITION_REQUIRED

    ok = client.put(f"/bookings/{booking_id}", json={"purpose": "Cut acrylic", "version": 1}, headers=MEMBER)
    assert ok.status_code == HTTPStatus.OK
    assert ok.headers["ETag"] == '"v2"'
    assert client.get(f"/bookings/{booking_id}", headers=MEMBER).json()["purpose"] == "Cut acrylic"


def test_pending_queue_is_tender_only(client: TestClient) -> None:
    with patch("makerspace.api.dal.list_pending_bookings") as mock_pending:
        mock_pending.return_value = [booking_factory(status="pending")]
        assert client.get("/bookings/pending", headers=MEMBER).status_code == HTTPStatus.FORBIDDEN
        resp = client.get("/bookings/pending", headers=TENDER)
        assert resp.status_code == HTTPStatus.OK
        assert len(resp.json()) == 1


def test_reject_requires_reason(client: TestClient) -> None:
    resp = client.post("/bookings/b-123/reject", json={}, headers=TENDER)
    assert resp.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


def test_cancel_offers_undo_and_undo_restores(client: TestClient, clock: FakeClock) -> None:
    with (
        patch("makerspace.api.dal.cancel_booking") as mock_cancel,
        patch("makerspace.api.dal.restore_booking") as mock_restore,
    ):
        mock_cancel.return_value = booking_factory(status="cancelled", version=2)
        mock_restore.return_value = booking_factory(status="approved", version=3)

        resp = client.post("/bookings/b-123/cancel", json={"reason": "Sick"}, headers=MEMBER)
        assert resp.status_code == HTTPStatus.OK
        body = resp.json()
        assert body["booking"]["status"] == "cancelled"
        assert body["undo"]["token"] == "booking:b-123"
        assert body["undo"]["window_seconds"] == 10

        clock.now += 9.999
        resp = client.post("/bookings/b-123/undo", json={"token": "booking:b-123"}, headers=MEMBER)
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["status"] == "approved"
        _, kwargs = mock_restore.call_args
        assert kwargs["expected_version"] == 2

        # the window is single use
        resp = client.post("/bookings/b-123/undo", json={"token": "booking:b-123"}, headers=MEMBER)
        assert resp.status_code == HTTPStatus.GONE


def test_undo_after_window_is_gone(client: TestClient, clock: FakeClock) -> None:
    with (
        patch("makerspace.api.dal.cancel_booking") as mock_cancel,
        patch("makerspace.api.dal.restore_booking") as mock_restore,
    ):
        mock_cancel.return_value = booking_factory(status="cancelled", version=2)
        client.post("/bookings/b-123/cancel", headers=MEMBER)
        clock.now += 10.001
        resp = client.post("/bookings/b-123/undo", json={"token": "booking:b-123"}, headers=MEMBER)
        assert resp.status_code == HTTPStatus.GONE
        assert resp.json()["code"] == "UNDO_EXPIRED"
        mock_restore.assert_not_called()


def test_undo_is_scoped_to_the_cancelling_user(client: TestClient, clock: FakeClock) -> None:
    with patch("makerspace.api.dal.cancel_booking") as mock_cancel:
        mock_cancel.return_value = booking_factory(status="cancelled", version=2)
        client.post("/bookings/b-123/cancel", headers=MEMBER)
        other = {"X-User-Id": "u-2"}
        resp = client.post("/bookings/b-123/undo", json={"token": "booking:b-123"}, headers=other)
        assert resp.status_code == HTTPStatus.GONE


def test_undo_token_must_match_booking(client: TestClient) -> None:
    resp = client.post("/bookings/b-1/undo", json={"token": "booking:b-2"}, headers=MEMBER)
    assert resp.status_code == HTTPStatus.BAD_REQUEST


def test_cancel_and_undo_end_to_end(client: TestClient, clock: FakeClock, make_resource) -> None:
    make_resource()
    created = client.post("/bookings", json=booking_payload(), headers=MEMBER)
    booking_id = created.json()["booking_id"]

    cancelled = client.post(f"/bookings/{booking_id}/cancel", headers=MEMBER).json()
    assert cancelled["booking"]["status"] == "cancelled"

    restored = client.post(f"/bookings/{booking_id}/undo", json=cancelled["undo"], headers=MEMBER)
    assert restored.status_code == HTTPStatus.OK
    assert restored.json()["status"] == "approved"
    assert restored.json()["version"] == 3


def test_create_series_route(client: TestClient) -> None:
    series = RecurringSeries(
        series_id="s-1",
        user_id="u-1",
        resource_id="laser",
        rule={"frequency": "WEEKLY", "start_date": "2030-01-07", "count": 2},
        start_time="18:00",
        end_time="20:00",
        total_instances=2,
        created_instances=2,
    )
    with patch("makerspace.api.recurring.create_series") as mock_create:
        mock_create.return_value = SeriesCreated(
            series=series,
            bookings=[booking_factory(series_id="s-1")],
            skipped=[SkippedInstance(date="2030-01-14", reason="SLOT_TAKEN")],
        )
        payload = {
            "resource_id": "laser",
            "rule": "FREQ=WEEKLY;COUNT=2",
            "start_date": "2030-01-07",
            "start_time": "18:00",
            "end_time": "20:00",
            "purpose": "Open lab",
        }
        resp = client.post("/series", json=payload, headers=MEMBER)
        assert resp.status_code == HTTPStatus.CREATED
        body = resp.json()
        assert body["series"]["series_id"] == "s-1"
        assert body["skipped"][0]["reason"] == "SLOT_TAKEN"


def test_preview_series_route(client: TestClient) -> None:
    with patch("makerspace.api.recurring.preview_series") as mock_preview:
        mock_preview.return_value = ExpansionResult(
            materialized=[PlannedInstance(date="2030-01-07", start_time="18:00", end_time="20:00")],
            deferred=["2030-03-04"],
        )
        payload = {
            "resource_id": "laser",
            "rule": {"frequency": "WEEKLY", "start_date": "2030-01-07"},
            "start_time": "18:00",
            "end_time": "20:00",
            "purpose": "Open lab",
        }
        resp = client.post("/series/preview", json=payload, headers=MEMBER)
        assert resp.status_code == HTTPStatus.OK
        assert resp.json()["deferred"] == ["2030-03-04"]


def test_invalid_recurrence_maps_to_bad_request(client: TestClient, make_resource) -> None:
    make_resource()
    payload = {
        "resource_id": "laser",
        "rule": {"frequency": "MONTHLY", "start_date": "2030-01-31", "count": 3},
        "start_time": "18:00",
        "end_time": "20:00",
        "purpose": "Monthly cleanup",
    }
    resp = client.post("/series", json=payload, headers=MEMBER)
    assert resp.status_code == HTTPStatus.BAD_REQUEST
    assert resp.json()["code"] == "INVALID_RECURRENCE"


def test_series_lifecycle_routes_not_found(client: TestClient) -> None:
    for action in ("pause", "resume", "cancel"):
        resp = client.post(f"/series/missing/{action}", headers=MEMBER)
        assert resp.status_code == HTTPStatus.NOT_FOUND
    assert client.get("/series/missing", headers=MEMBER).status_code == HTTPStatus.NOT_FOUND


def test_resource_routes(client: TestClient) -> None:
    payload = {"resource_id": "laser", "name": "Laser Cutter", "category": "fabrication"}
    assert client.post("/resources", json=payload, headers=MEMBER).status_code == HTTPStatus.FORBIDDEN
    created = client.post("/resources", json=payload, headers=TENDER)
    assert created.status_code == HTTPStatus.CREATED
    assert client.post("/resources", json=payload, headers=TENDER).status_code == HTTPStatus.CONFLICT

    resp = client.post("/resources/laser/maintenance", json={"notes": "Lens swap"}, headers=TENDER)
    assert resp.json()["status"] == "maintenance"
    assert client.get("/resources", params={"status": "maintenance"}).json()[0]["resource_id"] == "laser"
    assert client.post("/resources/laser/activate", headers=TENDER).json()["status"] == "active"

    slots = client.get("/resources/laser/slots/2030-01-07").json()
    assert len(slots["slots"]) == 24
    assert client.get("/resources/missing").status_code == HTTPStatus.NOT_FOUND


def test_activity_is_tender_only(client: TestClient) -> None:
    assert client.get("/activity", headers=MEMBER).status_code == HTTPStatus.FORBIDDEN
    client.post("/resources", json={"resource_id": "kiln", "name": "Kiln"}, headers=TENDER)
    entries = client.get("/activity", headers=TENDER).json()
    assert entries[0]["action"] == "resource.created"


def test_list_resource_bookings_route(client: TestClient, make_resource) -> None:
    make_resource()
    client.post("/bookings", json=booking_payload(), headers=MEMBER)
    resp = client.get("/resources/laser/bookings/2030-01-07", headers=MEMBER)
    assert resp.status_code == HTTPStatus.OK
    assert [b["start_time"] for b in resp.json()] == ["09:00"]
    assert client.get("/resources/laser/bookings/2030-01-08", headers=MEMBER).json() == []
    bad = client.get("/resources/laser/bookings/07-01-2030", headers=MEMBER)
    assert bad.status_code == HTTPStatus.BAD_REQUEST
    assert bad.json()["code"] == "INVALID_DATE"
    assert client.get("/resources/missing/bookings/2030-01-07", headers=MEMBER).status_code == 404


def test_series_reads_are_limited_to_owner_and_managers(client: TestClient, make_resource) -> None:
    make_resource()
    owner = Identity(user_id="u-1", role="member")
    payload = SeriesCreate(
        resource_id="laser",
        rule={"frequency": "WEEKLY", "start_date": "2030-01-07", "count": 2},
        start_time="18:00",
        end_time="20:00",
        purpose="Open lab",
    )
    series_id = recurring.create_series(payload, owner, today=date(2030, 1, 7)).series.series_id

    assert client.get(f"/series/{series_id}").status_code == HTTPStatus.UNAUTHORIZED
    assert client.get(f"/series/{series_id}/bookings").status_code == HTTPStatus.UNAUTHORIZED

    stranger = {"X-User-Id": "u-2", "X-User-Role": "member"}
    resp = client.get(f"/series/{series_id}", headers=stranger)
    assert resp.status_code == HTTPStatus.FORBIDDEN
    assert resp.json()["code"] == "FORBIDDEN"
    assert client.get(f"/series/{series_id}/bookings", headers=stranger).status_code == HTTPStatus.FORBIDDEN

    assert client.get(f"/series/{series_id}", headers=MEMBER).json()["series_id"] == series_id
    assert len(client.get(f"/series/{series_id}/bookings", headers=MEMBER).json()) == 2
    assert len(client.get(f"/series/{series_id}/bookings", headers=TENDER).json()) == 2


def test_list_my_series(client: TestClient, make_resource) -> None:
    make_resource()
    payload = SeriesCreate(
        resource_id="laser",
        rule={"frequency": "DAILY", "start_date": "2030-01-07", "count": 2},
        start_time="08:00",
        end_time="09:00",
        purpose="Morning prints",
    )
    mine = recurring.create_series(payload, Identity(user_id="u-1"), today=date(2030, 1, 7)).series
    recurring.create_series(
        payload.model_copy(update={"start_time": "10:00", "end_time": "11:00"}),
        Identity(user_id="u-2"),
        today=date(2030, 1, 7),
    )

    resp = client.get("/series", headers=MEMBER)
    assert resp.status_code == HTTPStatus.OK
    assert [s["series_id"] for s in resp.json()] == [mine.series_id]
    assert client.get("/series").status_code == HTTPStatus.UNAUTHORIZED


def test_waitlist_routes_join_list_and_leave(client: TestClient, make_resource) -> None:
    make_resource()
    client.post("/bookings", json=booking_payload(), headers=TENDER)
    slot = {"resource_id": "laser", "date": "2030-01-07", "start_time": "09:00", "end_time": "10:00"}

    joined = client.post("/waitlist", json=slot, headers=MEMBER)
    assert joined.status_code == HTTPStatus.CREATED
    assert joined.json()["position"] == 1
    again = client.post("/waitlist", json=slot, headers=MEMBER)
    assert again.status_code == HTTPStatus.CONFLICT
    assert again.json()["code"] == "ALREADY_WAITLISTED"

    entry_id = joined.json()["entry_id"]
    assert [e["entry_id"] for e in client.get("/waitlist", headers=MEMBER).json()] == [entry_id]
    queue = client.get("/resources/laser/waitlist/2030-01-07", headers=MEMBER).json()
    assert [e["position"] for e in queue] == [1]

    stranger = {"X-User-Id": "u-2"}
    assert client.delete(f"/waitlist/{entry_id}", headers=stranger).status_code == HTTPStatus.FORBIDDEN
    assert client.delete(f"/waitlist/{entry_id}", headers=MEMBER).status_code == HTTPStatus.NO_CONTENT
    assert client.delete(f"/waitlist/{entry_id}", headers=MEMBER).status_code == HTTPStatus.NOT_FOUND
    assert client.get("/waitlist").status_code == HTTPStatus.UNAUTHORIZED


def test_cancel_promotes_waitlist_and_undo_sends_it_back(
    client: TestClient, clock: FakeClock, make_resource
) -> None:
    make_resource()
    booking_id = client.post("/bookings", json=booking_payload(), headers=TENDER).json()["booking_id"]
    slot = {"resource_id": "laser", "date": "2030-01-07", "start_time": "09:00", "end_time": "10:00"}
    entry_id = client.post("/waitlist", json=slot, headers=MEMBER).json()["entry_id"]

    cancelled = client.post(f"/bookings/{booking_id}/cancel", headers=TENDER).json()
    assert cancelled["waitlist_promoted"] == [entry_id]
    assert client.get("/waitlist", headers=MEMBER).json()[0]["status"] == "promoted"

    restored = client.post(f"/bookings/{booking_id}/undo", json=cancelled["undo"], headers=TENDER)
    assert restored.status_code == HTTPStatus.OK
    assert client.get("/waitlist", headers=MEMBER).json()[0]["status"] == "waiting"


def test_promoted_entry_converts_into_booking(client: TestClient, make_resource) -> None:
    make_resource()
    booking_id = client.post("/bookings", json=booking_payload(), headers=TENDER).json()["booking_id"]
    slot = {"resource_id": "laser", "date": "2030-01-07", "start_time": "09:00", "end_time": "10:00"}
    entry_id = client.post("/waitlist", json=slot, headers=MEMBER).json()["entry_id"]

    too_early = client.post(f"/waitlist/{entry_id}/convert", headers=MEMBER)
    assert too_early.status_code == HTTPStatus.CONFLICT
    assert too_early.json()["code"] == "INVALID_TRANSITION"

    client.post(f"/bookings/{booking_id}/reject", json={"reason": "Double booked"}, headers=TENDER)
    converted = client.post(f"/waitlist/{entry_id}/convert", json={"purpose": "Signs"}, headers=MEMBER)
    assert converted.status_code == HTTPStatus.CREATED
    body = converted.json()
    assert body["entry"]["status"] == "converted"
    assert body["booking"]["user_id"] == "u-1"
    assert body["booking"]["purpose"] == "Signs"


def test_waitlist_stats_and_utilization_are_tender_only(client: TestClient, make_resource) -> None:
    make_resource()
    client.post("/bookings", json=booking_payload(), headers=MEMBER)
    client.post("/bookings", json=booking_payload(start_time="13:00", end_time="15:30"), headers=MEMBER)

    assert client.get("/resources/laser/waitlist-stats", headers=MEMBER).status_code == HTTPStatus.FORBIDDEN
    assert client.get("/resources/laser/waitlist-stats", headers=TENDER).json()["total"] == 0

    params = {"start_date": "2030-01-01", "end_date": "2030-01-31"}
    assert client.get("/analytics/utilization", params=params, headers=MEMBER).status_code == HTTPStatus.FORBIDDEN
    report = client.get("/analytics/utilization", params=params, headers=TENDER).json()
    assert report["total_bookings"] == 2
    assert report["hours_booked"] == 3.5
    assert report["hours_by_resource"] == {"laser": 3.5}
    bad = client.get("/analytics/utilization", params={"start_date": "2030-01-31"}, headers=TENDER)
    assert bad.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
