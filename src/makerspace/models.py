from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
TIME_PATTERN = r"^\d{2}:\d{2}$"
RESOURCE_ID_PATTERN = r"^[a-z0-9-]+$"

Weekday = Literal["MO", "TU", "WE", "TH", "FR", "SA", "SU"]
WEEKDAYS: tuple[Weekday, ...] = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

BookingStatus = Literal["pending", "approved", "rejected", "cancelled", "completed"]
SeriesStatus = Literal["active", "paused", "cancelled"]
WaitlistStatus = Literal["waiting", "promoted", "converted"]
ResourceStatus = Literal["active", "maintenance", "retired"]
Frequency = Literal["DAILY", "WEEKLY", "MONTHLY"]
Category = Literal[
    "fabrication", "electronics", "textiles", "woodworking",
    "metalworking", "ceramics", "general", "other",
]


# Bookings


class BookingCreate(BaseModel):
    resource_id: str = Field(..., min_length=1, max_length=100)
    date: str = Field(..., pattern=DATE_PATTERN)
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    purpose: str = Field(..., min_length=1, max_length=500)
    # acknowledges a shared-capacity overlap reported by a previous attempt
    confirm_overlap: bool = False


class BookingUpdate(BaseModel):
    resource_id: str | None = Field(default=None, min_length=1, max_length=100)
    date: str | None = Field(default=None, pattern=DATE_PATTERN)
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    purpose: str | None = Field(default=None, min_length=1, max_length=500)
    version: int | None = Field(default=None, ge=1)
    confirm_overlap: bool = False

    @property
    def reschedules(self) -> bool:
        return any(
            v is not None for v in (self.resource_id, self.date, self.start_time, self.end_time)
        )


class Booking(BaseModel):
    booking_id: str
    user_id: str
    resource_id: str
    date: str
    start_time: str
    end_time: str
    status: BookingStatus = "pending"
    purpose: str = ""
    series_id: str | None = None
    version: int = 1
    overlap_confirmed: bool = False
    # status held before cancellation, restored by undo
    previous_status: BookingStatus | None = None
    created_at: str | None = None
    updated_at: str | None = None
    approved_by: str | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None

    @property
    def etag(self) -> str:
        return f'"v{self.version}"'


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class UndoRequest(BaseModel):
    token: str = Field(..., min_length=1)


class UndoOffer(BaseModel):
    token: str
    expires_at: str
    window_seconds: float


class CancelResponse(BaseModel):
    booking: Booking
    undo: UndoOffer
    # waitlist entries promoted into the freed slot
    waitlist_promoted: list[str] = []


class BulkApproveRequest(BaseModel):
    booking_ids: list[str] = Field(..., min_length=1, max_length=50)


class BulkFailure(BaseModel):
    booking_id: str
    reason: str


class BulkApproveResult(BaseModel):
    approved: list[str] = []
    failed: list[BulkFailure] = []


# Resources


class AvailabilityWindow(BaseModel):
    start: str = Field(..., pattern=TIME_PATTERN)
    end: str = Field(..., pattern=TIME_PATTERN)


class ResourceCreate(BaseModel):
    resource_id: str = Field(..., min_length=1, max_length=100, pattern=RESOURCE_ID_PATTERN)
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: Category = "general"
    room: str | None = Field(default=None, max_length=100)
    max_concurrent: int = Field(default=1, ge=1, le=100)
    requires_cert: bool = False
    certification_id: str | None = Field(default=None, max_length=100)
    requires_approval: bool = True
    availability: dict[Weekday, AvailabilityWindow] = {}
    status: ResourceStatus = "active"


class ResourceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: Category | None = None
    room: str | None = Field(default=None, max_length=100)
    max_concurrent: int | None = Field(default=None, ge=1, le=100)
    requires_cert: bool | None = None
    certification_id: str | None = Field(default=None, max_length=100)
    requires_approval: bool | None = None
    availability: dict[Weekday, AvailabilityWindow] | None = None


class Resource(ResourceCreate):
    maintenance_notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class MaintenanceRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class SlotInfo(BaseModel):
    hour: str
    active: int
    approved: int
    pending: int
    available: int
    is_full: bool
    booking_ids: list[str] = []


class SlotAvailability(BaseModel):
    resource_id: str
    date: str
    max_concurrent: int
    resource_status: ResourceStatus
    slots: list[SlotInfo]


# Recurrence


class RecurrenceRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    by_weekday: tuple[Weekday, ...] = ()
    interval: int = Field(default=1, ge=1, le=52)
    start_date: str = Field(..., pattern=DATE_PATTERN)
    end_date: str | None = Field(default=None, pattern=DATE_PATTERN)
    count: int | None = Field(default=None, ge=1)

    @field_validator("frequency", mode="before")
    @classmethod
    def _upper_frequency(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("by_weekday", mode="before")
    @classmethod
    def _upper_weekdays(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(v.upper() if isinstance(v, str) else v for v in value)
        return value

    @field_validator("by_weekday")
    @classmethod
    def _order_weekdays(cls, value: tuple[Weekday, ...]) -> tuple[Weekday, ...]:
        return tuple(sorted(set(value), key=WEEKDAYS.index))


class SeriesCreate(BaseModel):
    resource_id: str = Field(..., min_length=1, max_length=100)
    # structured rule, or an RRULE string such as "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=6"
    rule: RecurrenceRule | str
    # required when rule is an RRULE string
    start_date: str | None = Field(default=None, pattern=DATE_PATTERN)
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    purpose: str = Field(..., min_length=1, max_length=500)


class RecurringSeries(BaseModel):
    series_id: str
    user_id: str
    resource_id: str
    rule: RecurrenceRule
    start_time: str
    end_time: str
    purpose: str = ""
    status: SeriesStatus = "active"
    total_instances: int = 0
    created_instances: int = 0
    skipped_dates: list[str] = []
    # creator could approve their own bookings when the series was set up
    auto_approve: bool = False
    version: int = 1
    created_at: str | None = None
    updated_at: str | None = None


class PlannedInstance(BaseModel):
    date: str
    start_time: str
    end_time: str
    overlap_warning: bool = False


class SkippedInstance(BaseModel):
    date: str
    reason: str
    conflicting_booking_ids: list[str] = []


class ExpansionResult(BaseModel):
    materialized: list[PlannedInstance] = []
    skipped: list[SkippedInstance] = []
    # dates beyond the rolling window, left for the scheduled worker
    deferred: list[str] = []

    @property
    def planned_total(self) -> int:
        return len(self.materialized) + len(self.skipped) + len(self.deferred)


class SeriesCreated(BaseModel):
    series: RecurringSeries
    bookings: list[Booking]
    skipped: list[SkippedInstance] = []
    deferred: list[str] = []


class SeriesCancelled(BaseModel):
    series: RecurringSeries
    cancelled_booking_ids: list[str]


# Waitlist


class WaitlistJoin(BaseModel):
    resource_id: str = Field(..., min_length=1, max_length=100)
    date: str = Field(..., pattern=DATE_PATTERN)
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    notes: str | None = Field(default=None, max_length=500)


class WaitlistEntry(BaseModel):
    entry_id: str
    # resource#date#start_time; positions are counted per slot
    slot_key: str
    user_id: str
    resource_id: str
    date: str
    start_time: str
    end_time: str
    position: int
    status: WaitlistStatus = "waiting"
    notes: str | None = None
    booking_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    promoted_at: str | None = None


class WaitlistConvertRequest(BaseModel):
    purpose: str | None = Field(default=None, min_length=1, max_length=500)


class WaitlistConverted(BaseModel):
    entry: WaitlistEntry
    booking: Booking


class WaitlistStats(BaseModel):
    resource_id: str
    total: int = 0
    waiting: int = 0
    promoted: int = 0
    converted: int = 0
    avg_position: float = 0.0


# Analytics


class UtilizationReport(BaseModel):
    start_date: str
    end_date: str
    resource_id: str | None = None
    total_bookings: int = 0
    by_status: dict[str, int] = {}
    hours_booked: float = 0.0
    avg_duration_hours: float = 0.0
    hours_by_resource: dict[str, float] = {}
    bookings_by_weekday: dict[str, int] = {}
    bookings_by_hour: dict[str, int] = {}
    unique_users: int = 0
    peak_weekday: str | None = None
    peak_hour: str | None = None


# Audit


class ActivityEntry(BaseModel):
    activity_id: str
    timestamp: str
    action: str
    actor_id: str
    target_type: str
    target_id: str
    details: dict[str, Any] = {}
