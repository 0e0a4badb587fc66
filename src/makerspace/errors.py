from __future__ import annotations

from enum import StrEnum
from http import HTTPStatus
from typing import Any


class ErrorCode(StrEnum):
    INVALID_RANGE = "INVALID_RANGE"
    INVALID_DATE = "INVALID_DATE"
    INVALID_RECURRENCE = "INVALID_RECURRENCE"
    SLOT_TAKEN = "SLOT_TAKEN"
    OVERLAP_WARNING = "OVERLAP_WARNING"
    VERSION_MISMATCH = "VERSION_MISMATCH"
    VERSION_REQUIRED = "VERSION_REQUIRED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    RESOURCE_UNAVAILABLE = "RESOURCE_UNAVAILABLE"
    RESOURCE_EXISTS = "RESOURCE_EXISTS"
    HOURS_CLOSED = "HOURS_CLOSED"
    CERTIFICATION_REQUIRED = "CERTIFICATION_REQUIRED"
    FORBIDDEN = "FORBIDDEN"
    UNDO_EXPIRED = "UNDO_EXPIRED"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    ALREADY_WAITLISTED = "ALREADY_WAITLISTED"


class SchedulingError(Exception):
    """Base for every domain failure; carries a stable code and HTTP status."""

    code: ErrorCode
    status_code: int = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": str(self.code), "detail": self.message, **self.details}


class InvalidRangeError(SchedulingError):
    code = ErrorCode.INVALID_RANGE


class InvalidDateError(SchedulingError):
    code = ErrorCode.INVALID_DATE


class InvalidRecurrenceError(SchedulingError):
    code = ErrorCode.INVALID_RECURRENCE


class SlotTakenError(SchedulingError):
    code = ErrorCode.SLOT_TAKEN
    status_code = HTTPStatus.CONFLICT


class OverlapWarningError(SchedulingError):
    """Soft conflict: the caller may retry with confirm_overlap set."""

    code = ErrorCode.OVERLAP_WARNING
    status_code = HTTPStatus.CONFLICT


class VersionMismatchError(SchedulingError):
    code = ErrorCode.VERSION_MISMATCH
    status_code = HTTPStatus.CONFLICT


class VersionRequiredError(SchedulingError):
    code = ErrorCode.VERSION_REQUIRED
    status_code = HTTPStatus.PRECONDITION_REQUIRED


class InvalidTransitionError(SchedulingError):
    code = ErrorCode.INVALID_TRANSITION
    status_code = HTTPStatus.CONFLICT


class ResourceUnavailableError(SchedulingError):
    code = ErrorCode.RESOURCE_UNAVAILABLE
    status_code = HTTPStatus.CONFLICT


class ResourceExistsError(SchedulingError):
    code = ErrorCode.RESOURCE_EXISTS
    status_code = HTTPStatus.CONFLICT


class HoursClosedError(SchedulingError):
    code = ErrorCode.HOURS_CLOSED
    status_code = HTTPStatus.CONFLICT


class CertificationRequiredError(SchedulingError):
    code = ErrorCode.CERTIFICATION_REQUIRED
    status_code = HTTPStatus.FORBIDDEN


class ForbiddenError(SchedulingError):
    code = ErrorCode.FORBIDDEN
    status_code = HTTPStatus.FORBIDDEN


class UndoExpiredError(SchedulingError):
    code = ErrorCode.UNDO_EXPIRED
    status_code = HTTPStatus.GONE


class StorageFailureError(SchedulingError):
    code = ErrorCode.STORAGE_FAILURE
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class AlreadyWaitlistedError(SchedulingError):
    code = ErrorCode.ALREADY_WAITLISTED
    status_code = HTTPStatus.CONFLICT
