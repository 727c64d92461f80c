"""Error taxonomy shared by the enrollment core components."""
from __future__ import annotations

from typing import Optional


class CoreError(Exception):
    """Base class for every error raised by the enrollment core."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class InvalidContact(CoreError, ValueError):
    """The phone number could not be normalized."""

    code = "invalid_contact"


class NotFound(CoreError):
    """A lookup did not match any record."""

    code = "not_found"


class TargetNotFound(NotFound):
    """The target class could not be resolved."""

    code = "target_not_found"


class StudentNotFound(NotFound):
    """The student record could not be found."""

    code = "student_not_found"


class AccountNotFound(NotFound):
    """The account record could not be found."""

    code = "account_not_found"


class Rejection(CoreError):
    """A business rule rejected the request."""

    code = "rejected"


class EnrollmentClosed(Rejection):
    """The class is not accepting enrollments."""

    code = "enrollment_closed"


class CapacityExceeded(Rejection):
    """The class has no free seats."""

    code = "capacity_exceeded"


class NotEnrolled(Rejection):
    """The student is not enrolled in the expected class."""

    code = "not_enrolled"


class AlreadyEnrolled(Rejection):
    """The student is already enrolled in the target class."""

    code = "already_enrolled"


class AlreadyLinked(Rejection):
    """The account is already linked to a different role or entity."""

    code = "already_linked"


class RecordStoreError(CoreError):
    """The record store rejected a request."""

    code = "record_store_error"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeout(RecordStoreError):
    """The record store did not answer in time."""

    code = "upstream_timeout"


class UpstreamUnavailable(RecordStoreError):
    """The record store could not be reached."""

    code = "upstream_unavailable"


class PersistError(CoreError):
    """A record mutation failed and was not applied."""

    code = "persist_error"


TRANSIENT_ERRORS = (UpstreamTimeout, UpstreamUnavailable)


__all__ = [
    "AccountNotFound",
    "AlreadyEnrolled",
    "AlreadyLinked",
    "CapacityExceeded",
    "CoreError",
    "EnrollmentClosed",
    "InvalidContact",
    "NotEnrolled",
    "NotFound",
    "PersistError",
    "RecordStoreError",
    "Rejection",
    "StudentNotFound",
    "TargetNotFound",
    "TRANSIENT_ERRORS",
    "UpstreamTimeout",
    "UpstreamUnavailable",
]
