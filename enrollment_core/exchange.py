"""Move a student's enrollment from one class to another in a single mutation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import (
    AlreadyEnrolled,
    CapacityExceeded,
    EnrollmentClosed,
    NotEnrolled,
    PersistError,
    RecordStoreError,
    StudentNotFound,
)
from .lookups import STUDENT_COLLECTION, fetch_student
from .models import ClassRef, StudentRef, class_ids_of
from .record_store import Record
from .roster import RosterService

logger = logging.getLogger("enrollment.exchange")


@dataclass(frozen=True)
class ExchangeResult:
    student_id: object
    from_class_id: int
    from_class_title: Optional[str]
    to_class_id: int
    to_class_title: str


def _class_title(student: Record, class_id: int) -> Optional[str]:
    for course in student.get("cursos") or []:
        if isinstance(course, dict) and course.get("id") == class_id:
            title = course.get("titulo")
            return str(title) if title else None
    return None


class CourseExchange:
    """Check an exchange's preconditions in order, then commit it as one update.

    The capacity re-check and the update are separate calls against a store
    with no compare-and-swap, so two concurrent exchanges into the same class
    can both pass the check. That window is accepted; closing it needs a
    conditional update on the record store side.
    """

    def __init__(self, rosters: RosterService) -> None:
        self._rosters = rosters
        self._store = rosters.store

    async def exchange(
        self,
        student_ref: StudentRef,
        from_class_id: int,
        to_class: ClassRef,
    ) -> ExchangeResult:
        target = await self._rosters.require_class(to_class)
        if not target.enrollment_open:
            raise EnrollmentClosed(f"Class '{target.title or target.id}' is not accepting enrollments")

        # Always the live roster: a cached count would hide seats taken since.
        split = await self._rosters.live_partition(target.id)
        if split.is_full:
            raise CapacityExceeded(f"Class '{target.title or target.id}' has no free seats")

        student = await fetch_student(self._store, student_ref)
        if student is None:
            raise StudentNotFound(f"Student {student_ref.document_id or student_ref.id} does not exist")

        current = class_ids_of(student)
        if len(current) != 1:
            raise NotEnrolled(
                f"Student must have exactly one active enrollment to exchange (found {len(current)})"
            )
        if current[0] == target.id:
            raise AlreadyEnrolled(f"Student is already enrolled in class {target.id}")
        if current[0] != from_class_id:
            raise NotEnrolled(f"Student is not enrolled in class {from_class_id}")

        record_id = student.get("documentId") or student.get("id")
        payload = {
            "cursos": {
                "disconnect": [{"id": from_class_id}],
                "connect": [{"id": target.id}],
            }
        }
        try:
            await self._store.update(STUDENT_COLLECTION, record_id, payload)
        except RecordStoreError as exc:
            logger.error(
                "Exchange of student %s from #%s to #%s failed: %s",
                record_id,
                from_class_id,
                target.id,
                exc.message,
            )
            raise PersistError(f"Failed to exchange class for student {record_id}: {exc.message}") from exc

        logger.info("Student %s moved from class #%s to #%s", record_id, from_class_id, target.id)
        return ExchangeResult(
            student_id=student.get("id"),
            from_class_id=from_class_id,
            from_class_title=_class_title(student, from_class_id),
            to_class_id=target.id,
            to_class_title=target.title,
        )


__all__ = ["CourseExchange", "ExchangeResult"]
