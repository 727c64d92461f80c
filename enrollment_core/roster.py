"""Record-store backed roster classification, reporting and admission."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .capacity import RosterPartition, partition
from .errors import (
    AlreadyEnrolled,
    CapacityExceeded,
    EnrollmentClosed,
    PersistError,
    RecordStoreError,
    StudentNotFound,
    TargetNotFound,
)
from .lookups import (
    CLASS_COLLECTION,
    DEFAULT_CLASS_LOOKUPS,
    STUDENT_COLLECTION,
    ClassLookup,
    fetch_student,
    resolve_class,
)
from .models import (
    ClassRef,
    CourseClass,
    Enrollment,
    StudentRef,
    class_from_record,
    class_ids_of,
    coerce_id,
    parse_timestamp,
)
from .record_store import Record, RecordStore

logger = logging.getLogger("enrollment.roster")

_ACTIVE_FILTER = {"habilitado": True}


@dataclass(frozen=True)
class RosterReport:
    course: CourseClass
    partition: RosterPartition


@dataclass(frozen=True)
class ClassOverflow:
    """A class whose roster ranks more students than it has seats."""

    class_id: int
    title: str
    slug: str
    level: str
    partition: RosterPartition


@dataclass(frozen=True)
class ExceededReport:
    classes: List[ClassOverflow]
    total_overflow: int
    total_enabled: int

    @property
    def overflow_percentage(self) -> float:
        if self.total_enabled == 0:
            return 0.0
        return round(self.total_overflow / self.total_enabled * 100, 2)


@dataclass(frozen=True)
class AvailableClass:
    course: CourseClass
    enrolled: int
    capacity: int


def _enrollment(record: Record, class_id: int) -> Optional[Enrollment]:
    student_id = coerce_id(record.get("id"))
    if student_id is None:
        return None
    try:
        enrolled_at = parse_timestamp(record.get("createdAt"))
    except ValueError:
        logger.warning("Student #%s has no usable createdAt; left out of the roster", student_id)
        return None
    document_id = record.get("documentId")
    return Enrollment(
        student_id=student_id,
        class_id=class_id,
        enrolled_at=enrolled_at,
        student_name=str(record.get("nome") or ""),
        document_id=str(document_id) if document_id else None,
    )


def enrollments_for_class(records: Sequence[Record], class_id: int) -> List[Enrollment]:
    """Map student records pointing at ``class_id`` onto enrollments, in record order."""
    enrollments: List[Enrollment] = []
    for record in records:
        if class_id not in class_ids_of(record):
            continue
        enrollment = _enrollment(record, class_id)
        if enrollment is not None:
            enrollments.append(enrollment)
    return enrollments


class RosterService:
    """Read live rosters and apply the capacity engine to them."""

    def __init__(
        self,
        store: RecordStore,
        *,
        capacity: int,
        class_lookups: Sequence[ClassLookup] = DEFAULT_CLASS_LOOKUPS,
    ) -> None:
        if capacity < 0:
            raise ValueError("Capacity must not be negative")
        self._store = store
        self._capacity = capacity
        self._class_lookups = tuple(class_lookups)

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def capacity(self) -> int:
        return self._capacity

    async def load_roster(self, class_id: int) -> List[Enrollment]:
        records = await self._store.find_all(
            STUDENT_COLLECTION,
            {"cursos.id": class_id, **_ACTIVE_FILTER},
            params={"publicationState": "preview"},
        )
        return enrollments_for_class(records, class_id)

    async def live_partition(self, class_id: int) -> RosterPartition:
        return partition(await self.load_roster(class_id), self._capacity)

    async def require_class(self, ref: ClassRef) -> CourseClass:
        course = await resolve_class(self._store, ref, self._class_lookups)
        if course is None:
            raise TargetNotFound(f"Class {ref.document_id or ref.id} could not be found")
        return course

    async def classify_roster(self, class_id: int) -> RosterReport:
        course = await self.require_class(ClassRef(id=class_id))
        return RosterReport(course=course, partition=await self.live_partition(course.id))

    async def exceeded_report(self) -> ExceededReport:
        """Rank every class's enabled students and list the ones past capacity."""
        students = await self._store.find_all(
            STUDENT_COLLECTION, _ACTIVE_FILTER, params={"publicationState": "preview"}
        )
        by_class: Dict[int, List[Enrollment]] = {}
        details: Dict[int, Record] = {}
        for record in students:
            # Relations read as in load_roster, bare ids included.
            for class_id in class_ids_of(record):
                enrollment = _enrollment(record, class_id)
                if enrollment is None:
                    continue
                by_class.setdefault(class_id, []).append(enrollment)
            for course in record.get("cursos") or []:
                # Bare-id relations carry no title or slug.
                course_id = coerce_id(course.get("id")) if isinstance(course, dict) else None
                if course_id is not None:
                    details.setdefault(course_id, course)

        overflowing: List[ClassOverflow] = []
        for class_id, enrollments in by_class.items():
            split = partition(enrollments, self._capacity)
            if not split.overflow:
                continue
            info = details.get(class_id, {})
            overflowing.append(
                ClassOverflow(
                    class_id=class_id,
                    title=str(info.get("titulo") or ""),
                    slug=str(info.get("slug") or ""),
                    level=str(info.get("nivel") or ""),
                    partition=split,
                )
            )
        overflowing.sort(key=lambda item: len(item.partition.overflow), reverse=True)

        report = ExceededReport(
            classes=overflowing,
            total_overflow=sum(len(item.partition.overflow) for item in overflowing),
            total_enabled=len(students),
        )
        logger.info(
            "Exceeded roster report: %d class(es), %d overflowing student(s)",
            len(report.classes),
            report.total_overflow,
        )
        return report

    async def available_classes(self) -> List[AvailableClass]:
        """Open classes that still have a free seat, least crowded first."""
        courses = await self._store.find_all(CLASS_COLLECTION, params={"locale": self._store.locale})
        students = await self._store.find_all(
            STUDENT_COLLECTION, _ACTIVE_FILTER, params={"publicationState": "preview"}
        )
        available: List[AvailableClass] = []
        for record in courses:
            try:
                course = class_from_record(record)
            except ValueError:
                continue
            if not course.enrollment_open:
                continue
            split = partition(enrollments_for_class(students, course.id), self._capacity)
            if split.is_full:
                continue
            available.append(
                AvailableClass(course=course, enrolled=len(split.enrolled), capacity=self._capacity)
            )
        available.sort(key=lambda item: item.enrolled)
        return available

    async def enroll(self, student_ref: StudentRef, class_ref: ClassRef) -> CourseClass:
        """Admit a student into a class on sign-up, gated on a live seat count."""
        course = await self.require_class(class_ref)
        if not course.enrollment_open:
            raise EnrollmentClosed(f"Class '{course.title or course.id}' is not accepting enrollments")

        split = await self.live_partition(course.id)
        if split.is_full:
            raise CapacityExceeded(f"Class '{course.title or course.id}' has no free seats")

        student = await fetch_student(self._store, student_ref)
        if student is None:
            raise StudentNotFound(f"Student {student_ref.document_id or student_ref.id} does not exist")
        current = class_ids_of(student)
        if course.id in current:
            raise AlreadyEnrolled(f"Student is already enrolled in class {course.id}")
        if current:
            raise AlreadyEnrolled(
                f"Student is already enrolled in class {current[0]}; request an exchange instead"
            )

        record_id = student.get("documentId") or student.get("id")
        try:
            await self._store.update(
                STUDENT_COLLECTION, record_id, {"cursos": {"connect": [{"id": course.id}]}}
            )
        except RecordStoreError as exc:
            raise PersistError(f"Failed to enroll student {record_id}: {exc.message}") from exc

        logger.info("Enrolled student %s into class #%s", record_id, course.id)
        return course


__all__ = [
    "AvailableClass",
    "ClassOverflow",
    "ExceededReport",
    "RosterReport",
    "RosterService",
    "enrollments_for_class",
]
