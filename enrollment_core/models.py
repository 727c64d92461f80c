"""Domain models for identity resolution, enrollment and roster imports."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Mapping, Optional, Tuple


class Role(str, Enum):
    """Role an authenticating account can be tagged with."""

    ADMIN = "admin"
    MENTOR = "mentor"
    STUDENT = "student"
    UNASSIGNED = "unassigned"


@dataclass(frozen=True)
class Contact:
    """A phone number reduced to its canonical lookup forms."""

    raw: str
    normalized: str
    bare_variant: Optional[str] = None

    def lookup_variants(self) -> Iterator[str]:
        yield self.normalized
        if self.bare_variant and self.bare_variant != self.normalized:
            yield self.bare_variant


@dataclass(frozen=True)
class Account:
    """An authenticating identity stored in the users collection."""

    id: int
    role: Role
    linked_entity_id: Optional[int] = None
    username: Optional[str] = None


@dataclass(frozen=True)
class CourseClass:
    """A course instance with a fixed number of seats."""

    id: int
    document_id: Optional[str]
    title: str
    enrollment_open: bool
    slug: str = ""
    level: str = ""


@dataclass(frozen=True)
class Enrollment:
    """Links a student to a class at the moment the seat was taken."""

    student_id: int
    class_id: int
    enrolled_at: datetime
    student_name: str = ""
    document_id: Optional[str] = None


@dataclass(frozen=True)
class ImportRow:
    """Candidate roster entry read from an uploaded file."""

    name: str
    school: str
    tax_id: str = ""
    class_name: str = ""

    @property
    def dedup_key(self) -> str:
        return f"{self.name.strip().casefold()}|{self.school.strip().casefold()}"


@dataclass(frozen=True)
class StudentRef:
    """Identifies a student by numeric id, document id, or both."""

    id: Optional[int] = None
    document_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.id is None and not self.document_id:
            raise ValueError("A student reference needs an id or a document id")


@dataclass(frozen=True)
class ClassRef:
    """Identifies a class by numeric id, document id, or both."""

    id: Optional[int] = None
    document_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.id is None and not self.document_id:
            raise ValueError("A class reference needs an id or a document id")

    @staticmethod
    def parse(value: int | str, document_id: Optional[str] = None) -> "ClassRef":
        """Build a reference from a value that may be numeric or a document id."""

        if isinstance(value, int):
            return ClassRef(id=value, document_id=document_id)
        text = str(value).strip()
        if text.isdigit():
            return ClassRef(id=int(text), document_id=document_id)
        return ClassRef(id=None, document_id=document_id or text or None)

    def matches(self, record_id: object, record_document_id: object) -> bool:
        if self.id is not None and coerce_id(record_id) == self.id:
            return True
        return bool(self.document_id) and record_document_id == self.document_id


def coerce_id(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_timestamp(value: object) -> datetime:
    """Parse a record store timestamp into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def class_from_record(record: Mapping[str, object]) -> CourseClass:
    """Map a flattened course record onto :class:`CourseClass`."""

    class_id = coerce_id(record.get("id"))
    if class_id is None:
        raise ValueError("Course record is missing a numeric id")
    document_id = record.get("documentId")
    return CourseClass(
        id=class_id,
        document_id=str(document_id) if document_id else None,
        title=str(record.get("titulo") or ""),
        enrollment_open=record.get("inscricoes_abertas") is True,
        slug=str(record.get("slug") or ""),
        level=str(record.get("nivel") or ""),
    )


def class_ids_of(record: Mapping[str, object]) -> Tuple[int, ...]:
    """Return the ids of every class a flattened student record points at."""

    relation = record.get("cursos") or []
    if not isinstance(relation, list):
        return ()
    ids = []
    for item in relation:
        if isinstance(item, Mapping):
            class_id = coerce_id(item.get("id"))
        else:
            class_id = coerce_id(item)
        if class_id is not None:
            ids.append(class_id)
    return tuple(ids)


__all__ = [
    "Account",
    "ClassRef",
    "Contact",
    "CourseClass",
    "Enrollment",
    "ImportRow",
    "Role",
    "StudentRef",
    "class_from_record",
    "class_ids_of",
    "coerce_id",
    "parse_timestamp",
]
