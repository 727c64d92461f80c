"""Record lookups that tolerate the record store's uneven identifier filtering.

A class can be addressed by its stable document id or its numeric id, and the
store does not filter both consistently. Each strategy below answers
``Optional[CourseClass]`` on its own; :func:`resolve_class` tries them in order.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Sequence

from .errors import TRANSIENT_ERRORS, RecordStoreError
from .models import ClassRef, CourseClass, StudentRef, class_from_record
from .record_store import Record, RecordStore

logger = logging.getLogger("enrollment.lookups")

CLASS_COLLECTION = "cursos"
STUDENT_COLLECTION = "alunos"

ClassLookup = Callable[[RecordStore, ClassRef], Awaitable[Optional[CourseClass]]]


def _first_match(records: Sequence[Record], ref: ClassRef) -> Optional[CourseClass]:
    for record in records:
        if ref.matches(record.get("id"), record.get("documentId")):
            return class_from_record(record)
    return None


async def lookup_by_document_id(store: RecordStore, ref: ClassRef) -> Optional[CourseClass]:
    if not ref.document_id:
        return None
    records = await store.find(
        CLASS_COLLECTION,
        {"documentId": ref.document_id},
        params={"locale": store.locale},
    )
    return _first_match(records, ClassRef(document_id=ref.document_id))


async def lookup_by_numeric_id(store: RecordStore, ref: ClassRef) -> Optional[CourseClass]:
    if ref.id is None:
        return None
    record = await store.get(CLASS_COLLECTION, ref.id)
    if record is None:
        return None
    return _first_match([record], ref)


async def lookup_by_listing_scan(store: RecordStore, ref: ClassRef) -> Optional[CourseClass]:
    records = await store.find_all(CLASS_COLLECTION, params={"locale": store.locale})
    return _first_match(records, ref)


DEFAULT_CLASS_LOOKUPS: tuple[ClassLookup, ...] = (
    lookup_by_document_id,
    lookup_by_numeric_id,
    lookup_by_listing_scan,
)


async def resolve_class(
    store: RecordStore,
    ref: ClassRef,
    lookups: Sequence[ClassLookup] = DEFAULT_CLASS_LOOKUPS,
) -> Optional[CourseClass]:
    """Return the first class any strategy finds.

    A strategy the store rejects counts as a miss; transient upstream failures
    propagate so the caller fails fast.
    """
    for lookup in lookups:
        try:
            found = await lookup(store, ref)
        except TRANSIENT_ERRORS:
            raise
        except RecordStoreError as exc:
            logger.warning("Class lookup %s failed for %s: %s", lookup.__name__, ref, exc.message)
            continue
        if found is not None:
            logger.debug("Class %s resolved by %s", ref, lookup.__name__)
            return found
    return None


async def fetch_student(store: RecordStore, ref: StudentRef) -> Optional[Record]:
    """Load a student with its class relation, preferring the document id."""
    if ref.document_id:
        filters: dict[str, object] = {"documentId": ref.document_id}
    else:
        filters = {"id": ref.id}
    records = await store.find(STUDENT_COLLECTION, filters, params={"publicationState": "preview"})
    return records[0] if records else None


__all__ = [
    "CLASS_COLLECTION",
    "ClassLookup",
    "DEFAULT_CLASS_LOOKUPS",
    "STUDENT_COLLECTION",
    "fetch_student",
    "lookup_by_document_id",
    "lookup_by_listing_scan",
    "lookup_by_numeric_id",
    "resolve_class",
]
