from __future__ import annotations

import copy
import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _field_matches(value: Any, path: List[str], expected: Any) -> bool:
    if not path:
        if isinstance(value, Mapping):
            value = value.get("id")
        return value == expected or (value is not None and str(value) == str(expected))
    if isinstance(value, list):
        return any(_field_matches(item, path, expected) for item in value)
    if isinstance(value, Mapping):
        return _field_matches(value.get(path[0]), path[1:], expected)
    # Relations written as a bare id, e.g. {"escola": 3}.
    return path == ["id"] and _field_matches(value, [], expected)


class FakeRecordStore:
    """In-memory stand-in for :class:`RecordStore` with the same async surface."""

    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.collections: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for name, records in (collections or {}).items():
            self.collections[name] = [copy.deepcopy(record) for record in records]
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, List[BaseException]] = defaultdict(list)
        self.page_size = 100
        self.locale = "pt-BR"
        self._next_id = 1000

    def fail(self, method: str, collection: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls of ``method`` on ``collection``."""
        self.failures[(method, collection)].extend(errors)

    def _maybe_fail(self, method: str, collection: str) -> None:
        queue = self.failures.get((method, collection))
        if queue:
            raise queue.pop(0)

    def _matches(self, record: Mapping[str, Any], filters: Mapping[str, object] | None) -> bool:
        for key, expected in (filters or {}).items():
            parts = key.split(".")
            if not _field_matches(record.get(parts[0]), parts[1:], expected):
                return False
        return True

    def _locate(self, collection: str, record_id: object) -> Optional[Dict[str, Any]]:
        for record in self.collections[collection]:
            if record.get("documentId") == record_id or record.get("id") == record_id:
                return record
            if str(record.get("id")) == str(record_id):
                return record
        return None

    async def find(self, collection, filters=None, *, sort=None, page=None, page_size=None, params=None):
        self.calls.append(("find", collection, dict(filters or {}), dict(params or {})))
        self._maybe_fail("find", collection)
        return [copy.deepcopy(r) for r in self.collections[collection] if self._matches(r, filters)]

    async def find_all(self, collection, filters=None, *, sort=None, params=None):
        self.calls.append(("find_all", collection, dict(filters or {}), dict(params or {})))
        self._maybe_fail("find_all", collection)
        return [copy.deepcopy(r) for r in self.collections[collection] if self._matches(r, filters)]

    async def get(self, collection, record_id, *, params=None):
        self.calls.append(("get", collection, record_id))
        self._maybe_fail("get", collection)
        record = self._locate(collection, record_id)
        return copy.deepcopy(record) if record is not None else None

    async def create(self, collection, payload):
        self.calls.append(("create", collection, dict(payload)))
        self._maybe_fail("create", collection)
        self._next_id += 1
        record = {"id": self._next_id, **dict(payload)}
        self.collections[collection].append(record)
        return copy.deepcopy(record)

    async def update(self, collection, record_id, payload):
        self.calls.append(("update", collection, record_id, copy.deepcopy(dict(payload))))
        self._maybe_fail("update", collection)
        record = self._locate(collection, record_id)
        if record is None:
            from enrollment_core.errors import RecordStoreError

            raise RecordStoreError("Not Found", status_code=404)
        for key, value in payload.items():
            if isinstance(value, Mapping) and ("connect" in value or "disconnect" in value):
                related = [item for item in record.get(key) or []]
                removed = {item["id"] for item in value.get("disconnect", [])}
                related = [item for item in related if item.get("id") not in removed]
                for item in value.get("connect", []):
                    target = self._locate(key, item["id"]) or {"id": item["id"]}
                    related.append(copy.deepcopy(target))
                record[key] = related
            else:
                record[key] = value
        return copy.deepcopy(record)

    async def aclose(self) -> None:
        return None

    def mutations(self) -> List[tuple]:
        return [call for call in self.calls if call[0] in ("create", "update")]


def make_course(class_id: int, *, open_: bool = True, title: str | None = None, **extra: Any) -> Dict[str, Any]:
    return {
        "id": class_id,
        "documentId": f"course-{class_id}",
        "titulo": title or f"Course {class_id}",
        "inscricoes_abertas": open_,
        "slug": f"course-{class_id}",
        "nivel": "basico",
        **extra,
    }


def make_student(
    student_id: int,
    class_ids: List[int],
    *,
    created_at: str | None = None,
    enabled: bool = True,
    courses: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    by_id = {course["id"]: course for course in courses or []}
    return {
        "id": student_id,
        "documentId": f"student-{student_id}",
        "nome": f"Student {student_id}",
        "habilitado": enabled,
        "createdAt": created_at or f"2024-01-01T00:{student_id // 60 % 60:02d}:{student_id % 60:02d}.000Z",
        "cursos": [dict(by_id.get(class_id, {"id": class_id})) for class_id in class_ids],
    }


@pytest.fixture
def fake_store() -> FakeRecordStore:
    return FakeRecordStore()
