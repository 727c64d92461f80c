"""Tests for the batched roster importer."""

from __future__ import annotations

import anyio
import pytest

from conftest import FakeRecordStore
from enrollment_core.config import ImportSettings
from enrollment_core.errors import RecordStoreError, UpstreamUnavailable
from enrollment_core.importer import (
    PARTNER_STUDENT_COLLECTION,
    ImportPhase,
    RosterImporter,
    deduplicate,
    plan_window,
    validate_rows,
)
from enrollment_core.models import ImportRow


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class SlowCreateStore(FakeRecordStore):
    """Lands the first create, then hangs past the caller's deadline."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.hang_next_create = True

    async def create(self, collection, payload):
        record = await super().create(collection, payload)
        if collection == PARTNER_STUDENT_COLLECTION and self.hang_next_create:
            self.hang_next_create = False
            await anyio.sleep(5)
        return record


def _rows(count: int, school: str = "EE Central") -> list[dict]:
    return [{"name": f"Aluno {index:02d}", "school": school} for index in range(count)]


def _run(importer: RosterImporter, rows, offset: int = 0):
    return anyio.run(importer.run, rows, offset)


def _created(store: FakeRecordStore, collection: str) -> list[dict]:
    return [call[2] for call in store.calls if call[0] == "create" and call[1] == collection]


def test_validate_rows_reports_missing_fields_by_row_number() -> None:
    valid, errors = validate_rows(
        [
            {"nome": "Ana", "escola": "EE Central", "cpf": "123.456.789-09", "turma": "1A"},
            {"name": "", "school": "EE Central"},
            {"name": "Bruno"},
            "not a row",
        ]
    )
    assert valid == [(1, ImportRow(name="Ana", school="EE Central", tax_id="12345678909", class_name="1A"))]
    assert [(error.row, error.name) for error in errors] == [(2, ""), (3, "Bruno"), (4, "")]


def test_deduplicate_keeps_first_occurrence() -> None:
    rows = [
        (1, ImportRow("Ana Souza", "EE Central")),
        (2, ImportRow("  ana souza ", "ee central")),
        (3, ImportRow("Ana Souza", "EE Norte")),
    ]
    unique, removed = deduplicate(rows)
    assert [number for number, _ in unique] == [1, 3]
    assert removed == 1


def test_plan_window() -> None:
    rows = [(index, ImportRow(str(index), "S")) for index in range(25)]
    window, next_offset = plan_window(rows, 0, 20)
    assert len(window) == 20 and next_offset == 20
    window, next_offset = plan_window(rows, 20, 20)
    assert len(window) == 5 and next_offset is None
    window, next_offset = plan_window(rows, 30, 20)
    assert window == [] and next_offset is None


def test_import_creates_school_once_and_students() -> None:
    store = FakeRecordStore()
    importer = RosterImporter(store, ImportSettings(batch_delay=0), sleep=RecordingSleep())
    report = _run(importer, _rows(5))

    assert report.phase is ImportPhase.COMPLETED
    assert report.imported == 5
    assert report.skipped == 0
    assert report.errors == []
    assert len(_created(store, "escolas")) == 1
    school_id = store.collections["escolas"][0]["id"]
    assert all(payload["escola"] == school_id for payload in _created(store, PARTNER_STUDENT_COLLECTION))


def test_duplicates_and_invalid_rows_are_reported_on_first_call() -> None:
    rows = _rows(3) + [{"name": "Aluno 00", "school": "ee central"}, {"name": "Sem Escola"}]
    store = FakeRecordStore()
    report = _run(RosterImporter(store, sleep=RecordingSleep()), rows)

    assert report.imported == 3
    assert report.duplicates_removed == 1
    assert report.total_rows == 3
    assert [(error.row, error.name) for error in report.errors] == [(5, "Sem Escola")]
    assert len(_created(store, PARTNER_STUDENT_COLLECTION)) == 3


def test_long_roster_is_imported_across_calls() -> None:
    rows = _rows(25) + [{"name": "Sem Escola"}]
    store = FakeRecordStore()
    sleep = RecordingSleep()
    importer = RosterImporter(store, ImportSettings(max_per_request=20, batch_size=10), sleep=sleep)

    first = _run(importer, rows)
    assert first.processed == 20
    assert first.next_offset == 20
    assert first.imported == 20
    assert len(first.errors) == 1
    assert sleep.delays == [1.0]

    second = _run(importer, rows, first.next_offset)
    assert second.processed == 5
    assert second.next_offset is None
    assert second.imported == 5
    assert second.errors == []
    assert second.duplicates_removed == 0
    assert len(_created(store, PARTNER_STUDENT_COLLECTION)) == 25


def test_resubmitting_a_window_skips_existing_records() -> None:
    store = FakeRecordStore()
    importer = RosterImporter(store, sleep=RecordingSleep())
    _run(importer, _rows(3))
    again = _run(importer, _rows(3))

    assert again.imported == 0
    assert again.skipped == 3
    assert again.phase is ImportPhase.COMPLETED
    assert len(_created(store, PARTNER_STUDENT_COLLECTION)) == 3


def test_transient_failure_is_retried_with_backoff() -> None:
    store = FakeRecordStore()
    store.fail("create", PARTNER_STUDENT_COLLECTION, UpstreamUnavailable("502"))
    sleep = RecordingSleep()
    report = _run(RosterImporter(store, ImportSettings(retry_backoff=0.5), sleep=sleep), _rows(1))

    assert report.imported == 1
    assert report.phase is ImportPhase.COMPLETED
    assert sleep.delays == [0.5]


def test_retries_are_bounded() -> None:
    store = FakeRecordStore()
    store.fail("create", PARTNER_STUDENT_COLLECTION, *[UpstreamUnavailable("down") for _ in range(3)])
    sleep = RecordingSleep()
    report = _run(RosterImporter(store, ImportSettings(max_retries=2), sleep=sleep), _rows(1))

    assert report.phase is ImportPhase.PARTIAL
    assert report.imported == 0
    assert report.errors[0].row == 1
    assert "Gave up after 3 attempt(s)" in report.errors[0].message
    assert sleep.delays == [1.0, 2.0]


def test_permanent_failure_is_not_retried_and_batch_continues() -> None:
    store = FakeRecordStore()
    store.fail("create", PARTNER_STUDENT_COLLECTION, RecordStoreError("cpf must be unique", status_code=400))
    sleep = RecordingSleep()
    report = _run(RosterImporter(store, ImportSettings(batch_size=1), sleep=sleep), _rows(2))

    assert report.phase is ImportPhase.PARTIAL
    assert report.imported == 1
    assert [(error.row, error.message) for error in report.errors] == [(1, "cpf must be unique")]
    assert sleep.delays == [1.0]


def test_timed_out_create_that_landed_is_skipped_on_retry() -> None:
    store = SlowCreateStore()
    settings = ImportSettings(request_timeout=0.05, batch_delay=0)
    report = _run(RosterImporter(store, settings, sleep=RecordingSleep()), _rows(1))

    assert report.phase is ImportPhase.COMPLETED
    assert report.skipped == 1
    assert report.imported == 0
    assert len(store.collections[PARTNER_STUDENT_COLLECTION]) == 1


def test_school_class_is_resolved_per_school() -> None:
    store = FakeRecordStore({"escolas": [{"id": 3, "nome": "EE Central"}]})
    rows = [
        {"name": "Ana", "school": "EE Central", "class_name": "1A", "tax_id": "111.222.333-44"},
        {"name": "Bia", "school": "EE Central", "class_name": "1A"},
    ]
    report = _run(RosterImporter(store, sleep=RecordingSleep()), rows)

    assert report.imported == 2
    assert _created(store, "escolas") == []
    assert _created(store, "turmas") == [{"nome": "1A", "escola": 3}]
    class_id = store.collections["turmas"][0]["id"]
    students = sorted(_created(store, PARTNER_STUDENT_COLLECTION), key=lambda payload: payload["nome"])
    assert students[0] == {"nome": "Ana", "escola": 3, "cpf": "11122233344", "turma": class_id}
    assert "cpf" not in students[1]


def test_negative_offset_is_rejected() -> None:
    with pytest.raises(ValueError):
        _run(RosterImporter(FakeRecordStore()), _rows(1), -1)
