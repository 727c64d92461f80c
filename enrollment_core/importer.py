"""Bulk roster import driven through the record store in small concurrent batches.

An import call walks an explicit state machine::

    VALIDATING -> DEDUPLICATING -> DISPATCHING (one step per sub-batch)
               -> COMPLETED | PARTIAL

Each call handles at most ``max_per_request`` rows starting at ``offset`` and
returns ``next_offset`` while rows remain, so long rosters are imported by
calling again rather than by one long-running request.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import anyio

from .config import ImportSettings
from .errors import TRANSIENT_ERRORS, RecordStoreError
from .models import ImportRow, coerce_id
from .record_store import RecordStore

logger = logging.getLogger("enrollment.importer")

SCHOOL_COLLECTION = "escolas"
SCHOOL_CLASS_COLLECTION = "turmas"
PARTNER_STUDENT_COLLECTION = "alunos-escola-parceira"

_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "nome"),
    "school": ("school", "escola"),
    "tax_id": ("tax_id", "taxId", "cpf"),
    "class_name": ("class_name", "class", "turma"),
}
_NON_DIGITS = re.compile(r"\D")

RawRow = Union[ImportRow, Mapping[str, object]]
NumberedRow = Tuple[int, ImportRow]


class ImportPhase(str, Enum):
    VALIDATING = "validating"
    DEDUPLICATING = "deduplicating"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    PARTIAL = "partial"


_TERMINAL_PHASES = frozenset({ImportPhase.COMPLETED, ImportPhase.PARTIAL})


class RowStatus(str, Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RowError:
    row: int
    name: str
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"row": self.row, "name": self.name, "message": self.message}


@dataclass(frozen=True)
class RowOutcome:
    row: int
    entry: ImportRow
    status: RowStatus
    attempts: int
    error: Optional[str] = None


@dataclass
class ImportState:
    """Mutable progress of one import call."""

    rows: Sequence[RawRow]
    offset: int
    phase: ImportPhase = ImportPhase.VALIDATING
    valid: List[NumberedRow] = field(default_factory=list)
    unique: List[NumberedRow] = field(default_factory=list)
    batches: List[List[NumberedRow]] = field(default_factory=list)
    batch_index: int = 0
    duplicates_removed: int = 0
    next_offset: Optional[int] = None
    errors: List[RowError] = field(default_factory=list)
    outcomes: List[RowOutcome] = field(default_factory=list)


@dataclass(frozen=True)
class ImportReport:
    imported: int
    skipped: int
    errors: List[RowError]
    duplicates_removed: int
    total_rows: int
    processed: int
    next_offset: Optional[int]
    phase: ImportPhase

    def to_dict(self) -> Dict[str, object]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": [error.to_dict() for error in self.errors],
            "duplicates_removed": self.duplicates_removed,
            "total_rows": self.total_rows,
            "processed": self.processed,
            "next_offset": self.next_offset,
            "phase": self.phase.value,
        }


def _field(raw: Mapping[str, object], name: str) -> str:
    for alias in _FIELD_ALIASES[name]:
        value = raw.get(alias)
        if value is None:
            continue
        text = str(value).strip()
        if text and text.lower() != "nan":
            return text
    return ""


def validate_rows(rows: Sequence[RawRow]) -> Tuple[List[NumberedRow], List[RowError]]:
    """Keep rows that carry a name and a school; report the rest by 1-based row number."""
    valid: List[NumberedRow] = []
    errors: List[RowError] = []
    for number, raw in enumerate(rows, start=1):
        if isinstance(raw, ImportRow):
            raw = {
                "name": raw.name,
                "school": raw.school,
                "tax_id": raw.tax_id,
                "class_name": raw.class_name,
            }
        if not isinstance(raw, Mapping):
            errors.append(RowError(number, "", "Row must be a mapping of column names to values"))
            continue
        name = _field(raw, "name")
        school = _field(raw, "school")
        if not name or not school:
            errors.append(RowError(number, name, "Name and school are required"))
            continue
        valid.append(
            (
                number,
                ImportRow(
                    name=name,
                    school=school,
                    tax_id=_NON_DIGITS.sub("", _field(raw, "tax_id")),
                    class_name=_field(raw, "class_name"),
                ),
            )
        )
    return valid, errors


def deduplicate(rows: Sequence[NumberedRow]) -> Tuple[List[NumberedRow], int]:
    """Drop later rows whose name+school key was already seen; return the drop count."""
    seen: set[str] = set()
    unique: List[NumberedRow] = []
    for number, row in rows:
        if row.dedup_key in seen:
            continue
        seen.add(row.dedup_key)
        unique.append((number, row))
    return unique, len(rows) - len(unique)


def plan_window(
    rows: Sequence[NumberedRow], offset: int, max_per_request: int
) -> Tuple[List[NumberedRow], Optional[int]]:
    window = list(rows[offset : offset + max_per_request])
    end = offset + len(window)
    return window, end if end < len(rows) else None


def chunk(rows: Sequence[NumberedRow], size: int) -> List[List[NumberedRow]]:
    return [list(rows[index : index + size]) for index in range(0, len(rows), size)]


class _EntityCache:
    """Resolve-or-create schools and school classes once per import call."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._ids: Dict[Tuple[str, str, Optional[int]], int] = {}
        self._locks: Dict[Tuple[str, str, Optional[int]], anyio.Lock] = {}

    async def school(self, name: str) -> int:
        return await self._resolve(SCHOOL_COLLECTION, name, None)

    async def school_class(self, name: str, school_id: int) -> int:
        return await self._resolve(SCHOOL_CLASS_COLLECTION, name, school_id)

    async def _resolve(self, collection: str, name: str, school_id: Optional[int]) -> int:
        key = (collection, name.casefold(), school_id)
        lock = self._locks.setdefault(key, anyio.Lock())
        async with lock:
            if key in self._ids:
                return self._ids[key]
            filters: Dict[str, object] = {"nome": name}
            payload: Dict[str, object] = {"nome": name}
            if school_id is not None:
                filters["escola.id"] = school_id
                payload["escola"] = school_id
            found = await self._store.find(collection, filters)
            record = found[0] if found else await self._store.create(collection, payload)
            record_id = coerce_id(record.get("id"))
            if record_id is None:
                raise RecordStoreError(f"Record store returned no id for {collection} '{name}'")
            if not found:
                logger.info("Created %s '%s' (#%s)", collection, name, record_id)
            self._ids[key] = record_id
            return record_id


class RosterImporter:
    """Validate, deduplicate and submit uploaded roster rows."""

    def __init__(
        self,
        store: RecordStore,
        settings: ImportSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._store = store
        self._settings = settings or ImportSettings()
        self._sleep = sleep
        self._handlers = {
            ImportPhase.VALIDATING: self._validate,
            ImportPhase.DEDUPLICATING: self._deduplicate,
            ImportPhase.DISPATCHING: self._dispatch_next_batch,
        }

    async def run(self, rows: Sequence[RawRow], offset: int = 0) -> ImportReport:
        if offset < 0:
            raise ValueError("Offset must not be negative")
        state = ImportState(rows=rows, offset=offset)
        cache = _EntityCache(self._store)
        while state.phase not in _TERMINAL_PHASES:
            await self._handlers[state.phase](state, cache)
        return self._report(state)

    async def _validate(self, state: ImportState, _cache: _EntityCache) -> None:
        state.valid, errors = validate_rows(state.rows)
        # Upload-level findings belong to the first call only so resumed calls do not repeat them.
        if state.offset == 0:
            state.errors.extend(errors)
        state.phase = ImportPhase.DEDUPLICATING

    async def _deduplicate(self, state: ImportState, _cache: _EntityCache) -> None:
        state.unique, removed = deduplicate(state.valid)
        if state.offset == 0:
            state.duplicates_removed = removed
        window, state.next_offset = plan_window(
            state.unique, state.offset, self._settings.max_per_request
        )
        state.batches = chunk(window, self._settings.batch_size)
        logger.info(
            "Import window %d-%d of %d row(s) in %d batch(es)",
            state.offset,
            state.offset + len(window),
            len(state.unique),
            len(state.batches),
        )
        state.phase = ImportPhase.DISPATCHING

    async def _dispatch_next_batch(self, state: ImportState, cache: _EntityCache) -> None:
        if state.batch_index >= len(state.batches):
            failed = any(outcome.status is RowStatus.FAILED for outcome in state.outcomes)
            state.phase = ImportPhase.PARTIAL if failed else ImportPhase.COMPLETED
            return

        if state.batch_index > 0:
            await self._sleep(self._settings.batch_delay)

        batch = state.batches[state.batch_index]
        results: List[Optional[RowOutcome]] = [None] * len(batch)

        async def _run(position: int, number: int, row: ImportRow) -> None:
            results[position] = await self._submit_row(number, row, cache)

        async with anyio.create_task_group() as task_group:
            for position, (number, row) in enumerate(batch):
                task_group.start_soon(_run, position, number, row)

        for outcome in results:
            if outcome is None:
                continue
            state.outcomes.append(outcome)
            if outcome.status is RowStatus.FAILED:
                state.errors.append(RowError(outcome.row, outcome.entry.name, outcome.error or "failed"))
        state.batch_index += 1

    async def _submit_row(self, number: int, row: ImportRow, cache: _EntityCache) -> RowOutcome:
        attempts = 0
        timeout = self._settings.request_timeout or None
        while True:
            attempts += 1
            try:
                with anyio.fail_after(timeout):
                    status = await self._submit_once(row, cache)
                return RowOutcome(number, row, status, attempts)
            except (TimeoutError, *TRANSIENT_ERRORS) as exc:
                reason = "request timed out" if isinstance(exc, TimeoutError) else exc.message
                if attempts > self._settings.max_retries:
                    return RowOutcome(
                        number, row, RowStatus.FAILED, attempts, f"Gave up after {attempts} attempt(s): {reason}"
                    )
                logger.warning(
                    "Row %d (%s) attempt %d failed: %s; retrying", number, row.name, attempts, reason
                )
                await self._sleep(self._settings.retry_backoff * attempts)
            except RecordStoreError as exc:
                return RowOutcome(number, row, RowStatus.FAILED, attempts, exc.message)
            except Exception as exc:  # noqa: BLE001 - one row must not abort the batch
                logger.exception("Unexpected failure importing row %d (%s)", number, row.name)
                return RowOutcome(number, row, RowStatus.FAILED, attempts, str(exc) or type(exc).__name__)

    async def _submit_once(self, row: ImportRow, cache: _EntityCache) -> RowStatus:
        school_id = await cache.school(row.school)
        class_id = await cache.school_class(row.class_name, school_id) if row.class_name else None

        # A create that timed out may still have landed; look before writing again.
        existing = await self._store.find(
            PARTNER_STUDENT_COLLECTION, {"nome": row.name, "escola.id": school_id}
        )
        if existing:
            return RowStatus.SKIPPED

        payload: Dict[str, object] = {"nome": row.name, "escola": school_id}
        if row.tax_id:
            payload["cpf"] = row.tax_id
        if class_id is not None:
            payload["turma"] = class_id
        await self._store.create(PARTNER_STUDENT_COLLECTION, payload)
        return RowStatus.IMPORTED

    def _report(self, state: ImportState) -> ImportReport:
        imported = sum(1 for outcome in state.outcomes if outcome.status is RowStatus.IMPORTED)
        skipped = sum(1 for outcome in state.outcomes if outcome.status is RowStatus.SKIPPED)
        report = ImportReport(
            imported=imported,
            skipped=skipped,
            errors=list(state.errors),
            duplicates_removed=state.duplicates_removed,
            total_rows=len(state.unique),
            processed=sum(len(batch) for batch in state.batches),
            next_offset=state.next_offset,
            phase=state.phase,
        )
        logger.info(
            "Import finished (%s): %d imported, %d skipped, %d error(s), next offset %s",
            report.phase.value,
            report.imported,
            report.skipped,
            len(report.errors),
            report.next_offset,
        )
        return report


__all__ = [
    "ImportPhase",
    "ImportReport",
    "ImportState",
    "RosterImporter",
    "RowError",
    "RowOutcome",
    "RowStatus",
    "chunk",
    "deduplicate",
    "plan_window",
    "validate_rows",
]
