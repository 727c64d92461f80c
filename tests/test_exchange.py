import anyio
import pytest

from conftest import FakeRecordStore, make_course, make_student
from enrollment_core.errors import (
    AlreadyEnrolled,
    CapacityExceeded,
    EnrollmentClosed,
    NotEnrolled,
    PersistError,
    RecordStoreError,
    StudentNotFound,
    TargetNotFound,
)
from enrollment_core.exchange import CourseExchange
from enrollment_core.models import ClassRef, StudentRef
from enrollment_core.roster import RosterService

STUDENT = StudentRef(document_id="student-900")


def _setup(*, target_seated: int = 0, target_open: bool = True, student_classes=(1,)):
    courses = [make_course(1, title="Python A"), make_course(2, title="Python B", open_=target_open)]
    students = [make_student(100 + i, [2], courses=courses) for i in range(target_seated)]
    students.append(make_student(900, list(student_classes), courses=courses))
    store = FakeRecordStore({"cursos": courses, "alunos": students})
    return store, CourseExchange(RosterService(store, capacity=15))


def _exchange(exchange: CourseExchange, from_class: int, to_class: ClassRef, student=STUDENT):
    return anyio.run(exchange.exchange, student, from_class, to_class)


def test_exchange_moves_student_in_one_update() -> None:
    store, exchange = _setup(target_seated=14)
    result = _exchange(exchange, 1, ClassRef(id=2))

    assert result.from_class_id == 1
    assert result.from_class_title == "Python A"
    assert result.to_class_id == 2
    assert result.to_class_title == "Python B"
    assert store.mutations() == [
        (
            "update",
            "alunos",
            "student-900",
            {"cursos": {"disconnect": [{"id": 1}], "connect": [{"id": 2}]}},
        )
    ]
    moved = next(r for r in store.collections["alunos"] if r["id"] == 900)
    assert [course["id"] for course in moved["cursos"]] == [2]


def test_exchange_into_full_class_changes_nothing() -> None:
    store, exchange = _setup(target_seated=15)
    with pytest.raises(CapacityExceeded):
        _exchange(exchange, 1, ClassRef(id=2))
    assert store.mutations() == []


def test_exchange_into_current_class_is_already_enrolled() -> None:
    store, exchange = _setup()
    with pytest.raises(AlreadyEnrolled):
        _exchange(exchange, 1, ClassRef(id=1))
    assert store.mutations() == []


def test_exchange_target_by_document_id() -> None:
    store, exchange = _setup()
    result = _exchange(exchange, 1, ClassRef(document_id="course-2"))
    assert result.to_class_id == 2


def test_exchange_unknown_target() -> None:
    _, exchange = _setup()
    with pytest.raises(TargetNotFound):
        _exchange(exchange, 1, ClassRef(id=42))


def test_exchange_into_closed_class() -> None:
    _, exchange = _setup(target_open=False)
    with pytest.raises(EnrollmentClosed):
        _exchange(exchange, 1, ClassRef(id=2))


def test_exchange_unknown_student() -> None:
    _, exchange = _setup()
    with pytest.raises(StudentNotFound):
        _exchange(exchange, 1, ClassRef(id=2), student=StudentRef(id=12345))


@pytest.mark.parametrize("classes", [(), (1, 2)])
def test_exchange_requires_exactly_one_active_class(classes) -> None:
    store, exchange = _setup(student_classes=classes)
    with pytest.raises(NotEnrolled):
        _exchange(exchange, 1, ClassRef(id=2))
    assert store.mutations() == []


def test_exchange_from_wrong_class() -> None:
    courses = [make_course(1), make_course(2), make_course(3)]
    store = FakeRecordStore(
        {"cursos": courses, "alunos": [make_student(900, [3], courses=courses)]}
    )
    exchange = CourseExchange(RosterService(store, capacity=15))
    with pytest.raises(NotEnrolled):
        _exchange(exchange, 1, ClassRef(id=2))


def test_failed_update_is_persist_error() -> None:
    store, exchange = _setup()
    store.fail("update", "alunos", RecordStoreError("Internal", status_code=500))
    with pytest.raises(PersistError):
        _exchange(exchange, 1, ClassRef(id=2))
    student = next(r for r in store.collections["alunos"] if r["id"] == 900)
    assert [course["id"] for course in student["cursos"]] == [1]
