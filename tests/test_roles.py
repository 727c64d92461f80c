import anyio
import pytest

from conftest import FakeRecordStore
from enrollment_core.errors import AccountNotFound, AlreadyLinked, PersistError, RecordStoreError
from enrollment_core.identity import Resolution
from enrollment_core.models import Role
from enrollment_core.roles import RoleLinker, account_from_record


def _store(**account):
    record = {"id": 10, "username": "maria", "role": {"type": "authenticated"}}
    record.update(account)
    return FakeRecordStore({"users": [record]})


def test_unassigned_account_is_linked() -> None:
    store = _store()
    result = anyio.run(lambda: RoleLinker(store).link(10, Role.MENTOR, 7))

    assert result.outcome == "linked"
    assert result.changed
    assert store.mutations() == [("update", "users", 10, {"role": 3, "mentor": 7})]


def test_same_link_is_unchanged_and_not_written() -> None:
    store = _store(role={"type": "student"}, student={"id": 40})
    result = anyio.run(lambda: RoleLinker(store).link(10, Role.STUDENT, 40))

    assert result.outcome == "unchanged"
    assert not result.changed
    assert store.mutations() == []


def test_existing_link_is_not_overwritten_without_override() -> None:
    store = _store(role={"type": "mentor"}, mentor={"id": 7})
    with pytest.raises(AlreadyLinked):
        anyio.run(lambda: RoleLinker(store).link(10, Role.STUDENT, 40))
    assert store.mutations() == []


def test_override_moves_account_and_clears_previous_role() -> None:
    store = _store(role={"type": "mentor"}, mentor={"id": 7})
    result = anyio.run(lambda: RoleLinker(store).link(10, Role.ADMIN, 2, override=True))

    assert result.outcome == "linked"
    assert store.mutations() == [("update", "users", 10, {"role": 5, "admin": 2, "mentor": None})]


def test_link_resolution_never_overrides() -> None:
    store = _store(role={"type": "admin"}, admin=2)
    resolution = Resolution(role=Role.STUDENT, entity_id=40, matched_phone="5511912345678")
    with pytest.raises(AlreadyLinked):
        anyio.run(RoleLinker(store).link_resolution, 10, resolution)


def test_configured_role_ids_are_used() -> None:
    store = _store()
    anyio.run(lambda: RoleLinker(store, role_ids={"student": 9}).link(10, Role.STUDENT, 40))
    assert store.mutations()[0][3]["role"] == 9


def test_missing_account() -> None:
    with pytest.raises(AccountNotFound):
        anyio.run(lambda: RoleLinker(FakeRecordStore()).link(99, Role.STUDENT, 1))


def test_write_failure_is_persist_error() -> None:
    store = _store()
    store.fail("update", "users", RecordStoreError("boom", status_code=500))
    with pytest.raises(PersistError):
        anyio.run(lambda: RoleLinker(store).link(10, Role.STUDENT, 40))


def test_cannot_link_unassigned() -> None:
    with pytest.raises(ValueError):
        anyio.run(lambda: RoleLinker(_store()).link(10, Role.UNASSIGNED, 1))


def test_account_from_record_reads_linked_entity() -> None:
    account = account_from_record({"id": "12", "role": {"type": "Mentor"}, "mentor": {"id": 7}})
    assert account.id == 12
    assert account.role is Role.MENTOR
    assert account.linked_entity_id == 7

    unlinked = account_from_record({"id": 3, "role": {"type": "authenticated"}})
    assert unlinked.role is Role.UNASSIGNED
    assert unlinked.linked_entity_id is None


def test_role_without_entity_is_completed_without_override() -> None:
    store = _store(role={"type": "student"})
    result = anyio.run(lambda: RoleLinker(store).link(10, Role.STUDENT, 40))

    assert result.outcome == "linked"
    assert store.mutations() == [("update", "users", 10, {"role": 4, "student": 40})]


def test_role_without_entity_still_guards_other_roles() -> None:
    store = _store(role={"type": "student"})
    with pytest.raises(AlreadyLinked):
        anyio.run(lambda: RoleLinker(store).link(10, Role.MENTOR, 7))
