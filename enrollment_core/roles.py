"""Persist a resolved role onto the authenticating account."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .config import DEFAULT_ROLE_IDS
from .errors import AccountNotFound, AlreadyLinked, PersistError, RecordStoreError
from .identity import Resolution
from .models import Account, Role, coerce_id
from .record_store import Record, RecordStore

logger = logging.getLogger("enrollment.roles")

ACCOUNT_COLLECTION = "users"

# Strapi's built-in "authenticated" role is what an unlinked account carries.
_UNASSIGNED_ROLE_TYPES = frozenset({"authenticated", "public", "unassigned", ""})


@dataclass(frozen=True)
class LinkResult:
    account_id: int
    role: Role
    entity_id: int
    outcome: str

    @property
    def changed(self) -> bool:
        return self.outcome == "linked"


def _role_type(record: Mapping[str, object]) -> str:
    role = record.get("role")
    if isinstance(role, Mapping):
        return str(role.get("type") or role.get("name") or "").strip().lower()
    if isinstance(role, str):
        return role.strip().lower()
    return ""


def account_from_record(record: Record) -> Account:
    account_id = coerce_id(record.get("id"))
    if account_id is None:
        raise ValueError("Account record is missing a numeric id")

    role_type = _role_type(record)
    if role_type in _UNASSIGNED_ROLE_TYPES:
        role = Role.UNASSIGNED
    else:
        try:
            role = Role(role_type)
        except ValueError:
            role = Role.UNASSIGNED

    linked_entity_id: Optional[int] = None
    if role is not Role.UNASSIGNED:
        linked = record.get(role.value)
        if isinstance(linked, Mapping):
            linked_entity_id = coerce_id(linked.get("id"))
        else:
            linked_entity_id = coerce_id(linked)

    username = record.get("username")
    return Account(
        id=account_id,
        role=role,
        linked_entity_id=linked_entity_id,
        username=str(username) if username else None,
    )


class RoleLinker:
    """Write ``role`` + linked entity id onto an account exactly once.

    A manually verified link is never replaced by resolution-time auto-linking;
    only an explicit ``override=True`` may move an account to another role or
    entity.
    """

    def __init__(self, store: RecordStore, *, role_ids: Mapping[str, int] | None = None) -> None:
        self._store = store
        self._role_ids = dict(DEFAULT_ROLE_IDS)
        if role_ids:
            self._role_ids.update(role_ids)

    async def read_account(self, account_id: int) -> Account:
        record = await self._store.get(ACCOUNT_COLLECTION, account_id)
        if record is None:
            raise AccountNotFound(f"Account {account_id} does not exist")
        return account_from_record(record)

    async def link(
        self,
        account_id: int,
        role: Role,
        entity_id: int,
        *,
        override: bool = False,
    ) -> LinkResult:
        if role is Role.UNASSIGNED:
            raise ValueError("Cannot link an account to the unassigned role")

        account = await self.read_account(account_id)
        if account.role is role and account.linked_entity_id == entity_id:
            logger.debug("Account %s already linked to %s #%s", account_id, role.value, entity_id)
            return LinkResult(account_id, role, entity_id, "unchanged")

        # A role without its entity is completed in place; no verified link is replaced.
        missing_entity = account.role is role and account.linked_entity_id is None
        if account.role is not Role.UNASSIGNED and not missing_entity and not override:
            raise AlreadyLinked(
                f"Account {account_id} is linked to {account.role.value} "
                f"#{account.linked_entity_id}; explicit override required"
            )

        payload: Dict[str, object] = {"role": self._role_ids[role.value], role.value: entity_id}
        if account.role not in (Role.UNASSIGNED, role):
            payload[account.role.value] = None

        try:
            await self._store.update(ACCOUNT_COLLECTION, account_id, payload)
        except RecordStoreError as exc:
            raise PersistError(f"Failed to link account {account_id}: {exc.message}") from exc

        logger.info(
            "Linked account %s to %s #%s (previous role %s)",
            account_id,
            role.value,
            entity_id,
            account.role.value,
        )
        return LinkResult(account_id, role, entity_id, "linked")

    async def link_resolution(self, account_id: int, resolution: Resolution) -> LinkResult:
        return await self.link(account_id, resolution.role, resolution.entity_id, override=False)


__all__ = ["ACCOUNT_COLLECTION", "LinkResult", "RoleLinker", "account_from_record"]
