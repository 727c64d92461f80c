"""Resolve a bare phone number to exactly one role-tagged record."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

from .models import Contact, Role, coerce_id
from .phone import DEFAULT_COUNTRY_CODE, normalize_phone
from .record_store import RecordStore

logger = logging.getLogger("enrollment.identity")


@dataclass(frozen=True)
class RoleLookup:
    """One role-tagged collection and the field that stores its phone number."""

    role: Role
    collection: str
    phone_field: str
    params: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Resolution:
    """A phone number matched to a record of a role-tagged collection."""

    role: Role
    entity_id: int
    matched_phone: str
    document_id: Optional[str] = None


# Order is a trust ranking: an admin number must never resolve as mentor or student.
ROLE_LOOKUPS: Tuple[RoleLookup, ...] = (
    RoleLookup(Role.ADMIN, "admins", "celular"),
    RoleLookup(Role.MENTOR, "mentores", "celular", {"locale": "pt-BR"}),
    RoleLookup(Role.STUDENT, "alunos", "telefone_aluno"),
)


class IdentityResolver:
    """Search the role collections in priority order, trying both phone variants."""

    def __init__(
        self,
        store: RecordStore,
        *,
        lookups: Sequence[RoleLookup] = ROLE_LOOKUPS,
        country_code: str = DEFAULT_COUNTRY_CODE,
    ) -> None:
        if not lookups:
            raise ValueError("At least one role lookup must be configured")
        self._store = store
        self._lookups = tuple(lookups)
        self._country_code = country_code

    async def resolve(self, contact: Contact) -> Optional[Resolution]:
        for lookup in self._lookups:
            for variant in contact.lookup_variants():
                records = await self._store.find(
                    lookup.collection,
                    {lookup.phone_field: variant},
                    params=lookup.params,
                )
                logger.debug(
                    "Lookup %s.%s=%s returned %d record(s)",
                    lookup.collection,
                    lookup.phone_field,
                    variant,
                    len(records),
                )
                for record in records:
                    entity_id = coerce_id(record.get("id"))
                    if entity_id is None:
                        continue
                    document_id = record.get("documentId")
                    logger.info(
                        "Phone %s resolved to %s #%s", contact.normalized, lookup.role.value, entity_id
                    )
                    return Resolution(
                        role=lookup.role,
                        entity_id=entity_id,
                        matched_phone=variant,
                        document_id=str(document_id) if document_id else None,
                    )
        logger.info("Phone %s did not match any role collection", contact.normalized)
        return None

    async def resolve_identity(self, phone: str) -> Tuple[Contact, Optional[Resolution]]:
        """Normalize ``phone`` and resolve it; ``None`` means a new user."""
        contact = normalize_phone(phone, country_code=self._country_code)
        return contact, await self.resolve(contact)


__all__ = ["IdentityResolver", "ROLE_LOOKUPS", "Resolution", "RoleLookup"]
