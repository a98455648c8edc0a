"""Credential lookups backing the sign-in wizard and the role gate.

Pattern: Identity Broker
-------------------------
The ``users`` table of the lending database is the single source of truth for
*who the user is* (email + password hash) and *what they may do* (role).  The
``customers`` and ``lenders`` tables link a user to the domain entity whose
loans they may see.

The conversation core depends only on the ``CredentialStore`` protocol.
``SqlCredentialStore`` implements it with SQLAlchemy Core; its blocking calls
run in a worker thread so a slow database never stalls other conversations.
Missing rows are reported as ``None``; anything that goes wrong talking to
the database is raised as ``CredentialStoreError``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from lending_bot.auth.session import Role

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CredentialRecord:
    """A user's stored credentials, keyed by email."""

    user_id: int
    password_hash: str | None = dataclasses.field(repr=False)
    role: str | None


@dataclasses.dataclass(frozen=True)
class LinkedEntity:
    """The role-specific entity a user is linked to.

    Attributes:
        domain_id:    ``customer_id`` or ``lender_id``; ``None`` for admins.
        display_name: Name used when greeting the user.
    """

    domain_id: int | None
    display_name: str


class CredentialStoreError(Exception):
    """Raised when the credential store cannot be queried."""


class CredentialStore(Protocol):
    async def find_by_email(self, email: str) -> CredentialRecord | None:
        ...

    async def find_role_by_id(self, user_id: int) -> str | None:
        ...

    async def find_linked_entity(self, user_id: int, role: Role) -> LinkedEntity | None:
        ...


_FIND_BY_EMAIL = text("SELECT user_id, password, role FROM users WHERE email = :email")
_FIND_ROLE = text("SELECT role FROM users WHERE user_id = :user_id")

_LINKED_ENTITY_SQL: dict[Role, Any] = {
    Role.CUSTOMER: text(
        "SELECT customer_id AS domain_id, name AS display_name "
        "FROM customers WHERE user_id = :user_id"
    ),
    Role.LENDER: text(
        "SELECT lender_id AS domain_id, name AS display_name "
        "FROM lenders WHERE user_id = :user_id"
    ),
    Role.ADMIN: text(
        "SELECT NULL AS domain_id, user_name AS display_name "
        "FROM users WHERE user_id = :user_id"
    ),
}


class SqlCredentialStore:
    """``CredentialStore`` backed by the lending database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def find_by_email(self, email: str) -> CredentialRecord | None:
        row = await self._fetch_one(_FIND_BY_EMAIL, {"email": email})
        if row is None:
            logger.info("No credential record for email=%s", email)
            return None
        return CredentialRecord(
            user_id=row["user_id"],
            password_hash=row["password"],
            role=row["role"],
        )

    async def find_role_by_id(self, user_id: int) -> str | None:
        row = await self._fetch_one(_FIND_ROLE, {"user_id": user_id})
        if row is None:
            return None
        return row["role"]

    async def find_linked_entity(self, user_id: int, role: Role) -> LinkedEntity | None:
        row = await self._fetch_one(_LINKED_ENTITY_SQL[role], {"user_id": user_id})
        if row is None:
            logger.info("No %s entity linked to user_id=%s", role.value, user_id)
            return None
        return LinkedEntity(domain_id=row["domain_id"], display_name=row["display_name"])

    # -- private helpers -----------------------------------------------------

    async def _fetch_one(self, statement: Any, params: dict[str, Any]) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._fetch_one_sync, statement, params)

    def _fetch_one_sync(self, statement: Any, params: dict[str, Any]) -> dict[str, Any] | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(statement, params).mappings().first()
        except SQLAlchemyError as exc:
            raise CredentialStoreError(f"Credential lookup failed: {exc.__class__.__name__}") from exc
        return dict(row) if row is not None else None
