"""Read-only reporting queries against the lending database.

Every method is scoped by the caller's linked entity (customer or lender id)
or, for admin reports, by an explicit filter.  Nothing in this module writes
to the database.  Rows come back as frozen dataclasses so the formatter never
sees driver-specific row objects.

``SqlQueryService`` uses SQLAlchemy Core with bound parameters only; time
windows for the activity log are computed here and bound as values instead of
being spliced into SQL, which also keeps the statements dialect-neutral.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import enum
import logging
from typing import Any, Protocol

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from lending_bot.auth.session import Role

logger = logging.getLogger(__name__)

USER_LIST_LIMIT = 50
ACTIVITY_LOG_LIMIT = 10


class QueryServiceError(Exception):
    """Raised when a reporting query cannot be executed."""


class LogPeriod(str, enum.Enum):
    TODAY = "today"
    THIS_WEEK = "this week"
    THIS_MONTH = "this month"

    @classmethod
    def parse(cls, value: str) -> LogPeriod | None:
        try:
            return cls(" ".join(value.strip().lower().split()))
        except ValueError:
            return None

    def since(self, now: datetime.datetime) -> datetime.datetime:
        """Start of the window ending at *now*.

        ``today`` starts at midnight; the other periods are trailing 7 and 30
        day windows measured from midnight.
        """
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is LogPeriod.TODAY:
            return midnight
        if self is LogPeriod.THIS_WEEK:
            return midnight - datetime.timedelta(days=7)
        return midnight - datetime.timedelta(days=30)


@dataclasses.dataclass(frozen=True)
class LoanDetail:
    loan_id: int
    amount: Any
    interest_rate: Any
    status: str
    due_date: Any
    application_date: Any


@dataclasses.dataclass(frozen=True)
class LoanSummary:
    loan_id: int
    amount: Any
    status: str
    due_date: Any


@dataclasses.dataclass(frozen=True)
class ActiveLoan:
    loan_id: int
    loan_type: str
    amount: Any
    interest_rate: Any
    duration: Any
    installments: Any
    due_date: Any
    status: str
    application_date: Any
    amount_paid: Any
    latest_installment_balance: Any


@dataclasses.dataclass(frozen=True)
class Payment:
    payment_id: int
    amount: Any
    payment_method: str
    payment_date: Any


@dataclasses.dataclass(frozen=True)
class UserRow:
    user_id: int
    user_name: str
    email: str


@dataclasses.dataclass(frozen=True)
class ActivityLog:
    log_id: int
    user_id: int
    activity: str
    activity_type: str
    activity_time: Any


class DomainQueryService(Protocol):
    async def get_loan(self, loan_id: int, customer_id: int) -> LoanDetail | None:
        ...

    async def outstanding_balance(self, customer_id: int) -> float:
        ...

    async def list_loans(self, customer_id: int) -> list[LoanSummary]:
        ...

    async def list_active_loans(self, lender_id: int) -> list[ActiveLoan]:
        ...

    async def list_lender_loans(self, lender_id: int) -> list[LoanSummary]:
        ...

    async def payment_history(self, loan_id: int, lender_id: int) -> list[Payment] | None:
        ...

    async def list_users(self, role: Role) -> list[UserRow]:
        ...

    async def activity_logs(
        self, period: LogPeriod, now: datetime.datetime | None = None
    ) -> list[ActivityLog]:
        ...


_GET_LOAN = text(
    "SELECT loan_id, amount, interest_rate, status, due_date, application_date "
    "FROM loans WHERE loan_id = :loan_id AND customer_id = :customer_id"
)

# Sum of the most recent remaining_balance of each disbursed loan.
_OUTSTANDING_BALANCE = text(
    """
    SELECT COALESCE(SUM(p.remaining_balance), 0) AS outstanding_balance
    FROM loans l
    JOIN payments p ON p.loan_id = l.loan_id
    WHERE l.customer_id = :customer_id
      AND l.status = 'disbursed'
      AND p.payment_date = (
          SELECT MAX(p2.payment_date) FROM payments p2 WHERE p2.loan_id = l.loan_id
      )
    """
)

_LIST_CUSTOMER_LOANS = text(
    "SELECT loan_id, amount, status, due_date FROM loans "
    "WHERE customer_id = :customer_id ORDER BY application_date DESC"
)

_LIST_LENDER_LOANS = text(
    "SELECT loan_id, amount, status, due_date FROM loans "
    "WHERE lender_id = :lender_id ORDER BY application_date DESC"
)

_LIST_ACTIVE_LOANS = text(
    """
    SELECT
        l.loan_id,
        o.loan_type,
        l.amount,
        l.interest_rate,
        l.duration,
        l.installments,
        l.due_date,
        l.status,
        l.application_date,
        COALESCE(SUM(p.amount), 0) AS amount_paid,
        COALESCE(
            (SELECT p1.installment_balance
             FROM payments p1
             WHERE p1.loan_id = l.loan_id
               AND (p1.installment_balance IS NOT NULL OR p1.remaining_balance IS NOT NULL)
             ORDER BY p1.payment_date DESC
             LIMIT 1),
            l.installments
        ) AS latest_installment_balance
    FROM loans l
    JOIN loan_offers o ON l.offer_id = o.offer_id
    LEFT JOIN payments p ON l.loan_id = p.loan_id
    WHERE l.lender_id = :lender_id AND l.status = 'disbursed'
    GROUP BY l.loan_id, o.loan_type, l.amount, l.interest_rate, l.duration,
             l.installments, l.due_date, l.status, l.application_date
    ORDER BY l.application_date DESC
    """
)

_LOAN_BELONGS_TO_LENDER = text(
    "SELECT loan_id FROM loans WHERE loan_id = :loan_id AND lender_id = :lender_id"
)

_PAYMENT_HISTORY = text(
    "SELECT payment_id, amount, payment_method, payment_date FROM payments "
    "WHERE loan_id = :loan_id ORDER BY payment_date DESC"
)

_LIST_USERS = text(
    "SELECT user_id, user_name, email FROM users "
    "WHERE LOWER(role) = :role ORDER BY user_id LIMIT :limit"
)

_ACTIVITY_LOGS = text(
    "SELECT log_id, user_id, activity, activity_type, activity_time FROM activity "
    "WHERE activity_time >= :since ORDER BY activity_time DESC LIMIT :limit"
).bindparams(bindparam("since", type_=DateTime()))


class SqlQueryService:
    """``DomainQueryService`` backed by the lending database."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def get_loan(self, loan_id: int, customer_id: int) -> LoanDetail | None:
        rows = await self._fetch(_GET_LOAN, {"loan_id": loan_id, "customer_id": customer_id})
        return LoanDetail(**rows[0]) if rows else None

    async def outstanding_balance(self, customer_id: int) -> float:
        rows = await self._fetch(_OUTSTANDING_BALANCE, {"customer_id": customer_id})
        value = rows[0]["outstanding_balance"] if rows else None
        return float(value or 0)

    async def list_loans(self, customer_id: int) -> list[LoanSummary]:
        rows = await self._fetch(_LIST_CUSTOMER_LOANS, {"customer_id": customer_id})
        return [LoanSummary(**row) for row in rows]

    async def list_active_loans(self, lender_id: int) -> list[ActiveLoan]:
        rows = await self._fetch(_LIST_ACTIVE_LOANS, {"lender_id": lender_id})
        return [ActiveLoan(**row) for row in rows]

    async def list_lender_loans(self, lender_id: int) -> list[LoanSummary]:
        rows = await self._fetch(_LIST_LENDER_LOANS, {"lender_id": lender_id})
        return [LoanSummary(**row) for row in rows]

    async def payment_history(self, loan_id: int, lender_id: int) -> list[Payment] | None:
        """Payments for *loan_id*, or ``None`` if the loan is not *lender_id*'s."""
        owned = await self._fetch(
            _LOAN_BELONGS_TO_LENDER, {"loan_id": loan_id, "lender_id": lender_id}
        )
        if not owned:
            return None
        rows = await self._fetch(_PAYMENT_HISTORY, {"loan_id": loan_id})
        return [Payment(**row) for row in rows]

    async def list_users(self, role: Role) -> list[UserRow]:
        rows = await self._fetch(_LIST_USERS, {"role": role.value, "limit": USER_LIST_LIMIT})
        return [UserRow(**row) for row in rows]

    async def activity_logs(
        self, period: LogPeriod, now: datetime.datetime | None = None
    ) -> list[ActivityLog]:
        since = period.since(now or datetime.datetime.now())
        rows = await self._fetch(_ACTIVITY_LOGS, {"since": since, "limit": ACTIVITY_LOG_LIMIT})
        return [ActivityLog(**row) for row in rows]

    # -- private helpers -----------------------------------------------------

    async def _fetch(self, statement: Any, params: dict[str, Any]) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_sync, statement, params)

    def _fetch_sync(self, statement: Any, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(statement, params)
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as exc:
            logger.error("Reporting query failed: %s", exc)
            raise QueryServiceError(f"Reporting query failed: {exc.__class__.__name__}") from exc
