"""Shared fixtures and in-memory collaborators for tests."""

from __future__ import annotations

import asyncio
import datetime
import pathlib
from typing import Any

import pytest

from lending_bot.auth.credential_store import CredentialRecord, CredentialStoreError, LinkedEntity
from lending_bot.auth.passwords import hash_password
from lending_bot.auth.session import Role, Session, SessionStore
from lending_bot.messaging.reply import InboundEvent, MessageDeleteError, Reply
from lending_bot.policy.engine import PolicyEngine
from lending_bot.reporting.query_service import (
    ActiveLoan,
    ActivityLog,
    LoanDetail,
    LoanSummary,
    LogPeriod,
    Payment,
    UserRow,
)
from lending_bot.router.router import ConversationRouter

IDENTITY = "chat-42"
PASSWORD = "correct horse"


def run(coro: Any) -> Any:
    return asyncio.run(coro)


class FakeMessenger:
    def __init__(self, can_delete: bool = True) -> None:
        self.sent: list[Reply] = []
        self.deleted: list[tuple[str, int | None]] = []
        self.can_delete = can_delete

    async def send(self, reply: Reply) -> None:
        self.sent.append(reply)

    async def delete_message(self, identity: str, message_id: int | None) -> None:
        if not self.can_delete:
            raise MessageDeleteError("not permitted")
        self.deleted.append((identity, message_id))

    @property
    def texts(self) -> list[str]:
        return [r.text for r in self.sent]

    @property
    def last(self) -> Reply:
        return self.sent[-1]


class FakeCredentialStore:
    """Credential store backed by dicts, counting every call."""

    def __init__(self) -> None:
        self.by_email: dict[str, CredentialRecord] = {}
        self.roles: dict[int, str] = {}
        self.linked: dict[tuple[int, Role], LinkedEntity] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail = False

    def add_user(
        self,
        email: str,
        user_id: int,
        password_hash: str,
        role: str,
        linked: LinkedEntity | None = None,
    ) -> None:
        self.by_email[email] = CredentialRecord(user_id=user_id, password_hash=password_hash, role=role)
        self.roles[user_id] = role
        parsed = Role.parse(role)
        if linked is not None and parsed is not None:
            self.linked[(user_id, parsed)] = linked

    def _record(self, name: str, arg: Any) -> None:
        self.calls.append((name, arg))
        if self.fail:
            raise CredentialStoreError("database unavailable")

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def find_by_email(self, email: str) -> CredentialRecord | None:
        self._record("find_by_email", email)
        return self.by_email.get(email)

    async def find_role_by_id(self, user_id: int) -> str | None:
        self._record("find_role_by_id", user_id)
        return self.roles.get(user_id)

    async def find_linked_entity(self, user_id: int, role: Role) -> LinkedEntity | None:
        self._record("find_linked_entity", (user_id, role))
        return self.linked.get((user_id, role))


class FakeQueryService:
    """Query service returning canned rows and recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.error: Exception | None = None
        self.balance = 1234.5
        self.loans = [LoanSummary(loan_id=7, amount=5000, status="disbursed", due_date="2025-06-01")]
        self.loan = LoanDetail(
            loan_id=7,
            amount=5000,
            interest_rate=12,
            status="disbursed",
            due_date=None,
            application_date="2025-01-02",
        )
        self.active_loans = [
            ActiveLoan(
                loan_id=9,
                loan_type="Personal",
                amount=2000,
                interest_rate=10,
                duration=12,
                installments=200,
                due_date="2025-12-01",
                status="disbursed",
                application_date="2025-01-01",
                amount_paid=400,
                latest_installment_balance=150,
            )
        ]
        self.payments: list[Payment] | None = [
            Payment(payment_id=1, amount=200, payment_method="mpesa", payment_date="2025-02-01")
        ]
        self.users = [UserRow(user_id=1, user_name="root", email="root@example.com")]
        self.logs = [
            ActivityLog(
                log_id=3,
                user_id=1,
                activity="Signed in",
                activity_type="auth",
                activity_time="2025-02-01 10:00:00",
            )
        ]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.error is not None:
            raise self.error

    async def get_loan(self, loan_id: int, customer_id: int) -> LoanDetail | None:
        self._record("get_loan", loan_id, customer_id)
        return self.loan if loan_id == self.loan.loan_id else None

    async def outstanding_balance(self, customer_id: int) -> float:
        self._record("outstanding_balance", customer_id)
        return self.balance

    async def list_loans(self, customer_id: int) -> list[LoanSummary]:
        self._record("list_loans", customer_id)
        return self.loans

    async def list_active_loans(self, lender_id: int) -> list[ActiveLoan]:
        self._record("list_active_loans", lender_id)
        return self.active_loans

    async def list_lender_loans(self, lender_id: int) -> list[LoanSummary]:
        self._record("list_lender_loans", lender_id)
        return self.loans

    async def payment_history(self, loan_id: int, lender_id: int) -> list[Payment] | None:
        self._record("payment_history", loan_id, lender_id)
        return self.payments

    async def list_users(self, role: Role) -> list[UserRow]:
        self._record("list_users", role)
        return self.users

    async def activity_logs(
        self, period: LogPeriod, now: datetime.datetime | None = None
    ) -> list[ActivityLog]:
        self._record("activity_logs", period)
        return self.logs


@pytest.fixture(scope="session")
def password_hash() -> str:
    return hash_password(PASSWORD, rounds=4)


@pytest.fixture(scope="session")
def legacy_password_hash(password_hash: str) -> str:
    """The same hash as issued by the PHP portal, tagged ``$2y$``."""
    return "$2y$" + password_hash[len("$2b$"):]


@pytest.fixture
def policy_engine() -> PolicyEngine:
    """Return a PolicyEngine loaded from the real actions.yaml."""
    real_path = pathlib.Path(__file__).resolve().parents[1] / "policies" / "actions.yaml"
    return PolicyEngine(policy_path=real_path)


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def credentials(password_hash: str, legacy_password_hash: str) -> FakeCredentialStore:
    store = FakeCredentialStore()
    store.add_user(
        "carol@example.com", 1, password_hash, "Customer",
        LinkedEntity(domain_id=101, display_name="Carol"),
    )
    store.add_user(
        "larry@example.com", 2, legacy_password_hash, "Lender",
        LinkedEntity(domain_id=202, display_name="Larry Loans"),
    )
    store.add_user(
        "ada@example.com", 3, password_hash, "Admin",
        LinkedEntity(domain_id=None, display_name="ada"),
    )
    return store


@pytest.fixture
def queries() -> FakeQueryService:
    return FakeQueryService()


@pytest.fixture
def sessions() -> SessionStore:
    return SessionStore()


@pytest.fixture
def router(
    sessions: SessionStore,
    credentials: FakeCredentialStore,
    queries: FakeQueryService,
    policy_engine: PolicyEngine,
    messenger: FakeMessenger,
) -> ConversationRouter:
    return ConversationRouter(
        sessions=sessions,
        credentials=credentials,
        queries=queries,
        policy_engine=policy_engine,
        messenger=messenger,
    )


def send_text(router: ConversationRouter, text: str | None, identity: str = IDENTITY, message_id: int = 1) -> None:
    run(router.handle(InboundEvent.message(identity, text, message_id=message_id)))


def press(router: ConversationRouter, data: str, identity: str = IDENTITY) -> None:
    run(router.handle(InboundEvent.button(identity, data)))


def sign_in(router: ConversationRouter, email: str, password: str = PASSWORD, identity: str = IDENTITY) -> None:
    send_text(router, "/signin", identity)
    send_text(router, email, identity)
    send_text(router, password, identity, message_id=99)


def signed_in_session(identity: str, user_id: int, role: Role, domain_id: int | None) -> Session:
    session = Session(identity=identity)
    session.sign_in(user_id=user_id, role=role, domain_id=domain_id, display_name="Test")
    return session
