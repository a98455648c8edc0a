"""Tests for the SQLAlchemy-backed credential store and query service.

Runs the real SQL against an in-memory SQLite database seeded with a small
lending book.
"""

from __future__ import annotations

import datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from lending_bot.auth.credential_store import CredentialStoreError, LinkedEntity, SqlCredentialStore
from lending_bot.auth.session import Role, SessionStore
from lending_bot.reporting.query_service import (
    ACTIVITY_LOG_LIMIT,
    LogPeriod,
    QueryServiceError,
    SqlQueryService,
)
from lending_bot.router.router import ConversationRouter

from conftest import IDENTITY, FakeMessenger, run, send_text, sign_in

_SCHEMA = [
    """CREATE TABLE users (
        user_id INTEGER PRIMARY KEY, user_name TEXT, email TEXT UNIQUE,
        password TEXT, role TEXT)""",
    "CREATE TABLE customers (customer_id INTEGER PRIMARY KEY, user_id INTEGER, name TEXT)",
    "CREATE TABLE lenders (lender_id INTEGER PRIMARY KEY, user_id INTEGER, name TEXT)",
    "CREATE TABLE loan_offers (offer_id INTEGER PRIMARY KEY, lender_id INTEGER, loan_type TEXT)",
    """CREATE TABLE loans (
        loan_id INTEGER PRIMARY KEY, customer_id INTEGER, lender_id INTEGER,
        offer_id INTEGER, amount NUMERIC, interest_rate NUMERIC, duration INTEGER,
        installments NUMERIC, due_date TEXT, status TEXT, application_date TEXT)""",
    """CREATE TABLE payments (
        payment_id INTEGER PRIMARY KEY, loan_id INTEGER, amount NUMERIC,
        payment_method TEXT, payment_date TEXT, installment_balance NUMERIC,
        remaining_balance NUMERIC)""",
    """CREATE TABLE activity (
        log_id INTEGER PRIMARY KEY, user_id INTEGER, activity TEXT,
        activity_type TEXT, activity_time TEXT)""",
]

_LOANS = [
    (7, 101, 202, 1, 5000, 12, 12, 450, "2025-06-01", "disbursed", "2025-01-02"),
    (8, 101, 202, 1, 1000, 10, 6, 180, None, "pending", "2025-03-01"),
    (9, 999, 202, 1, 2000, 10, 12, 200, "2025-12-01", "disbursed", "2024-12-01"),
    (10, 101, 303, 1, 700, 8, 3, 240, None, "disbursed", "2024-11-01"),
]

_PAYMENTS = [
    (1, 7, 450, "mpesa", "2025-02-01", 450, 4550),
    (2, 7, 450, "mpesa", "2025-03-01", 450, 4100),
    (3, 9, 200, "bank", "2025-01-01", 180, 1800),
]

_ACTIVITY = [
    (1, 1, "Signed in", "auth", "2025-02-10 09:00:00"),
    (2, 3, "Listed users", "admin", "2025-02-05 09:00:00"),
    (3, 1, "Signed in", "auth", "2024-12-01 09:00:00"),
]

NOW = datetime.datetime(2025, 2, 10, 12, 0)


def _memory_engine() -> Engine:
    return create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture
def engine(password_hash: str) -> Engine:
    engine = _memory_engine()
    with engine.begin() as conn:
        for ddl in _SCHEMA:
            conn.execute(text(ddl))
        conn.execute(
            text("INSERT INTO users VALUES (:id, :name, :email, :pw, :role)"),
            [
                {"id": 1, "name": "carol", "email": "carol@example.com", "pw": password_hash, "role": "Customer"},
                {"id": 2, "name": "larry", "email": "larry@example.com", "pw": password_hash, "role": "Lender"},
                {"id": 3, "name": "ada", "email": "ada@example.com", "pw": password_hash, "role": "Admin"},
                {"id": 4, "name": "dan", "email": "dan@example.com", "pw": password_hash, "role": "customer"},
            ],
        )
        conn.execute(text("INSERT INTO customers VALUES (101, 1, 'Carol')"))
        conn.execute(text("INSERT INTO lenders VALUES (202, 2, 'Larry Loans')"))
        conn.execute(text("INSERT INTO loan_offers VALUES (1, 202, 'Personal')"))
        conn.execute(
            text("INSERT INTO loans VALUES (:a, :b, :c, :d, :e, :f, :g, :h, :i, :j, :k)"),
            [dict(zip("abcdefghijk", row)) for row in _LOANS],
        )
        conn.execute(
            text("INSERT INTO payments VALUES (:a, :b, :c, :d, :e, :f, :g)"),
            [dict(zip("abcdefg", row)) for row in _PAYMENTS],
        )
        conn.execute(
            text("INSERT INTO activity VALUES (:a, :b, :c, :d, :e)"),
            [dict(zip("abcde", row)) for row in _ACTIVITY],
        )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine) -> SqlCredentialStore:
    return SqlCredentialStore(engine)


@pytest.fixture
def service(engine: Engine) -> SqlQueryService:
    return SqlQueryService(engine)


class TestSqlCredentialStore:
    def test_find_by_email(self, store: SqlCredentialStore, password_hash: str) -> None:
        record = run(store.find_by_email("carol@example.com"))
        assert record.user_id == 1
        assert record.role == "Customer"
        assert record.password_hash == password_hash

    def test_unknown_email(self, store: SqlCredentialStore) -> None:
        assert run(store.find_by_email("nobody@example.com")) is None

    def test_find_role_by_id(self, store: SqlCredentialStore) -> None:
        assert run(store.find_role_by_id(3)) == "Admin"
        assert run(store.find_role_by_id(999)) is None

    def test_linked_customer(self, store: SqlCredentialStore) -> None:
        assert run(store.find_linked_entity(1, Role.CUSTOMER)) == LinkedEntity(101, "Carol")

    def test_linked_lender(self, store: SqlCredentialStore) -> None:
        assert run(store.find_linked_entity(2, Role.LENDER)) == LinkedEntity(202, "Larry Loans")

    def test_admin_links_to_own_user_row(self, store: SqlCredentialStore) -> None:
        assert run(store.find_linked_entity(3, Role.ADMIN)) == LinkedEntity(None, "ada")

    def test_unlinked_user(self, store: SqlCredentialStore) -> None:
        assert run(store.find_linked_entity(4, Role.CUSTOMER)) is None

    def test_database_failure_is_wrapped(self) -> None:
        store = SqlCredentialStore(_memory_engine())
        with pytest.raises(CredentialStoreError):
            run(store.find_by_email("carol@example.com"))


class TestSqlQueryService:
    def test_get_own_loan(self, service: SqlQueryService) -> None:
        loan = run(service.get_loan(7, 101))
        assert loan.loan_id == 7
        assert loan.status == "disbursed"

    def test_get_foreign_loan_is_hidden(self, service: SqlQueryService) -> None:
        assert run(service.get_loan(9, 101)) is None

    def test_outstanding_balance_uses_latest_payment_of_disbursed_loans(self, service: SqlQueryService) -> None:
        assert run(service.outstanding_balance(101)) == pytest.approx(4100.0)

    def test_outstanding_balance_without_loans(self, service: SqlQueryService) -> None:
        assert run(service.outstanding_balance(555)) == 0.0

    def test_list_loans_newest_first(self, service: SqlQueryService) -> None:
        assert [loan.loan_id for loan in run(service.list_loans(101))] == [8, 7, 10]

    def test_list_active_loans(self, service: SqlQueryService) -> None:
        loans = run(service.list_active_loans(202))
        assert [loan.loan_id for loan in loans] == [7, 9]
        first = loans[0]
        assert first.loan_type == "Personal"
        assert first.amount_paid == 900
        assert first.latest_installment_balance == 450

    def test_list_lender_loans(self, service: SqlQueryService) -> None:
        assert [loan.loan_id for loan in run(service.list_lender_loans(202))] == [8, 7, 9]

    def test_payment_history(self, service: SqlQueryService) -> None:
        payments = run(service.payment_history(7, 202))
        assert [p.payment_id for p in payments] == [2, 1]

    def test_payment_history_for_loan_without_payments(self, service: SqlQueryService) -> None:
        assert run(service.payment_history(8, 202)) == []

    def test_payment_history_of_foreign_loan(self, service: SqlQueryService) -> None:
        assert run(service.payment_history(10, 202)) is None

    def test_list_users_matches_role_case_insensitively(self, service: SqlQueryService) -> None:
        assert [u.user_id for u in run(service.list_users(Role.CUSTOMER))] == [1, 4]

    @pytest.mark.parametrize(
        "period,expected",
        [
            (LogPeriod.TODAY, [1]),
            (LogPeriod.THIS_WEEK, [1, 2]),
            (LogPeriod.THIS_MONTH, [1, 2]),
        ],
    )
    def test_activity_logs_window(self, service: SqlQueryService, period: LogPeriod, expected: list[int]) -> None:
        logs = run(service.activity_logs(period, now=NOW))
        assert [log.log_id for log in logs] == expected

    def test_activity_logs_are_capped(self, engine: Engine, service: SqlQueryService) -> None:
        with engine.begin() as conn:
            conn.execute(
                text("INSERT INTO activity VALUES (:id, 1, 'Ping', 'auth', '2025-02-10 10:00:00')"),
                [{"id": 100 + i} for i in range(ACTIVITY_LOG_LIMIT + 5)],
            )
        assert len(run(service.activity_logs(LogPeriod.TODAY, now=NOW))) == ACTIVITY_LOG_LIMIT

    def test_database_failure_is_wrapped(self) -> None:
        service = SqlQueryService(_memory_engine())
        with pytest.raises(QueryServiceError, match="OperationalError"):
            run(service.list_loans(101))


class TestEndToEnd:
    """Sign-in and reporting through the router against the SQL stores."""

    @pytest.fixture
    def router(self, engine: Engine, policy_engine, messenger: FakeMessenger) -> ConversationRouter:
        return ConversationRouter(
            sessions=SessionStore(),
            credentials=SqlCredentialStore(engine),
            queries=SqlQueryService(engine),
            policy_engine=policy_engine,
            messenger=messenger,
        )

    def test_customer_signs_in_and_checks_balance(self, router: ConversationRouter, messenger: FakeMessenger) -> None:
        sign_in(router, "carol@example.com")
        assert messenger.last.text == "Welcome back, Carol!"

        send_text(router, "/balance")
        assert messenger.last.text == "Your outstanding loan balance: 4100.00"

    def test_lender_tracks_payments(self, router: ConversationRouter, messenger: FakeMessenger) -> None:
        sign_in(router, "larry@example.com")
        send_text(router, "/payment_tracking")
        send_text(router, "7")
        assert messenger.last.text.startswith("Payment history for Loan ID 7:")

        send_text(router, "/payment_tracking")
        send_text(router, "10")
        assert messenger.last.text == "Loan not found or access denied."

    def test_unlinked_customer_signs_in_but_is_refused(self, router: ConversationRouter, messenger: FakeMessenger) -> None:
        sign_in(router, "dan@example.com", identity=IDENTITY)
        assert messenger.last.text == "Account not found. Contact support."
