"""Plain-text rendering of reporting rows.  Stateless."""

from __future__ import annotations

from typing import Any, Iterable

from lending_bot.auth.session import Role
from lending_bot.reporting.query_service import (
    ActiveLoan,
    ActivityLog,
    LoanDetail,
    LoanSummary,
    LogPeriod,
    Payment,
    UserRow,
)

HELP_TEXT = "\n".join([
    "Available commands:",
    "/start - Start the bot",
    "/help - Show help",
    "/checkloan - Check loan status (customer only)",
    "/balance - View loan balance (customer only)",
    "/loans - List all loans (customer only)",
    "/active_loans - List active loans (lender only)",
    "/loan_history - View loan history (lender only)",
    "/payment_tracking - Track loan payments (lender only)",
    "/list_users - List users by role (admin only)",
    "/view_logs - View activity logs (admin only)",
    "/signin - Sign in",
    "/signout - Sign out",
    "/stop - Cancel current process",
])


def _or_na(value: Any) -> Any:
    return value if value not in (None, "") else "N/A"


def _blocks(lines: Iterable[str]) -> str:
    return "\n\n".join(lines)


def format_welcome(display_name: str | None) -> str:
    return f"Welcome back, {display_name or 'User'}!"


def format_greeting(name: str, signed_in: bool) -> str:
    if signed_in:
        return f"Hello {name}!"
    return f"Hello {name}! Use /signin to access your account."


def format_balance(balance: float) -> str:
    return f"Your outstanding loan balance: {balance:.2f}"


def format_loan_detail(loan: LoanDetail) -> str:
    return "\n".join([
        f"Loan ID: {loan.loan_id}",
        f"Amount: {loan.amount}",
        f"Interest Rate: {loan.interest_rate}%",
        f"Status: {loan.status}",
        f"Due Date: {_or_na(loan.due_date)}",
        f"Applied: {loan.application_date}",
    ])


def _loan_summary(loan: LoanSummary) -> str:
    return f"ID: {loan.loan_id}\nAmount: {loan.amount}\nStatus: {loan.status}\nDue: {_or_na(loan.due_date)}"


def format_loans(loans: list[LoanSummary], title: str = "Your loans") -> str:
    if not loans:
        return "No loans found."
    return f"{title}:\n\n" + _blocks(_loan_summary(loan) for loan in loans)


def format_active_loans(loans: list[ActiveLoan]) -> str:
    if not loans:
        return "No active loans found."
    entries = (
        "\n".join([
            f"ID: {loan.loan_id}",
            f"Type: {loan.loan_type}",
            f"Amount: {loan.amount}",
            f"Interest: {loan.interest_rate}%",
            f"Duration: {loan.duration}",
            f"Installments: {loan.installments}",
            f"Due: {_or_na(loan.due_date)}",
            f"Status: {loan.status}",
            f"Applied: {loan.application_date}",
            f"Paid: {loan.amount_paid}",
            f"Latest Installment/Remaining Balance: {loan.latest_installment_balance}",
        ])
        for loan in loans
    )
    return "Active loans:\n\n" + _blocks(entries)


def format_payments(loan_id: int, payments: list[Payment]) -> str:
    if not payments:
        return "No payments found for this loan."
    entries = (
        f"Payment ID: {p.payment_id}\nAmount: {p.amount}\nMethod: {p.payment_method}\nDate: {p.payment_date}"
        for p in payments
    )
    return f"Payment history for Loan ID {loan_id}:\n\n" + _blocks(entries)


def format_users(role: Role, users: list[UserRow]) -> str:
    label = role.value.capitalize()
    if not users:
        return f"No users found for role {label}."
    entries = (f"ID: {u.user_id}\nName: {u.user_name}\nEmail: {u.email}" for u in users)
    return f"Users with role {label}:\n\n" + _blocks(entries)


def format_activity_logs(period: LogPeriod, logs: list[ActivityLog]) -> str:
    if not logs:
        return f"No activity logs found for {period.value}."
    entries = (
        f"Log ID: {log.log_id}\nUser ID: {log.user_id}\nActivity: {log.activity}\n"
        f"Type: {log.activity_type}\nTime: {log.activity_time}"
        for log in logs
    )
    return f"Activity logs for {period.value}:\n\n" + _blocks(entries)
