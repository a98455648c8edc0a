"""Typed action enumeration shared by both entry surfaces.

A user reaches a reporting action either by typing a command (``/balance``)
or by pressing a menu button (data ``balance``).  Both surfaces are resolved
here to the same ``Action`` member, so the router looks up permissions and
handlers from one table no matter how the request arrived.
"""

from __future__ import annotations

import enum

from lending_bot.auth.session import Role
from lending_bot.messaging.reply import Menu, MenuButton


class Action(str, enum.Enum):
    CHECK_LOAN = "check_loan"
    BALANCE = "balance"
    LOANS = "loans"
    ACTIVE_LOANS = "active_loans"
    LOAN_HISTORY = "loan_history"
    PAYMENT_TRACKING = "payment_tracking"
    LIST_USERS = "list_users"
    VIEW_LOGS = "view_logs"
    HELP = "help"


# Command names (without the leading slash) and button data, per action.
_COMMANDS: dict[str, Action] = {
    "checkloan": Action.CHECK_LOAN,
    "balance": Action.BALANCE,
    "loans": Action.LOANS,
    "active_loans": Action.ACTIVE_LOANS,
    "loan_history": Action.LOAN_HISTORY,
    "payment_tracking": Action.PAYMENT_TRACKING,
    "list_users": Action.LIST_USERS,
    "view_logs": Action.VIEW_LOGS,
    "help": Action.HELP,
}

_BUTTONS: dict[str, Action] = dict(_COMMANDS)


def action_for_command(command: str) -> Action | None:
    """Map a command name such as ``"balance"`` or ``"/balance"`` to an action."""
    return _COMMANDS.get(command.lstrip("/").lower())


def action_for_button(data: str | None) -> Action | None:
    if data is None:
        return None
    return _BUTTONS.get(data)


def button_data(action: Action) -> str:
    for data, candidate in _BUTTONS.items():
        if candidate is action:
            return data
    raise KeyError(action)


def _button(label: str, action: Action) -> MenuButton:
    return MenuButton(label=label, data=button_data(action))


ROLE_MENUS: dict[Role, Menu] = {
    Role.CUSTOMER: (
        (_button("List Loans", Action.LOANS), _button("View Balance", Action.BALANCE)),
        (_button("Check Loan", Action.CHECK_LOAN), _button("Help", Action.HELP)),
    ),
    Role.LENDER: (
        (_button("Active Loans", Action.ACTIVE_LOANS), _button("Loan History", Action.LOAN_HISTORY)),
        (_button("Payment Tracking", Action.PAYMENT_TRACKING), _button("Help", Action.HELP)),
    ),
    Role.ADMIN: (
        (_button("List Users", Action.LIST_USERS), _button("View Logs", Action.VIEW_LOGS)),
        (_button("Help", Action.HELP),),
    ),
}


def menu_for_role(role: Role) -> Menu:
    return ROLE_MENUS[role]
