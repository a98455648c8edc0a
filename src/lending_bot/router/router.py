"""Role-gated router for inbound commands, button presses and prompt replies.

Pattern: Policy-Gated Action Registry
--------------------------------------
Every reporting action is registered once, with its handler, in
``_register_all_actions``.  Who may run it is not decided here but by the
``PolicyEngine``.  Both entry surfaces (typed commands and menu buttons)
resolve to an ``Action`` and then go through the same ``authorize`` call and
the same handler table, so they cannot drift apart.

``authorize`` returns one of three decisions:

  - ``UNAUTHENTICATED``: no signed-in user, or the user record vanished.
  - ``UNAUTHORIZED``:    the user's role is not permitted for the action.
  - ``DISPATCH``:        forward to the handler.

The role is resolved lazily: a session that has a ``user_id`` but no cached
role triggers one credential-store lookup, after which the role is cached on
the session and every later decision is a cache hit.

Single-field follow-ups ("enter a loan ID", "pick a role", "pick a period")
are a ``PendingPrompt`` marker on the session, not a wizard.  The next plain
text message is re-authorized against the prompt's action, validated and
dispatched; invalid input repeats the prompt and keeps the marker.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import re
from typing import Any, Awaitable, Callable

from lending_bot.auth.credential_store import CredentialStore, CredentialStoreError
from lending_bot.auth.session import PendingPrompt, Role, Session, SessionStore
from lending_bot.auth.wizard import CANCELLED_TEXT, DEFAULT_CANCEL_DIRECTIVE, SignInWizard
from lending_bot.messaging.reply import EventKind, InboundEvent, Messenger, Reply
from lending_bot.policy.engine import PolicyEngine
from lending_bot.reporting import formatter
from lending_bot.reporting.query_service import (
    DomainQueryService,
    LogPeriod,
    QueryServiceError,
)
from lending_bot.router.actions import Action, action_for_button, action_for_command

logger = logging.getLogger(__name__)

NOT_SIGNED_IN_TEXT = "You are not signed in. Use /signin to link your account."
ACCOUNT_NOT_FOUND_TEXT = "User account not found. Please contact support."
NOT_AUTHORIZED_TEXT = "You are not authorized to use this command."
UNKNOWN_COMMAND_TEXT = "Unknown command. Use /help to see available commands."
SIGNED_OUT_TEXT = "Signed out successfully. Use /signin to access your account."
SYSTEM_ERROR_TEXT = "System error. Try again later."
GENERIC_ERROR_TEXT = "An error occurred. Please try again later."
LOAN_NOT_FOUND_TEXT = "Loan not found or access denied."

_LOAN_ID = re.compile(r"^\d+$")


class InputValidationError(ValueError):
    """Raised when a prompt reply does not parse."""


def parse_loan_id(text: str) -> int:
    value = text.strip()
    if not _LOAN_ID.match(value):
        raise InputValidationError("Invalid loan ID. Please enter a number.")
    return int(value)


def parse_role_filter(text: str) -> Role:
    role = Role.parse(text)
    if role is None:
        raise InputValidationError("Invalid role. Please select Admin, Lender, or Customer.")
    return role


def parse_log_period(text: str) -> LogPeriod:
    period = LogPeriod.parse(text)
    if period is None:
        raise InputValidationError(
            "Invalid time period. Please select today, this week, or this month."
        )
    return period


class DecisionKind(enum.Enum):
    DISPATCH = "dispatch"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"


@dataclasses.dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    action: Action
    message: str | None = None

    @property
    def allowed(self) -> bool:
        return self.kind is DecisionKind.DISPATCH


@dataclasses.dataclass(frozen=True)
class _PromptSpec:
    action: Action
    question: str
    parse: Callable[[str], Any]
    handler: Callable[[Session, Any], Awaitable[None]]
    error_text: str


@dataclasses.dataclass(frozen=True)
class _ActionSpec:
    handler: Callable[[Session], Awaitable[None]]
    error_text: str


class ConversationRouter:
    """Routes every inbound event of every conversation.

    Assumes the transport delivers at most one event per identity at a time;
    see ``lending_bot.auth.session`` for the concurrency caveat.
    """

    def __init__(
        self,
        sessions: SessionStore,
        credentials: CredentialStore,
        queries: DomainQueryService,
        policy_engine: PolicyEngine,
        messenger: Messenger,
        cancel_directive: str = DEFAULT_CANCEL_DIRECTIVE,
    ) -> None:
        self._sessions = sessions
        self._credentials = credentials
        self._queries = queries
        self._policy = policy_engine
        self._messenger = messenger
        self._wizard = SignInWizard(credentials, messenger, cancel_directive)

        self._actions: dict[Action, _ActionSpec] = {}
        self._prompts: dict[PendingPrompt, _PromptSpec] = {}
        self._register_all_actions()
        self._register_all_prompts()

        unhandled = [a.value for a in Action if a not in self._actions]
        if unhandled:
            raise RuntimeError(f"No handler registered for actions: {unhandled}")

    # -- registration ---------------------------------------------------------

    def _register_action(
        self,
        action: Action,
        handler: Callable[[Session], Awaitable[None]],
        error_text: str = SYSTEM_ERROR_TEXT,
    ) -> None:
        self._actions[action] = _ActionSpec(handler=handler, error_text=error_text)

    def _register_all_actions(self) -> None:
        self._register_action(Action.CHECK_LOAN, self._ask(PendingPrompt.LOAN_ID_FOR_CHECK))
        self._register_action(
            Action.BALANCE, self._balance, "Error calculating balance. Try again later."
        )
        self._register_action(Action.LOANS, self._loans, "Error fetching loans. Try again later.")
        self._register_action(
            Action.ACTIVE_LOANS, self._active_loans, "Error fetching active loans. Try again later."
        )
        self._register_action(
            Action.LOAN_HISTORY, self._loan_history, "Error fetching loan history. Try again later."
        )
        self._register_action(Action.PAYMENT_TRACKING, self._ask(PendingPrompt.LOAN_ID_FOR_PAYMENTS))
        self._register_action(Action.LIST_USERS, self._ask(PendingPrompt.USER_ROLE_FILTER))
        self._register_action(Action.VIEW_LOGS, self._ask(PendingPrompt.LOG_PERIOD))
        self._register_action(Action.HELP, self._help)

    def _register_all_prompts(self) -> None:
        self._prompts = {
            PendingPrompt.LOAN_ID_FOR_CHECK: _PromptSpec(
                action=Action.CHECK_LOAN,
                question="Enter loan ID to check:",
                parse=parse_loan_id,
                handler=self._check_loan,
                error_text="Error checking loan. Try again later.",
            ),
            PendingPrompt.LOAN_ID_FOR_PAYMENTS: _PromptSpec(
                action=Action.PAYMENT_TRACKING,
                question="Enter loan ID to track payments:",
                parse=parse_loan_id,
                handler=self._payment_tracking,
                error_text="Error fetching payment history. Try again later.",
            ),
            PendingPrompt.USER_ROLE_FILTER: _PromptSpec(
                action=Action.LIST_USERS,
                question="Please select a role to filter (admin, lender, customer):",
                parse=parse_role_filter,
                handler=self._list_users,
                error_text="Error fetching users. Try again later.",
            ),
            PendingPrompt.LOG_PERIOD: _PromptSpec(
                action=Action.VIEW_LOGS,
                question="Please select a time period (today, this week, this month):",
                parse=parse_log_period,
                handler=self._view_logs,
                error_text="Error fetching activity logs. Try again later.",
            ),
        }

    # -- entry point ------------------------------------------------------------

    async def handle(self, event: InboundEvent) -> None:
        """Process one inbound event for its conversation."""
        session = self._sessions.get(event.identity)
        try:
            await self._route(session, event)
        except Exception:
            logger.exception("Unhandled error while processing event for identity=%s", event.identity)
            session.leave_wizard()
            session.pending_prompt = None
            await self._send(session, GENERIC_ERROR_TEXT, remove_reply_prompt=True)

    def resolve_action(self, event: InboundEvent) -> Action | None:
        """Map a command or button event to its ``Action``, if it names one."""
        if event.kind is EventKind.BUTTON:
            return action_for_button(event.button_data)
        if event.text is None or not event.text.strip().startswith("/"):
            return None
        return action_for_command(self._command_name(event.text))

    async def authorize(self, session: Session, action: Action) -> Decision:
        """Run the role gate for *action* on behalf of *session*."""
        if session.user_id is None:
            return Decision(DecisionKind.UNAUTHENTICATED, action, NOT_SIGNED_IN_TEXT)

        if session.role is None:
            raw_role = await self._credentials.find_role_by_id(session.user_id)
            if raw_role is None:
                logger.warning("User id=%s no longer exists", session.user_id)
                return Decision(DecisionKind.UNAUTHENTICATED, action, ACCOUNT_NOT_FOUND_TEXT)
            role = Role.parse(raw_role)
            if role is None:
                logger.warning("User id=%s has unsupported role=%r", session.user_id, raw_role)
                return Decision(DecisionKind.UNAUTHORIZED, action, NOT_AUTHORIZED_TEXT)
            session.cache_role(role)
            logger.debug("Cached role=%s for user id=%s", role.value, session.user_id)

        if not self._policy.is_permitted(session.role, action):
            logger.info(
                "Denied action=%s for user id=%s role=%s",
                action.value,
                session.user_id,
                session.role.value,
            )
            return Decision(DecisionKind.UNAUTHORIZED, action, NOT_AUTHORIZED_TEXT)

        return Decision(DecisionKind.DISPATCH, action)

    # -- routing ------------------------------------------------------------------

    async def _route(self, session: Session, event: InboundEvent) -> None:
        if session.in_wizard:
            await self._wizard.handle(session, event)
            return

        if event.kind is EventKind.BUTTON:
            await self._on_button(session, event)
            return

        if event.text is None:
            return

        text = event.text.strip()
        if self._wizard.is_cancel(text):
            await self.cancel(session)
        elif text.startswith("/"):
            await self._on_command(session, event, text)
        elif session.pending_prompt is not None:
            await self._on_prompt_reply(session, text)
        else:
            logger.debug("Ignoring plain text from identity=%s", session.identity)

    async def _on_command(self, session: Session, event: InboundEvent, text: str) -> None:
        command = self._command_name(text)
        if command == "start":
            name = session.display_name or event.sender_name or "User"
            await self._send(session, formatter.format_greeting(name, session.is_authenticated))
        elif command == "signin":
            await self._wizard.start(session)
        elif command == "signout":
            self._sessions.clear(session.identity)
            logger.info("Identity=%s signed out", session.identity)
            await self._send(session, SIGNED_OUT_TEXT, remove_reply_prompt=True)
        else:
            action = action_for_command(command)
            if action is None:
                await self._send(session, UNKNOWN_COMMAND_TEXT)
                return
            await self._dispatch(session, action)

    async def _on_button(self, session: Session, event: InboundEvent) -> None:
        action = action_for_button(event.button_data)
        if action is None:
            logger.warning("Unknown button data=%r from identity=%s", event.button_data, session.identity)
            await self._send(session, NOT_AUTHORIZED_TEXT)
            return
        await self._dispatch(session, action)

    async def _dispatch(self, session: Session, action: Action) -> None:
        session.pending_prompt = None
        try:
            decision = await self.authorize(session, action)
        except CredentialStoreError:
            logger.exception("Role lookup failed for user id=%s", session.user_id)
            await self._send(session, SYSTEM_ERROR_TEXT)
            return
        if not decision.allowed:
            await self._send(session, decision.message)
            return

        spec = self._actions[action]
        await self._run(session, spec.error_text, spec.handler(session))

    async def _on_prompt_reply(self, session: Session, text: str) -> None:
        spec = self._prompts[session.pending_prompt]
        try:
            decision = await self.authorize(session, spec.action)
        except CredentialStoreError:
            logger.exception("Role lookup failed for user id=%s", session.user_id)
            session.pending_prompt = None
            await self._send(session, SYSTEM_ERROR_TEXT, remove_reply_prompt=True)
            return
        if not decision.allowed:
            session.pending_prompt = None
            await self._send(session, decision.message, remove_reply_prompt=True)
            return

        try:
            value = spec.parse(text)
        except InputValidationError as exc:
            await self._send(session, str(exc), force_reply=True)
            return

        session.pending_prompt = None
        await self._run(session, spec.error_text, spec.handler(session, value))

    async def cancel(self, session: Session) -> None:
        """Abandon any sign-in or pending prompt.  Safe to repeat."""
        session.leave_wizard()
        session.pending_prompt = None
        await self._send(session, CANCELLED_TEXT, remove_reply_prompt=True)

    # -- action handlers ---------------------------------------------------------

    def _ask(self, prompt: PendingPrompt) -> Callable[[Session], Awaitable[None]]:
        async def ask(session: Session) -> None:
            session.pending_prompt = prompt
            await self._send(session, self._prompts[prompt].question, force_reply=True)

        return ask

    async def _help(self, session: Session) -> None:
        await self._send(session, formatter.HELP_TEXT)

    async def _balance(self, session: Session) -> None:
        customer_id = await self._linked_id(session)
        if customer_id is None:
            return
        balance = await self._queries.outstanding_balance(customer_id)
        await self._send(session, formatter.format_balance(balance))

    async def _loans(self, session: Session) -> None:
        customer_id = await self._linked_id(session)
        if customer_id is None:
            return
        loans = await self._queries.list_loans(customer_id)
        await self._send(session, formatter.format_loans(loans))

    async def _active_loans(self, session: Session) -> None:
        lender_id = await self._linked_id(session)
        if lender_id is None:
            return
        loans = await self._queries.list_active_loans(lender_id)
        await self._send(session, formatter.format_active_loans(loans))

    async def _loan_history(self, session: Session) -> None:
        lender_id = await self._linked_id(session)
        if lender_id is None:
            return
        loans = await self._queries.list_lender_loans(lender_id)
        await self._send(session, formatter.format_loans(loans, title="Loan history"))

    async def _check_loan(self, session: Session, loan_id: int) -> None:
        customer_id = await self._linked_id(session)
        if customer_id is None:
            return
        loan = await self._queries.get_loan(loan_id, customer_id)
        if loan is None:
            await self._send(session, LOAN_NOT_FOUND_TEXT, remove_reply_prompt=True)
            return
        await self._send(session, formatter.format_loan_detail(loan), remove_reply_prompt=True)

    async def _payment_tracking(self, session: Session, loan_id: int) -> None:
        lender_id = await self._linked_id(session)
        if lender_id is None:
            return
        payments = await self._queries.payment_history(loan_id, lender_id)
        if payments is None:
            await self._send(session, LOAN_NOT_FOUND_TEXT, remove_reply_prompt=True)
            return
        await self._send(session, formatter.format_payments(loan_id, payments), remove_reply_prompt=True)

    async def _list_users(self, session: Session, role: Role) -> None:
        users = await self._queries.list_users(role)
        await self._send(session, formatter.format_users(role, users), remove_reply_prompt=True)

    async def _view_logs(self, session: Session, period: LogPeriod) -> None:
        logs = await self._queries.activity_logs(period)
        await self._send(session, formatter.format_activity_logs(period, logs), remove_reply_prompt=True)

    # -- private helpers -----------------------------------------------------

    async def _linked_id(self, session: Session) -> int | None:
        """Return the session's customer/lender id, resolving it once if missing.

        Replies with a support message and returns ``None`` when no entity is
        linked to the user.
        """
        if session.domain_id is None:
            linked = await self._credentials.find_linked_entity(session.user_id, session.role)
            if linked is not None:
                session.domain_id = linked.domain_id
                if session.display_name is None:
                    session.display_name = linked.display_name
        if session.domain_id is None:
            await self._send(
                session,
                f"No {session.role.value} account linked. Please contact support.",
                remove_reply_prompt=True,
            )
        return session.domain_id

    async def _run(self, session: Session, error_text: str, handler: Awaitable[None]) -> None:
        try:
            await handler
        except QueryServiceError:
            logger.exception("Reporting query failed for user id=%s", session.user_id)
            await self._send(session, error_text, remove_reply_prompt=True)
        except CredentialStoreError:
            logger.exception("Credential lookup failed for user id=%s", session.user_id)
            await self._send(session, SYSTEM_ERROR_TEXT, remove_reply_prompt=True)

    async def _send(self, session: Session, text: str, **options) -> None:
        await self._messenger.send(Reply(identity=session.identity, text=text, **options))

    @staticmethod
    def _command_name(text: str) -> str:
        head = text.strip().split(maxsplit=1)[0]
        return head.lstrip("/").split("@", 1)[0].lower()
