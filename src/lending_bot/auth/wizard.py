"""Two-step sign-in wizard: email, then password.

Pattern: Explicit State Machine
--------------------------------
The wizard's position is stored on the session as ``WizardStep``:

    IDLE --/signin--> AWAIT_EMAIL --known email--> AWAIT_PASSWORD --> IDLE

Each inbound message while a step is active is consumed by exactly one step
handler, which either stays, advances, or leaves to ``IDLE``.  The cancel
directive is tested at the top of every step before any lookup is awaited,
so cancelling always wins over a query that has not been issued yet.

Secret handling
---------------
The password hash fetched in the email step is parked on the session as a
``PendingAuth`` record until the password arrives.  Every exit from the
wizard goes through ``Session.leave_wizard()`` or ``Session.sign_in()``, both
of which drop that record.  Passwords and hashes are never logged.
"""

from __future__ import annotations

import logging

from lending_bot.auth.credential_store import CredentialStore, CredentialStoreError
from lending_bot.auth.passwords import is_recognized_hash, verify_password
from lending_bot.auth.session import PendingAuth, Role, Session, WizardStep
from lending_bot.messaging.reply import InboundEvent, MessageDeleteError, Messenger, Reply
from lending_bot.reporting.formatter import format_welcome
from lending_bot.router.actions import menu_for_role

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_DIRECTIVE = "/stop"
CANCELLED_TEXT = "Operation cancelled."
PRIVACY_WARNING = "For your privacy, please delete your password message from the chat history."


class SignInWizard:
    """Drives a ``Session`` through the sign-in steps."""

    def __init__(
        self,
        credentials: CredentialStore,
        messenger: Messenger,
        cancel_directive: str = DEFAULT_CANCEL_DIRECTIVE,
    ) -> None:
        self._credentials = credentials
        self._messenger = messenger
        self._cancel_directive = cancel_directive.strip().lower()

    def is_cancel(self, text: str | None) -> bool:
        return text is not None and text.strip().lower() == self._cancel_directive

    async def start(self, session: Session) -> None:
        """Enter the wizard, discarding any scratch data a previous attempt left behind."""
        session.clear_pending_auth()
        session.pending_prompt = None
        session.wizard_step = WizardStep.AWAIT_EMAIL
        logger.debug("Sign-in started for identity=%s", session.identity)
        await self._prompt(session, "Please enter your email:")

    async def handle(self, session: Session, event: InboundEvent) -> None:
        """Feed one inbound event to the active step."""
        if self.is_cancel(event.text):
            await self.cancel(session)
            return

        if session.wizard_step is WizardStep.AWAIT_EMAIL:
            await self._on_email(session, event)
        elif session.wizard_step is WizardStep.AWAIT_PASSWORD:
            await self._on_password(session, event)
        else:
            raise RuntimeError(f"Sign-in wizard is not active for {session}")

    async def cancel(self, session: Session) -> None:
        session.leave_wizard()
        await self._reply(session, CANCELLED_TEXT, remove_reply_prompt=True)

    # -- steps ---------------------------------------------------------------

    async def _on_email(self, session: Session, event: InboundEvent) -> None:
        email = (event.text or "").strip()
        if not email or email.lower() == "/signin":
            await self._prompt(session, "Please enter your email:")
            return

        if "@" not in email or "." not in email:
            await self._prompt(session, "Invalid email format. Please try again:")
            return

        try:
            record = await self._credentials.find_by_email(email)
        except CredentialStoreError:
            logger.exception("Email lookup failed for identity=%s", session.identity)
            await self._fail(session, "System error. Try again later.")
            return

        if record is None:
            await self._fail(session, "No user found with that email. Contact support.")
            return

        if not is_recognized_hash(record.password_hash):
            logger.error("User id=%s has an unrecognized password hash format", record.user_id)
            await self._fail(session, "System error. Contact support.")
            return

        role = record.role.strip().lower() if isinstance(record.role, str) else None
        session.pending_auth = PendingAuth(
            email=email,
            user_id=record.user_id,
            password_hash=record.password_hash,
            role=role,
        )
        session.wizard_step = WizardStep.AWAIT_PASSWORD
        await self._prompt(session, "Please enter your password:")

    async def _on_password(self, session: Session, event: InboundEvent) -> None:
        if not event.text:
            await self._prompt(session, "Invalid input. Please enter your password:")
            return

        password = event.text.strip()
        await self._erase_password_message(session, event)

        pending = session.pending_auth
        if pending is None:
            await self._fail(session, "Session expired. Please start over.")
            return

        if not verify_password(password, pending.password_hash):
            logger.info("Password mismatch for email=%s", pending.email)
            await self._fail(session, "Invalid password. Use /signin to try again.")
            return

        role = Role.parse(pending.role)
        if role is None:
            logger.error("User id=%s has unsupported role=%r", pending.user_id, pending.role)
            await self._fail(session, "Invalid user role. Contact support.")
            return

        try:
            linked = await self._credentials.find_linked_entity(pending.user_id, role)
        except CredentialStoreError:
            logger.exception("Linked-entity lookup failed for user id=%s", pending.user_id)
            await self._fail(session, "System error. Try again later.")
            return

        if linked is None:
            if role is Role.ADMIN:
                await self._fail(session, "Admin account not found. Contact support.")
            else:
                await self._fail(session, "Account not found. Contact support.")
            return

        session.sign_in(
            user_id=pending.user_id,
            role=role,
            domain_id=linked.domain_id,
            display_name=linked.display_name,
        )
        logger.info("User id=%s signed in as %s (identity=%s)", session.user_id, role.value, session.identity)
        await self._messenger.send(Reply(
            identity=session.identity,
            text=format_welcome(session.display_name),
            remove_reply_prompt=True,
            menu=menu_for_role(role),
        ))

    # -- private helpers -----------------------------------------------------

    async def _erase_password_message(self, session: Session, event: InboundEvent) -> None:
        try:
            await self._messenger.delete_message(session.identity, event.message_id)
        except MessageDeleteError:
            logger.debug("Could not delete password message for identity=%s", session.identity)
            await self._reply(session, PRIVACY_WARNING)
        except Exception:
            logger.warning(
                "Deleting password message failed for identity=%s", session.identity, exc_info=True
            )
            await self._reply(session, PRIVACY_WARNING)

    async def _fail(self, session: Session, text: str) -> None:
        session.leave_wizard()
        await self._reply(session, text)

    async def _prompt(self, session: Session, text: str) -> None:
        await self._reply(session, text, force_reply=True)

    async def _reply(self, session: Session, text: str, **options) -> None:
        await self._messenger.send(Reply(identity=session.identity, text=text, **options))
