"""Per-conversation session state and the in-memory session store.

Pattern: Session Context Propagation
-------------------------------------
Every inbound event is resolved to exactly one ``Session`` through the
``SessionStore`` before any routing decision is made.  The router, the
sign-in wizard and the action handlers all receive that object, so the
security boundary is explicit: nothing acts on behalf of a user without the
session that proves who the user is.

Unlike an access token, a conversation session is mutated in place: the
wizard signs it in, the router caches the role on it, sign-out resets it.
Two rules keep that mutation honest:

  - Secret scratch data lives in a separate frozen ``PendingAuth`` record and
    is removed by a single call, ``Session.clear_pending_auth()``.
  - Authentication fields are only written together, by ``Session.sign_in()``,
    which also drops ``pending_auth``.

Concurrency: the store holds no locks.  It assumes at most one in-flight
event per identity, which the transport must guarantee.  Two concurrent
events for the same identity can interleave their session mutations; this is
a known, unresolved risk rather than something the store papers over.
Sessions are process-lifetime only; a restart signs everyone out.
"""

from __future__ import annotations

import dataclasses
import enum
import logging

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    LENDER = "lender"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: str | None) -> Role | None:
        """Case-fold *value* and return the matching role, or ``None``."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class WizardStep(enum.Enum):
    IDLE = "idle"
    AWAIT_EMAIL = "await_email"
    AWAIT_PASSWORD = "await_password"


class PendingPrompt(enum.Enum):
    """Single-field prompts awaiting a plain-text answer."""

    LOAN_ID_FOR_CHECK = "loan_id_for_check"
    LOAN_ID_FOR_PAYMENTS = "loan_id_for_payments"
    USER_ROLE_FILTER = "user_role_filter"
    LOG_PERIOD = "log_period"


@dataclasses.dataclass(frozen=True)
class PendingAuth:
    """Scratch data held between the email and password steps of sign-in.

    Attributes:
        email:         Email the user typed.
        user_id:       User id matched by the email.
        password_hash: Stored bcrypt hash; never logged.
        role:          Case-folded role string from the credential record.
    """

    email: str
    user_id: int
    password_hash: str = dataclasses.field(repr=False)
    role: str | None


@dataclasses.dataclass
class Session:
    """Authentication and role context for one conversation."""

    identity: str
    user_id: int | None = None
    role: Role | None = None
    domain_id: int | None = None
    display_name: str | None = None
    pending_auth: PendingAuth | None = None
    wizard_step: WizardStep = WizardStep.IDLE
    pending_prompt: PendingPrompt | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def in_wizard(self) -> bool:
        return self.wizard_step is not WizardStep.IDLE

    def sign_in(
        self,
        user_id: int,
        role: Role,
        domain_id: int | None,
        display_name: str | None,
    ) -> None:
        """Record a completed sign-in and drop the wizard scratch data."""
        self.user_id = user_id
        self.role = role
        self.domain_id = domain_id
        self.display_name = display_name
        self.pending_auth = None
        self.wizard_step = WizardStep.IDLE

    def clear_pending_auth(self) -> None:
        self.pending_auth = None

    def leave_wizard(self) -> None:
        self.pending_auth = None
        self.wizard_step = WizardStep.IDLE

    def cache_role(self, role: Role) -> None:
        if self.user_id is None:
            raise ValueError("Cannot cache a role on a session without a user_id")
        self.role = role

    def reset(self) -> None:
        """Return the session to the empty, unauthenticated state."""
        self.user_id = None
        self.role = None
        self.domain_id = None
        self.display_name = None
        self.pending_auth = None
        self.wizard_step = WizardStep.IDLE
        self.pending_prompt = None

    def __str__(self) -> str:
        role = self.role.value if self.role else None
        return f"Session(identity={self.identity}, user={self.user_id}, role={role}, step={self.wizard_step.value})"


class SessionStore:
    """Process-wide mapping from conversation identity to ``Session``."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def get(self, identity: str) -> Session:
        """Return the session for *identity*, creating an empty one if needed."""
        session = self._sessions.get(identity)
        if session is None:
            session = Session(identity=identity)
            self._sessions[identity] = session
            logger.debug("Created session for identity=%s", identity)
        return session

    def put(self, identity: str, session: Session) -> None:
        if session.identity != identity:
            raise ValueError(
                f"Session belongs to identity={session.identity}, not {identity}"
            )
        self._sessions[identity] = session

    def clear(self, identity: str) -> None:
        """Reset the session for *identity* to the unauthenticated state."""
        self.get(identity).reset()
        logger.debug("Cleared session for identity=%s", identity)
