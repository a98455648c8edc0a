"""Interactive console transport for the lending bot.

Pattern: Prompt Renderer
-------------------------
The console stands in for a chat transport.  It has three responsibilities:

  1. **Startup**: build the database engine, verify connectivity and wire the
     router to its collaborators.
  2. **Input**: turn each typed line into an ``InboundEvent``.  Lines starting
     with ``@`` are button presses (``@balance``); everything else is a text
     message.  While the sign-in wizard waits for a password the line is read
     with ``getpass`` so it never reaches the terminal.
  3. **Output**: render ``Reply`` directives with Rich, including the
     role-specific button menu.

The console knows nothing about roles, SQL or passwords beyond that; it
delegates everything to ``ConversationRouter``.
"""

from __future__ import annotations

import asyncio
import getpass
import itertools
import logging
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lending_bot.auth.credential_store import SqlCredentialStore
from lending_bot.auth.session import SessionStore, WizardStep
from lending_bot.config import Settings
from lending_bot.db.engine import DatabaseConnectionError, build_engine, check_connection
from lending_bot.messaging.reply import InboundEvent, MessageDeleteError, Reply
from lending_bot.policy.engine import PolicyEngine, PolicyError
from lending_bot.reporting.query_service import SqlQueryService
from lending_bot.router.router import ConversationRouter
from lending_bot.vault.db_credentials import DatabaseCredentialError

logger = logging.getLogger(__name__)
console = Console()

BUTTON_PREFIX = "@"


class ConsoleMessenger:
    """Renders replies to the terminal.

    Typed lines cannot be erased from a terminal, so ``delete_message`` only
    succeeds for input that was read without echo.
    """

    def __init__(self, out: Console | None = None) -> None:
        self._console = out or console
        self.last_input_masked = False

    async def send(self, reply: Reply) -> None:
        self._console.print(Panel(reply.text, border_style="green", title="bot", title_align="left"))
        if reply.menu:
            table = Table(title="Menu")
            table.add_column("Button", style="bold")
            table.add_column("Type", style="cyan")
            for row in reply.menu:
                for button in row:
                    table.add_row(button.label, f"{BUTTON_PREFIX}{button.data}")
            self._console.print(table)
        if reply.force_reply:
            self._console.print("[dim]Reply below.[/dim]")

    async def delete_message(self, identity: str, message_id: int | None) -> None:
        if not self.last_input_masked:
            raise MessageDeleteError("Console input cannot be erased")


def _print_banner() -> None:
    console.print(
        Panel(
            "[bold]Lending Bot[/bold]\n"
            "Sign in with /signin, press buttons with @<button>, type quit to exit",
            border_style="blue",
        )
    )


def _to_event(line: str, identity: str, message_id: int, sender_name: str | None) -> InboundEvent:
    if line.startswith(BUTTON_PREFIX):
        return InboundEvent.button(
            identity, line[len(BUTTON_PREFIX):].strip(), message_id=message_id, sender_name=sender_name
        )
    return InboundEvent.message(identity, line, message_id=message_id, sender_name=sender_name)


async def _conversation_loop(
    router: ConversationRouter,
    sessions: SessionStore,
    messenger: ConsoleMessenger,
    identity: str,
    sender_name: str | None,
) -> None:
    message_ids = itertools.count(1)

    while True:
        awaiting_password = sessions.get(identity).wizard_step is WizardStep.AWAIT_PASSWORD
        try:
            if awaiting_password:
                line = getpass.getpass("  Password: ")
            else:
                line = input(f"[{identity}] > ")
        except (EOFError, KeyboardInterrupt):
            break
        messenger.last_input_masked = awaiting_password

        if not line.strip():
            continue
        if not awaiting_password and line.strip().lower() in ("quit", "exit"):
            break

        await router.handle(_to_event(line, identity, next(message_ids), sender_name))


def run_cli(
    settings: Settings,
    policy_path: str | None = None,
    identity: str = "console",
    sender_name: str | None = None,
) -> None:
    """Main entry point for the interactive console."""
    _print_banner()

    try:
        policy_engine = PolicyEngine(policy_path=policy_path)
    except PolicyError as exc:
        console.print(f"[red]Policy error:[/red] {exc}")
        sys.exit(1)

    try:
        engine = build_engine(settings.database, settings.vault)
        check_connection(engine)
    except (DatabaseConnectionError, DatabaseCredentialError) as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)

    sessions = SessionStore()
    messenger = ConsoleMessenger()
    router = ConversationRouter(
        sessions=sessions,
        credentials=SqlCredentialStore(engine),
        queries=SqlQueryService(engine),
        policy_engine=policy_engine,
        messenger=messenger,
        cancel_directive=settings.bot.cancel_directive,
    )

    try:
        asyncio.run(_conversation_loop(router, sessions, messenger, identity, sender_name))
    finally:
        engine.dispose()
    console.print("\n[dim]Session ended.[/dim]")
