"""Inbound events, outbound reply directives and the messenger boundary.

Pattern: Transport-Neutral Envelope
------------------------------------
The conversation core never talks to a chat transport directly.  Inbound
updates are normalised into an ``InboundEvent`` before they reach the router,
and everything the core wants to say is expressed as a ``Reply`` directive
handed to a ``Messenger``.  A transport adapter (the console in
``lending_bot.prompt.cli``, or anything else) owns the wire format.

A ``Reply`` carries three rendering hints:

  - ``force_reply``:        the transport should open an answer prompt.
  - ``remove_reply_prompt``: the transport should close any open prompt.
  - ``menu``:               rows of buttons the user may press.
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Protocol


class EventKind(enum.Enum):
    """What kind of inbound update an ``InboundEvent`` represents."""

    MESSAGE = "message"
    BUTTON = "button"


@dataclasses.dataclass(frozen=True)
class InboundEvent:
    """A single inbound update from one conversation.

    Attributes:
        identity:    Conversation-scoped key (stable for the conversation).
        kind:        ``MESSAGE`` for typed text, ``BUTTON`` for a button press.
        text:        Message text; ``None`` for non-text payloads.
        button_data: Action identifier carried by a button press.
        message_id:  Transport id of the message, used for deletion.
        sender_name: Transport-provided first name, used in greetings.
    """

    identity: str
    kind: EventKind = EventKind.MESSAGE
    text: str | None = None
    button_data: str | None = None
    message_id: int | None = None
    sender_name: str | None = None

    @classmethod
    def message(cls, identity: str, text: str | None, **kwargs) -> InboundEvent:
        return cls(identity=identity, kind=EventKind.MESSAGE, text=text, **kwargs)

    @classmethod
    def button(cls, identity: str, data: str, **kwargs) -> InboundEvent:
        return cls(identity=identity, kind=EventKind.BUTTON, button_data=data, **kwargs)


@dataclasses.dataclass(frozen=True)
class MenuButton:
    label: str
    data: str


Menu = tuple[tuple[MenuButton, ...], ...]


@dataclasses.dataclass(frozen=True)
class Reply:
    """An outbound reply directive for one conversation."""

    identity: str
    text: str
    force_reply: bool = False
    remove_reply_prompt: bool = False
    menu: Menu | None = None


class MessageDeleteError(Exception):
    """Raised by a messenger that is not permitted to delete a message."""


class Messenger(Protocol):
    """Outbound messaging collaborator."""

    async def send(self, reply: Reply) -> None:
        ...

    async def delete_message(self, identity: str, message_id: int | None) -> None:
        ...
