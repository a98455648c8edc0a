"""Policy engine that resolves which roles may invoke each action.

Pattern: Policy-Gated Capability Filtering
--------------------------------------------
A YAML policy file (``policies/actions.yaml``) is the single declarative
source for *which role may run which action*.  The file is loaded once at
startup and queried for every command and every button press, so the two
entry surfaces cannot disagree about permissions.

Loading is strict: every ``Action`` must appear, no unknown action or role
may appear.  A typo in the file fails at startup instead of silently locking
users out (or letting them in) at runtime.

The engine is stateless after loading: it receives an action and returns a
``ResolvedPolicy``.  No mutation, no caching of decisions.
"""

from __future__ import annotations

import dataclasses
import pathlib
from typing import Any

import yaml

from lending_bot.auth.session import Role
from lending_bot.router.actions import Action


@dataclasses.dataclass(frozen=True)
class ResolvedPolicy:
    """The permitted roles for one action.

    Attributes:
        action:        The action the policy applies to.
        allowed_roles: Frozenset of roles that may invoke it.
    """

    action: Action
    allowed_roles: frozenset[Role]

    def permits(self, role: Role | None) -> bool:
        return role is not None and role in self.allowed_roles


class PolicyError(Exception):
    """Raised when the policy file is malformed or lookup fails."""


class PolicyEngine:
    """Loads ``actions.yaml`` and resolves action permissions."""

    def __init__(self, policy_path: str | pathlib.Path | None = None) -> None:
        if policy_path is None:
            policy_path = pathlib.Path(__file__).resolve().parents[3] / "policies" / "actions.yaml"
        self._policy_path = pathlib.Path(policy_path)
        self._policies: dict[Action, ResolvedPolicy] = self._load()

    def resolve(self, action: Action | str) -> ResolvedPolicy:
        """Return the resolved policy for *action*.

        Raises ``PolicyError`` if the action is unknown.
        """
        try:
            return self._policies[Action(action)]
        except (KeyError, ValueError):
            raise PolicyError(f"Unknown action: {action}") from None

    def is_permitted(self, role: Role | None, action: Action) -> bool:
        return self.resolve(action).permits(role)

    # -- private helpers -----------------------------------------------------

    def _load(self) -> dict[Action, ResolvedPolicy]:
        if not self._policy_path.exists():
            raise PolicyError(f"Policy file not found: {self._policy_path}")
        with open(self._policy_path) as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict) or "actions" not in data:
            raise PolicyError("Policy file must contain a top-level 'actions' key")

        actions_block: dict[str, Any] = data["actions"] or {}
        policies: dict[Action, ResolvedPolicy] = {}
        for name, block in actions_block.items():
            try:
                action = Action(name)
            except ValueError:
                raise PolicyError(f"Unknown action in policy file: {name}") from None
            roles = (block or {}).get("roles", [])
            policies[action] = ResolvedPolicy(
                action=action,
                allowed_roles=frozenset(self._parse_role(action, r) for r in roles),
            )

        missing = [a.value for a in Action if a not in policies]
        if missing:
            raise PolicyError(f"Policy file has no entry for actions: {missing}")
        return policies

    @staticmethod
    def _parse_role(action: Action, value: Any) -> Role:
        role = Role.parse(value)
        if role is None:
            raise PolicyError(f"Unknown role '{value}' for action '{action.value}'")
        return role
