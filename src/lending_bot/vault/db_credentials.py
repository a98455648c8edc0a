"""Database credential retrieval from Vault's database secrets engine.

Pattern: Credential Brokering
------------------------------
When ``vault.database_role`` is configured, the bot holds no long-lived
database password.  At startup it asks Vault's database secrets engine for a
fresh username/password pair bound to that role.  Vault creates the database
user on demand and revokes it when the lease expires, so a leaked credential
is only useful for the lease duration.

The read-only grants of that role are enforced by the database itself, which
backs up the fact that the bot only ever runs SELECT statements.
"""

from __future__ import annotations

import dataclasses
import logging

import hvac

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class DatabaseCredentials:
    """A short-lived database login issued by Vault."""

    username: str
    password: str = dataclasses.field(repr=False)
    lease_id: str
    lease_duration: int


class DatabaseCredentialError(Exception):
    """Raised when Vault cannot issue database credentials."""


class DatabaseCredentialBroker:
    """Fetches short-lived database credentials from Vault."""

    def __init__(self, vault_addr: str, vault_token: str, mount_point: str = "database") -> None:
        self._vault_addr = vault_addr
        self._vault_token = vault_token
        self._mount_point = mount_point

    def get_credentials(self, role: str) -> DatabaseCredentials:
        """Request a username/password pair for the Vault database *role*."""
        if not self._vault_token:
            raise DatabaseCredentialError("VAULT_TOKEN is required to request database credentials")

        client = hvac.Client(url=self._vault_addr, token=self._vault_token)

        try:
            response = client.secrets.database.generate_credentials(
                name=role,
                mount_point=self._mount_point,
            )
        except hvac.exceptions.VaultError as exc:
            raise DatabaseCredentialError(
                f"Vault database credential generation failed for role={role}: {exc}"
            ) from exc

        data = response["data"]
        lease_duration = response.get("lease_duration", 0)
        logger.info(
            "Issued database credentials for role=%s, username=%s, ttl=%ss",
            role,
            data["username"],
            lease_duration,
        )

        return DatabaseCredentials(
            username=data["username"],
            password=data["password"],
            lease_id=response.get("lease_id", ""),
            lease_duration=lease_duration,
        )
