"""SQLAlchemy engine construction for the lending database."""

from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from lending_bot.config import DatabaseSettings, VaultSettings
from lending_bot.vault.db_credentials import DatabaseCredentialBroker

logger = logging.getLogger(__name__)


class DatabaseConnectionError(Exception):
    """Raised when the database cannot be reached at startup."""


def build_url(db: DatabaseSettings, vault: VaultSettings) -> URL | str:
    """Return the connection URL, asking Vault for credentials when configured."""
    if db.url:
        return db.url

    username, password = db.user, db.password
    if vault.database_role:
        broker = DatabaseCredentialBroker(
            vault_addr=vault.address,
            vault_token=os.environ.get("VAULT_TOKEN", ""),
            mount_point=vault.database_mount,
        )
        creds = broker.get_credentials(vault.database_role)
        username, password = creds.username, creds.password

    return URL.create(
        "postgresql+psycopg",
        username=username or None,
        password=password or None,
        host=db.host,
        port=db.port,
        database=db.name,
    )


def build_engine(db: DatabaseSettings, vault: VaultSettings) -> Engine:
    url = build_url(db, vault)
    connect_args: dict[str, str] = {}
    if db.ssl and not db.url:
        connect_args["sslmode"] = "require"
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def check_connection(engine: Engine) -> None:
    """Run ``SELECT 1``; raise ``DatabaseConnectionError`` if it fails."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise DatabaseConnectionError(f"Database connection failed: {exc.__class__.__name__}") from exc
    logger.info("Database connection successful")
