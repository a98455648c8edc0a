"""Settings loaded from ``config/settings.yaml``.

The YAML file is parsed with ``yaml.safe_load`` and validated with pydantic so
that a mistyped port or section fails at startup with a readable message.
A few values may come from the environment instead of the file:

  - ``DATABASE_URL`` when ``database.url`` is empty;
  - ``VAULT_ADDR`` overrides ``vault.address``.
"""

from __future__ import annotations

import os
import pathlib

import yaml
from pydantic import BaseModel, Field, ValidationError

DEFAULT_CONFIG_PATH = pathlib.Path(__file__).resolve().parents[2] / "config" / "settings.yaml"


class SettingsError(Exception):
    """Raised when the settings file is missing or invalid."""


class DatabaseSettings(BaseModel):
    url: str = ""
    host: str = "localhost"
    port: int = 5432
    name: str = "lending"
    user: str = ""
    password: str = Field(default="", repr=False)
    ssl: bool = True


class VaultSettings(BaseModel):
    address: str = "http://127.0.0.1:8200"
    database_mount: str = "database"
    database_role: str = ""


class BotSettings(BaseModel):
    cancel_directive: str = "/stop"


class Settings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)
    bot: BotSettings = Field(default_factory=BotSettings)


def load_settings(path: str | pathlib.Path | None = None) -> Settings:
    """Read and validate the settings file at *path*."""
    config_path = pathlib.Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise SettingsError(f"Settings file not found: {config_path}")

    with open(config_path) as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise SettingsError("Settings file must contain a mapping at the top level")

    try:
        settings = Settings.model_validate(data)
    except ValidationError as exc:
        raise SettingsError(f"Invalid settings in {config_path}: {exc}") from exc

    if not settings.database.url:
        settings.database.url = os.environ.get("DATABASE_URL", "")
    if os.environ.get("VAULT_ADDR"):
        settings.vault.address = os.environ["VAULT_ADDR"]
    return settings
