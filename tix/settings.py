"""Settings resolution: env vars over ~/.config/tix/config.toml over .env over defaults."""

import os
from functools import lru_cache
from pathlib import Path

import tomlkit
from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_PATH = Path.home() / ".config" / "tix" / "config.toml"
ENV_PREFIX = "TIX_"


class TixSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection records, one table per platform
    state_path: Path = Path.home() / ".config" / "tix" / "connections.toml"

    # Platform used by single-platform commands when it is connected (written by `tix use`)
    default_platform: str | None = None

    # Transport
    request_timeout: float = 30.0  # seconds, per provider call
    refresh_leeway_seconds: int = 60  # refresh this long before the token actually expires

    # Base URL of the web app hosting the OAuth redirect and token-exchange endpoints
    app_url: str = "http://localhost:3000"

    # Jira (OAuth 2.0 3LO)
    jira_client_id: str | None = None
    jira_scopes: str = "read:jira-work write:jira-work manage:jira-project offline_access read:me"
    jira_redirect_uri: str | None = None
    jira_token_url: str | None = None  # code -> tokens delegate
    jira_refresh_url: str | None = None  # refresh token -> tokens delegate
    jira_recent_days: int = 30

    # Trello (key + token)
    trello_api_key: SecretStr | None = None
    trello_app_name: str = "tix"
    trello_redirect_uri: str | None = None
    trello_board_scan_limit: int = 10  # boards scanned when no selection has been made
    trello_board_concurrency: int = 4  # board fetches in flight at once

    @model_validator(mode="after")
    def _derive_endpoints(self) -> "TixSettings":
        base = self.app_url.rstrip("/")
        if self.jira_redirect_uri is None:
            self.jira_redirect_uri = f"{base}/api/jira/auth/callback"
        if self.jira_token_url is None:
            self.jira_token_url = f"{base}/api/jira/auth/token"
        if self.jira_refresh_url is None:
            self.jira_refresh_url = f"{base}/api/jira/auth/refresh"
        if self.trello_redirect_uri is None:
            self.trello_redirect_uri = f"{base}/api/trello/auth/callback"
        return self


@lru_cache(maxsize=1)
def _load_toml() -> tomlkit.TOMLDocument:
    """Load ~/.config/tix/config.toml, returning empty document if missing."""
    if not CONFIG_PATH.exists():
        return tomlkit.document()
    with CONFIG_PATH.open() as fh:
        return tomlkit.load(fh)


def _file_defaults(config: tomlkit.TOMLDocument) -> dict:
    """Top-level keys of the config file, minus any that an env var already sets."""
    defaults = {}
    for key, value in config.items():
        if os.environ.get(f"{ENV_PREFIX}{key.upper()}") is not None:
            continue
        defaults[key] = value.unwrap() if hasattr(value, "unwrap") else value
    return defaults


def get_settings(**overrides) -> TixSettings:
    """Resolve settings.

    Precedence (highest to lowest):
    1. keyword overrides (CLI flags, tests)
    2. TIX_* env vars
    3. top-level keys in ~/.config/tix/config.toml
    4. TIX_* entries in .env in cwd
    5. field defaults
    """
    values = _file_defaults(_load_toml())
    values.update({k: v for k, v in overrides.items() if v is not None})
    return TixSettings(**values)
