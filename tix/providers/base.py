"""Abstract base class for ticket providers.

A provider owns one platform's connection record and is the only translator
between that platform's wire format and the canonical models. The base class
carries what every provider shares: loading and persisting the connection,
readiness checks, single-flight token refresh and HTTP error classification.
"""

import asyncio
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx
from tomlkit.exceptions import TOMLKitError

from tix.errors import (
    AuthenticationFailed,
    AuthExchangeFailed,
    NotConnected,
    PermissionDenied,
    ProviderError,
    ReauthRequired,
)
from tix.models import (
    PLATFORM_INFO,
    AuthorizationRequest,
    Connection,
    CreateTicketData,
    OAuth2Credentials,
    Platform,
    Project,
    SearchCriteria,
    Ticket,
    UpdateTicketData,
    User,
    display_name,
)
from tix.settings import TixSettings
from tix.store import ConnectionStore

logger = logging.getLogger(__name__)

# Values that have leaked into stored refresh tokens from stringified nulls
_UNUSABLE_TOKENS = frozenset({"", "undefined", "null"})


def now_millis() -> int:
    return int(time.time() * 1000)


class TicketProvider(ABC):
    platform: ClassVar[Platform]

    def __init__(self, settings: TixSettings, store: ConnectionStore) -> None:
        self._settings = settings
        self._store = store
        self._refresh_lock = asyncio.Lock()
        self._pending_state: str | None = None
        self.connection = self.load_connection()

    @property
    def name(self) -> str:
        return display_name(self.platform)

    def platform_info(self) -> dict[str, str]:
        return PLATFORM_INFO[self.platform]

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def load_connection(self) -> Connection:
        """Rebuild the connection from the store. Never raises."""
        try:
            record = self._store.read(self.platform)
            if record is None:
                return Connection(platform=self.platform)
            if not isinstance(record, dict):
                logger.warning("Ignoring %s connection record that is not a table", self.platform)
                return Connection(platform=self.platform)
            return Connection.model_validate({**record, "platform": self.platform})
        except (TOMLKitError, OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable %s connection record: %s", self.platform, exc)
            return Connection(platform=self.platform)

    def save_connection(self, connection: Connection) -> None:
        self._store.write(self.platform, connection.model_dump(mode="json", exclude_none=True))
        self.connection = connection

    def clear_connection(self) -> None:
        """Drop credentials. The instance URL is kept so reconnecting is one click."""
        cleared = Connection(platform=self.platform, instance_url=self.connection.instance_url)
        self.connection = cleared
        self.save_connection(cleared)
        logger.info("Cleared %s connection", self.platform)

    def is_connected(self) -> bool:
        """Pessimistic readiness: credentials exist and are unexpired or repairable."""
        conn = self.connection
        if not conn.is_connected or conn.credentials is None:
            return False
        return not self._expires_within(0) or self._has_usable_refresh_token()

    def _expires_within(self, seconds: int) -> bool:
        creds = self.connection.credentials
        if creds is None or creds.token_expiry is None:
            return False
        return now_millis() >= creds.token_expiry - seconds * 1000

    def _has_usable_refresh_token(self) -> bool:
        creds = self.connection.credentials
        if not isinstance(creds, OAuth2Credentials) or creds.refresh_token is None:
            return False
        return creds.refresh_token not in _UNUSABLE_TOKENS

    # ------------------------------------------------------------------
    # Board / project selection
    # ------------------------------------------------------------------

    def selected_project_ids(self) -> list[str]:
        return list(self.connection.selected_project_ids)

    def select_projects(self, project_ids: list[str]) -> None:
        """Persist the subset of projects this account should be scoped to."""
        if not self.is_connected():
            raise NotConnected(self.platform)
        selected = list(dict.fromkeys(project_ids))
        self.save_connection(self.connection.model_copy(update={"selected_project_ids": selected}))

    def needs_project_selection(self) -> bool:
        return self.is_connected() and not self.connection.selected_project_ids

    async def get_available_projects(self) -> list[Project]:
        """Everything the account can see, ignoring the current selection."""
        return await self.get_projects()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _new_state(self) -> str:
        self._pending_state = secrets.token_hex(32)
        return self._pending_state

    def _check_state(self, params: dict[str, str], required: bool) -> None:
        """Compare the callback state with the one issued by start_oauth_flow."""
        state = params.get("state")
        if self._pending_state is None or (state is None and not required):
            return
        if state != self._pending_state:
            raise AuthExchangeFailed(f"{self.name} authorization state mismatch", self.platform)
        self._pending_state = None

    @abstractmethod
    async def start_oauth_flow(self, instance_url: str | None = None) -> AuthorizationRequest: ...

    @abstractmethod
    async def handle_oauth_callback(self, params: dict[str, str]) -> Connection: ...

    async def refresh_token_if_needed(self) -> None:
        """Make sure the access token is usable before a network call.

        Holds the adapter's refresh lock for the whole exchange, so concurrent
        callers wait for one refresh and then see its result instead of
        spending the refresh token twice.
        """
        async with self._refresh_lock:
            conn = self.connection
            if not conn.is_connected or conn.credentials is None:
                raise NotConnected(self.platform)
            if not self._expires_within(self._settings.refresh_leeway_seconds):
                return
            if not self._has_usable_refresh_token():
                if not self._expires_within(0):
                    return
                self.clear_connection()
                raise ReauthRequired(f"{self.name} token expired. Please reconnect to {self.name}.", self.platform)
            await self._refresh_access_token()

    async def _refresh_access_token(self) -> None:
        """Exchange the refresh token for a new access token and persist it."""
        self.clear_connection()
        raise ReauthRequired(f"{self.name} tokens cannot be refreshed. Please reconnect.", self.platform)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _auth_params(self) -> dict[str, str]:
        return {}

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout) as client:
                return await client.request(method, url, headers=headers, params=params or None, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                self.platform, None, str(exc), f"{self.name} request timed out: {method} {url}"
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.platform, None, str(exc), f"Could not reach {self.name}: {exc}") from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Authenticated call. Returns decoded JSON, or None for an empty body."""
        if not self.is_connected():
            raise NotConnected(self.platform)
        response = await self._send(
            method,
            url,
            headers={"Accept": "application/json", **self._auth_headers()},
            params={**(params or {}), **self._auth_params()},
            json=json,
        )
        self._raise_for_status(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            # proxies and SSO gateways answer 200 with an HTML page
            raise ProviderError(
                self.platform,
                response.status_code,
                response.text,
                f"{self.name} returned a response that is not JSON ({response.status_code})",
            ) from exc

    def _auth_json(self, response: httpx.Response, what: str) -> Any:
        """Decode a reply received while connecting; anything unreadable fails the exchange."""
        try:
            return response.json()
        except ValueError as exc:
            raise AuthExchangeFailed(f"{self.name} {what} was not valid JSON", self.platform) from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        if response.status_code == 401:
            self.clear_connection()
            raise AuthenticationFailed(f"Authentication failed. Please reconnect to {self.name}.", self.platform)
        if response.status_code == 403:
            raise PermissionDenied(f"Permission denied. Check your {self.name} permissions.", self.platform)
        logger.debug("%s API error %s: %s", self.platform, response.status_code, response.text)
        raise ProviderError(self.platform, response.status_code, response.text)

    # ------------------------------------------------------------------
    # Provider contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def search_tickets(self, criteria: SearchCriteria | None = None) -> list[Ticket]: ...

    @abstractmethod
    async def get_ticket(self, ticket_key: str) -> Ticket: ...

    @abstractmethod
    async def get_projects(self) -> list[Project]: ...

    @abstractmethod
    async def get_current_user(self) -> User: ...

    @abstractmethod
    async def create_ticket(self, project_key: str, data: CreateTicketData) -> Ticket: ...

    @abstractmethod
    async def update_ticket(self, ticket_key: str, data: UpdateTicketData) -> None: ...

    @abstractmethod
    async def validate_instance_url(self, url: str) -> bool: ...

    @abstractmethod
    def transform_to_universal_format(self, native: dict[str, Any]) -> Ticket | Project | User: ...
