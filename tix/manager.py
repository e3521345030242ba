"""PlatformManager: the one facade callers talk to.

Holds the active platform and routes unified calls to its adapter, runs
cross-platform fan-out, and migrates tickets between platforms.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tix.errors import InvalidMigration, NoActiveProvider, NotConnected
from tix.models import (
    AuthorizationRequest,
    Connection,
    CreateTicketData,
    PlatformProjects,
    PlatformTickets,
    Project,
    SearchCriteria,
    Ticket,
    UpdateTicketData,
    User,
    display_name,
)
from tix.providers.base import TicketProvider
from tix.providers.trello import CARD_TYPE
from tix.registry import ProviderRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def migration_description(ticket: Ticket) -> str:
    """Original description plus a back-reference to where the ticket came from."""
    footer = f"---\n*Migrated from {display_name(ticket.platform)} ({ticket.platform}): {ticket.url}*"
    return f"{ticket.description}\n\n{footer}" if ticket.description else footer


class PlatformManager:
    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry
        self.active_platform: str | None = None
        self.refresh_active_platform()

    # ------------------------------------------------------------------
    # Active platform
    # ------------------------------------------------------------------

    def refresh_active_platform(self) -> str | None:
        """Keep the active platform if it is still connected, else pick the first connected one."""
        connected = self.registry.connected_platforms()
        if self.active_platform not in connected:
            self.active_platform = connected[0] if connected else None
            logger.debug("Active platform is now %s", self.active_platform)
        return self.active_platform

    def set_active_platform(self, platform: str) -> None:
        provider = self.registry.require(platform)
        if not provider.is_connected():
            raise NotConnected(platform)
        self.active_platform = platform

    def get_active_service(self) -> TicketProvider:
        if self.active_platform is None:
            raise NoActiveProvider()
        provider = self.registry.require(self.active_platform)
        if not provider.is_connected():
            raise NotConnected(self.active_platform, f"{provider.name} connection has lapsed. Please reconnect.")
        return provider

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect_platform(self, platform: str, instance_url: str | None = None) -> AuthorizationRequest:
        return await self.registry.require(platform).start_oauth_flow(instance_url)

    async def complete_connection(self, platform: str, params: dict[str, str]) -> Connection:
        connection = await self.registry.require(platform).handle_oauth_callback(params)
        self.refresh_active_platform()
        return connection

    def disconnect_platform(self, platform: str) -> None:
        self.registry.require(platform).clear_connection()
        self.refresh_active_platform()

    def is_platform_connected(self, platform: str) -> bool:
        return self.registry.require(platform).is_connected()

    def connection_status(self) -> dict[str, bool]:
        return {platform: self.is_platform_connected(platform) for platform in self.registry.platforms()}

    def has_any_connection(self) -> bool:
        return bool(self.registry.connected_platforms())

    def platform_info(self, platform: str) -> dict[str, str]:
        return self.registry.require(platform).platform_info()

    def _connected_provider(self, platform: str) -> TicketProvider:
        provider = self.registry.require(platform)
        if not provider.is_connected():
            raise NotConnected(platform)
        return provider

    # ------------------------------------------------------------------
    # Unified operations (active platform)
    # ------------------------------------------------------------------

    async def search_tickets(self, criteria: SearchCriteria | None = None) -> list[Ticket]:
        return await self.get_active_service().search_tickets(criteria)

    async def get_ticket(self, ticket_key: str) -> Ticket:
        return await self.get_active_service().get_ticket(ticket_key)

    async def get_projects(self) -> list[Project]:
        return await self.get_active_service().get_projects()

    async def get_current_user(self) -> User:
        return await self.get_active_service().get_current_user()

    async def create_ticket(self, project_key: str, data: CreateTicketData) -> Ticket:
        return await self.get_active_service().create_ticket(project_key, data)

    async def update_ticket(self, ticket_key: str, data: UpdateTicketData) -> None:
        await self.get_active_service().update_ticket(ticket_key, data)

    # ------------------------------------------------------------------
    # Per-platform operations
    # ------------------------------------------------------------------

    async def search_tickets_on_platform(self, platform: str, criteria: SearchCriteria | None = None) -> list[Ticket]:
        return await self._connected_provider(platform).search_tickets(criteria)

    async def get_projects_from_platform(self, platform: str) -> list[Project]:
        return await self._connected_provider(platform).get_projects()

    async def get_available_projects(self, platform: str) -> list[Project]:
        return await self._connected_provider(platform).get_available_projects()

    def select_projects(self, platform: str, project_ids: list[str]) -> None:
        self.registry.require(platform).select_projects(project_ids)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _fan_out(
        self, call: Callable[[TicketProvider], Awaitable[T]]
    ) -> list[tuple[str, T | Exception]]:
        """Run call on every connected adapter; failures come back as values."""
        providers = [self.registry.require(p) for p in self.registry.connected_platforms()]
        results = await asyncio.gather(*(call(p) for p in providers), return_exceptions=True)
        outcomes: list[tuple[str, T | Exception]] = []
        for provider, result in zip(providers, results):
            if isinstance(result, Exception):
                logger.warning("%s failed during fan-out: %s", provider.name, result)
            elif isinstance(result, BaseException):
                # cancellation and interpreter exits are not provider failures
                raise result
            outcomes.append((provider.platform, result))
        return outcomes

    async def search_all_platforms(self, criteria: SearchCriteria | None = None) -> list[PlatformTickets]:
        outcomes = await self._fan_out(lambda provider: provider.search_tickets(criteria))
        return [
            PlatformTickets(platform=platform, error=str(result), error_type=type(result).__name__)
            if isinstance(result, Exception)
            else PlatformTickets(platform=platform, tickets=result)
            for platform, result in outcomes
        ]

    async def list_all_projects(self) -> list[PlatformProjects]:
        outcomes = await self._fan_out(lambda provider: provider.get_projects())
        return [
            PlatformProjects(platform=platform, error=str(result), error_type=type(result).__name__)
            if isinstance(result, Exception)
            else PlatformProjects(platform=platform, projects=result)
            for platform, result in outcomes
        ]

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    async def migrate_ticket(self, ticket: Ticket, target_platform: str, target_project_key: str) -> Ticket:
        """Copy ticket onto another platform, leaving a back-reference in its description."""
        if ticket.platform == target_platform:
            raise InvalidMigration(
                f"Cannot migrate {ticket.key} to the platform it already lives on ({ticket.platform})",
                target_platform,
            )
        target = self._connected_provider(target_platform)
        data = CreateTicketData(
            title=ticket.title,
            description=migration_description(ticket),
            # a Trello card has no real type for the target to validate against
            type=None if ticket.type == CARD_TYPE else ticket.type,
            priority=ticket.priority,
            labels=sorted(ticket.labels),
            project_key=target_project_key,
        )
        created = await target.create_ticket(target_project_key, data)
        logger.info("Migrated %s:%s to %s:%s", ticket.platform, ticket.key, target_platform, created.key)
        return created
