"""Directory of provider adapters keyed by platform."""

import logging

from tix.errors import UnknownPlatform
from tix.providers.base import TicketProvider
from tix.providers.jira import JiraProvider
from tix.providers.trello import TrelloProvider
from tix.settings import TixSettings
from tix.store import ConnectionStore

logger = logging.getLogger(__name__)


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, TicketProvider] = {}

    def register(self, provider: TicketProvider) -> None:
        """Add provider. Registering the same platform again replaces the old adapter."""
        if provider.platform in self._providers:
            logger.debug("Replacing %s adapter", provider.platform)
        self._providers[provider.platform] = provider

    def get(self, platform: str) -> TicketProvider | None:
        return self._providers.get(platform)

    def require(self, platform: str) -> TicketProvider:
        provider = self._providers.get(platform)
        if provider is None:
            raise UnknownPlatform(platform)
        return provider

    def platforms(self) -> list[str]:
        return list(self._providers)

    def connected_platforms(self) -> list[str]:
        return [platform for platform, provider in self._providers.items() if provider.is_connected()]

    def __contains__(self, platform: object) -> bool:
        return platform in self._providers


def build_registry(settings: TixSettings, store: ConnectionStore) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(JiraProvider(settings, store))
    registry.register(TrelloProvider(settings, store))
    return registry
