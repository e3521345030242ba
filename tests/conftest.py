"""Shared test fixtures."""

from pathlib import Path

import pytest

import tix.settings as settings_module
from tix.models import Connection, KeyTokenCredentials, OAuth2Credentials, Project, Ticket
from tix.providers.base import now_millis
from tix.providers.jira import JiraProvider
from tix.providers.trello import TrelloProvider
from tix.settings import TixSettings
from tix.store import ConnectionStore


@pytest.fixture(autouse=True)
def reset_lru_cache():
    settings_module._load_toml.cache_clear()
    yield
    settings_module._load_toml.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> TixSettings:
    return TixSettings(  # type: ignore[call-arg]
        state_path=tmp_path / "connections.toml",
        app_url="https://app.example.com",
        jira_client_id="client-123",
        trello_api_key="trello-key",
        request_timeout=5.0,
    )


@pytest.fixture
def store(settings: TixSettings) -> ConnectionStore:
    return ConnectionStore(settings.state_path)


@pytest.fixture
def jira_connection() -> Connection:
    return Connection(
        platform="jira",
        is_connected=True,
        instance_url="acme.atlassian.net",
        user_email="jane@acme.test",
        site_name="acme",
        credentials=OAuth2Credentials(
            access_token="jira-access",
            refresh_token="jira-refresh",
            token_expiry=now_millis() + 3_600_000,
            cloud_id="cloud-1",
        ),
    )


@pytest.fixture
def trello_connection() -> Connection:
    return Connection(
        platform="trello",
        is_connected=True,
        user_name="Jane Doe",
        credentials=KeyTokenCredentials(api_key="trello-key", token="trello-token"),
    )


@pytest.fixture
def jira(settings: TixSettings, store: ConnectionStore, jira_connection: Connection) -> JiraProvider:
    provider = JiraProvider(settings, store)
    provider.save_connection(jira_connection)
    return provider


@pytest.fixture
def trello(settings: TixSettings, store: ConnectionStore, trello_connection: Connection) -> TrelloProvider:
    provider = TrelloProvider(settings, store)
    provider.save_connection(trello_connection)
    return provider


@pytest.fixture
def jira_ticket() -> Ticket:
    return Ticket(
        id="10001",
        key="ENG-123",
        title="Fix null check in auth middleware",
        description="The middleware throws when session is None.",
        type="Bug",
        status="In Progress",
        priority="High",
        assignee="Jane Doe",
        reporter="John Smith",
        project="Engineering",
        project_key="ENG",
        labels=frozenset({"auth", "bug"}),
        url="https://acme.atlassian.net/browse/ENG-123",
        platform="jira",
    )


@pytest.fixture
def trello_ticket() -> Ticket:
    return Ticket(
        id="5f1a2b3c4d5e6f7a8b9c0d1e",
        key="aBcD1234",
        title="Design landing page",
        description="Hero section and pricing table.",
        type="Card",
        status="Doing",
        priority="Highest",
        reporter="Unknown",
        project="Website",
        project_key="board-1",
        labels=frozenset({"urgent", "design"}),
        url="https://trello.com/c/aBcD1234",
        platform="trello",
    )


@pytest.fixture
def sample_project() -> Project:
    return Project(id="10000", key="ENG", name="Engineering", platform="jira")
