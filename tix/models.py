"""Shared pydantic models: the contract between providers, the manager and main.py."""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Platform = Literal["jira", "trello"]
SearchType = Literal["recent", "assigned", "search", "all"]

PLATFORM_INFO: dict[str, dict[str, str]] = {
    "jira": {"name": "Jira", "description": "Atlassian Jira for agile project management"},
    "trello": {"name": "Trello", "description": "Visual collaboration with Trello boards"},
}


def display_name(platform: str) -> str:
    return PLATFORM_INFO.get(platform, {}).get("name", platform.title())


# ---------------------------------------------------------------------------
# Canonical ticket / project / user
# ---------------------------------------------------------------------------


class Ticket(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str  # provider-native ID
    key: str  # PROJ-123 or Trello short link
    title: str
    description: str = ""  # plain text, rich markup flattened
    type: str
    status: str
    priority: str
    assignee: str | None = None
    reporter: str
    project: str  # display name
    project_key: str  # Jira project key or Trello board id
    epic: str | None = None
    labels: frozenset[str] = frozenset()
    components: list[str] = []
    last_modified: str | None = None
    created: str | None = None
    url: str
    platform: Platform
    platform_specific: dict[str, Any] = {}


class Project(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    key: str
    name: str
    platform: Platform
    description: str | None = None
    avatar_url: str | None = None
    platform_specific: dict[str, Any] = {}


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    email: str | None = None
    avatar_url: str | None = None
    platform: Platform


# ---------------------------------------------------------------------------
# Credentials and connection state
# ---------------------------------------------------------------------------


class OAuth2Credentials(BaseModel):
    """Bearer-token credentials (Jira Cloud)."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["oauth2"] = "oauth2"
    access_token: str
    refresh_token: str | None = None
    token_expiry: int | None = None  # epoch millis
    cloud_id: str | None = None


class KeyTokenCredentials(BaseModel):
    """API key + user token credentials (Trello)."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["key_token"] = "key_token"
    api_key: str
    token: str
    token_expiry: int | None = None  # epoch millis


Credentials = Annotated[OAuth2Credentials | KeyTokenCredentials, Field(discriminator="kind")]


class Connection(BaseModel):
    """Per-platform connection record, owned and persisted by exactly one provider."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    platform: Platform
    is_connected: bool = False
    instance_url: str | None = None  # self-hosted or cloud site host, no scheme
    user_email: str | None = None
    user_name: str | None = None
    site_name: str | None = None
    credentials: Credentials | None = None
    selected_project_ids: list[str] = []

    @model_validator(mode="after")
    def _connected_requires_credentials(self) -> "Connection":
        if not self.is_connected:
            return self
        if self.credentials is None:
            raise ValueError("a connected record must carry credentials")
        if isinstance(self.credentials, OAuth2Credentials) and not self.credentials.access_token:
            raise ValueError("a connected OAuth2 record must carry an access token")
        return self


class AuthorizationRequest(BaseModel):
    """Returned by start_oauth_flow: where to send the user next."""

    model_config = ConfigDict(frozen=True)

    auth_url: str
    state: str | None = None
    redirect_uri: str | None = None


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


class SearchCriteria(BaseModel):
    model_config = ConfigDict(frozen=True)

    search_type: SearchType = "recent"
    query: str = ""
    max_results: int = Field(default=20, ge=1)
    project_filter: list[str] = []  # Jira project keys or Trello board ids
    status_filter: list[str] = []
    assignee_filter: list[str] = []

    @field_validator("project_filter", "status_filter", "assignee_filter")
    @classmethod
    def _unique(cls, values: list[str]) -> list[str]:
        return _dedupe(values)


class CreateTicketData(BaseModel):
    title: str
    description: str = ""
    type: str | None = None
    priority: str | None = None
    assignee: str | None = None
    labels: list[str] = []
    components: list[str] = []
    project_key: str


class UpdateTicketData(BaseModel):
    title: str | None = None
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    assignee: str | None = None
    labels: list[str] | None = None
    components: list[str] | None = None


# ---------------------------------------------------------------------------
# Fan-out results
# ---------------------------------------------------------------------------


class PlatformTickets(BaseModel):
    """One provider's share of a cross-platform search: tickets or the captured error."""

    platform: str
    tickets: list[Ticket] = []
    error: str | None = None
    error_type: str | None = None  # exception class name, e.g. "ReauthRequired"

    @property
    def ok(self) -> bool:
        return self.error is None


class PlatformProjects(BaseModel):
    platform: str
    projects: list[Project] = []
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
