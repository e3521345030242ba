"""Jira Cloud REST v3 provider (OAuth 2.0 bearer tokens)."""

import logging
import re
from typing import Any

import httpx

from tix.errors import (
    AuthExchangeFailed,
    ConfigurationError,
    NotConnected,
    ProviderError,
    ReauthRequired,
    UnknownNativeFormat,
    ValidationError,
)
from tix.models import (
    AuthorizationRequest,
    Connection,
    CreateTicketData,
    OAuth2Credentials,
    Project,
    SearchCriteria,
    Ticket,
    UpdateTicketData,
    User,
)
from tix.providers.base import TicketProvider, now_millis
from tix.settings import TixSettings
from tix.store import ConnectionStore

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://auth.atlassian.com/authorize"
ATLASSIAN_API = "https://api.atlassian.com"
ACCESSIBLE_RESOURCES_URL = f"{ATLASSIAN_API}/oauth/token/accessible-resources"

CURRENT_USER = "currentUser()"

ISSUE_FIELDS = (
    "id,key,summary,description,issuetype,status,priority,assignee,reporter,"
    "project,parent,labels,components,updated,created"
)

# Issue fields with a canonical home; everything else lands in platform_specific
_MAPPED_FIELDS = frozenset(ISSUE_FIELDS.split(","))

_INLINE_NODES = frozenset({"text", "hardBreak", "mention", "emoji", "inlineCard", "date", "status"})


# ---------------------------------------------------------------------------
# Atlassian Document Format
# ---------------------------------------------------------------------------


def flatten_adf(description: Any) -> str:
    """Flatten an ADF document to plain text.

    Inline text runs are concatenated and every leaf block ends with one
    newline. Marks, table structure and media are dropped, so the result is
    lossy: to_adf(flatten_adf(doc)) only reproduces plain paragraphs.
    """
    if not description:
        return ""
    if isinstance(description, str):
        return description
    if isinstance(description, dict) and description.get("type") == "doc":
        return "".join(_flatten_nodes(description.get("content") or [])).strip()
    return ""


def _flatten_nodes(nodes: list[dict]) -> list[str]:
    parts: list[str] = []
    for node in nodes:
        kind = node.get("type")
        attrs = node.get("attrs") or {}
        if kind == "text":
            parts.append(node.get("text") or "")
        elif kind == "hardBreak":
            parts.append("\n")
        elif kind in ("mention", "emoji"):
            parts.append(attrs.get("text") or attrs.get("shortName") or "")
        elif kind == "inlineCard":
            parts.append(attrs.get("url") or "")
        elif kind in _INLINE_NODES:
            continue
        else:
            children = node.get("content") or []
            parts.extend(_flatten_nodes(children))
            # only leaf blocks emit the boundary, so nested lists don't double up
            if all(child.get("type") in _INLINE_NODES for child in children):
                parts.append("\n")
    return parts


def to_adf(text: str) -> dict:
    """One paragraph per line of text."""
    content = []
    for line in text.split("\n"):
        paragraph: dict[str, Any] = {"type": "paragraph", "content": []}
        if line:
            paragraph["content"] = [{"type": "text", "text": line}]
        content.append(paragraph)
    return {"type": "doc", "version": 1, "content": content}


# ---------------------------------------------------------------------------
# JQL
# ---------------------------------------------------------------------------


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_jql(criteria: SearchCriteria, selected_projects: list[str] | None = None, recent_days: int = 30) -> str:
    """Compose the search criteria into one JQL query (AND semantics)."""
    conditions: list[str] = []

    projects = criteria.project_filter or selected_projects or []
    if projects:
        conditions.append(f"project IN ({', '.join(_quote(p) for p in projects)})")

    if criteria.status_filter:
        conditions.append(f"status IN ({', '.join(_quote(s) for s in criteria.status_filter)})")

    assignees = criteria.assignee_filter
    if CURRENT_USER in assignees:
        conditions.append(f"assignee = {CURRENT_USER}")
    elif assignees:
        conditions.append(f"assignee IN ({', '.join(_quote(a) for a in assignees)})")

    match criteria.search_type:
        case "recent":
            conditions.append(f"updated >= -{recent_days}d")
        case "assigned":
            if CURRENT_USER not in assignees:
                conditions.append(f"assignee = {CURRENT_USER}")
        case "search":
            if criteria.query:
                conditions.append(f"text ~ {_quote(criteria.query)}")

    order = "ORDER BY updated DESC"
    return f"{' AND '.join(conditions)} {order}" if conditions else order


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_instance_url(url: str) -> str:
    """'https://acme.atlassian.net/' -> 'acme.atlassian.net'"""
    return re.sub(r"^https?://", "", url.strip()).rstrip("/")


def _find_named(items: list[dict], name: str) -> dict | None:
    wanted = name.lower()
    return next((item for item in items if (item.get("name") or "").lower() == wanted), None)


def _name(node: dict | None, default: str) -> str:
    return (node or {}).get("name") or default


def _parse_tokens(body: dict) -> tuple[str | None, str | None, int | None]:
    """Read the token delegate's reply: accessToken, refreshToken?, expiresIn(Seconds)."""
    expires_in = body.get("expiresInSeconds", body.get("expiresIn"))
    expiry = now_millis() + int(expires_in) * 1000 if expires_in else None
    return body.get("accessToken"), body.get("refreshToken"), expiry


class JiraProvider(TicketProvider):
    platform = "jira"

    def __init__(self, settings: TixSettings, store: ConnectionStore) -> None:
        super().__init__(settings, store)
        self._pending_instance_url: str | None = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _base_url(self) -> str:
        creds = self.connection.credentials
        if isinstance(creds, OAuth2Credentials) and creds.cloud_id:
            return f"{ATLASSIAN_API}/ex/jira/{creds.cloud_id}/rest/api/3"
        if self.connection.instance_url:
            return f"https://{self.connection.instance_url}/rest/api/3"
        raise NotConnected(self.platform, "Jira site is unknown. Please reconnect to Jira.")

    def _auth_headers(self) -> dict[str, str]:
        creds = self.connection.credentials
        if isinstance(creds, OAuth2Credentials):
            return {"Authorization": f"Bearer {creds.access_token}"}
        return {}

    async def _api(self, method: str, path: str, **kwargs: Any) -> Any:
        return await self._request(method, f"{self._base_url()}{path}", **kwargs)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def start_oauth_flow(self, instance_url: str | None = None) -> AuthorizationRequest:
        if not self._settings.jira_client_id:
            raise ConfigurationError("Jira OAuth is not configured. Set TIX_JIRA_CLIENT_ID.", self.platform)
        self._pending_instance_url = normalize_instance_url(instance_url) if instance_url else None
        state = self._new_state()
        params = {
            "audience": "api.atlassian.com",
            "client_id": self._settings.jira_client_id,
            "scope": self._settings.jira_scopes,
            "redirect_uri": self._settings.jira_redirect_uri,
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        return AuthorizationRequest(
            auth_url=str(httpx.URL(AUTHORIZE_URL, params=params)),
            state=state,
            redirect_uri=self._settings.jira_redirect_uri,
        )

    async def handle_oauth_callback(self, params: dict[str, str]) -> Connection:
        if params.get("error"):
            raise AuthExchangeFailed(params.get("error_description") or "Jira authorization was denied", self.platform)
        code = params.get("code")
        if not code:
            raise AuthExchangeFailed("Missing authorization code in Jira callback", self.platform)
        self._check_state(params, required=True)

        response = await self._send(
            "POST",
            self._settings.jira_token_url,
            headers={"Accept": "application/json"},
            json={"code": code, "redirectUri": self._settings.jira_redirect_uri},
        )
        if not response.is_success:
            raise AuthExchangeFailed(
                f"Jira token exchange failed ({response.status_code}): {response.text}", self.platform
            )
        access_token, refresh_token, expiry = _parse_tokens(self._auth_json(response, "token exchange reply"))
        if not access_token:
            raise AuthExchangeFailed("Jira token exchange returned no access token", self.platform)
        if not refresh_token:
            logger.warning("No refresh token received from Atlassian; the connection will lapse when the token expires")

        bearer = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        response = await self._send("GET", ACCESSIBLE_RESOURCES_URL, headers=bearer)
        if not response.is_success:
            raise AuthExchangeFailed(f"Failed to get accessible Jira sites ({response.status_code})", self.platform)
        sites = self._auth_json(response, "accessible-resources reply")
        if not sites:
            raise AuthExchangeFailed("No Jira sites accessible with this account", self.platform)
        site = self._pick_site(sites)
        instance_url = normalize_instance_url(site["url"])

        user_email = None
        me = await self._send("GET", f"{ATLASSIAN_API}/ex/jira/{site['id']}/rest/api/3/myself", headers=bearer)
        try:
            if me.is_success:
                user_email = me.json().get("emailAddress") or None
        except ValueError:
            pass  # the email is optional
        if user_email is None:
            logger.info("Could not read Jira profile email (%s); continuing without it", me.status_code)

        keep_selection = instance_url == self.connection.instance_url
        connection = Connection(
            platform=self.platform,
            is_connected=True,
            instance_url=instance_url,
            user_email=user_email,
            site_name=site.get("name"),
            credentials=OAuth2Credentials(
                access_token=access_token,
                refresh_token=refresh_token,
                token_expiry=expiry,
                cloud_id=site["id"],
            ),
            selected_project_ids=self.connection.selected_project_ids if keep_selection else [],
        )
        self.save_connection(connection)
        self._pending_instance_url = None
        logger.info("Connected to Jira site %s", instance_url)
        return connection

    def _pick_site(self, sites: list[dict]) -> dict:
        if self._pending_instance_url:
            for site in sites:
                if normalize_instance_url(site.get("url") or "") == self._pending_instance_url:
                    return site
            logger.info(
                "Site %s not among accessible resources; using %s", self._pending_instance_url, sites[0].get("url")
            )
        return sites[0]

    async def _refresh_access_token(self) -> None:
        creds = self.connection.credentials
        if not isinstance(creds, OAuth2Credentials) or not creds.refresh_token:
            self.clear_connection()
            raise ReauthRequired("Jira connection has no refresh token. Please reconnect to Jira.", self.platform)
        response = await self._send(
            "POST",
            self._settings.jira_refresh_url,
            headers={"Accept": "application/json"},
            json={"refreshToken": creds.refresh_token},
        )
        if not response.is_success:
            logger.warning("Jira token refresh rejected: %s %s", response.status_code, response.text)
            self.clear_connection()
            raise ReauthRequired("Failed to refresh token. Please reconnect to Jira.", self.platform)
        try:
            access_token, refresh_token, expiry = _parse_tokens(response.json())
        except ValueError:
            access_token = None
        if not access_token:
            self.clear_connection()
            raise ReauthRequired("Jira refresh returned no access token. Please reconnect to Jira.", self.platform)

        updated = creds.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": refresh_token or creds.refresh_token,
                "token_expiry": expiry,
            }
        )
        self.save_connection(self.connection.model_copy(update={"credentials": updated}))
        logger.info("Refreshed Jira access token")

    async def validate_instance_url(self, url: str) -> bool:
        """A live Jira site answers serverInfo with 200, or 401/403 when it wants auth."""
        host = normalize_instance_url(url)
        try:
            response = await self._send(
                "GET", f"https://{host}/rest/api/3/serverInfo", headers={"Accept": "application/json"}
            )
        except ProviderError as exc:
            logger.info("Jira instance %s unreachable: %s", host, exc)
            return False
        return response.status_code in (200, 401, 403)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search_tickets(self, criteria: SearchCriteria | None = None) -> list[Ticket]:
        criteria = criteria or SearchCriteria()
        await self.refresh_token_if_needed()
        jql = build_jql(criteria, self.selected_project_ids(), self._settings.jira_recent_days)
        logger.debug("Jira search: %s", jql)
        data = await self._api(
            "GET",
            "/search/jql",
            params={"jql": jql, "maxResults": criteria.max_results, "fields": ISSUE_FIELDS},
        )
        return [self._issue_to_ticket(issue) for issue in data.get("issues", [])]

    async def get_ticket(self, ticket_key: str) -> Ticket:
        await self.refresh_token_if_needed()
        issue = await self._api("GET", f"/issue/{ticket_key}", params={"fields": ISSUE_FIELDS})
        return self._issue_to_ticket(issue)

    async def get_available_projects(self) -> list[Project]:
        await self.refresh_token_if_needed()
        data = await self._api("GET", "/project/search", params={"maxResults": 100})
        projects = data.get("values", []) if isinstance(data, dict) else data
        return [self._project(p) for p in projects]

    async def get_projects(self) -> list[Project]:
        """Selected projects, or every visible project when nothing is selected."""
        projects = await self.get_available_projects()
        selected = set(self.selected_project_ids())
        if not selected:
            return projects
        return [p for p in projects if p.id in selected or p.key in selected]

    async def get_current_user(self) -> User:
        await self.refresh_token_if_needed()
        return self._user(await self._api("GET", "/myself"))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_ticket(self, project_key: str, data: CreateTicketData) -> Ticket:
        """Validate against the project's create metadata, then create.

        The metadata call comes first so an unknown issue type or priority
        fails here with the available choices, instead of as an opaque 400.
        """
        await self.refresh_token_if_needed()
        meta = await self._api(
            "GET",
            "/issue/createmeta",
            params={"projectKeys": project_key, "expand": "projects.issuetypes.fields"},
        )
        projects = meta.get("projects") or []
        if not projects:
            raise ValidationError(
                f'Project with key "{project_key}" not found or you don\'t have permission to create issues in it.',
                self.platform,
            )
        issue_types = projects[0].get("issuetypes") or []
        wanted_type = data.type or "Task"
        issue_type = _find_named(issue_types, wanted_type)
        if issue_type is None:
            available = ", ".join(t["name"] for t in issue_types) or "none"
            raise ValidationError(
                f'Issue type "{wanted_type}" not available in project "{project_key}". Available types: {available}',
                self.platform,
            )

        schema = issue_type.get("fields") or {}
        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "summary": data.title,
            "description": to_adf(data.description),
            "issuetype": {"id": issue_type["id"]},
        }
        if data.priority:
            priority = self._allowed_priority(schema, data.priority, f'{issue_type["name"]} in "{project_key}"')
            if priority is not None:
                fields["priority"] = {"id": priority["id"]}
        if data.labels and "labels" in schema:
            # Jira labels cannot contain spaces
            fields["labels"] = [label.replace(" ", "-") for label in data.labels]
        if data.components and "components" in schema:
            fields["components"] = [{"name": c} for c in data.components]

        created = await self._api("POST", "/issue", json={"fields": fields})
        logger.info("Created Jira issue %s", created["key"])
        return await self.get_ticket(created["key"])

    async def update_ticket(self, ticket_key: str, data: UpdateTicketData) -> None:
        await self.refresh_token_if_needed()
        fields: dict[str, Any] = {}
        if data.title:
            fields["summary"] = data.title
        if data.description is not None:
            fields["description"] = to_adf(data.description)
        if data.priority:
            meta = await self._api("GET", f"/issue/{ticket_key}/editmeta")
            priority = self._allowed_priority((meta or {}).get("fields") or {}, data.priority, ticket_key)
            if priority is not None:
                fields["priority"] = {"id": priority["id"]}
        if data.assignee:
            fields["assignee"] = {"accountId": data.assignee}
        if data.labels is not None:
            fields["labels"] = [label.replace(" ", "-") for label in data.labels]
        if data.components is not None:
            fields["components"] = [{"name": c} for c in data.components]

        transition = await self._find_transition(ticket_key, data.status) if data.status else None

        if fields:
            await self._api("PUT", f"/issue/{ticket_key}", json={"fields": fields})
        if transition:
            await self._api("POST", f"/issue/{ticket_key}/transitions", json={"transition": {"id": transition["id"]}})
            logger.info("Moved %s to %s", ticket_key, data.status)

    def _allowed_priority(self, schema: dict[str, Any], wanted: str, where: str) -> dict | None:
        """Look wanted up in the priority field's allowedValues.

        Returns None when the screen has no priority field, in which case the
        priority is dropped rather than sent.
        """
        allowed = (schema.get("priority") or {}).get("allowedValues") or []
        if not allowed:
            logger.info("Priority is not settable for %s; dropping %r", where, wanted)
            return None
        priority = _find_named(allowed, wanted)
        if priority is None:
            names = ", ".join(p["name"] for p in allowed)
            raise ValidationError(
                f'Priority "{wanted}" not available for {where}. Available priorities: {names}', self.platform
            )
        return priority

    async def _find_transition(self, ticket_key: str, status: str) -> dict:
        data = await self._api("GET", f"/issue/{ticket_key}/transitions")
        transitions = data.get("transitions") or []
        wanted = status.lower()
        for transition in transitions:
            target = (transition.get("to") or {}).get("name") or ""
            if wanted in (target.lower(), (transition.get("name") or "").lower()):
                return transition
        reachable = ", ".join((t.get("to") or {}).get("name") or t.get("name", "") for t in transitions) or "none"
        raise ValidationError(f'{ticket_key} cannot move to "{status}". Reachable statuses: {reachable}', self.platform)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def transform_to_universal_format(self, native: dict[str, Any]) -> Ticket | Project | User:
        if "fields" in native:
            return self._issue_to_ticket(native)
        if "projectTypeKey" in native:
            return self._project(native)
        if "accountId" in native:
            return self._user(native)
        raise UnknownNativeFormat(self.platform)

    def _issue_to_ticket(self, issue: dict[str, Any]) -> Ticket:
        fields = issue.get("fields") or {}
        key = issue["key"]
        instance_url = self.connection.instance_url
        issue_type = fields.get("issuetype") or {}
        status = fields.get("status") or {}
        priority = fields.get("priority") or {}
        project = fields.get("project") or {}
        return Ticket(
            id=str(issue["id"]),
            key=key,
            title=fields.get("summary") or "",
            description=flatten_adf(fields.get("description")),
            type=_name(issue_type, "Task"),
            status=_name(status, "To Do"),
            priority=_name(priority, "Medium"),
            assignee=(fields.get("assignee") or {}).get("displayName"),
            reporter=(fields.get("reporter") or {}).get("displayName") or "Unknown",
            project=project.get("name") or "",
            project_key=project.get("key") or "",
            epic=((fields.get("parent") or {}).get("fields") or {}).get("summary"),
            labels=frozenset(fields.get("labels") or []),
            components=[c["name"] for c in fields.get("components") or [] if c.get("name")],
            last_modified=fields.get("updated"),
            created=fields.get("created"),
            url=f"https://{instance_url}/browse/{key}" if instance_url else issue.get("self", ""),
            platform="jira",
            platform_specific={
                "issueTypeId": issue_type.get("id"),
                "statusId": status.get("id"),
                "priorityId": priority.get("id"),
                "instanceUrl": instance_url,
                "unmappedFields": {k: v for k, v in fields.items() if k not in _MAPPED_FIELDS},
                **{k: v for k, v in issue.items() if k not in ("id", "key", "fields")},
            },
        )

    def _project(self, project: dict[str, Any]) -> Project:
        return Project(
            id=str(project["id"]),
            key=project["key"],
            name=project.get("name") or project["key"],
            platform="jira",
            description=project.get("description"),
            avatar_url=(project.get("avatarUrls") or {}).get("48x48"),
            platform_specific={
                k: v for k, v in project.items() if k not in ("id", "key", "name", "description", "avatarUrls")
            },
        )

    def _user(self, user: dict[str, Any]) -> User:
        return User(
            id=user["accountId"],
            display_name=user.get("displayName") or user["accountId"],
            email=user.get("emailAddress"),
            avatar_url=(user.get("avatarUrls") or {}).get("48x48"),
            platform="jira",
        )
