"""Connection lifecycle, refresh and error mapping shared by every provider."""

import asyncio
import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from tix.errors import (
    AuthenticationFailed,
    NotConnected,
    PermissionDenied,
    ProviderError,
    ReauthRequired,
)
from tix.models import Connection, SearchCriteria
from tix.providers.base import now_millis
from tix.providers.jira import JiraProvider
from tix.providers.trello import TrelloProvider
from tix.settings import TixSettings
from tix.store import ConnectionStore

JIRA_API = "https://api.atlassian.com/ex/jira/cloud-1/rest/api/3"
REFRESH_URL = "https://app.example.com/api/jira/auth/refresh"

_ME = {"accountId": "acc-1", "displayName": "Jane Doe", "emailAddress": "jane@acme.test"}


def _set_expiry(provider: JiraProvider | TrelloProvider, expiry: int | None, **updates: object) -> None:
    creds = provider.connection.credentials
    assert creds is not None
    creds = creds.model_copy(update={"token_expiry": expiry, **updates})
    provider.save_connection(provider.connection.model_copy(update={"credentials": creds}))


class TestLoadConnection:
    def test_disconnected_when_nothing_stored(self, settings: TixSettings, store: ConnectionStore) -> None:
        provider = JiraProvider(settings, store)
        assert provider.connection == Connection(platform="jira")
        assert not provider.is_connected()

    def test_restored_by_new_instance(self, jira: JiraProvider, settings: TixSettings, store: ConnectionStore) -> None:
        restored = JiraProvider(settings, store)
        assert restored.connection == jira.connection
        assert restored.is_connected()

    def test_corrupt_file_gives_disconnected(self, settings: TixSettings, store: ConnectionStore) -> None:
        settings.state_path.write_text("jira = {is_connected = ")
        provider = JiraProvider(settings, store)
        assert provider.connection.is_connected is False

    def test_record_that_is_not_a_table_gives_disconnected(
        self, settings: TixSettings, store: ConnectionStore
    ) -> None:
        settings.state_path.write_text('jira = "garbage"\n')

        provider = JiraProvider(settings, store)

        assert provider.connection == Connection(platform="jira")
        assert not provider.is_connected()
        assert not TrelloProvider(settings, store).is_connected()

    def test_invalid_record_gives_disconnected(self, settings: TixSettings, store: ConnectionStore) -> None:
        store.write("jira", {"is_connected": True})
        provider = JiraProvider(settings, store)
        assert provider.connection.is_connected is False

    def test_records_scoped_per_platform(self, jira: JiraProvider, settings: TixSettings, store: ConnectionStore) -> None:
        assert not TrelloProvider(settings, store).is_connected()


class TestIsConnected:
    def test_no_expiry(self, trello: TrelloProvider) -> None:
        assert trello.is_connected()

    def test_future_expiry(self, jira: JiraProvider) -> None:
        assert jira.is_connected()

    def test_expired_but_refreshable(self, jira: JiraProvider) -> None:
        _set_expiry(jira, now_millis() - 1000)
        assert jira.is_connected()

    def test_expired_without_refresh_token(self, jira: JiraProvider) -> None:
        _set_expiry(jira, now_millis() - 1000, refresh_token=None)
        assert not jira.is_connected()

    @pytest.mark.parametrize("token", ["", "undefined", "null"])
    def test_expired_with_junk_refresh_token(self, jira: JiraProvider, token: str) -> None:
        _set_expiry(jira, now_millis() - 1000, refresh_token=token)
        assert not jira.is_connected()


class TestClearConnection:
    def test_keeps_instance_url(self, jira: JiraProvider, settings: TixSettings, store: ConnectionStore) -> None:
        jira.clear_connection()

        assert not jira.is_connected()
        assert jira.connection.credentials is None
        assert jira.connection.instance_url == "acme.atlassian.net"
        assert JiraProvider(settings, store).connection.is_connected is False

    @pytest.mark.asyncio
    async def test_reads_and_writes_fail_without_network(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        jira.clear_connection()

        with pytest.raises(NotConnected):
            await jira.search_tickets(SearchCriteria())
        with pytest.raises(NotConnected):
            await jira.get_ticket("ENG-1")
        with pytest.raises(NotConnected):
            await jira.get_current_user()
        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_trello_fails_without_network(self, trello: TrelloProvider, httpx_mock: HTTPXMock) -> None:
        trello.clear_connection()

        with pytest.raises(NotConnected):
            await trello.get_projects()
        assert httpx_mock.get_requests() == []


class TestRefresh:
    @pytest.mark.asyncio
    async def test_unexpired_token_not_refreshed(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=f"{JIRA_API}/myself", json=_ME)

        await jira.get_current_user()

        assert httpx_mock.get_requests(method="POST") == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_persisted(
        self, jira: JiraProvider, httpx_mock: HTTPXMock, settings: TixSettings, store: ConnectionStore
    ) -> None:
        _set_expiry(jira, now_millis() - 1000)
        httpx_mock.add_response(
            method="POST",
            url=REFRESH_URL,
            json={"accessToken": "new-access", "refreshToken": "new-refresh", "expiresIn": 3600},
        )
        httpx_mock.add_response(url=f"{JIRA_API}/myself", json=_ME)

        user = await jira.get_current_user()

        assert user.display_name == "Jane Doe"
        refresh_request = httpx_mock.get_request(method="POST")
        assert refresh_request is not None
        assert json.loads(refresh_request.read()) == {"refreshToken": "jira-refresh"}
        api_request = httpx_mock.get_request(method="GET")
        assert api_request is not None
        assert api_request.headers["Authorization"] == "Bearer new-access"

        creds = JiraProvider(settings, store).connection.credentials
        assert creds is not None
        assert creds.access_token == "new-access"  # type: ignore[union-attr]
        assert creds.refresh_token == "new-refresh"  # type: ignore[union-attr]
        assert creds.token_expiry is not None and creds.token_expiry > now_millis()

    @pytest.mark.asyncio
    async def test_refresh_token_kept_when_not_rotated(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        _set_expiry(jira, now_millis() - 1000)
        httpx_mock.add_response(method="POST", url=REFRESH_URL, json={"accessToken": "new-access", "expiresInSeconds": 60})

        await jira.refresh_token_if_needed()

        assert jira.connection.credentials.refresh_token == "jira-refresh"  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        _set_expiry(jira, now_millis() - 1000)
        httpx_mock.add_response(
            method="POST",
            url=REFRESH_URL,
            json={"accessToken": "new-access", "refreshToken": "new-refresh", "expiresIn": 3600},
        )
        httpx_mock.add_response(url=f"{JIRA_API}/myself", json=_ME)
        httpx_mock.add_response(url=f"{JIRA_API}/myself", json=_ME)

        users = await asyncio.gather(jira.get_current_user(), jira.get_current_user())

        assert [u.id for u in users] == ["acc-1", "acc-1"]
        assert len(httpx_mock.get_requests(method="POST")) == 1
        gets = httpx_mock.get_requests(method="GET")
        assert len(gets) == 2
        assert all(r.headers["Authorization"] == "Bearer new-access" for r in gets)

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_connection(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        _set_expiry(jira, now_millis() - 1000)
        httpx_mock.add_response(method="POST", url=REFRESH_URL, status_code=400, json={"error": "invalid_grant"})

        with pytest.raises(ReauthRequired):
            await jira.get_current_user()

        assert not jira.is_connected()
        assert httpx_mock.get_requests(method="GET") == []

    @pytest.mark.asyncio
    async def test_unreachable_refresh_endpoint_keeps_connection(
        self, jira: JiraProvider, httpx_mock: HTTPXMock, settings: TixSettings, store: ConnectionStore
    ) -> None:
        _set_expiry(jira, now_millis() - 1000)
        httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=REFRESH_URL)

        with pytest.raises(ProviderError, match="Could not reach Jira"):
            await jira.get_current_user()

        assert jira.is_connected()
        creds = JiraProvider(settings, store).connection.credentials
        assert creds is not None
        assert creds.refresh_token == "jira-refresh"  # type: ignore[union-attr]
        assert httpx_mock.get_requests(method="GET") == []

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token_clears(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        _set_expiry(jira, now_millis() - 1000, refresh_token=None)

        with pytest.raises(ReauthRequired):
            await jira._refresh_access_token()

        assert jira.connection.is_connected is False
        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_requires_reauth(
        self, jira: JiraProvider, httpx_mock: HTTPXMock
    ) -> None:
        _set_expiry(jira, now_millis() - 1000, refresh_token=None)

        with pytest.raises(ReauthRequired, match="reconnect"):
            await jira.get_current_user()

        assert jira.connection.is_connected is False
        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_near_expiry_without_refresh_token_uses_current_token(
        self, jira: JiraProvider, httpx_mock: HTTPXMock
    ) -> None:
        _set_expiry(jira, now_millis() + 30_000, refresh_token=None)
        httpx_mock.add_response(url=f"{JIRA_API}/myself", json=_ME)

        await jira.get_current_user()

        assert jira.is_connected()

    @pytest.mark.asyncio
    async def test_expired_trello_token_requires_reauth(self, trello: TrelloProvider, httpx_mock: HTTPXMock) -> None:
        _set_expiry(trello, now_millis() - 1000)

        with pytest.raises(ReauthRequired):
            await trello.get_current_user()

        assert not trello.is_connected()
        assert httpx_mock.get_requests() == []


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_401_clears_connection(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=f"{JIRA_API}/myself", status_code=401, text="Unauthorized")

        with pytest.raises(AuthenticationFailed) as exc_info:
            await jira.get_current_user()

        assert exc_info.value.requires_reconnect
        assert not jira.is_connected()

    @pytest.mark.asyncio
    async def test_403_keeps_connection(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=f"{JIRA_API}/myself", status_code=403, text="Forbidden")

        with pytest.raises(PermissionDenied) as exc_info:
            await jira.get_current_user()

        assert not exc_info.value.requires_reconnect
        assert jira.is_connected()

    @pytest.mark.asyncio
    async def test_other_status_carries_status_and_body(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=f"{JIRA_API}/myself", status_code=503, text="maintenance")

        with pytest.raises(ProviderError) as exc_info:
            await jira.get_current_user()

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "maintenance"
        assert jira.is_connected()

    @pytest.mark.asyncio
    async def test_transport_error_is_provider_error(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=f"{JIRA_API}/myself")

        with pytest.raises(ProviderError, match="Could not reach Jira"):
            await jira.get_current_user()

        assert jira.is_connected()

    @pytest.mark.asyncio
    async def test_non_json_body_is_provider_error(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=f"{JIRA_API}/myself", text="<html>proxy</html>")

        with pytest.raises(ProviderError) as exc_info:
            await jira.get_current_user()

        assert exc_info.value.status_code == 200
        assert exc_info.value.body == "<html>proxy</html>"
        assert jira.is_connected()

    @pytest.mark.asyncio
    async def test_timeout_is_provider_error(self, jira: JiraProvider, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ReadTimeout("slow"), url=f"{JIRA_API}/myself")

        with pytest.raises(ProviderError, match="timed out"):
            await jira.get_current_user()


class TestProjectSelection:
    def test_select_persists_unique_ids(self, jira: JiraProvider, settings: TixSettings, store: ConnectionStore) -> None:
        assert jira.needs_project_selection()

        jira.select_projects(["10000", "10001", "10000"])

        assert jira.selected_project_ids() == ["10000", "10001"]
        assert not jira.needs_project_selection()
        assert JiraProvider(settings, store).selected_project_ids() == ["10000", "10001"]

    def test_select_requires_connection(self, settings: TixSettings, store: ConnectionStore) -> None:
        with pytest.raises(NotConnected):
            JiraProvider(settings, store).select_projects(["10000"])

    def test_disconnected_needs_no_selection(self, settings: TixSettings, store: ConnectionStore) -> None:
        assert not JiraProvider(settings, store).needs_project_selection()
