"""Trello REST API provider (API key + user token).

Trello has no project or status concepts: boards stand in for projects and a
card's list stands in for its status. Priority is derived from label names.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from tix.errors import AuthExchangeFailed, ConfigurationError, UnknownNativeFormat, ValidationError
from tix.models import (
    AuthorizationRequest,
    Connection,
    CreateTicketData,
    KeyTokenCredentials,
    Project,
    SearchCriteria,
    Ticket,
    UpdateTicketData,
    User,
)
from tix.providers.base import TicketProvider

logger = logging.getLogger(__name__)

BASE_URL = "https://api.trello.com/1"
AUTHORIZE_URL = "https://trello.com/1/authorize"

CARD_PARAMS = {"fields": "all", "members": "true", "list": "true", "board": "true"}
BOARD_FIELDS = "id,name,desc,shortLink,url,prefs,closed,idOrganization"
MEMBER_FIELDS = "id,username,fullName,email,avatarUrl"

# First label matching any needle wins; no match means Medium
PRIORITY_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("critical", "urgent"), "Highest"),
    (("high", "important"), "High"),
    (("low", "minor"), "Low"),
)

CARD_TYPE = "Card"  # Trello has no issue types

# New cards go to the first list whose name contains one of these
NEW_CARD_LISTS = ("to do", "todo", "backlog")

_MAPPED_CARD_KEYS = frozenset(
    {"id", "shortLink", "name", "desc", "list", "board", "labels", "members", "idBoard", "idList",
     "dateLastActivity", "date", "url"}
)


def priority_from_labels(labels: list[dict[str, Any] | str]) -> str:
    for label in labels:
        name = (label if isinstance(label, str) else label.get("name") or "").lower()
        for needles, priority in PRIORITY_RULES:
            if any(needle in name for needle in needles):
                return priority
    return "Medium"


def _created_from_id(card_id: str) -> str | None:
    """Trello object ids are Mongo ObjectIds; the first 4 bytes are the creation time."""
    try:
        seconds = int(card_id[:8], 16)
    except ValueError:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _member_matches(member: dict[str, Any], wanted: set[str]) -> bool:
    names = (member.get("id"), member.get("username"), member.get("fullName"))
    return any(name and name.lower() in wanted for name in names)


class TrelloProvider(TicketProvider):
    platform = "trello"

    def _auth_params(self) -> dict[str, str]:
        creds = self.connection.credentials
        if isinstance(creds, KeyTokenCredentials):
            return {"key": creds.api_key, "token": creds.token}
        return {}

    def _api_key(self) -> str:
        if self._settings.trello_api_key is None:
            raise ConfigurationError("Trello is not configured. Set TIX_TRELLO_API_KEY.", self.platform)
        return self._settings.trello_api_key.get_secret_value()

    async def _api(self, method: str, path: str, **kwargs: Any) -> Any:
        return await self._request(method, f"{BASE_URL}{path}", **kwargs)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def start_oauth_flow(self, instance_url: str | None = None) -> AuthorizationRequest:
        state = self._new_state()
        params = {
            "expiration": "never",
            "scope": "read,write",
            "response_type": "token",
            "key": self._api_key(),
            "return_url": self._settings.trello_redirect_uri,
            "callback_method": "fragment",
            "name": self._settings.trello_app_name,
            "state": state,
        }
        return AuthorizationRequest(
            auth_url=str(httpx.URL(AUTHORIZE_URL, params=params)),
            state=state,
            redirect_uri=self._settings.trello_redirect_uri,
        )

    async def handle_oauth_callback(self, params: dict[str, str]) -> Connection:
        """Accept the token Trello hands back in the redirect fragment.

        The token is checked against /members/me before anything is saved.
        """
        token = params.get("token")
        if not token:
            raise AuthExchangeFailed("Missing token in Trello callback", self.platform)
        # Trello drops unknown return_url params on some flows, so state is optional here
        self._check_state(params, required=False)
        api_key = self._api_key()

        response = await self._send(
            "GET",
            f"{BASE_URL}/members/me",
            headers={"Accept": "application/json"},
            params={"key": api_key, "token": token, "fields": MEMBER_FIELDS},
        )
        if not response.is_success:
            raise AuthExchangeFailed(f"Trello rejected the token ({response.status_code})", self.platform)
        member = self._auth_json(response, "member lookup")

        expiry = params.get("token_expiry")
        connection = Connection(
            platform=self.platform,
            is_connected=True,
            user_email=member.get("email") or None,
            user_name=member.get("fullName") or member.get("username"),
            credentials=KeyTokenCredentials(
                api_key=api_key,
                token=token,
                token_expiry=int(expiry) if expiry else None,
            ),
            selected_project_ids=self.connection.selected_project_ids,
        )
        self.save_connection(connection)
        logger.info("Connected to Trello as %s", connection.user_name)
        return connection

    async def validate_instance_url(self, url: str) -> bool:
        # Trello is a single hosted service
        return True

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    async def _all_boards(self) -> list[dict[str, Any]]:
        return await self._api("GET", "/members/me/boards", params={"fields": BOARD_FIELDS, "filter": "open"}) or []

    async def get_available_projects(self) -> list[Project]:
        await self.refresh_token_if_needed()
        return [self._board(b) for b in await self._all_boards()]

    async def get_projects(self) -> list[Project]:
        """Selected boards, or every open board when nothing is selected."""
        projects = await self.get_available_projects()
        selected = set(self.selected_project_ids())
        if not selected:
            return projects
        return [p for p in projects if p.id in selected or p.key in selected]

    async def _board_ids_to_scan(self, criteria: SearchCriteria) -> list[str]:
        if criteria.project_filter:
            return list(criteria.project_filter)
        selected = self.selected_project_ids()
        if selected:
            return selected
        boards = await self._all_boards()
        limit = self._settings.trello_board_scan_limit
        if len(boards) > limit:
            logger.info("No boards selected; scanning the first %d of %d boards", limit, len(boards))
        return [b["id"] for b in boards[:limit]]

    async def _cards_on_boards(self, board_ids: list[str]) -> list[dict[str, Any]]:
        semaphore = asyncio.Semaphore(max(1, self._settings.trello_board_concurrency))

        async def fetch(board_id: str) -> list[dict[str, Any]]:
            async with semaphore:
                return await self._api("GET", f"/boards/{board_id}/cards", params=CARD_PARAMS) or []

        batches = await asyncio.gather(*(fetch(b) for b in board_ids), return_exceptions=True)
        cards: dict[str, dict[str, Any]] = {}
        for batch in batches:
            if isinstance(batch, BaseException):
                raise batch
            for card in batch:
                cards.setdefault(card["id"], card)
        return list(cards.values())

    async def _lists_on_board(self, board_id: str) -> list[dict[str, Any]]:
        return await self._api("GET", f"/boards/{board_id}/lists", params={"filter": "open"}) or []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search_tickets(self, criteria: SearchCriteria | None = None) -> list[Ticket]:
        criteria = criteria or SearchCriteria()
        await self.refresh_token_if_needed()
        cards = await self._cards_on_boards(await self._board_ids_to_scan(criteria))

        if criteria.status_filter:
            statuses = [s.lower() for s in criteria.status_filter]
            cards = [c for c in cards if any(s in ((c.get("list") or {}).get("name") or "").lower() for s in statuses)]

        wanted = {a.lower() for a in criteria.assignee_filter}
        if criteria.search_type == "assigned" or "currentuser()" in wanted:
            me = await self.get_current_user()
            wanted.discard("currentuser()")
            if criteria.search_type == "assigned":
                cards = [c for c in cards if me.id in (c.get("idMembers") or [])]
            else:
                wanted.add(me.id.lower())
        if wanted:
            cards = [c for c in cards if any(_member_matches(m, wanted) for m in c.get("members") or [])]

        if criteria.search_type == "search" and criteria.query:
            query = criteria.query.lower()
            cards = [
                c for c in cards if query in (c.get("name") or "").lower() or query in (c.get("desc") or "").lower()
            ]

        cards.sort(key=lambda c: c.get("dateLastActivity") or c.get("date") or "", reverse=True)
        return [self._card(c) for c in cards[: criteria.max_results]]

    async def get_ticket(self, ticket_key: str) -> Ticket:
        await self.refresh_token_if_needed()
        card = await self._api("GET", f"/cards/{ticket_key.removeprefix('#')}", params=CARD_PARAMS)
        return self._card(card)

    async def get_current_user(self) -> User:
        await self.refresh_token_if_needed()
        return self._member(await self._api("GET", "/members/me", params={"fields": MEMBER_FIELDS}))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_ticket(self, project_key: str, data: CreateTicketData) -> Ticket:
        """Create a card on board project_key, in its to-do list when it has one."""
        await self.refresh_token_if_needed()
        lists = await self._lists_on_board(project_key)
        if not lists:
            raise ValidationError(f"Board {project_key} has no lists to put a card in", self.platform)
        target = next(
            (lst for lst in lists if any(name in (lst.get("name") or "").lower() for name in NEW_CARD_LISTS)),
            lists[0],
        )
        if data.type:
            logger.debug("Trello cards have no type; ignoring %r", data.type)

        card = await self._api(
            "POST",
            "/cards",
            json={"name": data.title, "desc": data.description, "idList": target["id"], "pos": "top"},
        )
        logger.info("Created Trello card %s in list %s", card.get("shortLink", card["id"]), target.get("name"))
        # the create response lacks the nested list and board
        return await self.get_ticket(card.get("shortLink") or card["id"])

    async def update_ticket(self, ticket_key: str, data: UpdateTicketData) -> None:
        await self.refresh_token_if_needed()
        card_id = ticket_key.removeprefix("#")
        body: dict[str, Any] = {}
        if data.title:
            body["name"] = data.title
        if data.description is not None:
            body["desc"] = data.description
        if data.status:
            card = await self._api("GET", f"/cards/{card_id}", params={"fields": "idBoard,idList"})
            wanted = data.status.lower()
            lists = await self._lists_on_board(card["idBoard"])
            target = next((lst for lst in lists if wanted in (lst.get("name") or "").lower()), None)
            if target is None:
                logger.info("No list on the board matches status %r; %s stays where it is", data.status, ticket_key)
            elif target["id"] != card.get("idList"):
                body["idList"] = target["id"]
        if not body:
            return
        await self._api("PUT", f"/cards/{card_id}", json=body)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def transform_to_universal_format(self, native: dict[str, Any]) -> Ticket | Project | User:
        if "idList" in native:
            return self._card(native)
        if "username" in native:
            return self._member(native)
        if native.get("id") and native.get("name"):
            return self._board(native)
        raise UnknownNativeFormat(self.platform)

    def _card(self, card: dict[str, Any]) -> Ticket:
        board = card.get("board") or {}
        card_list = card.get("list") or {}
        labels = card.get("labels") or []
        members = card.get("members") or []
        key = card.get("shortLink") or card["id"]
        return Ticket(
            id=card["id"],
            key=key,
            title=card.get("name") or "",
            description=card.get("desc") or "",
            type=CARD_TYPE,
            status=card_list.get("name") or "Unknown",
            priority=priority_from_labels(labels),
            assignee=members[0].get("fullName") if members else None,
            reporter="Unknown",
            project=board.get("name") or "",
            project_key=board.get("id") or card.get("idBoard") or "",
            labels=frozenset(label["name"] for label in labels if label.get("name")),
            components=[card_list["name"]] if card_list.get("name") else [],
            last_modified=card.get("dateLastActivity") or card.get("date"),
            created=card.get("date") or _created_from_id(card["id"]),
            url=card.get("url") or f"https://trello.com/c/{key}",
            platform="trello",
            platform_specific={
                "shortLink": card.get("shortLink"),
                "idBoard": card.get("idBoard"),
                "idList": card.get("idList"),
                "members": members,
                **{k: v for k, v in card.items() if k not in _MAPPED_CARD_KEYS},
            },
        )

    def _board(self, board: dict[str, Any]) -> Project:
        prefs = board.get("prefs") or {}
        return Project(
            id=board["id"],
            key=board.get("shortLink") or board["id"],
            name=board["name"],
            platform="trello",
            description=board.get("desc") or None,
            avatar_url=prefs.get("backgroundImage"),
            platform_specific={k: v for k, v in board.items() if k not in ("id", "name", "desc")},
        )

    def _member(self, member: dict[str, Any]) -> User:
        avatar = member.get("avatarUrl")
        return User(
            id=member["id"],
            display_name=member.get("fullName") or member.get("username") or member["id"],
            email=member.get("email") or None,
            avatar_url=f"{avatar}/170.png" if avatar else None,
            platform="trello",
        )
