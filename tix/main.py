"""tix CLI: all commands."""

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated, get_args

import tomlkit
import typer
from rich import print as rprint
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from tix.errors import TixError
from tix.manager import PlatformManager
from tix.models import (
    PLATFORM_INFO,
    CreateTicketData,
    PlatformProjects,
    SearchCriteria,
    SearchType,
    Ticket,
    UpdateTicketData,
)
from tix.registry import build_registry
from tix.settings import CONFIG_PATH, get_settings
from tix.store import ConnectionStore

app = typer.Typer(help="tix: Jira and Trello tickets from one place", no_args_is_help=True)

PlatformOpt = Annotated[
    str | None,
    typer.Option("--platform", "-p", help="jira or trello (defaults to the active platform)"),
]

_NOT_SET = "[dim](not set)[/dim]"


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Manager factory and error handling
# ---------------------------------------------------------------------------


def get_manager(platform: str | None = None) -> PlatformManager:
    """Build the manager, honouring --platform, then default_platform, then the first connection."""
    settings = get_settings()
    manager = PlatformManager(build_registry(settings, ConnectionStore(settings.state_path)))
    if platform:
        manager.set_active_platform(platform)
    elif settings.default_platform in manager.registry and manager.is_platform_connected(settings.default_platform):
        manager.set_active_platform(settings.default_platform)
    return manager


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except TixError as exc:
        rprint(f"[red]{escape(exc.message)}[/red]")
        if exc.requires_reconnect and exc.platform:
            rprint(f"[dim]Reconnect with:[/dim] tix connect {exc.platform}")
        raise typer.Exit(1) from exc


def _parse_params(pairs: list[str]) -> dict[str, str]:
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            rprint(f"[red]Expected key=value, got '{escape(pair)}'[/red]")
            raise typer.Exit(1)
        params[key.strip()] = value.strip()
    return params


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _tickets_table(tickets: list[Ticket], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Key", style="cyan")
    table.add_column("Status")
    table.add_column("Pri")
    table.add_column("Title")
    table.add_column("Assignee")
    table.add_column("Project", style="dim")

    for ticket in tickets:
        table.add_row(
            ticket.key,
            ticket.status,
            ticket.priority,
            escape(ticket.title),
            ticket.assignee or "Unassigned",
            ticket.project,
        )
    return table


def _ticket_details(ticket: Ticket) -> Table:
    table = Table(title=f"{ticket.key}: {escape(ticket.title)}")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Platform", PLATFORM_INFO[ticket.platform]["name"])
    table.add_row("Type", ticket.type)
    table.add_row("Status", ticket.status)
    table.add_row("Priority", ticket.priority)
    table.add_row("Project", f"{ticket.project} ({ticket.project_key})")
    table.add_row("Assignee", ticket.assignee or "Unassigned")
    table.add_row("Reporter", ticket.reporter)
    if ticket.epic:
        table.add_row("Epic", ticket.epic)
    table.add_row("Labels", ", ".join(sorted(ticket.labels)) if ticket.labels else "none")
    table.add_row("Updated", ticket.last_modified or "—")
    table.add_row("URL", ticket.url)
    table.add_row("Description", escape(ticket.description) or "_No description provided._")
    return table


# ---------------------------------------------------------------------------
# Connection commands
# ---------------------------------------------------------------------------


@app.command("platforms")
def platforms() -> None:
    """List supported platforms and their connection state."""
    with _errors():
        manager = get_manager()

    table = Table(title="Platforms")
    table.add_column("Platform", style="cyan")
    table.add_column("Name")
    table.add_column("Connected")
    table.add_column("Description", style="dim")

    for platform, connected in manager.connection_status().items():
        info = manager.platform_info(platform)
        marker = "[green]✓[/green]" if connected else "—"
        if platform == manager.active_platform:
            marker += " (active)"
        table.add_row(platform, info["name"], marker, info["description"])

    rprint(table)


@app.command("connect")
def connect(
    platform: Annotated[str, typer.Argument(help="jira or trello")],
    instance_url: Annotated[
        str | None,
        typer.Option("--instance-url", "-u", help="Jira site, e.g. acme.atlassian.net"),
    ] = None,
) -> None:
    """Print the authorization URL for a platform."""
    with _errors():
        manager = get_manager()
        if instance_url:
            provider = manager.registry.require(platform)
            if not asyncio.run(provider.validate_instance_url(instance_url)):
                rprint(f"[red]{escape(instance_url)} does not look like a {provider.name} site.[/red]")
                raise typer.Exit(1)
        request = asyncio.run(manager.connect_platform(platform, instance_url))

    rprint(f"Open this URL to authorize {manager.platform_info(platform)['name']}:")
    typer.echo(f"  {request.auth_url}")
    rprint("")
    rprint(f"[dim]Then finish with:[/dim] tix callback {platform} --param key=value ...")


@app.command("callback")
def callback(
    platform: Annotated[str, typer.Argument(help="jira or trello")],
    param: Annotated[
        list[str],
        typer.Option("--param", help="Redirect parameter as key=value (code=..., state=..., token=...)"),
    ],
) -> None:
    """Complete a connection with the parameters from the authorization redirect."""
    params = _parse_params(param)
    with _errors():
        manager = get_manager()
        connection = asyncio.run(manager.complete_connection(platform, params))

    who = connection.user_name or connection.user_email or "unknown user"
    site = f" on {connection.site_name or connection.instance_url}" if connection.instance_url else ""
    rprint(f"[green]✓[/green] Connected to {manager.platform_info(platform)['name']} as {who}{site}")
    if manager.registry.require(platform).needs_project_selection():
        rprint(f"[dim]Pick the boards/projects to work with:[/dim] tix boards {platform} --select ID")


@app.command("disconnect")
def disconnect(platform: Annotated[str, typer.Argument(help="jira or trello")]) -> None:
    """Forget the stored credentials for a platform."""
    with _errors():
        manager = get_manager()
        manager.disconnect_platform(platform)
    rprint(f"[green]✓[/green] Disconnected from {manager.platform_info(platform)['name']}")
    if manager.active_platform:
        rprint(f"  Active platform is now {manager.active_platform}")


@app.command("use")
def use(platform: Annotated[str, typer.Argument(help="Platform to make active")]) -> None:
    """Set the default active platform in ~/.config/tix/config.toml."""
    with _errors():
        get_manager(platform)

    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    doc = tomlkit.load(CONFIG_PATH.open()) if CONFIG_PATH.exists() else tomlkit.document()
    doc["default_platform"] = platform
    CONFIG_PATH.write_text(tomlkit.dumps(doc))
    rprint(f'[green]✓[/green] Active platform set to "{platform}" in {CONFIG_PATH}')


@app.command("boards")
def boards(
    platform: Annotated[str, typer.Argument(help="jira or trello")],
    select: Annotated[
        list[str] | None,
        typer.Option("--select", "-s", help="Board/project ID to scope searches to (repeatable)"),
    ] = None,
) -> None:
    """List every board or project the account can see, or choose the ones to work with."""
    with _errors():
        manager = get_manager()
        if select:
            manager.select_projects(platform, select)
            rprint(f"[green]✓[/green] Selected {len(select)} project(s) on {platform}")
            return
        projects = asyncio.run(manager.get_available_projects(platform))
        selected = set(manager.registry.require(platform).selected_project_ids())

    table = Table(title=f"{manager.platform_info(platform)['name']} projects")
    table.add_column("", width=1)
    table.add_column("ID", style="dim")
    table.add_column("Key", style="cyan")
    table.add_column("Name")

    for project in projects:
        table.add_row("✓" if project.id in selected else "", project.id, project.key, escape(project.name))

    rprint(table)


# ---------------------------------------------------------------------------
# Ticket commands
# ---------------------------------------------------------------------------


@app.command("search")
def search(
    query: Annotated[str, typer.Argument(help="Free-text query (implies --type search)")] = "",
    search_type: Annotated[
        str | None,
        typer.Option("--type", "-t", help="recent, assigned, search or all"),
    ] = None,
    project: Annotated[list[str] | None, typer.Option("--project", help="Project key / board ID")] = None,
    status: Annotated[list[str] | None, typer.Option("--status", help="Status name")] = None,
    assignee: Annotated[list[str] | None, typer.Option("--assignee", help="Assignee, or currentUser()")] = None,
    max_results: Annotated[int, typer.Option("--max", "-n", min=1, help="Maximum results per platform")] = 20,
    all_platforms: Annotated[bool, typer.Option("--all", help="Search every connected platform")] = False,
    platform: PlatformOpt = None,
) -> None:
    """Search tickets on the active platform, or on all of them with --all."""
    search_type = search_type or ("search" if query else "recent")
    if search_type not in get_args(SearchType):
        rprint(f"[red]Unknown search type '{escape(search_type)}'. Valid: {', '.join(get_args(SearchType))}[/red]")
        raise typer.Exit(1)
    criteria = SearchCriteria(
        search_type=search_type,
        query=query,
        max_results=max_results,
        project_filter=project or [],
        status_filter=status or [],
        assignee_filter=assignee or [],
    )

    with _errors():
        if all_platforms:
            manager = get_manager()
            results = asyncio.run(manager.search_all_platforms(criteria))
        else:
            manager = get_manager(platform)
            tickets = asyncio.run(manager.search_tickets(criteria))
            rprint(_tickets_table(tickets, f"{manager.platform_info(manager.active_platform)['name']} tickets"))
            return

    if not results:
        rprint("[yellow]No connected platforms.[/yellow] Run: tix connect jira|trello")
        return
    for result in results:
        name = PLATFORM_INFO.get(result.platform, {}).get("name", result.platform)
        if result.ok:
            rprint(_tickets_table(result.tickets, f"{name} tickets"))
        else:
            rprint(f"[red]{name}: {escape(result.error or '')}[/red] [dim]({result.error_type})[/dim]")


@app.command("get")
def get(
    ticket_key: Annotated[str, typer.Argument(help="Ticket key (PROJ-123 or Trello short link)")],
    platform: PlatformOpt = None,
) -> None:
    """Show full details for a ticket."""
    with _errors():
        ticket = asyncio.run(get_manager(platform).get_ticket(ticket_key))
    rprint(_ticket_details(ticket))


@app.command("projects")
def projects(
    all_platforms: Annotated[bool, typer.Option("--all", help="List projects on every connected platform")] = False,
    platform: PlatformOpt = None,
) -> None:
    """List the projects (Jira) or selected boards (Trello) to work with."""
    with _errors():
        if all_platforms:
            results = asyncio.run(get_manager().list_all_projects())
        else:
            manager = get_manager(platform)
            found = asyncio.run(manager.get_projects())
            results = [PlatformProjects(platform=manager.active_platform, projects=found)]

    table = Table(title="Projects")
    table.add_column("Platform")
    table.add_column("Key", style="cyan")
    table.add_column("Name")
    table.add_column("ID", style="dim")

    for result in results:
        if not result.ok:
            rprint(f"[red]{result.platform}: {escape(result.error or '')}[/red]")
        for project in result.projects:
            table.add_row(project.platform, project.key, escape(project.name), project.id)

    rprint(table)


@app.command("whoami")
def whoami(platform: PlatformOpt = None) -> None:
    """Show the user the active platform is authenticated as."""
    with _errors():
        manager = get_manager(platform)
        user = asyncio.run(manager.get_current_user())
    email = f" <{user.email}>" if user.email else ""
    rprint(f"{user.display_name}{email} [dim]({manager.active_platform}, {user.id})[/dim]")


@app.command("create")
def create(
    title: Annotated[str, typer.Argument(help="Ticket title")],
    project: Annotated[str, typer.Option("--project", help="Jira project key or Trello board ID")],
    description: Annotated[str, typer.Option("--description", "-d", help="Description")] = "",
    ticket_type: Annotated[str | None, typer.Option("--type", "-t", help="Issue type (Jira)")] = None,
    priority: Annotated[str | None, typer.Option("--priority", help="Priority name (Jira)")] = None,
    label: Annotated[list[str] | None, typer.Option("--label", "-l", help="Label (repeatable)")] = None,
    platform: PlatformOpt = None,
) -> None:
    """Create a ticket on the active platform."""
    data = CreateTicketData(
        title=title,
        description=description,
        type=ticket_type,
        priority=priority,
        labels=label or [],
        project_key=project,
    )
    with _errors():
        created = asyncio.run(get_manager(platform).create_ticket(project, data))

    rprint(f"[green]✓[/green] [bold]{created.key}[/bold] {escape(created.title)}")
    rprint(f"  {created.url}")


@app.command("update")
def update(
    ticket_key: Annotated[str, typer.Argument(help="Ticket key")],
    title: Annotated[str | None, typer.Option("--title", help="New title")] = None,
    description: Annotated[str | None, typer.Option("--description", "-d", help="New description")] = None,
    status: Annotated[str | None, typer.Option("--status", "-s", help="Target status / list name")] = None,
    priority: Annotated[str | None, typer.Option("--priority", help="Priority name (Jira)")] = None,
    label: Annotated[list[str] | None, typer.Option("--label", "-l", help="Replace labels (repeatable)")] = None,
    platform: PlatformOpt = None,
) -> None:
    """Update fields or move a ticket to another status."""
    data = UpdateTicketData(
        title=title,
        description=description,
        status=status,
        priority=priority,
        labels=label,
    )
    if not data.model_dump(exclude_none=True):
        rprint("[yellow]Nothing to update.[/yellow]")
        raise typer.Exit(1)

    with _errors():
        asyncio.run(get_manager(platform).update_ticket(ticket_key, data))
    rprint(f"[green]✓[/green] Updated {ticket_key}")


@app.command("migrate")
def migrate(
    ticket_key: Annotated[str, typer.Argument(help="Key of the ticket to copy")],
    to: Annotated[str, typer.Option("--to", help="Target platform")],
    project: Annotated[str, typer.Option("--project", help="Target project key or board ID")],
    platform: PlatformOpt = None,
) -> None:
    """Copy a ticket from the active platform to another one."""

    async def _migrate(manager: PlatformManager) -> tuple[Ticket, Ticket]:
        source = await manager.get_ticket(ticket_key)
        return source, await manager.migrate_ticket(source, to, project)

    with _errors():
        source, created = asyncio.run(_migrate(get_manager(platform)))

    rprint(f"[green]✓[/green] {source.platform}:{source.key} → {created.platform}:[bold]{created.key}[/bold]")
    rprint(f"  {created.url}")


@app.command("config-show")
def config_show() -> None:
    """Show resolved configuration (masks credentials)."""
    settings = get_settings()

    def mask(val: str | None) -> str:
        if val is None:
            return _NOT_SET
        if len(val) <= 5:
            return "***"
        return f"...{val[-5:]}"

    table = Table(title="tix Configuration")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("config_path", str(CONFIG_PATH))
    table.add_row("state_path", str(settings.state_path))
    table.add_row("default_platform", settings.default_platform or _NOT_SET)
    table.add_row("app_url", settings.app_url)
    table.add_row("request_timeout", f"{settings.request_timeout}s")
    table.add_row("refresh_leeway_seconds", str(settings.refresh_leeway_seconds))
    table.add_row("jira_client_id", settings.jira_client_id or _NOT_SET)
    table.add_row("jira_redirect_uri", settings.jira_redirect_uri or _NOT_SET)
    table.add_row("jira_token_url", settings.jira_token_url or _NOT_SET)
    table.add_row("jira_refresh_url", settings.jira_refresh_url or _NOT_SET)
    table.add_row("jira_recent_days", str(settings.jira_recent_days))
    table.add_row(
        "trello_api_key",
        mask(settings.trello_api_key.get_secret_value() if settings.trello_api_key else None),
    )
    table.add_row("trello_redirect_uri", settings.trello_redirect_uri or _NOT_SET)
    table.add_row("trello_board_scan_limit", str(settings.trello_board_scan_limit))
    table.add_row("trello_board_concurrency", str(settings.trello_board_concurrency))

    rprint(table)
