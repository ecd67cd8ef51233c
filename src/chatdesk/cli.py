"""Typer CLI for Chatdesk."""

import asyncio

import typer
from rich.console import Console

app = typer.Typer(name="chatdesk", help="Chatdesk: multi-tenant support chat server")
console = Console()


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind host (default from CHATDESK_HOST)"),
    port: int = typer.Option(None, help="Bind port (default from CHATDESK_PORT)"),
):
    """Start the Chatdesk API server."""
    import uvicorn
    from chatdesk.app import create_app
    from chatdesk.common.config import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    console.print(f"[bold green]Starting Chatdesk on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


async def _create_master(email: str, password: str, name: str):
    from chatdesk.deps import get_auth_service, get_db

    db = get_db()
    await db.init()
    await db.create_all()
    try:
        async with db.get_session() as session:
            user = await get_auth_service().create_master(session, email, password, name=name)
            return user.id
    finally:
        await db.close()


@app.command("create-master")
def create_master(
    email: str = typer.Argument(..., help="Email of the master account"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    name: str = typer.Option("Master", help="Display name"),
):
    """Create a cross-tenant master user."""
    from chatdesk.common.exceptions import ChatdeskError

    try:
        user_id = asyncio.run(_create_master(email, password, name))
    except ChatdeskError as e:
        console.print(f"[bold red]{e.code}[/bold red]: {e.message}")
        raise typer.Exit(1)
    console.print(f"[bold green]Master created[/bold green] {email} ({user_id})")


async def _reset_usage(slug: str, force: bool) -> int:
    from chatdesk.common.exceptions import TenantNotFoundError
    from chatdesk.deps import get_accountant, get_db, get_tenant_service

    db = get_db()
    await db.init()
    try:
        async with db.get_session() as session:
            tenant = await get_tenant_service().get_by_slug(session, slug)
            if tenant is None:
                raise TenantNotFoundError(f"No tenant with slug '{slug}'")
            return await get_accountant().reset_monthly(session, tenant.id, force=force)
    finally:
        await db.close()


@app.command("reset-usage")
def reset_usage(
    slug: str = typer.Argument(..., help="Tenant slug"),
    force: bool = typer.Option(True, help="Reset even if the cycle was already reset"),
):
    """Zero a tenant's monthly usage counters."""
    from chatdesk.common.exceptions import ChatdeskError

    try:
        count = asyncio.run(_reset_usage(slug, force))
    except ChatdeskError as e:
        console.print(f"[bold red]{e.code}[/bold red]: {e.message}")
        raise typer.Exit(1)
    console.print(f"[bold]{slug}[/bold]: {count} counter(s) reset")


@app.command()
def health(
    url: str = typer.Option("http://localhost:5000", help="Server URL"),
):
    """Check Chatdesk server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] - v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
