"""Typer CLI for Membership-Engine."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="membership", help="Membership-Engine: billing webhooks and entitlements")
console = Console()


async def _with_db(fn):
    from membership_engine.deps import get_db

    db = get_db()
    await db.init()
    await db.create_all()
    try:
        return await fn(db)
    finally:
        await db.close()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Membership-Engine API server."""
    import uvicorn
    from membership_engine.app import create_app

    console.print(f"[bold green]Starting Membership-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command("bootstrap-catalog")
def bootstrap_catalog():
    """Create the product catalog at the provider and mirror it locally."""
    from membership_engine.common.exceptions import ProviderError
    from membership_engine.deps import get_catalog_service

    async def run(db):
        async with db.get_session() as session:
            return await get_catalog_service().bootstrap(session)

    try:
        result = asyncio.run(_with_db(run))
    except ProviderError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(1)
    console.print(
        f"[bold green]Catalog ready[/bold green] — "
        f"{result.products} products, {result.prices} prices"
    )


@app.command()
def events(
    pending: bool = typer.Option(False, "--pending", help="Only unprocessed events"),
    limit: int = typer.Option(50, help="Maximum rows"),
):
    """List webhook events from the ledger."""
    from membership_engine.deps import get_ledger

    async def run(db):
        async with db.get_session() as session:
            return await get_ledger().list_events(
                session, processed=False if pending else None, limit=limit,
            )

    rows = asyncio.run(_with_db(run))

    table = Table(title="Webhook events")
    table.add_column("Event")
    table.add_column("Type")
    table.add_column("Processed")
    table.add_column("Attempts", justify="right")
    table.add_column("Outcome")
    table.add_column("Last error")
    for row in rows:
        table.add_row(
            row.event_id,
            row.event_type,
            "[green]yes[/green]" if row.processed else "[yellow]no[/yellow]",
            str(row.attempts),
            row.outcome or "",
            (row.last_error or "")[:60],
        )
    console.print(table)


@app.command()
def replay(
    event_id: str = typer.Argument(..., help="Provider event id (evt_...)"),
):
    """Re-fetch an event from the provider and process it."""
    from membership_engine.common.exceptions import MembershipEngineError
    from membership_engine.deps import get_ingest_service

    async def run(db):
        return await get_ingest_service().replay(event_id)

    try:
        result = asyncio.run(_with_db(run))
    except MembershipEngineError as e:
        console.print(f"[bold red]{e.code}[/bold red] — {e.message}")
        raise typer.Exit(1)
    console.print(
        f"[bold]{result.event_id}[/bold] {result.status}"
        + (f" ({result.outcome})" if result.outcome else "")
    )


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Membership-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] — v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
