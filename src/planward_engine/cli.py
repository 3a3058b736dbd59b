"""Typer CLI for Planward-Engine."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="planward", help="Planward-Engine: team plan entitlements")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Planward-Engine API server."""
    import uvicorn
    from planward_engine.app import create_app

    console.print(f"[bold green]Starting Planward-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


async def _load_entitlements(team_id: str):
    from planward_engine.deps import get_db, get_entitlement_service, get_provider

    db = get_db()
    await db.init()
    try:
        async with db.get_session() as session:
            return await get_entitlement_service().get_team_entitlements(session, team_id)
    finally:
        await get_provider().close()
        await db.close()


@app.command()
def entitlements(
    team_id: str = typer.Argument(..., help="Team id to resolve"),
):
    """Resolve and print a team's entitlements."""
    from planward_engine.common.exceptions import PlanwardError

    try:
        result = asyncio.run(_load_entitlements(team_id))
    except PlanwardError as e:
        console.print(f"[bold red]{e.code}[/bold red] {e.message}")
        raise typer.Exit(1)

    console.print(f"Plans: {', '.join(result.plan_ids) or '-'}")
    console.print(f"Sources: {', '.join(result.sources) or '-'}")

    table = Table("Entitlement", "Value")
    for feature, enabled in sorted(result.features.items()):
        table.add_row(feature, "[green]yes[/green]" if enabled else "[red]no[/red]")
    for key, value in sorted(result.limits.items()):
        table.add_row(key, str(value))
    console.print(table)


async def _load_catalog():
    from planward_engine.billing.catalog import list_catalog
    from planward_engine.deps import get_catalog_store, get_db

    db = get_db()
    await db.init()
    try:
        store = get_catalog_store()
        async with db.get_session() as session:
            plans = await store.list_plans(session)
            prices = await store.list_price_amounts(session)
        return list_catalog(plans, prices)
    finally:
        await db.close()


@app.command()
def catalog():
    """List tiered catalog plans with inherited features."""
    table = Table("Tier", "Level", "Plan", "Features", "Limits")
    for entry in asyncio.run(_load_catalog()):
        table.add_row(
            entry.tier,
            "" if entry.plan_level is None else str(entry.plan_level),
            f"{entry.plan.name} ({entry.plan.id})",
            ", ".join(sorted(entry.features)),
            ", ".join(f"{k}={v}" for k, v in sorted(entry.limits.items())),
        )
    console.print(table)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Planward-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
