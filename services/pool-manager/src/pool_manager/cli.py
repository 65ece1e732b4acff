"""`vpool` operator CLI for the pool manager API."""

import asyncio
import json

import httpx
from rich.console import Console
from rich.table import Table
import typer

from shared.config import BaseSettings, api_url_field

app = typer.Typer(help="Virtual participant pool CLI")
console = Console()


class CliConfig(BaseSettings):
    """CLI configuration."""

    api_url: str = api_url_field()


def get_config() -> CliConfig:
    return CliConfig()


def get_api_client() -> httpx.AsyncClient:
    config = get_config()
    return httpx.AsyncClient(base_url=config.api_url, timeout=30.0)


async def _request(method: str, path: str, payload: dict | None = None) -> dict | list:
    client = get_api_client()
    try:
        response = await client.request(method, path, json=payload)
        response.raise_for_status()
        return response.json()
    finally:
        await client.aclose()


def _error_message(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        try:
            body = error.response.json()
        except ValueError:
            return f"HTTP {error.response.status_code}"
        if isinstance(body, dict) and "name" in body:
            return f"{body['name']}: {body.get('detail', '')}"
        return f"HTTP {error.response.status_code}: {body}"
    return str(error)


def _run(method: str, path: str, payload: dict | None = None) -> dict | list:
    try:
        return asyncio.run(_request(method, path, payload))
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {_error_message(e)}")
        raise typer.Exit(code=1) from None


@app.command()
def invite(
    stage_id: str = typer.Argument(..., help="Stage to invite a worker to"),
    asset_name: str | None = typer.Option(None, "--asset", "-a", help="Video asset to play"),
):
    """Invite an available worker to a stage."""
    payload = {"stage_id": stage_id}
    if asset_name:
        payload["asset_name"] = asset_name
    _run("POST", "/api/invitations", payload)
    console.print(f"[bold green]✓ Worker invited to stage[/bold green] [cyan]{stage_id}[/cyan]")


@app.command()
def kick(stage_id: str = typer.Argument(..., help="Stage whose worker is removed")):
    """Kick the worker assigned to a stage."""
    _run("POST", "/api/kick", {"stage_id": stage_id})
    console.print(f"[bold green]✓ Worker kicked from stage[/bold green] [cyan]{stage_id}[/cyan]")


@app.command("list")
def list_workers(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List worker records."""
    data = _run("GET", "/api/workers")
    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return

    table = Table(title=f"Workers ({data['total_count']})")
    table.add_column("ID", style="cyan")
    table.add_column("Status", style="magenta")
    table.add_column("Stage")
    table.add_column("Task")
    table.add_column("Updated")
    for worker in data["workers"]:
        table.add_row(
            worker["id"],
            worker["status"],
            worker["assigned_stage_arn"],
            worker["task_id"][:12],
            worker["updated_at"],
        )
    console.print(table)


@app.command("stop-all")
def stop_all(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Stop every live worker."""
    if not yes:
        typer.confirm("Stop all workers?", abort=True)
    summary = _run("POST", "/api/workers/stop-all")
    console.print(
        f"Found [bold]{summary['total_found']}[/bold], "
        f"stopped [green]{summary['successful_stops']}[/green], "
        f"failed [red]{summary['failed_stops']}[/red]"
    )
    for result in summary["results"]:
        if not result["success"]:
            console.print(f"  [red]✗[/red] {result['worker_id']}: {result.get('error')}")
    if summary["failed_stops"]:
        raise typer.Exit(code=1)


@app.command()
def reconcile():
    """Run one pool sizing pass now."""
    summary = _run("POST", "/api/pool/reconcile")
    console.print(
        f"Observed [bold]{summary['observed']}[/bold] warm workers "
        f"(min {summary['min_warm_workers']}, max {summary['max_warm_workers']}): "
        f"started {summary['started']}, stopped {summary['stopped']}, "
        f"reaped {summary['reaped']}, failed {summary['failed']}"
    )
