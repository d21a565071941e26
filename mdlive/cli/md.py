#!/usr/bin/env python3
"""
Command line interface for mdlive.

Usage:
    mdlive serve [PATH]         - Start the daemon, adding PATH as a project
    mdlive search "query"       - Search project documents
    mdlive projects             - List configured projects
    mdlive status               - Check daemon status
"""

import asyncio
import os
from typing import Optional

import click
import httpx
from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()

DAEMON_URL = os.environ.get("MDLIVE_URL", "http://localhost:4000")


@click.group()
@click.option("--url", default=DAEMON_URL, show_default=True, help="Daemon base URL")
@click.pass_context
def cli(ctx, url: str):
    """mdlive - live Markdown documentation viewer."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url.rstrip("/")


@cli.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Config file path")
@click.option("--port", "-p", type=int, help="Port to listen on")
def serve(path: Optional[str], config: Optional[str], port: Optional[int]):
    """Start the mdlive daemon."""
    console.print("[cyan]Starting mdlive...[/cyan]")

    # Import here so client commands stay light
    from ..daemon.main import main as daemon_main

    try:
        asyncio.run(daemon_main(config, path, port))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Daemon error:[/red] {e}")
        logger.exception("Daemon crashed")


@cli.command()
@click.argument("query")
@click.option("--project", "-p", help="Project id to search (default: all)")
@click.option("--limit", "-l", default=15, show_default=True, help="Max results")
@click.pass_context
def search(ctx, query: str, project: Optional[str], limit: int):
    """Search Markdown documents."""
    asyncio.run(search_documents(ctx.obj["url"], query, project, limit))


async def search_documents(url: str, query: str, project: Optional[str], limit: int):
    """Send search request to daemon."""
    params = {"q": query, "limit": limit}
    if project:
        params["projectId"] = project

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/api/search", params=params, timeout=10.0)

        if response.status_code == 200:
            display_search_results(response.json())
        else:
            console.print(f"[red]Search failed:[/red] {response.text}")

    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        console.print("Start with: [cyan]mdlive serve[/cyan]")


def display_search_results(data: dict):
    """Display search results in a table."""
    results = data.get("results", [])

    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Results for {data.get('query', '')!r}")
    table.add_column("Match", style="magenta")
    table.add_column("Project", style="green")
    table.add_column("Path", style="cyan", no_wrap=False)
    table.add_column("Line", justify="right")
    table.add_column("Snippet", no_wrap=False)

    for r in results:
        line = r.get("line")
        table.add_row(
            r.get("type", ""),
            r.get("projectName") or "",
            r.get("path", ""),
            str(line) if line is not None else "",
            r.get("snippet") or ""
        )

    console.print(table)


@cli.command()
@click.pass_context
def projects(ctx):
    """List configured projects."""
    asyncio.run(list_projects(ctx.obj["url"]))


async def list_projects(url: str):
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/api/projects", timeout=5.0)

        if response.status_code != 200:
            console.print(f"[red]Failed to list projects:[/red] {response.text}")
            return

        items = response.json().get("projects", [])
        if not items:
            console.print("[yellow]No projects configured[/yellow]")
            return

        table = Table(title="Projects")
        table.add_column("ID", style="magenta")
        table.add_column("Name", style="cyan")
        table.add_column("Path")
        for p in items:
            table.add_row(p["id"], p["name"], p["path"])
        console.print(table)

    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon[/red]")


@cli.command()
@click.pass_context
def status(ctx):
    """Check daemon status."""
    asyncio.run(check_status(ctx.obj["url"]))


async def check_status(url: str):
    """Check if daemon is running and get stats."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/status", timeout=2.0)

        if response.status_code != 200:
            console.print("[red]Daemon error[/red]")
            return

        data = response.json()
        stats = data.get("stats", {})
        livesync = data.get("livesync", {})

        console.print(f"[green]✓ mdlive {data.get('version', '')} is running[/green]")
        console.print(f"\nUptime: {data.get('uptime', 'unknown')}")
        console.print(f"Projects: {stats.get('projects', 0)}")
        console.print(f"Open streams: {sum(livesync.get('subscribers', {}).values())}")
        console.print(f"Watched roots: {len(livesync.get('watching', {}))}")
        console.print(f"Reloads: {stats.get('reload_count', 0)}")
        console.print(f"Searches: {stats.get('search_count', 0)}")
        console.print(f"Memory: {stats.get('memory_mb', 0):.1f} MB")

    except httpx.ConnectError:
        console.print("[red]✗ Daemon is not running[/red]")
        console.print("Start with: [cyan]mdlive serve[/cyan]")


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
