import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from playwright.async_api import Error as PlaywrightError
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.table import Table
from tqdm import tqdm

from .api import create_app
from .auth import BrowserEscalator, SessionVault
from .client import MarrowClient
from .config import MarrowConfig, load_config
from .exceptions import ConfigError, MarrowError


app = typer.Typer(help="Map web pages once with AI, then extract from them without it")
console = Console()

_state = {"env_file": None}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    _state["env_file"] = env_file


def _config(require_api_key: bool = True) -> MarrowConfig:
    try:
        return load_config(_state["env_file"], require_api_key=require_api_key)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _run(coro):
    try:
        return asyncio.run(coro)
    except MarrowError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _print_json(payload):
    console.print(JSON(json.dumps(payload, indent=2, default=str)))


def _write_or_print(payload, output: Optional[str]):
    if output:
        with open(output, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        console.print(f"[green]Saved to {output}[/green]")
    else:
        _print_json(payload)


@app.command("map")
def map_page(
    url: str = typer.Argument(..., help="URL of the page to map"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Include timings and cache diagnostics"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output JSON file path"),
):
    """Get the page map, from the registry when cached."""
    config = _config()

    async def go():
        async with MarrowClient(config) as marrow:
            return await marrow.get_map_detailed(url)

    result = _run(go())
    state = "cache hit" if result.debug.cache_hit else "mapped live"
    console.print(f"[cyan]{result.map.url}[/cyan] ({state}, {len(result.map.elements)} elements)")
    _write_or_print(result.model_dump(mode="json") if debug else result.map.model_dump(mode="json"), output)


@app.command()
def fresh(
    url: str = typer.Argument(..., help="URL of the page to map"),
    debug: bool = typer.Option(False, "--debug", "-d"),
    output: Optional[str] = typer.Option(None, "--output", "-o"),
):
    """Map the page again, ignoring the cache."""
    config = _config()

    async def go():
        async with MarrowClient(config) as marrow:
            return await marrow.map_page_fresh_detailed(url)

    result = _run(go())
    if result.debug.save and result.debug.save.status == "exists":
        console.print("[yellow]A map already existed for this URL; the stored map was kept[/yellow]")
    _write_or_print(result.model_dump(mode="json") if debug else result.map.model_dump(mode="json"), output)


@app.command()
def extract(
    url: str = typer.Argument(..., help="URL to extract from"),
    selectors: Optional[List[str]] = typer.Option(None, "--selector", "-s", help="CSS or Playwright selector"),
    elements: Optional[List[str]] = typer.Option(None, "--element", "-e", help="Element name from the page map"),
    attempts: int = typer.Option(1, "--attempts", "-a", min=1, help="Maximum extraction attempts"),
    use_map: bool = typer.Option(False, "--use-map", help="Fall back to the map's selectors"),
    debug: bool = typer.Option(False, "--debug", "-d"),
):
    """Extract text by selector or by element name."""
    if not selectors and not elements:
        console.print("[red]Error: Provide --selector or --element[/red]")
        raise typer.Exit(1)

    config = _config(require_api_key=bool(elements))

    async def go():
        async with MarrowClient(config) as marrow:
            if elements:
                return await marrow.extract_elements(url, elements, max_attempts=attempts, debug=debug)
            return await marrow.extract_with_retry(
                url, selectors, max_attempts=attempts, use_map_selectors=use_map, debug=debug
            )

    try:
        result = _run(go())
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    found = sum(1 for v in result.data.values() if v is not None)
    console.print(f"[green]Found {found}/{len(result.data)}[/green]")
    _print_json(result.model_dump(mode="json") if debug else result.data)


@app.command()
def validate(
    url: str = typer.Argument(..., help="URL to test"),
    selectors: List[str] = typer.Option(..., "--selector", "-s", help="Selector to check"),
):
    """Check that selectors still match on the live page."""
    config = _config(require_api_key=False)

    async def go():
        async with MarrowClient(config) as marrow:
            return await marrow.validate_selectors(url, selectors)

    report = _run(go())
    table = Table(title=url)
    table.add_column("Selector")
    table.add_column("Found")
    table.add_column("Value", overflow="fold")
    for check in report.results:
        table.add_row(check.selector, "[green]yes[/green]" if check.found else "[red]no[/red]", (check.value or "")[:80])
    console.print(table)
    if not report.valid:
        raise typer.Exit(1)


@app.command()
def manifest(domain: str = typer.Argument(..., help="Domain to list")):
    """List the stored maps of a domain."""
    config = _config(require_api_key=False)

    async def go():
        async with MarrowClient(config) as marrow:
            return await marrow.get_manifest(domain)

    _print_json(_run(go()).model_dump(mode="json"))


@app.command()
def stats():
    """Registry statistics."""
    config = _config(require_api_key=False)

    async def go():
        async with MarrowClient(config) as marrow:
            return await marrow.get_stats()

    result = _run(go())
    console.print(f"[cyan]Maps:[/cyan] {result.total_maps}")
    console.print(f"[cyan]Requests:[/cyan] {result.total_requests}")
    if result.top_domains:
        console.print("[cyan]Top domains:[/cyan] " + ", ".join(result.top_domains))


@app.command()
def login(
    url: str = typer.Argument(..., help="Page behind the login"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Seconds to wait for the login"),
):
    """Open a visible browser and store the session once you log in."""
    config = _config(require_api_key=False)
    if timeout is not None:
        config.auth.escalation_timeout = timeout

    escalator = BrowserEscalator(SessionVault(config.auth.session_dir), config.auth, config.browser)
    console.print(f"[yellow]Log in to {url} in the browser window...[/yellow]")
    result = _run(escalator.escalate_with_session(url))

    if not result.success:
        console.print(f"[red]Login failed: {result.error}[/red]")
        raise typer.Exit(1)
    if result.session_captured:
        console.print(f"[green]Session saved for {result.domain}[/green]")
    else:
        console.print(f"[green]Stored session for {result.domain} is still valid[/green]")


@app.command()
def sessions():
    """List stored login sessions."""
    config = _config(require_api_key=False)
    vault = SessionVault(config.auth.session_dir)

    names = vault.list()
    if not names:
        console.print("[yellow]No stored sessions[/yellow]")
        return

    table = Table()
    table.add_column("Domain")
    table.add_column("Created")
    table.add_column("Last used")
    for name in names:
        meta = vault.get_metadata(name)
        if meta is None:
            continue
        table.add_row(meta.domain, _ms_to_text(meta.created_at), _ms_to_text(meta.last_used))
    console.print(table)


@app.command()
def forget(domain: str = typer.Argument(..., help="Domain whose session to delete")):
    """Delete a stored login session."""
    config = _config(require_api_key=False)
    vault = SessionVault(config.auth.session_dir)
    if vault.delete(domain):
        console.print(f"[green]Deleted session for {domain}[/green]")
    else:
        console.print(f"[yellow]No session stored for {domain}[/yellow]")
        raise typer.Exit(1)


@app.command()
def warm(
    url_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File with one URL per line"),
):
    """Map every URL in a file that is not cached yet."""
    urls = [line.strip() for line in url_file.read_text().splitlines()]
    urls = [u for u in urls if u and not u.startswith("#")]
    if not urls:
        console.print("[yellow]No URLs to warm[/yellow]")
        return

    config = _config()

    async def go():
        failures = []
        hits = 0
        async with MarrowClient(config) as marrow:
            for url in tqdm(urls, desc="Mapping", unit="page"):
                try:
                    result = await marrow.get_map_detailed(url)
                    hits += result.debug.cache_hit
                except (MarrowError, PlaywrightError) as e:
                    failures.append((url, str(e)))
        return hits, failures

    hits, failures = asyncio.run(go())
    console.print(f"[green]{len(urls) - len(failures)} mapped ({hits} already cached)[/green]")
    for url, error in failures:
        console.print(f"[red]{url}: {error}[/red]")
    if failures:
        raise typer.Exit(1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port"),
):
    """Run the HTTP API."""
    config = _config(require_api_key=False)
    console.print(f"[green]Marrow API on http://{host or config.api.host}:{port or config.api.port}[/green]")
    uvicorn.run(create_app(config), host=host or config.api.host, port=port or config.api.port)


def _ms_to_text(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


if __name__ == "__main__":
    app()
