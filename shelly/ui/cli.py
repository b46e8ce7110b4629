"""Main CLI entry point - one subcommand per coordinator operation."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
import typer

from shelly.core.configs import get_settings
from shelly.core.coordinator import SessionCoordinator, build_coordinator, read_current_seed

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="shelly - remote shell sessions addressed by a seed.",
)

console = Console()

SEED_HELP = "Session seed (defaults to the seed of the last connect)"


# ============================================================================
# Shared setup
# ============================================================================

def _coordinator() -> SessionCoordinator:
    """Load settings and wire the coordinator. Exits on a bad configuration."""
    try:
        settings = get_settings()
    except ValueError as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)
    return build_coordinator(settings)


def _resolve_seed(coordinator: SessionCoordinator, seed: Optional[str]) -> str:
    if seed:
        return seed
    current = read_current_seed(coordinator.settings)
    if current is None:
        typer.echo("Error: no --seed given and no current session. Run 'shelly connect --seed <seed>'", err=True)
        raise typer.Exit(1)
    return current


def _emit(result: Dict[str, Any]) -> None:
    """Print the result as JSON; error results exit non-zero."""
    console.print_json(data=result)
    if result.get("status") == "error":
        raise typer.Exit(1)


# ============================================================================
# Commands
# ============================================================================

@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log diagnostics to stderr"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@app.command()
def connect(
    seed: str = typer.Option(..., "--seed", "-s", help="Session seed"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Remote user (defaults to the local user)"),
    hyperssh_seed: Optional[str] = typer.Option(
        None, "--hyperssh-seed", help="Seed of the remote server when it differs from the session seed"
    ),
) -> None:
    """
    Start (or reuse) the background daemon for a seed.

    Example: shelly connect --seed my-box --user alice
    """
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.connect(seed, user, hyperssh_seed)))


@app.command()
def send(
    text: str = typer.Argument(..., help="Command to run on the remote shell"),
    seed: Optional[str] = typer.Option(None, "--seed", "-s", help=SEED_HELP),
) -> None:
    """
    Run a command through the seed's daemon and print its output.

    Example: shelly send "uname -a"
    """
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.send(_resolve_seed(coordinator, seed), text)))


@app.command()
def receive(
    seed: Optional[str] = typer.Option(None, "--seed", "-s", help=SEED_HELP),
) -> None:
    """Return buffered output. send already returns output, so this is usually empty."""
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.receive(_resolve_seed(coordinator, seed))))


@app.command()
def disconnect(
    seed: Optional[str] = typer.Option(None, "--seed", "-s", help=SEED_HELP),
) -> None:
    """Stop the seed's daemon and mark it disconnected."""
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.disconnect(_resolve_seed(coordinator, seed))))


@app.command()
def serve(
    seed: str = typer.Option(..., "--seed", "-s", help="Seed to publish this machine under"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Local port to expose (random 9000-9999 if omitted)"),
) -> None:
    """
    Expose this machine under a seed through the tunnel server.

    Example: shelly serve --seed my-box --port 22
    """
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.serve(seed, port)))


@app.command()
def stop(
    seed: str = typer.Option(..., "--seed", "-s", help="Seed being served"),
) -> None:
    """Stop the tunnel server started by serve."""
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.stop(seed)))


@app.command()
def status(
    seed: Optional[str] = typer.Option(None, "--seed", "-s", help=SEED_HELP),
) -> None:
    """Show connection and serving state, repairing stale flags."""
    coordinator = _coordinator()
    _emit(asyncio.run(coordinator.status(_resolve_seed(coordinator, seed))))


@app.command()
def export(
    seed: Optional[str] = typer.Option(None, "--seed", "-s", help=SEED_HELP),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the record to a file"),
) -> None:
    """Print (or save) the persisted context record of a seed."""
    coordinator = _coordinator()
    result = asyncio.run(coordinator.export(_resolve_seed(coordinator, seed)))
    if output is not None and result.get("status") == "success":
        output.write_text(json.dumps(result["data"], indent=2))
        result = {"status": "success", "seed": result["seed"], "message": f"Exported to {output}"}
    _emit(result)


@app.command("import")
def import_(
    source: Path = typer.Argument(..., help="JSON file produced by export ('-' for stdin)"),
    seed: str = typer.Option(..., "--seed", "-s", help="Seed the record must belong to"),
) -> None:
    """Load an exported context record for a seed."""
    coordinator = _coordinator()
    try:
        data = sys.stdin.read() if str(source) == "-" else source.read_text()
    except OSError as e:
        typer.echo(f"Error reading {source}: {e}", err=True)
        raise typer.Exit(1)
    _emit(asyncio.run(coordinator.import_context(seed, data)))


@app.command()
def plugins() -> None:
    """List loaded plugins and the hooks they bind."""
    coordinator = _coordinator()
    console.print_json(data=coordinator.list_plugins())


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
