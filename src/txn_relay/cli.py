"""Typer CLI for the transaction relay."""

from __future__ import annotations

from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from txn_relay.config.loader import load_env_file, load_relay_config
from txn_relay.config.models import RelayConfig
from txn_relay.errors import RelayError
from txn_relay.observability.logging import configure_logging

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="txn-relay", help="Transaction lifecycle CDC relay")

_DEFAULT_ENV_FILE = Path(".env")


def _load(config_path: str | None, env_file: str | None) -> RelayConfig:
    if env_file is not None:
        if not Path(env_file).is_file():
            console.print(f"[red]Env file not found: {env_file}[/red]")
            raise typer.Exit(1)
        load_env_file(env_file)
    elif _DEFAULT_ENV_FILE.is_file():
        load_env_file(_DEFAULT_ENV_FILE)

    if config_path is None:
        return load_relay_config()
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    return load_relay_config(path)


@app.command()
def validate(
    config_path: str | None = typer.Argument(
        None, help="Relay YAML (defaults to the environment only)"
    ),
    env_file: str | None = typer.Option(None, "--env-file", help="Dotenv file"),
) -> None:
    """Validate a relay configuration."""
    try:
        config = _load(config_path, env_file)
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc

    src, dst = config.source, config.destination
    console.print(f"[green]Valid[/green]: relay_id={config.relay_id}")
    console.print(f"  source:      mysql://{src.host}:{src.port}/{src.database}")
    console.print(
        f"  tables:      start={src.tables.start} stop={src.tables.stop} "
        f"stop_failed={src.tables.stop_failed}"
    )
    console.print(
        f"  destination: postgresql://{dst.host}:{dst.port}/{dst.database} "
        f"table={dst.target_table} sslmode={dst.sslmode}"
    )
    console.print(f"  on error:    {config.on_write_error}")


@app.command()
def position(
    config_path: str | None = typer.Argument(
        None, help="Relay YAML (defaults to the environment only)"
    ),
    env_file: str | None = typer.Option(None, "--env-file", help="Dotenv file"),
) -> None:
    """Show the source's current binlog position (the baseline a run would use)."""
    config = _load(config_path, env_file)
    configure_logging(config.logging)

    from txn_relay.sources.position import fetch_current_position

    try:
        current = fetch_current_position(config.source)
    except RelayError as exc:
        console.print(f"[red]Cannot read binlog position:[/red] {exc}")
        raise typer.Exit(1) from exc

    table = Table(title="Binlog Position")
    table.add_column("Log file", style="cyan")
    table.add_column("Offset")
    table.add_row(current.log_name or "[red]<unknown>[/red]", str(current.offset))
    console.print(table)


@app.command()
def run(
    config_path: str | None = typer.Argument(
        None, help="Relay YAML (defaults to the environment only)"
    ),
    env_file: str | None = typer.Option(None, "--env-file", help="Dotenv file"),
) -> None:
    """Run the relay until SIGINT/SIGTERM."""
    config = _load(config_path, env_file)
    configure_logging(config.logging)

    from txn_relay.pipeline.runner import Relay

    console.print(f"[yellow]Starting relay:[/yellow] {config.relay_id}")
    relay = Relay(config)
    try:
        relay.start()
    except KeyboardInterrupt:
        relay.stop()
    except Exception as exc:
        logger.critical(
            "relay.fatal",
            relay_id=config.relay_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise typer.Exit(1) from exc
