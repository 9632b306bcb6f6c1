"""
CLI entrypoint for the Oko guard engine.

Provides commands for run, cycle, status and reset-capitulation.
"""
import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from oko.config.config import load_config
from oko.config.dotenv_loader import load_dotenv_files
from oko.main import OkoService, main
from oko.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="oko",
    help="Oko position reconciliation and guard engine",
    add_completion=False,
)

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(None, "--config", help="Path to config file (default: bundled config.yaml)")


def _service(config_path: Optional[Path]) -> OkoService:
    load_dotenv_files()
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return OkoService(config)


@app.command()
def run(
    config_path: Optional[Path] = _CONFIG_OPTION,
    max_cycles: int = typer.Option(0, "--max-cycles", help="Stop after N cycles (0 = run until signalled)"),
):
    """
    Run the monitor loop.

    Example:
        python -m oko run --max-cycles 3
    """
    try:
        main(config_path, max_cycles=max_cycles)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@app.command()
def cycle(config_path: Optional[Path] = _CONFIG_OPTION):
    """Run exactly one monitor cycle and print its summary."""
    service = _service(config_path)

    async def _once():
        try:
            return await service.run_monitor_cycle()
        finally:
            await service.close()

    summary = asyncio.run(_once())
    typer.echo(
        f"checked={summary.checked} repaired={summary.repaired} closed={summary.closed} "
        f"tp_hits={summary.tp_hits} ghosts={summary.ghosts} errors={len(summary.errors)}"
    )
    for message in summary.messages + summary.errors:
        typer.echo(f"  - {message}")
    if summary.errors:
        raise typer.Exit(2)


@app.command()
def status(config_path: Optional[Path] = _CONFIG_OPTION):
    """Show confirmation streaks, capitulation counter and active bans."""
    service = _service(config_path)
    typer.echo("Oko Status")
    typer.echo("=" * 50)
    typer.echo(json.dumps(service.status(), indent=2, default=str))


@app.command(name="reset-capitulation")
def reset_capitulation(config_path: Optional[Path] = _CONFIG_OPTION):
    """Reset the persisted capitulation counter to zero."""
    service = _service(config_path)
    service.reset_capitulation()
    typer.secho("Capitulation counter reset", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
