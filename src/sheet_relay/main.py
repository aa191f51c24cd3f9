"""CLI entrypoint for sheet-relay."""

import logging
import os
from pathlib import Path

import rich_click as click

from sheet_relay import __version__
from sheet_relay.orchestrator.controllers import (
    HistoryCommand,
    LeasesCommand,
    PlanCommand,
    RunCommand,
    SheetRelayCliController,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SheetRelayCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="sheet-relay")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (defaults to SHEET_RELAY_LOG_LEVEL or INFO).",
)
def sheet_relay(log_level: str | None) -> None:
    """Drive conversational AI front ends from a task sheet."""

    level = (log_level or os.getenv("SHEET_RELAY_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )


@sheet_relay.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Journal DB path.")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Task sheet as CSV; answers are written back on exit.",
)
@click.option("--once", is_flag=True, help="Run a single pass over all groups and exit.")
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many passes (loop mode).",
)
@click.option(
    "--max-idle-passes",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive passes without work.",
)
@click.option("--pool-size", type=click.IntRange(min=1), default=None, help="Context pool size.")
@click.option(
    "--stagger",
    "stagger_seconds",
    type=click.FloatRange(min=0.0),
    default=None,
    help="Seconds between unit starts within a batch.",
)
@click.option(
    "--surface",
    type=click.Choice(("echo",)),
    default=None,
    help="Interactive surface implementation.",
)
def run(  # noqa: PLR0913
    db_path: Path | None,
    csv_path: Path | None,
    once: bool,
    max_passes: int | None,
    max_idle_passes: int,
    pool_size: int | None,
    stagger_seconds: float | None,
    surface: str | None,
) -> None:
    """Lease pending cells, run them through the pool and write answers back."""

    _emit_lines(
        CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                csv_path=csv_path,
                once=once,
                max_passes=max_passes,
                max_idle_passes=max_idle_passes,
                pool_size=pool_size,
                stagger_seconds=stagger_seconds,
                surface=surface,
            ),
        ),
    )


@sheet_relay.command("plan")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Task sheet as CSV.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max units listed per group.",
)
def plan(csv_path: Path | None, limit: int) -> None:
    """Show discovered groups and pending units without leasing anything."""

    _emit_lines(CONTROLLER.plan(PlanCommand(csv_path=csv_path, limit=limit)))


@sheet_relay.command("leases")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Task sheet as CSV.",
)
def leases(csv_path: Path | None) -> None:
    """List lease and abandoned markers with their state."""

    _emit_lines(CONTROLLER.leases(LeasesCommand(csv_path=csv_path)))


@sheet_relay.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Journal DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many recent outcomes to show.",
)
@click.option("--unit-id", default=None, help="Show attempts of one unit instead.")
def history(db_path: Path | None, limit: int, unit_id: str | None) -> None:
    """Show recent unit outcomes from the run journal."""

    _emit_lines(CONTROLLER.history(HistoryCommand(db_path=db_path, limit=limit, unit_id=unit_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sheet_relay()
