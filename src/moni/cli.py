"""Click CLI entry point for the moni command.

Handles argument parsing, config loading, and error display. All business
logic is delegated to ``pipeline``, ``projection``, ``metrics``, ``config``,
and ``export`` modules.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from datetime import date
from pathlib import Path

import click

from moni import __version__
from moni.models import PROJECTION_WINDOWS, SPOUSE_PROFILES

logger = logging.getLogger(__name__)

BANKS = ("santander", "bradesco", "nubank")


def _validate_month(month: str) -> str:
    """Validate that *month* matches ``YYYY-MM`` and represents a real month.

    Returns the validated month string, or raises ``click.BadParameter``.
    """
    if not re.fullmatch(r"\d{4}-\d{2}", month):
        raise click.BadParameter(
            f"Invalid month format: {month!r}. Expected YYYY-MM (e.g. 2026-01)."
        )
    _, mon = month.split("-")
    mon_int = int(mon)
    if mon_int < 1 or mon_int > 12:
        raise click.BadParameter(
            f"Invalid month: {month!r}. Month must be between 01 and 12."
        )
    return month


def _configure_logging(verbose: bool, debug: bool) -> None:
    """Set up logging based on verbosity flags."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        force=True,
    )


def _load_config_or_exit(root: Path):
    from moni.config import load_config

    try:
        return load_config(root)
    except FileNotFoundError as exc:
        click.echo(
            f"Error: {exc}. Run 'moni init' to create the project structure.",
            err=True,
        )
        sys.exit(1)
    except Exception as exc:
        click.echo(f"Error loading configuration: {exc}", err=True)
        sys.exit(1)


def _read_statement(path: Path) -> str:
    """Read a statement file; Brazilian banks often export Latin-1."""
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


async def _load_history(store, user_id: str):
    try:
        return await store.list_transactions(user_id), await store.list_planned_entries(user_id)
    finally:
        await store.aclose()


@click.group()
@click.version_option(version=__version__, prog_name="moni")
def cli() -> None:
    """Household finance dashboard: statements, miles and cash flow."""


@cli.command()
@click.option(
    "--dir", "target_dir", default=".", type=click.Path(), help="Directory to initialize."
)
def init(target_dir: str) -> None:
    """Initialize a new data directory with the standard structure."""
    from moni.config import initialize

    target = Path(target_dir).resolve()

    try:
        initialize(target)
    except Exception as exc:
        click.echo(f"Error initializing project: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Initialized moni project in {target}")


@cli.command(name="import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["OFX", "CSV"], case_sensitive=False),
    default=None,
    help="Statement format. Guessed from the file extension by default.",
)
@click.option(
    "--bank",
    type=click.Choice(BANKS, case_sensitive=False),
    default=None,
    help="Issuing bank. Guessed from the statement by default.",
)
@click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def import_(file: Path, fmt: str | None, bank: str | None, verbose: bool, debug: bool) -> None:
    """Import an OFX or CSV bank statement."""
    _configure_logging(verbose, debug)
    root = Path.cwd()
    config = _load_config_or_exit(root)

    from moni.export import print_import_summary
    from moni.parsers import detect_format
    from moni.pipeline import import_statement
    from moni.store import open_store

    try:
        fmt = (fmt or detect_format(file.name)).upper()
        content = _read_statement(file)
    except (OSError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    async def run():
        store = open_store(config.store, root)
        try:
            return await import_statement(
                content,
                fmt,
                store,
                config.store.user_id,
                config.financial,
                rules=config.rules,
                file_hint=bank or file.name,
                mapping=config.csv_mapping,
                on_progress=lambda done, total: logger.debug("Reconciled %d/%d", done, total),
            )
        finally:
            await store.aclose()

    try:
        summary = asyncio.run(run())
    except Exception as exc:
        click.echo(f"Error importing statement: {exc}", err=True)
        sys.exit(1)

    print_import_summary(summary, file.name)


@cli.command()
@click.option(
    "--window",
    type=click.Choice(PROJECTION_WINDOWS),
    default="1M",
    show_default=True,
    help="History shown before today.",
)
@click.option(
    "--today",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Reference day (YYYY-MM-DD). Defaults to the current date.",
)
def project(window: str, today) -> None:
    """Show the cash-flow projection and safety-floor warning."""
    root = Path.cwd()
    config = _load_config_or_exit(root)

    from moni.export import print_projection
    from moni.projection import project as build_projection
    from moni.store import open_store

    reference = today.date() if today else date.today()
    try:
        txns, planned = asyncio.run(_load_history(open_store(config.store, root), config.store.user_id))
        projection = build_projection(txns, config.financial, planned, window, reference)
    except Exception as exc:
        click.echo(f"Error building projection: {exc}", err=True)
        sys.exit(1)

    print_projection(projection, reference)


@cli.command()
@click.option("--month", default=None, help="Month in YYYY-MM format. Defaults to the current month.")
@click.option(
    "--profile",
    type=click.Choice(("todos",) + SPOUSE_PROFILES),
    default="todos",
    show_default=True,
    help="Household member for the breakdowns.",
)
def stats(month: str | None, profile: str) -> None:
    """Print the monthly dashboard figures."""
    try:
        month = _validate_month(month or date.today().strftime("%Y-%m"))
    except click.BadParameter as exc:
        click.echo(f"Error: {exc.format_message()}", err=True)
        sys.exit(1)

    root = Path.cwd()
    config = _load_config_or_exit(root)

    from moni.export import print_stats
    from moni.store import open_store

    try:
        txns, _ = asyncio.run(_load_history(open_store(config.store, root), config.store.user_id))
    except Exception as exc:
        click.echo(f"Error reading transactions: {exc}", err=True)
        sys.exit(1)

    year, mon = (int(part) for part in month.split("-"))
    print_stats(txns, config.financial, year, mon, profile)


@cli.command()
@click.option("--month", required=True, help="Target month in YYYY-MM format.")
def export(month: str) -> None:
    """Write a month of transactions to a CSV file."""
    try:
        month = _validate_month(month)
    except click.BadParameter as exc:
        click.echo(f"Error: {exc.format_message()}", err=True)
        sys.exit(1)

    root = Path.cwd()
    config = _load_config_or_exit(root)

    from moni.export import export as export_csv
    from moni.store import open_store

    try:
        txns, _ = asyncio.run(_load_history(open_store(config.store, root), config.store.user_id))
        output_path = export_csv(txns, root / config.output_dir, month)
    except Exception as exc:
        click.echo(f"Error writing output: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Wrote {output_path}")
