"""
CLI entrypoint for the trade diary.

Provides commands to ingest exported fills, record and close positions by
hand, and inspect the diary.
"""
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from trade_diary.cli_output import print_critical_error
from trade_diary.config.config import load_config
from trade_diary.domain.models import PositionStatus, SOURCE_IMPORT
from trade_diary.exceptions import DataError, OperationalError
from trade_diary.ledger.service import LedgerService
from trade_diary.monitoring.logger import get_logger, setup_logging
from trade_diary.reporting.stats import compute_stats
from trade_diary.storage.db import init_db
from trade_diary.storage.repository import PositionRepository

app = typer.Typer(
    name="trade-diary",
    help="FIFO trade diary built from exchange fills",
    add_completion=False,
)

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(None, "--config", help="Path to config file")


def _fmt(value) -> str:
    """Plain notation without trailing zeros."""
    return format(value.normalize(), "f")


def _build_service(config_path: Optional[Path]) -> LedgerService:
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    db = init_db(config.data.database_url, echo=config.data.echo_sql)
    return LedgerService.from_config(PositionRepository(db), config)


@app.command(name="init-db")
def init_db_cmd(config_path: Optional[Path] = _CONFIG_OPTION):
    """Create the positions table if it does not exist."""
    config = load_config(config_path)
    init_db(config.data.database_url)
    typer.echo(f"Database ready: {config.data.database_url}")


@app.command()
def ingest(
    owner: int = typer.Option(..., "--owner", help="Owner/profile id"),
    file: Path = typer.Option(..., "--file", help="JSON export of fills"),
    source: str = typer.Option(SOURCE_IMPORT, "--source", help="Fill format/provenance: bybit, okx or import"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """
    Ingest a JSON export of fills. Re-running with an overlapping export is safe.

    Example:
        trade-diary ingest --owner 1 --file fills.json --source bybit
    """
    from trade_diary.exchanges.file_source import JsonFileFillSource

    service = _build_service(config_path)
    try:
        summary = service.sync(owner, JsonFileFillSource(file, source=source))
    except OperationalError as e:
        logger.error("Ingestion failed", owner_id=owner, file=str(file), error=str(e))
        print_critical_error("INGESTION FAILED", e, include_type=True)
        raise typer.Exit(1)

    typer.echo(json.dumps(summary.to_dict(), indent=2))


@app.command()
def buy(
    owner: int = typer.Option(..., "--owner", help="Owner/profile id"),
    symbol: str = typer.Option(..., "--symbol", help="Symbol, e.g. BTCUSDT"),
    quantity: str = typer.Option(..., "--qty", help="Quantity bought"),
    price: str = typer.Option(..., "--price", help="Entry price"),
    fee: str = typer.Option("0", "--fee", help="Entry commission in quote currency"),
    time_ms: Optional[int] = typer.Option(None, "--time", help="Entry time (epoch ms), default now"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """Record a manual buy as a new OPEN position."""
    service = _build_service(config_path)
    try:
        position = service.record_manual_buy(owner, symbol, quantity, price, fee=fee, time=time_ms)
    except DataError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    if position is None:
        typer.echo("Buy already recorded, nothing to do")
        return
    typer.echo(json.dumps(position.to_dict(), indent=2))


@app.command()
def close(
    owner: int = typer.Option(..., "--owner", help="Owner/profile id"),
    position_id: int = typer.Argument(..., help="Position id"),
    exit_price: str = typer.Option(..., "--price", help="Exit price"),
    exit_time: Optional[int] = typer.Option(None, "--time", help="Exit time (epoch ms), default now"),
    exit_commission: str = typer.Option("0", "--fee", help="Exit commission in quote currency"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """Manually close one OPEN position."""
    service = _build_service(config_path)
    try:
        position = service.close_position(
            owner, position_id, exit_price, exit_time=exit_time, exit_commission=exit_commission
        )
    except DataError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    typer.echo(json.dumps(position.to_dict(), indent=2))


@app.command()
def positions(
    owner: int = typer.Option(..., "--owner", help="Owner/profile id"),
    status: Optional[str] = typer.Option(None, "--status", help="OPEN or CLOSED"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """List positions, newest entry first."""
    status_filter = None
    if status:
        try:
            status_filter = PositionStatus(status.upper())
        except ValueError:
            typer.echo(f"Unknown status: {status}. Valid: OPEN, CLOSED", err=True)
            raise typer.Exit(2)

    service = _build_service(config_path)
    rows = service.list_positions(owner, status_filter)

    if as_json:
        typer.echo(json.dumps([p.to_dict() for p in rows], indent=2))
        return

    table = Table(title=f"Positions (owner {owner})")
    for column in ("ID", "Symbol", "Status", "Qty", "Entry", "Exit", "P/L", "P/L %", "Minutes", "Source"):
        table.add_column(column)
    for p in rows:
        table.add_row(
            str(p.id),
            p.symbol,
            p.status.value,
            _fmt(p.quantity),
            _fmt(p.entry_price),
            _fmt(p.exit_price) if p.exit_price is not None else "-",
            str(p.profit_loss) if p.profit_loss is not None else "-",
            str(p.profit_loss_percent) if p.profit_loss_percent is not None else "-",
            str(p.duration_minutes) if p.duration_minutes is not None else "-",
            p.source,
        )
    Console().print(table)


@app.command()
def stats(
    owner: int = typer.Option(..., "--owner", help="Owner/profile id"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """Aggregate statistics over the owner's diary."""
    service = _build_service(config_path)
    result = compute_stats(service.list_positions(owner))
    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Trade Diary

    Reconstructs round-trip positions from exchange fills with strict FIFO matching.
    """
    if version:
        typer.echo("Trade Diary v1.0.0")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


if __name__ == "__main__":
    app()
