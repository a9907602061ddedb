"""CLI for staking rewards tracker."""

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.traceback import install

from staking_rewards_tracker.core.errors import DeletionError, InvalidInputError, NotFoundError, RewardTrackerError
from staking_rewards_tracker.core.ledger import Ledger, MonthStatus, build_ledger
from staking_rewards_tracker.core.models import HoldingStatus, Tracker
from staking_rewards_tracker.core.reconciliation import ReconciliationEngine
from staking_rewards_tracker.core.sync import SyncReport, TrackerSynchronizer
from staking_rewards_tracker.data import get_policy, get_policy_table, load_trackers
from staking_rewards_tracker.ingestion import (
    BeaconchaClient,
    ConsensusRewardsAdapter,
    EtherscanClient,
    ExplorerIngestionAdapter,
)
from staking_rewards_tracker.pricing import CoinGeckoPricing, PriceIndex, update_price_index
from staking_rewards_tracker.storage import open_file_stores

# Install rich traceback handler
install(show_locals=False)

app = typer.Typer(
    name="staking-rewards-tracker",
    help="Track staking rewards, their fiat value, tax due and capital-gains exemption",
    add_completion=False,
)

console = Console()
# Log records go to stderr so JSON output stays parseable
log_console = Console(stderr=True)


class OutputFormat(StrEnum):
    """Output format options."""

    TABLE = "table"
    JSON = "json"


class Settings:
    """Paths and flags shared by all commands."""

    def __init__(self, config: Path, data_dir: Path, prices_file: Path | None, debug: bool) -> None:
        self.config = config
        self.data_dir = data_dir
        self.prices_file = prices_file or data_dir / "prices.json"
        self.debug = debug

    def trackers(self) -> list[Tracker]:
        try:
            return load_trackers(self.config)
        except OSError as e:
            msg = f"Cannot read tracker configuration {self.config}: {e}"
            raise InvalidInputError(msg) from e

    def tracker(self, tracker_id: str) -> Tracker:
        for tracker in self.trackers():
            if tracker.id == tracker_id:
                return tracker
        msg = f"Unknown tracker {tracker_id}"
        raise NotFoundError(msg)

    def engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(*open_file_stores(self.data_dir))


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=log_console, rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _fail(settings: Settings, error: Exception) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {error}")
    if settings.debug:
        # Rich traceback will handle this
        raise error
    raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        Path("trackers.yaml"), "--config", "-c", envvar="REWARDS_CONFIG", help="Tracker configuration file"
    ),
    data_dir: Path = typer.Option(
        Path(".rewards-data"), "--data-dir", envvar="REWARDS_DATA_DIR", help="Directory holding the event stores"
    ),
    prices_file: Path | None = typer.Option(
        None, "--prices-file", envvar="REWARDS_PRICES_FILE", help="Price index JSON (default: DATA_DIR/prices.json)"
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug output"),
) -> None:
    """Track staking rewards per node address."""
    _configure_logging(debug)
    ctx.obj = Settings(config, data_dir, prices_file, debug)


@app.command()
def sync(
    ctx: typer.Context,
    tracker_id: str | None = typer.Argument(None, help="Only sync this tracker"),
    etherscan_key: str | None = typer.Option(None, envvar="ETHERSCAN_API_KEY", help="Etherscan API key"),
    beaconcha_key: str | None = typer.Option(None, envvar="BEACONCHA_API_KEY", help="beaconcha.in API key"),
    workers: int = typer.Option(4, "--workers", "-w", min=1, help="Trackers synced in parallel"),
) -> None:
    """
    Fetch new rewards and reconcile them with the stores.

    Examples:

        # Sync every tracker in trackers.yaml
        staking-rewards-tracker sync

        # Sync one tracker with debug output
        staking-rewards-tracker --debug sync my-node
    """
    settings: Settings = ctx.obj
    try:
        trackers = [settings.tracker(tracker_id)] if tracker_id else settings.trackers()
    except RewardTrackerError as e:
        _fail(settings, e)

    if not etherscan_key:
        console.print("[yellow]ETHERSCAN_API_KEY not set, skipping explorer ingestion[/yellow]")
    if not beaconcha_key and any(t.validator_public_key for t in trackers):
        console.print("[yellow]BEACONCHA_API_KEY not set, skipping consensus-layer rewards[/yellow]")

    etherscan = EtherscanClient(etherscan_key) if etherscan_key else None
    beaconcha = BeaconchaClient(beaconcha_key) if beaconcha_key else None
    synchronizer = TrackerSynchronizer(
        settings.engine(),
        explorer=ExplorerIngestionAdapter(etherscan) if etherscan else None,
        consensus=ConsensusRewardsAdapter(beaconcha) if beaconcha else None,
    )

    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
            task = progress.add_task(f"Syncing {len(trackers)} trackers...", total=None)
            reports = synchronizer.sync_all(trackers, max_workers=workers)
            progress.update(task, description="✓ Sync complete")
    finally:
        if etherscan:
            etherscan.close()
        if beaconcha:
            beaconcha.close()

    _output_sync_reports(reports)
    if any(not report.ok for report in reports):
        raise typer.Exit(1)


@app.command()
def ledger(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Tracker to show"),
    year: int | None = typer.Option(None, "--year", "-y", help="Only show this UTC year"),
    month: int | None = typer.Option(None, "--month", "-m", min=1, max=12, help="Only show this month"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Show valued rewards, tax due and exemption state of a tracker."""
    settings: Settings = ctx.obj
    try:
        tracker = settings.tracker(tracker_id)
        price_index = PriceIndex.load(settings.prices_file)
        events = settings.engine().canonical_events(tracker.id)
    except RewardTrackerError as e:
        _fail(settings, e)

    result = build_ledger(tracker, events, price_index, get_policy(tracker.country), int(time.time()))

    if format == OutputFormat.JSON:
        _output_json(result, year, month)
    else:
        _output_ledger_table(result, year, month)


@app.command("mark-paid")
def mark_paid(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Owning tracker"),
    event_hash: str = typer.Argument(..., help="Reward hash"),
    swap_hash: str | None = typer.Option(None, "--swap-hash", help="Transaction that settled the tax"),
) -> None:
    """Mark the tax of a reward as paid."""
    settings: Settings = ctx.obj
    try:
        warnings = settings.engine().mark_paid(tracker_id, event_hash, swap_hash)
    except RewardTrackerError as e:
        _fail(settings, e)
    _print_warnings(warnings)
    console.print(f"[green]✓[/green] Marked {event_hash} as paid")


@app.command("mark-unpaid")
def mark_unpaid(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Owning tracker"),
    event_hash: str = typer.Argument(..., help="Reward hash"),
) -> None:
    """Revert a reward to unpaid."""
    settings: Settings = ctx.obj
    try:
        warnings = settings.engine().mark_unpaid(tracker_id, event_hash)
    except RewardTrackerError as e:
        _fail(settings, e)
    _print_warnings(warnings)
    console.print(f"[green]✓[/green] Marked {event_hash} as unpaid")


def _set_holding(ctx: typer.Context, tracker_id: str, event_hash: str, status: HoldingStatus) -> None:
    settings: Settings = ctx.obj
    try:
        settings.engine().set_holding(tracker_id, event_hash, status)
    except RewardTrackerError as e:
        _fail(settings, e)
    console.print(f"[green]✓[/green] Marked {event_hash} as {status}")


@app.command()
def hold(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Owning tracker"),
    event_hash: str = typer.Argument(..., help="Reward hash"),
) -> None:
    """Mark a reward as still held."""
    _set_holding(ctx, tracker_id, event_hash, HoldingStatus.HOLDING)


@app.command()
def sell(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Owning tracker"),
    event_hash: str = typer.Argument(..., help="Reward hash"),
) -> None:
    """Mark a reward as sold, which removes it from the exemption totals."""
    _set_holding(ctx, tracker_id, event_hash, HoldingStatus.SOLD)


@app.command("sell-range")
def sell_range(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Owning tracker"),
    year: int = typer.Option(..., "--year", "-y", help="UTC year"),
    start_month: int = typer.Option(1, "--start-month", min=1, max=12, help="First month"),
    end_month: int = typer.Option(12, "--end-month", min=1, max=12, help="Last month"),
) -> None:
    """Mark every reward received in a year or month range as sold."""
    settings: Settings = ctx.obj
    if start_month > end_month:
        console.print("[bold red]Error:[/bold red] --start-month must not be after --end-month")
        raise typer.Exit(1)
    try:
        marked = settings.engine().mark_sold_in_range(tracker_id, year, start_month, end_month)
    except RewardTrackerError as e:
        _fail(settings, e)
    console.print(f"[green]✓[/green] Marked {marked} rewards as sold")


@app.command("delete-events")
def delete_events(
    ctx: typer.Context,
    tracker_id: str = typer.Argument(..., help="Tracker whose rewards are deleted"),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
) -> None:
    """Delete every stored reward of a tracker from all stores."""
    settings: Settings = ctx.obj
    if not yes:
        typer.confirm(f"Delete all rewards of {tracker_id} from every store?", abort=True)
    try:
        settings.engine().delete_tracker_events(tracker_id)
    except DeletionError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        for store, error in e.failures.items():
            console.print(f"  [red]{store}[/red]: {error}")
        raise typer.Exit(1)
    except RewardTrackerError as e:
        _fail(settings, e)
    console.print(f"[green]✓[/green] Deleted all rewards of {tracker_id}")


@app.command("update-prices")
def update_prices(
    ctx: typer.Context,
    start: datetime = typer.Option(..., "--start", formats=["%Y-%m-%d"], help="First date"),
    end: datetime | None = typer.Option(None, "--end", formats=["%Y-%m-%d"], help="Last date (default: yesterday)"),
    coingecko_key: str | None = typer.Option(None, envvar="COINGECKO_API_KEY", help="CoinGecko demo API key"),
    from_url: str | None = typer.Option(None, "--from-url", help="Seed from a published price index first"),
) -> None:
    """Fill missing dates of the price index from CoinGecko."""
    settings: Settings = ctx.obj
    end_date = end.date() if end else datetime.now(UTC).date() - timedelta(days=1)

    try:
        index = PriceIndex.load(settings.prices_file)
        if from_url:
            for entry in PriceIndex.fetch(from_url):
                if entry.date_key not in index:
                    index.publish(entry)

        missing = index.missing_dates(start.date(), end_date)
        console.print(f"[cyan]{len(missing)} dates missing between {start.date()} and {end_date}[/cyan]")
        with CoinGeckoPricing(api_key=coingecko_key) as oracle:
            added = update_price_index(index, oracle, start.date(), end_date)
        index.save(settings.prices_file)
    except RewardTrackerError as e:
        _fail(settings, e)

    console.print(f"[green]✓[/green] Added {len(added)} prices, index has {len(index)} dates")


@app.command("list-trackers")
def list_trackers(ctx: typer.Context) -> None:
    """List configured trackers."""
    settings: Settings = ctx.obj
    try:
        trackers = settings.trackers()
    except RewardTrackerError as e:
        _fail(settings, e)

    table = Table(title="Trackers", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Withdrawal Address", style="green")
    table.add_column("Country", style="yellow")
    table.add_column("Tax %", justify="right")
    table.add_column("Validator", style="dim")

    for tracker in trackers:
        key = tracker.validator_public_key
        table.add_row(
            tracker.id,
            tracker.name,
            tracker.wallet_address,
            tracker.country,
            str(tracker.tax_rate),
            f"{key[:10]}...{key[-6:]}" if key else "-",
        )

    console.print(table)


@app.command("list-policies")
def list_policies() -> None:
    """List capital-gains exemption policies."""
    table_data = get_policy_table()

    table = Table(title="Exemption Policies", show_header=True, header_style="bold magenta")
    table.add_column("Country", style="cyan")
    table.add_column("Exemption", style="green")
    table.add_column("Holding Period", justify="right")
    table.add_column("Default Tax %", justify="right")

    for country in table_data.countries():
        policy = table_data.get(country)
        table.add_row(
            policy.country,
            "✓ Enabled" if policy.enabled else "Disabled",
            policy.describe_period() if policy.enabled else "-",
            str(policy.default_tax_rate),
        )

    console.print(table)


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]![/yellow] {warning}")


def _output_sync_reports(reports: list[SyncReport]) -> None:
    """Output sync results as rich table."""
    table = Table(title="Sync Results", show_header=True, header_style="bold magenta")
    table.add_column("Tracker", style="cyan")
    table.add_column("Events", justify="right")
    table.add_column("New", style="bold green", justify="right")
    table.add_column("Epochs", justify="right")
    table.add_column("Validator", style="blue")
    table.add_column("Status")

    for report in reports:
        overview = report.validator_overview
        if not report.ok:
            status = "[red]failed[/red]"
        elif report.warnings:
            status = f"[yellow]{len(report.warnings)} warnings[/yellow]"
        else:
            status = "[green]✓[/green]"
        table.add_row(
            report.tracker_id,
            str(len(report.events)),
            str(report.new_events),
            str(report.epochs_processed),
            overview.status if overview else "-",
            status,
        )

    console.print(table)

    for report in reports:
        if report.error:
            console.print(f"[bold red]{report.tracker_id}:[/bold red] {report.error}")
        for warning in report.warnings:
            console.print(f"[yellow]{report.tracker_id}:[/yellow] {warning}")


_MONTH_MARKS = {
    MonthStatus.NONE: "[dim]·[/dim]",
    MonthStatus.TAXABLE: "[red]●[/red]",
    MonthStatus.EXEMPT: "[green]●[/green]",
    MonthStatus.MIXED: "[yellow]●[/yellow]",
}


def _output_ledger_table(result: Ledger, year: int | None, month: int | None) -> None:
    """Output ledger as rich table."""
    entries = result.filter(year, month)
    if not entries:
        console.print("\n[yellow]No rewards found[/yellow]")
        return

    currency = str(result.currency)
    table = Table(title=f"Rewards of {result.tracker_id}", show_header=True, header_style="bold magenta")
    table.add_column("Date (UTC)", style="cyan")
    table.add_column("Source", style="blue")
    table.add_column("Amount", justify="right")
    table.add_column(f"Price {currency}", justify="right")
    table.add_column(f"Value {currency}", style="bold green", justify="right")
    table.add_column(f"Tax {currency}", justify="right")
    table.add_column("Status", style="yellow")
    table.add_column("Exempt", justify="right")
    table.add_column("Hash", style="dim")

    for entry in entries:
        event, valuation, exemption = entry.event, entry.valuation, entry.exemption
        received = datetime.fromtimestamp(event.timestamp_sec, tz=UTC).strftime("%Y-%m-%d %H:%M")
        price = f"{valuation.price:,.2f}" + ("*" if valuation.used_fallback else "")
        if exemption.exempt:
            exempt = "[green]yes[/green]"
        elif exemption.exempt_since is not None:
            exempt = f"{exemption.progress_ratio:.0%}"
        else:
            exempt = "-"
        table.add_row(
            received,
            str(event.source_kind),
            f"{event.amount:,.6f}",
            price if valuation.valued else "[red]n/a[/red]",
            f"{valuation.fiat_value:,.2f}" if valuation.valued else "[red]n/a[/red]",
            f"{valuation.tax_fiat:,.2f}" if valuation.valued else "[red]n/a[/red]",
            str(event.status) + (" (sold)" if event.holding_override == HoldingStatus.SOLD else ""),
            exempt,
            f"{event.hash[:10]}...{event.hash[-6:]}" if len(event.hash) > 20 else event.hash,
        )

    console.print("\n")
    console.print(table)

    summary_table = Table(show_header=False, box=None)
    summary_table.add_column("Label", style="bold")
    summary_table.add_column("Value", style="bold green")
    summary_table.add_row("Total Rewards:", f"{result.total_amount:,.6f}")
    summary_table.add_row("Total Value:", f"{result.total_fiat:,.2f} {currency}")
    summary_table.add_row("Total Tax:", f"{result.total_tax_fiat:,.2f} {currency} ({result.total_tax_asset:,.6f})")
    summary_table.add_row("Unpaid Tax:", f"{result.unpaid_tax_fiat:,.2f} {currency}")
    summary_table.add_row("Exempt Holdings:", f"{result.exempt_amount:,.6f} ({result.exempt_fiat:,.2f} {currency})")

    if year is not None:
        statuses = result.monthly_status(year)
        summary_table.add_row("", "")
        summary_table.add_row(f"[bold]{year} by month:[/bold]", " ".join(_MONTH_MARKS[s] for s in statuses.values()))

    console.print("\n")
    console.print(summary_table)

    if result.unvalued_hashes:
        console.print(f"\n[yellow]{len(result.unvalued_hashes)} rewards have no price and are excluded from fiat totals[/yellow]")
    console.print("\n")


def _output_json(result: Ledger, year: int | None, month: int | None) -> None:
    """Output ledger as JSON."""
    data = result.model_dump(mode="json")
    data["entries"] = [entry.model_dump(mode="json") for entry in result.filter(year, month)]
    if year is not None:
        data["monthly_status"] = {str(m): str(s) for m, s in result.monthly_status(year).items()}

    json_str = json.dumps(data, indent=2)
    typer.echo(json_str)


if __name__ == "__main__":
    app()
