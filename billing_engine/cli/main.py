"""
CLI interface for the billing engine.

Provides command-line access to the invoice store, billing runs and the
monthly scheduler.
"""

import dataclasses
import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from billing_engine.config.loader import BillingConfig, DatabaseConfig, load_billing_config
from billing_engine.core.billing import BillingRunSummary, BillingService, reset_invoices
from billing_engine.core.scheduler import MonthlyScheduler, billing_day_predicate
from billing_engine.demo.seed_demo_data import seed_demo_invoices
from billing_engine.providers import SimulatedPaymentProvider
from billing_engine.storage.models import InvoiceStatus
from billing_engine.storage.repository import InvoiceRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")
DbOption = typer.Option(None, "--db", help="Override the database path from the configuration")


def _configure_logging(verbose: bool) -> None:
    """Route engine logs to stderr through rich."""
    engine_logger = logging.getLogger("billing_engine")
    engine_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, RichHandler) for h in engine_logger.handlers):
        engine_logger.addHandler(
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
        )


def _load_settings(config_path: Optional[str], db_path: Optional[str]) -> BillingConfig:
    """Load configuration, applying the --db override if given."""
    config = load_billing_config(config_path) if config_path else BillingConfig()
    if db_path:
        config = dataclasses.replace(config, database=DatabaseConfig(path=db_path))
    return config


def _build_service(config: BillingConfig) -> BillingService:
    """Wire the sqlite store and simulated provider into a billing service."""
    repository = InvoiceRepository(config.database.path)
    provider = SimulatedPaymentProvider(
        repository.fetch_customers(),
        decline_rate=config.provider.decline_rate,
        network_failure_rate=config.provider.network_failure_rate,
        seed=config.provider.seed
    )
    return BillingService(
        repository,
        provider,
        retry_base_timeout_ms=config.billing.retry_base_timeout_ms,
        max_concurrency=config.billing.max_concurrency,
        logger=logging.getLogger("billing_engine.runner")
    )


def _fail_missing_schema(error: sqlite3.OperationalError) -> None:
    if "no such table" in str(error).lower():
        console.print("[bold yellow]Database is not initialized.[/] Run `billing-engine init` first.")
    else:
        console.print(f"[red]Database error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")
):
    """Invoice billing engine CLI."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Billing Engine - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Initialize the invoice database."""
    try:
        settings = _load_settings(config, db)
        initialize_schema(settings.database.path)
        console.print(f"[green]✓[/] Database initialized at {settings.database.path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def seed(
    customers: int = typer.Option(100, "--customers", help="Number of demo customers"),
    invoices: int = typer.Option(10, "--invoices", help="Invoices per customer"),
    random_seed: Optional[int] = typer.Option(None, "--seed", help="Seed for reproducible data"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption
):
    """Insert demo customers and invoices, one PENDING invoice per customer."""
    try:
        settings = _load_settings(config, db)
        repository = InvoiceRepository(settings.database.path)
        inserted = seed_demo_invoices(repository, customers, invoices, seed=random_seed)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Inserted {inserted} invoices for {customers} customers")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Charge every PENDING invoice now, regardless of the billing day."""
    try:
        settings = _load_settings(config, db)
        service = _build_service(settings)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    summary = service.run_billing_cycle()
    _display_summary(summary)
    sys.exit(EXIT_CODE_FAIL if summary.failed else EXIT_CODE_PASS)


@app.command()
def reset(config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Reset every invoice back to PENDING so a billing run can be repeated."""
    try:
        settings = _load_settings(config, db)
        count = reset_invoices(
            InvoiceRepository(settings.database.path),
            logger=logging.getLogger("billing_engine.runner")
        )
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Reset {count} invoices to PENDING")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Show how many invoices are in each status."""
    try:
        settings = _load_settings(config, db)
        counts = InvoiceRepository(settings.database.path).count_by_status()
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Invoices by status")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for invoice_status, count in counts.items():
        table.add_row(invoice_status.value, str(count))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("invoices")
def list_invoices(
    status_filter: Optional[str] = typer.Option(
        None,
        "--status",
        "-s",
        help="Only show invoices in this status (PENDING, PAID, ERROR)"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows to show"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption
):
    """List invoices."""
    try:
        wanted = InvoiceStatus(status_filter.upper()) if status_filter else None
    except ValueError:
        valid = ", ".join(s.value for s in InvoiceStatus)
        console.print(f"[red]Error:[/] --status must be one of: {valid}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        settings = _load_settings(config, db)
        rows = InvoiceRepository(settings.database.path).fetch_invoices(status=wanted)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Invoices ({len(rows)})")
    table.add_column("ID", justify="right")
    table.add_column("Customer", justify="right")
    table.add_column("Amount", justify="right")
    table.add_column("Currency")
    table.add_column("Status")
    for invoice in rows[:limit]:
        table.add_row(
            str(invoice.id),
            str(invoice.customer_id),
            f"{invoice.amount.value:,.2f}",
            invoice.amount.currency.value,
            invoice.status.value
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def schedule(
    check_now: bool = typer.Option(
        False,
        "--check-now",
        help="Evaluate today before waiting for the next midnight"
    ),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption
):
    """
    Run the monthly billing scheduler until interrupted.

    The scheduler wakes at every local midnight and bills all PENDING invoices
    when the day matches the configured billing day of the month.
    """
    try:
        settings = _load_settings(config, db)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    def trigger():
        summary = _build_service(settings).run_billing_cycle()
        _display_summary(summary)

    scheduler = MonthlyScheduler(
        predicate=billing_day_predicate(settings.billing.day_of_month),
        logger=logging.getLogger("billing_engine.scheduler")
    )
    if check_now:
        scheduler.tick(trigger)
    scheduler.schedule(trigger)
    console.print(
        f"[green]✓[/] Billing scheduled on day {settings.billing.day_of_month} of each month. "
        "Press Ctrl+C to stop."
    )
    try:
        while scheduler.is_running:
            scheduler.join(timeout=1.0)
    except KeyboardInterrupt:
        scheduler.stop()
        scheduler.join(timeout=1.0)
    sys.exit(EXIT_CODE_PASS)


def _display_summary(summary: BillingRunSummary):
    """Display the outcome of a billing run."""
    console.print("\n[bold]Billing Run Result[/bold]")
    console.print("-" * 40)

    if summary.failed:
        console.print("[red]Billing run failed before all invoices were charged. See logs.[/]")
        return

    table = Table(show_header=False)
    table.add_column("Outcome")
    table.add_column("Invoices", justify="right")
    table.add_row("Fetched", str(summary.fetched))
    table.add_row("Skipped (not pending)", str(summary.skipped))
    table.add_row("[green]Paid[/]", str(summary.paid))
    table.add_row("[red]Error[/]", str(summary.errored))
    table.add_row("[yellow]Unresolved[/]", str(summary.unresolved))
    console.print(table)


if __name__ == "__main__":
    app()
