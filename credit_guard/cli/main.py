"""
CLI interface for credit_guard.

Provides command-line access to the ledger, checkout and metering operations.
"""

import logging
import sys
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Iterator, List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from credit_guard.config.loader import load_config
from credit_guard.core.errors import CreditGuardError, InsufficientFundsError
from credit_guard.core.pricing import MODEL_OPTIONS
from credit_guard.sdk.factory import Services, build_services
from credit_guard.storage.repository import initialize_schema

app = typer.Typer(help="Credit ledger and usage metering for AI image generation.")
analytics_app = typer.Typer(help="Usage analytics derived from the event log.")
app.add_typer(analytics_app, name="analytics")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_INSUFFICIENT_FUNDS = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _services(ctx: typer.Context) -> Services:
    """Build the service graph once per invocation."""
    obj = ctx.ensure_object(dict)
    if "services" not in obj:
        try:
            config = load_config(obj.get("config_path"))
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Invalid configuration:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)
        obj["config"] = config
        with _handled():
            obj["services"] = build_services(config)
    return obj["services"]


@contextmanager
def _handled() -> Iterator[None]:
    """Map domain errors to messages and exit codes."""
    try:
        yield
    except InsufficientFundsError as e:
        console.print(
            f"[yellow]Insufficient credits:[/] {e.required} required, {e.balance} available"
        )
        sys.exit(EXIT_CODE_INSUFFICIENT_FUNDS)
    except CreditGuardError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(cents: float) -> str:
    """Format an amount in cents as dollars."""
    return f"${abs(cents) / 100:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """credit_guard CLI."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)["config_path"] = config
    if ctx.invoked_subcommand is None:
        console.print("credit_guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the credit_guard database."""
    try:
        config = load_config(ctx.ensure_object(dict).get("config_path"))
        initialize_schema(config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except (CreditGuardError, FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(ctx: typer.Context, user_id: str = typer.Argument(..., help="User identifier")):
    """Show a user's credit balance (creating the starter balance on first use)."""
    services = _services(ctx)
    with _handled():
        record = services.ledger.get(user_id)
    table = Table(title=f"Credits for {user_id}")
    table.add_column("Balance", justify="right")
    table.add_column("Purchased", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Reserved", justify="right")
    table.add_row(
        str(record.balance), str(record.total_purchased), str(record.total_used), str(record.reserved)
    )
    console.print(table)


@app.command()
def tiers(ctx: typer.Context):
    """List purchasable credit tiers."""
    services = _services(ctx)
    table = Table(title="Credit tiers")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Credits", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Description")
    for tier in services.pricing.tiers:
        table.add_row(
            tier.id, tier.name, str(tier.credits), _format_currency(tier.price_cents), tier.description
        )
    console.print(table)


@app.command("model-costs")
def model_costs(ctx: typer.Context):
    """List credit cost per image for each model."""
    services = _services(ctx)
    table = Table(title="Model costs")
    table.add_column("Model")
    table.add_column("Credits per image", justify="right")
    for model, cost in sorted(services.pricing.model_costs.items()):
        table.add_row(model, str(cost))
    console.print(table)


@app.command()
def models():
    """List supported image models with their sizes and qualities."""
    table = Table(title="Image models")
    table.add_column("Model")
    table.add_column("Sizes")
    table.add_column("Qualities")
    for model, options in MODEL_OPTIONS.items():
        table.add_row(model, ", ".join(options.sizes), ", ".join(options.qualities))
    console.print(table)


@app.command()
def checkout(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    tier_id: str = typer.Argument(..., help="Tier to purchase"),
):
    """Create a checkout session and a pending payment record."""
    services = _services(ctx)
    with _handled():
        result = services.reconciler.create_checkout(user_id, tier_id)
    console.print(f"[green]✓[/] Pending payment {result.payment.id}")
    console.print(f"Session: {result.payment.external_session_id}")
    console.print(f"Checkout URL: {result.redirect_url}")


@app.command()
def verify(ctx: typer.Context, session_id: str = typer.Argument(..., help="Checkout session id")):
    """Verify a paid checkout session and credit the user once."""
    services = _services(ctx)
    with _handled():
        result = services.reconciler.verify(session_id)
    if result.already_completed:
        console.print(f"Payment {result.payment.id} was already completed")
    else:
        console.print(f"[green]✓[/] Added {result.credits_added} credits")
    console.print(f"Balance: {result.balance}")


@app.command()
def webhook(
    ctx: typer.Context,
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw webhook body"),
    signature: str = typer.Option(..., "--signature", "-s", help="Stripe-Signature header value"),
):
    """Process a stored payment processor webhook payload."""
    services = _services(ctx)
    with _handled():
        result = services.reconciler.handle_webhook(payload_file.read_bytes(), signature)
    if result is None:
        console.print("Webhook received; no payment completed")
    elif result.already_completed:
        console.print(f"Payment {result.payment.id} was already completed")
    else:
        console.print(f"[green]✓[/] Added {result.credits_added} credits to {result.payment.user_id}")


@app.command()
def history(ctx: typer.Context, user_id: str = typer.Argument(..., help="User identifier")):
    """Show a user's purchase history, newest first."""
    services = _services(ctx)
    with _handled():
        payments = services.reconciler.history(user_id)
    if not payments:
        console.print(f"No purchases for {user_id}")
        return
    table = Table(title=f"Purchases for {user_id}")
    table.add_column("Payment")
    table.add_column("Tier")
    table.add_column("Credits", justify="right")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Created")
    for payment in payments:
        table.add_row(
            payment.id,
            payment.tier_id,
            str(payment.credits),
            _format_currency(payment.amount_cents),
            payment.status.value,
            payment.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("release-expired")
def release_expired(
    ctx: typer.Context,
    max_age: float = typer.Option(
        900.0, "--max-age", help="Release reservations older than this many seconds"
    ),
):
    """Return credits held by reservations that were never settled."""
    if max_age <= 0:
        console.print("[red]Error:[/] --max-age must be > 0")
        sys.exit(EXIT_CODE_FAIL)
    services = _services(ctx)
    with _handled():
        released = services.ledger.release_expired(timedelta(seconds=max_age))
    console.print(f"Released {released} expired reservation(s)")


@app.command()
def generate(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    prompt: str = typer.Argument(..., help="Image prompt"),
    model: str = typer.Option("dall-e-3", "--model", "-m", help="Image model"),
    size: Optional[str] = typer.Option(None, "--size", help="Image size, e.g. 1024x1024"),
    quality: Optional[str] = typer.Option(None, "--quality", help="Image quality"),
    style: Optional[str] = typer.Option(None, "--style", help="vivid or natural"),
    n: int = typer.Option(1, "--count", "-n", help="Number of images (1-10)"),
):
    """Generate images and charge credits for them."""
    services = _services(ctx)
    with _handled():
        result = services.images.generate(
            user_id, prompt, model=model, size=size, quality=quality, style=style, n=n
        )
    for image in result.value:
        console.print(image.url)
    console.print(f"Credits used: {result.cost}, remaining: {result.remaining}")


@app.command()
def batch(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    prompts: List[str] = typer.Argument(..., help="Prompts, one image each"),
    model: str = typer.Option("dall-e-3", "--model", "-m", help="Image model"),
    size: Optional[str] = typer.Option(None, "--size", help="Image size"),
    quality: Optional[str] = typer.Option(None, "--quality", help="Image quality"),
):
    """Generate one image per prompt; only successes are charged."""
    services = _services(ctx)
    with _handled():
        result = services.images.generate_batch(
            user_id, prompts, model=model, size=size, quality=quality
        )
    table = Table(title="Batch results")
    table.add_column("Prompt")
    table.add_column("Result")
    for item in result.results:
        outcome = item.value.url if item.success else f"[red]failed:[/] {item.error}"
        table.add_row(item.item, outcome)
    console.print(table)
    console.print(f"Credits used: {result.credits_used}, remaining: {result.remaining}")


@analytics_app.command()
def summary(ctx: typer.Context):
    """Show global usage and revenue counters."""
    services = _services(ctx)
    with _handled():
        stats = services.recorder.summary()
    console.print("\n[bold]Usage Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Images generated: {stats.total_generated}")
    console.print(f"Images failed: {stats.total_failed}")
    console.print(f"Credits purchased: {stats.total_credits_purchased}")
    console.print(f"Credits used: {stats.total_credits_used}")
    console.print(f"Revenue: {_format_currency(stats.total_revenue_cents)}")
    console.print(f"Unique users: {stats.unique_users}")
    console.print(f"Conversion rate: {stats.conversion_rate:.1f}%")
    console.print(f"Avg revenue per user: {_format_currency(stats.avg_revenue_per_user)}")
    if stats.top_models:
        console.print("Top models: " + ", ".join(f"{m} ({c})" for m, c in stats.top_models))


@analytics_app.command()
def daily(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Number of most recent days"),
):
    """Show per-day counters."""
    services = _services(ctx)
    with _handled():
        rows = services.recorder.daily(days)
    table = Table(title="Daily usage")
    for column in ("Date", "Generated", "Failed", "Purchased", "Used", "Revenue", "Users"):
        table.add_column(column, justify="left" if column == "Date" else "right")
    for agg in rows:
        table.add_row(
            agg.date,
            str(agg.generated),
            str(agg.failed),
            str(agg.credits_purchased),
            str(agg.credits_used),
            _format_currency(agg.revenue_cents),
            str(len(agg.unique_users)),
        )
    console.print(table)


@analytics_app.command("models")
def analytics_models(ctx: typer.Context):
    """Show the most generated models."""
    services = _services(ctx)
    with _handled():
        top = services.recorder.models()
    table = Table(title="Top models")
    table.add_column("Model")
    table.add_column("Images", justify="right")
    for model, count in top:
        table.add_row(model, str(count))
    console.print(table)


@analytics_app.command()
def funnel(ctx: typer.Context):
    """Show user conversion from visit to generation to purchase."""
    services = _services(ctx)
    with _handled():
        stats = services.recorder.funnel()
    console.print(f"Total users: {stats.total_users}")
    console.print(f"Generating users: {stats.generating_users} ({stats.generation_rate:.1f}%)")
    console.print(f"Purchasing users: {stats.purchasing_users} ({stats.purchase_rate:.1f}%)")
    console.print(f"Purchase rate from generators: {stats.purchase_rate_from_generators:.1f}%")


@analytics_app.command()
def events(
    ctx: typer.Context,
    limit: int = typer.Option(50, "--limit", "-l"),
    offset: int = typer.Option(0, "--offset", "-o"),
):
    """List recent usage events, newest first."""
    services = _services(ctx)
    with _handled():
        page = services.recorder.recent_events(limit=limit, offset=offset)
    table = Table(title=f"Events ({page.total} total)")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("User")
    table.add_column("Details")
    for event in page.events:
        details = ", ".join(f"{k}={v}" for k, v in sorted(event.metadata.items()) if v is not None)
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"), event.type.value, event.user_id, details
        )
    console.print(table)
    if page.has_more:
        console.print(f"[dim]More events available (use --offset {offset + limit})[/]")


@analytics_app.command()
def health(ctx: typer.Context):
    """Report event log status."""
    services = _services(ctx)
    with _handled():
        status = services.recorder.health()
    console.print(f"Status: {status.status}")
    console.print(f"Total events: {status.total_events}")
    console.print(f"Days tracked: {status.days_tracked}")
    console.print(f"Last updated: {status.last_updated or 'never'}")


@analytics_app.command()
def replay(ctx: typer.Context):
    """Rebuild the analytics view from the event log."""
    services = _services(ctx)
    with _handled():
        state = services.recorder.replay()
    console.print(f"[green]✓[/] Rebuilt analytics: {state.generated} images, {len(state.users)} users")


if __name__ == "__main__":
    app()
