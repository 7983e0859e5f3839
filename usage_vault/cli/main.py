"""
CLI interface for Usage Vault.

Operator commands for pricing, attestations, hybrid usage and vaults left
without a stored credential.
"""

import logging
import sqlite3
import sys
import warnings
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_vault.config.loader import PricingConfig, Settings, load_pricing_config
from usage_vault.core.cipher import key_preview
from usage_vault.core.errors import AttestationWriteError, VaultBillingError
from usage_vault.core.pricing import calculate_cost, price
from usage_vault.core.reconciliation import HybridUsage, UsageReconciler, format_age
from usage_vault.sdk.gateway_client import GatewayClient
from usage_vault.storage.models import UsageConfirmedSnapshot
from usage_vault.storage.repository import VaultRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_WARN = 0  # Non-failing warning
EXIT_CODE_FAIL = 1


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        console.print(f"[red]Invalid settings:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _load_pricing(config_path: Optional[str], settings: Settings) -> PricingConfig:
    try:
        return load_pricing_config(config_path or settings.pricing_config)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid pricing config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _print_not_initialized() -> None:
    console.print("\n[bold yellow]Database is not initialized[/]")
    console.print("Run `usage-vault init` first.\n")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Usage Vault CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Usage Vault - Use --help to see available commands")


@app.command()
def init(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Initialize the Usage Vault database."""
    settings = _load_settings()
    try:
        initialize_schema(db or settings.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def tiers(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Pricing config YAML"),
):
    """Show pricing tiers and model multipliers."""
    pricing = _load_pricing(config, _load_settings())

    table = Table(title=f"Pricing tiers (markup {pricing.markup_pct}%)")
    table.add_column("Tier")
    table.add_column("Tokens")
    table.add_column("Base / 1K", justify="right")
    table.add_column("Discount", justify="right")
    for tier in pricing.table.tiers:
        high = f"{tier.token_range_high:,}" if tier.token_range_high is not None else "∞"
        table.add_row(
            tier.name,
            f"{tier.token_range_low:,} - {high}",
            f"${tier.base_price_per_1k}",
            f"{tier.volume_discount * 100:.0f}%",
        )
    console.print(table)

    if pricing.table.model_multipliers:
        models = Table(title="Model multipliers")
        models.add_column("Model")
        models.add_column("Multiplier", justify="right")
        for model, multiplier in sorted(pricing.table.model_multipliers.items()):
            models.add_row(model, f"{multiplier}x")
        console.print(models)


@app.command("price")
def price_command(
    cumulative_tokens: int = typer.Argument(..., help="Cumulative tokens used so far"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model identifier"),
    markup: Optional[float] = typer.Option(None, "--markup", help="Markup percentage (0-500)"),
    tokens: int = typer.Option(1000, "--tokens", "-t", help="Tokens to price"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Pricing config YAML"),
):
    """Resolve the effective price for a usage volume and model."""
    pricing = _load_pricing(config, _load_settings())
    markup_pct = pricing.markup_pct if markup is None else markup
    try:
        tier = pricing.table.get_tier(cumulative_tokens)
        unit = price(cumulative_tokens, model, markup_pct, pricing.table)
        cost = calculate_cost(tokens, cumulative_tokens, model, markup_pct, pricing.table)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold]Tier:[/bold] {tier.name}")
    console.print(f"Price per 1K tokens: ${unit}")
    console.print(f"Cost of {tokens:,} tokens: ${cost}")


@app.command()
def attest(
    vault_id: int = typer.Argument(..., help="Vault identifier"),
    tokens: int = typer.Option(..., "--tokens", help="Cumulative attested tokens"),
    requests: int = typer.Option(..., "--requests", help="Cumulative attested requests"),
    cost: str = typer.Option(..., "--cost", help="Cumulative attested cost"),
    round_id: Optional[str] = typer.Option(None, "--round", help="Attestation round"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Record a confirmed usage attestation for a vault."""
    settings = _load_settings()
    try:
        snapshot = UsageConfirmedSnapshot(
            tokens=tokens,
            requests=requests,
            cost=Decimal(cost),
            attested_at=datetime.now(timezone.utc),
            attestation_round=round_id,
        )
    except (InvalidOperation, ValueError) as e:
        console.print(f"[red]Invalid attestation:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    with GatewayClient(settings.gateway_url, settings.gateway_admin_key, settings.gateway_timeout) as gateway:
        reconciler = UsageReconciler(gateway, repository=VaultRepository(db or settings.db_path))
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                accepted = reconciler.record_attestation(vault_id, snapshot)
        except AttestationWriteError as e:
            console.print(f"[red]Attestation not saved:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)
        except sqlite3.OperationalError as e:
            if "no such table" in str(e).lower():
                _print_not_initialized()
                sys.exit(EXIT_CODE_FAIL)
            raise

    if accepted:
        console.print(f"[green]✓[/] Vault {vault_id} confirmed usage: {tokens:,} tokens, ${snapshot.cost}")
        sys.exit(EXIT_CODE_PASS)
    current = reconciler.get_confirmed(vault_id)
    console.print(
        f"[yellow]Attestation ignored:[/] vault {vault_id} already confirmed "
        f"{current.tokens:,} tokens / {current.requests:,} requests / ${current.cost}"
    )
    sys.exit(EXIT_CODE_WARN)


@app.command()
def usage(
    vault_id: int = typer.Argument(..., help="Vault identifier"),
    credential: str = typer.Argument(..., help="Gateway credential for the vault"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Pricing config YAML"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Show the hybrid (pending + confirmed) usage view for a vault."""
    settings = _load_settings()
    pricing = _load_pricing(config, settings)
    repository = VaultRepository(db or settings.db_path)

    with GatewayClient(settings.gateway_url, settings.gateway_admin_key, settings.gateway_timeout) as gateway:
        reconciler = UsageReconciler(
            gateway,
            repository=repository,
            pricing_table=pricing.table,
            markup_pct=pricing.markup_pct,
            attestation_interval=timedelta(seconds=settings.attestation_interval),
        )
        try:
            vault = repository.get_vault(vault_id)
            if vault is not None:
                reconciler.track_credential(credential, vault.created_at)
            view = reconciler.get_hybrid_view(vault_id, credential)
        except sqlite3.OperationalError as e:
            if "no such table" in str(e).lower():
                _print_not_initialized()
                sys.exit(EXIT_CODE_FAIL)
            raise
        except VaultBillingError as e:
            console.print(f"[red]Error:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)

    _display_hybrid_view(view)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def unprotected(
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Filter by owner"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """List vaults whose credential never reached the ledger."""
    settings = _load_settings()
    try:
        vaults = VaultRepository(db or settings.db_path).list_unprotected_vaults(owner)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_not_initialized()
            sys.exit(EXIT_CODE_FAIL)
        raise

    if not vaults:
        console.print("[green]✓[/] Every vault has a stored credential")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Vaults without a stored credential")
    table.add_column("Vault", justify="right")
    table.add_column("Owner")
    table.add_column("Provider")
    table.add_column("Created")
    table.add_column("Encrypted credential")
    for vault in vaults:
        table.add_row(
            str(vault.vault_id),
            vault.owner,
            vault.provider,
            vault.created_at.strftime("%Y-%m-%d %H:%M"),
            "yes" if vault.ciphertext else "no",
        )
    console.print(table)
    sys.exit(EXIT_CODE_WARN)


def _format_currency(amount: Decimal) -> str:
    return f"${amount:,.4f}"


def _display_hybrid_view(view: HybridUsage):
    """Display the hybrid usage view."""
    now = datetime.now(timezone.utc)
    console.print(f"\n[bold]Vault {view.vault_id} usage[/bold] ({key_preview(view.credential_id)})")
    console.print("-" * 40)

    if view.data_unavailable:
        console.print("[bold yellow]Gateway unavailable: no pending usage data[/]")
    elif view.stale:
        console.print("[yellow]Gateway unavailable: pending usage is from the last successful read[/]")

    table = Table()
    table.add_column("")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Cost", justify="right")
    table.add_row("Pending", f"{view.pending.tokens:,}", f"{view.pending.requests:,}",
                  _format_currency(view.pending.cost))
    table.add_row("Confirmed", f"{view.confirmed.tokens:,}", f"{view.confirmed.requests:,}",
                  _format_currency(view.confirmed.cost))
    table.add_row("Total", f"{view.total.tokens:,}", f"{view.total.requests:,}",
                  _format_currency(view.total.estimated_cost))
    console.print(table)

    console.print(f"Billed: {_format_currency(view.total.billable_cost)}")
    console.print(f"Awaiting billing: {_format_currency(view.total.pending_bill)}")
    console.print(f"Pending data: {format_age(view.pending_observed_at, now)}")
    console.print(f"Last attestation: {format_age(view.confirmed.attested_at, now)}")
    console.print(f"Next attestation: {view.next_attestation_at.strftime('%H:%M:%S')} UTC")


if __name__ == "__main__":
    app()
