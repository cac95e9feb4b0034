"""
CLI interface for Prompt Racer.

Provides command-line access to races, credits and the model catalog.
"""

import asyncio
import logging
import sqlite3
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from prompt_racer.config.loader import (
    COOKIE_SECRET_VAR,
    RacerSettings,
    check_provider_keys,
    load_settings,
)
from prompt_racer.core.credits import CreditRouter, Identity, LedgerUnavailable
from prompt_racer.core.race import (
    RaceOrchestrator,
    RaceRequest,
    RaceResponse,
    RaceStatus,
    resolve_winner_index,
)
from prompt_racer.core.registry import DEFAULT_REGISTRY
from prompt_racer.checkout.bridge import complete_purchase
from prompt_racer.providers import build_adapters
from prompt_racer.storage.cookie_ledger import CookieJar, CookieLedger
from prompt_racer.storage.repository import AccountLedger, RaceHistoryRepository, initialize_schema

logger = logging.getLogger(__name__)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_PAYMENT_REQUIRED = 2

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to racer YAML config")
_ACCOUNT_OPTION = typer.Option(None, "--account", "-a", help="Account id to charge")
_TOKEN_OPTION = typer.Option(None, "--token", "-t", help="Anonymous cookie token")


def _identity(account: Optional[str], token: Optional[str]) -> Identity:
    try:
        return Identity(anonymous_token=token, account_id=account)
    except ValueError:
        console.print("[red]Error:[/] pass --account or --token")
        sys.exit(EXIT_CODE_FAIL)


def _build_router(settings: RacerSettings) -> CreditRouter:
    """Create the account and cookie ledgers described by settings."""
    if not settings.cookie_secret:
        console.print(f"[red]Error:[/] {COOKIE_SECRET_VAR} not configured")
        sys.exit(EXIT_CODE_FAIL)
    config = settings.config
    try:
        initialize_schema(config.storage.db_path)
    except sqlite3.Error as e:
        # The account ledger reports the outage per call and the router falls back
        logger.warning("Could not initialize %s: %s", config.storage.db_path, e)
    account_ledger = AccountLedger(config.storage.db_path, config.credits.free_allotment)
    cookie_ledger = CookieLedger(
        settings.cookie_secret,
        jar=CookieJar(config.storage.cookie_jar_path),
        free_credits=config.credits.free_allotment,
        max_age_seconds=config.cookie.max_age_seconds
    )
    return CreditRouter(account_ledger, cookie_ledger)


def build_orchestrator(settings: RacerSettings) -> RaceOrchestrator:
    """Wire an orchestrator from settings."""
    router = _build_router(settings)
    config = settings.config
    return RaceOrchestrator(
        registry=DEFAULT_REGISTRY,
        credits=router,
        adapters=build_adapters(settings),
        max_backends=config.race.max_backends,
        adapter_timeout=config.race.adapter_timeout_seconds,
        recorder=RaceHistoryRepository(config.storage.db_path),
        settlement_ledger=router.account_ledger
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Prompt Racer CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Prompt Racer - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = _CONFIG_OPTION):
    """Initialize the Prompt Racer database."""
    try:
        settings = load_settings(config)
        initialize_schema(settings.config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def models():
    """List raceable models."""
    table = Table(title="Models")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("Speed")
    table.add_column("Description")
    for backend in sorted(DEFAULT_REGISTRY.list_backends(), key=lambda b: (b.provider_family.value, b.id)):
        table.add_row(
            backend.id,
            backend.display_name,
            backend.provider_family.value,
            backend.speed_class.value,
            backend.description
        )
    console.print(table)


@app.command()
def presets():
    """List race presets."""
    table = Table(title="Presets")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Models")
    for preset in DEFAULT_REGISTRY.list_presets():
        marker = " (default)" if preset.id == DEFAULT_REGISTRY.default_preset_id else ""
        table.add_row(preset.id + marker, preset.name, ", ".join(preset.backend_ids))
    console.print(table)


@app.command("env-check")
def env_check():
    """Show which provider API keys are configured."""
    for var, present in check_provider_keys().items():
        mark = "[green]✓[/]" if present else "[red]✗[/]"
        console.print(f"{mark} {var}")


@app.command()
def race(
    prompt: str = typer.Argument(..., help="Prompt to race"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset to race"),
    model: Optional[List[str]] = typer.Option(
        None,
        "--model",
        "-m",
        help="Race specific model ids instead of a preset (repeatable)"
    ),
    account: Optional[str] = _ACCOUNT_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Race a prompt across several models and rank them by latency."""
    identity = _identity(account, token)
    try:
        orchestrator = build_orchestrator(load_settings(config))
        request = RaceRequest(
            prompt=prompt,
            identity=identity,
            preset_id=preset,
            backend_ids=tuple(model) if model else None
        )
        response = asyncio.run(orchestrator.run(request))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if response.status == RaceStatus.INVALID_REQUEST:
        console.print(f"[red]Invalid request:[/] {response.message}")
        sys.exit(EXIT_CODE_FAIL)
    if response.status == RaceStatus.PAYMENT_REQUIRED:
        console.print("[bold yellow]Out of credits[/] - buy a credit pack to keep racing")
        sys.exit(EXIT_CODE_PAYMENT_REQUIRED)

    _display_race(response)
    sys.exit(EXIT_CODE_PASS)


def _display_race(response: RaceResponse):
    """Show results fastest first with the winner marked."""
    table = Table(title="Race Results")
    table.add_column("Model")
    table.add_column("Time", justify="right")
    table.add_column("Result")
    winner = resolve_winner_index(response.results, response.winner_id, response.winner_index)
    ranked = sorted(
        enumerate(response.results),
        key=lambda item: (not item[1].succeeded, item[1].elapsed_ms)
    )
    for index, result in ranked:
        name = result.display_name
        if index == winner:
            name = f"🏆 {name}"
        if result.succeeded:
            outcome = result.content.strip().splitlines()[0][:80]
        else:
            outcome = f"[red]{result.error_kind.value}[/]"
        table.add_row(name, f"{result.elapsed_ms}ms", outcome)
    console.print(table)
    if response.winner_id is None:
        console.print("[yellow]No model finished successfully[/]")
    console.print(f"Total time: {response.total_time_ms}ms")
    console.print(f"Credits remaining: {response.remaining_credits}")


@app.command()
def credits(
    account: Optional[str] = _ACCOUNT_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Show remaining credits."""
    identity = _identity(account, token)
    try:
        remaining = _build_router(load_settings(config)).peek(identity)
    except LedgerUnavailable as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Credits remaining: {remaining}")


@app.command()
def grant(
    amount: int = typer.Argument(..., help="Credits to add"),
    paid: Optional[float] = typer.Option(None, "--paid", help="Amount paid in USD"),
    reference: Optional[str] = typer.Option(None, "--reference", "-r", help="Payment reference"),
    account: Optional[str] = _ACCOUNT_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Grant credits after a confirmed payment."""
    identity = _identity(account, token)
    try:
        router = _build_router(load_settings(config))
        remaining = complete_purchase(router, identity, amount, paid, reference)
    except (ValueError, LedgerUnavailable) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Granted {amount} credits, {remaining} remaining")


@app.command()
def history(
    account: Optional[str] = _ACCOUNT_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of races to show"),
    config: Optional[str] = _CONFIG_OPTION
):
    """Show recent races."""
    identity = _identity(account, token)
    settings = load_settings(config)
    try:
        initialize_schema(settings.config.storage.db_path)
        records = RaceHistoryRepository(settings.config.storage.db_path).list_races(identity, limit)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] race history unavailable: {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if not records:
        console.print("[dim]No races yet.[/]")
        return
    table = Table(title="Recent Races")
    table.add_column("When")
    table.add_column("Prompt")
    table.add_column("Winner")
    table.add_column("Total", justify="right")
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M"),
            record.prompt[:40],
            record.winner_id or "-",
            f"{record.total_time_ms}ms"
        )
    console.print(table)


if __name__ == "__main__":
    app()
