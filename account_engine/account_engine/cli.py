"""Account engine operator CLI -- Typer-based maintenance interface.

Human-readable output goes to *stderr* via Rich; ``--json`` switches the
data-bearing commands to machine-readable JSON on stdout, and
``generate-master-key`` always prints the bare key to stdout so it can be
piped into a secret store.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncEngine

from account_engine.config import Settings, load_settings
from account_engine.errors import AccountEngineError
from account_engine.keys.codec import KeyCodec, generate_master_key
from account_engine.keys.store import KeyStore
from account_engine.ledger.credit_ledger import CreditLedger, LedgerSnapshot
from account_engine.ledger.periods import current_period_start, parse_period
from account_engine.logging_config import configure_logging
from account_engine.state.database import (
    create_tables,
    dispose_engine,
    engine_from_settings,
    get_session_factory,
)
from account_engine.usage.recorder import UsageRecorder

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="account-engine",
    help="Account engine - API key issuance and monthly credit accounting",
    no_args_is_help=True,
)
console = Console(stderr=True)

_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Override the state store URL (defaults to ACCOUNT_DATABASE_URL).",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> Settings:
    overrides: dict[str, Any] = {}
    if _database_url:
        overrides["database_url"] = _database_url
    settings = load_settings(**overrides)
    configure_logging(settings)
    return settings


def _run(settings: Settings, work: Callable[[AsyncEngine], Awaitable[T]]) -> T:
    """Run *work* against a fresh engine and dispose of it afterwards."""

    async def _main() -> T:
        engine = engine_from_settings(settings)
        try:
            return await work(engine)
        finally:
            await dispose_engine(engine)

    return asyncio.run(_main())


def _snapshot_dict(snapshot: LedgerSnapshot) -> dict[str, Any]:
    return {
        "principal_id": snapshot.principal_id,
        "period_start": snapshot.period_start.isoformat(),
        "plan": snapshot.plan,
        "quota": snapshot.quota,
        "consumed": snapshot.consumed,
        "remaining": snapshot.remaining,
        "over_quota": snapshot.over_quota,
    }


def _display_snapshots(snapshots: list[LedgerSnapshot]) -> None:
    table = Table(title="Credit ledger", show_lines=False)
    table.add_column("Period", style="cyan")
    table.add_column("Plan")
    table.add_column("Consumed", justify="right")
    table.add_column("Quota", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Status")

    for snap in snapshots:
        if snap.is_closed():
            status = "[dim]closed[/dim]"
        elif snap.over_quota:
            status = "[red]over quota[/red]"
        else:
            status = "[green]open[/green]"
        table.add_row(
            snap.period_start.strftime("%Y-%m"),
            snap.plan,
            f"{snap.consumed:,}",
            f"{snap.quota:,}",
            f"{snap.remaining:,}",
            status,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state tables if they do not exist (local and test setups)."""
    settings = _settings()

    async def _work(engine: AsyncEngine) -> None:
        await create_tables(engine)

    try:
        _run(settings, _work)
    except Exception as exc:
        console.print(f"[red]Failed to initialise the state store: {exc}[/red]")
        raise typer.Exit(code=3) from exc
    console.print("[green]State tables created/verified.[/green]")


# ---------------------------------------------------------------------------
# generate-master-key
# ---------------------------------------------------------------------------


@app.command("generate-master-key")
def generate_master_key_cmd() -> None:
    """Print a new random master key for credential encryption."""
    sys.stdout.write(generate_master_key() + "\n")
    console.print(
        "[dim]Store this value as ACCOUNT_API_KEY_ENCRYPTION_KEY. Credentials issued "
        "before it was set remain hash-only.[/dim]"
    )


# ---------------------------------------------------------------------------
# credits
# ---------------------------------------------------------------------------


@app.command()
def credits(
    principal_id: str = typer.Argument(..., help="Principal to inspect."),
    history: int = typer.Option(
        0,
        "--history",
        min=0,
        max=120,
        help="Also show this many most recent periods.",
    ),
) -> None:
    """Show the current credit balance of a principal."""
    settings = _settings()

    async def _work(engine: AsyncEngine) -> list[LedgerSnapshot]:
        ledger = CreditLedger(get_session_factory(engine))
        current = await ledger.current(principal_id)
        if not history:
            return [current]
        past = await ledger.history(principal_id, limit=history)
        return [current] + [s for s in past if s.period_start != current.period_start]

    try:
        snapshots = _run(settings, _work)
    except AccountEngineError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if _json_output:
        sys.stdout.write(json.dumps([_snapshot_dict(s) for s in snapshots], indent=2) + "\n")
    else:
        _display_snapshots(snapshots)


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


@app.command()
def reconcile(
    principal_id: str = typer.Argument(..., help="Principal whose ledger to rebuild."),
    period: str | None = typer.Option(
        None,
        "--period",
        help="Billing period as YYYY-MM. Defaults to the current month.",
    ),
) -> None:
    """Rebuild a ledger entry from the recorded usage events."""
    try:
        period_start = parse_period(period) if period else current_period_start()
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc

    settings = _settings()

    async def _work(engine: AsyncEngine) -> LedgerSnapshot:
        factory = get_session_factory(engine)
        codec = KeyCodec.from_settings(settings)
        ledger = CreditLedger(factory)
        recorder = UsageRecorder(factory, ledger, KeyStore(factory, codec, settings.default_key_label))
        return await recorder.reconcile(principal_id, period_start)

    try:
        snapshot = _run(settings, _work)
    except AccountEngineError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if _json_output:
        sys.stdout.write(json.dumps(_snapshot_dict(snapshot), indent=2) + "\n")
    else:
        console.print(
            f"Reconciled [bold]{principal_id}[/bold] for {period_start:%Y-%m}: "
            f"{snapshot.consumed:,} / {snapshot.quota:,} credits consumed"
        )


if __name__ == "__main__":
    app()
