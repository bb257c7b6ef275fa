from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Any

import typer

from profitsync.config import Settings
from profitsync.credentials import FernetCipher, cipher_from_settings, seal_credentials
from profitsync.db import LedgerDB
from profitsync.errors import SyncAlreadyRunning
from profitsync.finance.engine import ProfitEngine
from profitsync.importers.bank_statement import import_bank_statement_csv
from profitsync.importers.cogs_csv import import_cogs_csv
from profitsync.repo import PLATFORM_KINDS, Repo
from profitsync.runs import InMemoryRunStore
from profitsync.sync import SyncOrchestrator
from profitsync.util import now_utc
from profitsync.web.app import run_web
from profitsync.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)
accounts_app = typer.Typer(no_args_is_help=True)
import_app = typer.Typer(no_args_is_help=True)
app.add_typer(accounts_app, name="accounts")
app.add_typer(import_app, name="import")


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2, default=str)


def _load() -> tuple[Settings, Repo]:
    settings = Settings.load()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    LedgerDB(settings.db_path).init()
    return settings, Repo(settings.db_path, busy_timeout=settings.batch_timeout_sec)


def _parse_day_opt(raw: str | None, name: str) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        typer.echo(f"ERROR: {name} must be YYYY-MM-DD")
        raise typer.Exit(code=2)


def _parse_pairs(pairs: list[str] | None, name: str) -> dict[str, Any]:
    """`key=value` options; values that parse as JSON (numbers, booleans) are kept typed."""
    out: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            typer.echo(f"ERROR: {name} must look like key=value, got {pair!r}")
            raise typer.Exit(code=2)
        try:
            out[key.strip()] = json.loads(value)
        except json.JSONDecodeError:
            out[key.strip()] = value
    return out


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init|keygen"),
) -> None:
    if action == "keygen":
        typer.echo(FernetCipher.generate_key())
        return
    if action == "init":
        settings = Settings.load()
        LedgerDB(settings.db_path).init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    raise typer.BadParameter("action must be one of: init, keygen")


@accounts_app.command("add")
def accounts_add_cmd(
    team: str = typer.Option(..., help="Team id the account belongs to"),
    platform: str = typer.Option(..., help="shopify|facebook|google_sheets"),
    external_id: str = typer.Option(
        ...,
        help="Shop domain, ad account id (act_...) or spreadsheet id (sheets:...)",
    ),
    name: str = typer.Option(..., help="Display name"),
    currency: str = typer.Option("SEK", help="Account currency"),
    credential: list[str] | None = typer.Option(None, help="key=value, repeatable (e.g. access_token=...)"),
    config: list[str] | None = typer.Option(None, help="key=value, repeatable (e.g. include_transactions=true)"),
) -> None:
    settings, repo = _load()
    p = platform.strip().lower()
    if p not in PLATFORM_KINDS:
        typer.echo(f"ERROR: platform must be one of: {', '.join(sorted(PLATFORM_KINDS))}")
        raise typer.Exit(code=2)

    creds = {k: str(v) for k, v in _parse_pairs(credential, "--credential").items()}
    credentials_json = "{}"
    if creds:
        cipher = cipher_from_settings(settings)
        if cipher is None:
            typer.echo("ERROR: PROFITSYNC_ENCRYPTION_KEY is required to store credentials")
            raise typer.Exit(code=2)
        credentials_json = seal_credentials(cipher, creds)

    account_id = repo.create_account(
        team_id=team,
        platform=p,
        external_id=external_id,
        name=name,
        currency=currency.strip().upper(),
        credentials_json=credentials_json,
        config=_parse_pairs(config, "--config"),
    )
    typer.echo(f"OK account: {account_id}")


@accounts_app.command("list")
def accounts_list_cmd(
    team: str = typer.Option(..., help="Team id"),
    all_accounts: bool = typer.Option(False, "--all", help="Include deactivated accounts"),
) -> None:
    _settings, repo = _load()
    rows = repo.list_accounts(team, active_only=not all_accounts)
    if not rows:
        typer.echo("(no accounts)")
        return
    for a in rows:
        status = a.get("last_sync_status") or "never"
        active = "" if a.get("is_active") else " [inactive]"
        typer.echo(
            f"{a['id']}  {a['platform']:<13} {a['name']}{active}  "
            f"last_sync={a.get('last_sync_at') or '-'} ({status})"
        )
        if a.get("sync_error"):
            typer.echo(f"    error: {a['sync_error']}")


@accounts_app.command("deactivate")
def accounts_deactivate_cmd(
    account_id: str = typer.Argument(...),
    team: str = typer.Option(..., help="Team id"),
) -> None:
    _settings, repo = _load()
    if not repo.deactivate_account(account_id, team_id=team):
        typer.echo(f"ERROR: account {account_id} not found for team {team}")
        raise typer.Exit(code=2)
    typer.echo(f"OK deactivated: {account_id}")


@app.command("sync")
def sync_cmd(
    team: str | None = typer.Option(None, help="Team id. Defaults to every team with active accounts."),
    account: str | None = typer.Option(None, help="Sync a single account (requires --team)"),
    full: bool = typer.Option(False, help="Ignore watermarks and refetch from --since / initial lookback"),
    since: str | None = typer.Option(None, help="YYYY-MM-DD lower bound for full syncs"),
    until: str | None = typer.Option(None, help="YYYY-MM-DD upper bound (does not advance the watermark)"),
) -> None:
    """Run a sync in the foreground and print the per-source results."""
    settings, repo = _load()
    if account and not team:
        typer.echo("ERROR: --account requires --team")
        raise typer.Exit(code=2)
    date_from = _parse_day_opt(since, "since")
    date_to = _parse_day_opt(until, "until")

    orchestrator = SyncOrchestrator(
        repo,
        InMemoryRunStore(settings.run_retention_sec),
        settings,
        cipher=cipher_from_settings(settings),
    )
    teams = [team] if team else repo.list_active_team_ids()
    results = []
    for team_id in teams:
        try:
            res = asyncio.run(
                orchestrator.run(
                    team_id,
                    account_id=account,
                    date_from=date_from,
                    date_to=date_to,
                    full_sync=full,
                )
            )
        except SyncAlreadyRunning as e:
            typer.echo(f"ERROR: {e}")
            raise typer.Exit(code=1)
        results.append({"team_id": team_id, **res.to_dict()})
    typer.echo(json_dumps(results))
    if any(not r["success"] for r in results):
        raise typer.Exit(code=1)


@import_app.command("bank")
def import_bank_cmd(
    file: Path = typer.Option(..., exists=True, dir_okay=False, help="Bank statement CSV export"),
    team: str = typer.Option(..., help="Team id"),
) -> None:
    _settings, repo = _load()
    res = import_bank_statement_csv(repo, team_id=team, path=file)
    typer.echo(json_dumps(res))
    if not res.get("ok"):
        raise typer.Exit(code=2)


@import_app.command("cogs")
def import_cogs_cmd(
    file: Path = typer.Option(..., exists=True, dir_okay=False, help="CSV with sku|variant_id, cost, effective_from"),
    store: str = typer.Option(..., help="Store account id"),
    effective_from: str | None = typer.Option(None, help="YYYY-MM-DD for rows without effective_from"),
) -> None:
    _settings, repo = _load()
    res = import_cogs_csv(
        repo,
        store_id=store,
        path=file,
        default_effective_from=_parse_day_opt(effective_from, "effective_from"),
    )
    typer.echo(json_dumps(res))
    if not res.get("ok"):
        raise typer.Exit(code=2)


@app.command("pnl")
def pnl_cmd(
    team: str = typer.Option(..., help="Team id"),
    since: str | None = typer.Option(None, help="YYYY-MM-DD (default: 30 days ending at --until)"),
    until: str | None = typer.Option(None, help="YYYY-MM-DD (default: today, UTC)"),
) -> None:
    settings, repo = _load()
    end = _parse_day_opt(until, "until") or now_utc().date()
    start = _parse_day_opt(since, "since") or (end - timedelta(days=29))
    if end < start:
        typer.echo("ERROR: until must not be before since")
        raise typer.Exit(code=2)
    summary = ProfitEngine(repo, settings).period_summary(team, start, end)
    typer.echo(json_dumps(summary.to_dict()))


@app.command("web")
def web_cmd() -> None:
    settings, _repo = _load()
    run_web(settings)


@app.command("worker")
def worker_cmd() -> None:
    settings, _repo = _load()
    run_worker(settings)


@app.command("tick")
def tick_cmd() -> None:
    settings, _repo = _load()
    typer.echo(json_dumps(run_tick(settings)))

