from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from matchmaker import services
from matchmaker.db import init_db, session_scope
from matchmaker.errors import MatchmakerError
from matchmaker.matcher import SCORING_WEIGHTS
from matchmaker.runtime import build_runtime
from matchmaker.scheduler import summarize

app = typer.Typer(help="Investor/company matching and automatic meeting scheduling")
console = Console()


_LOG_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)
_STATUS_STYLES = {"scheduled": "green", "failed": "red", "skipped": "yellow", "synced": "green"}


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    level = _LOG_LEVELS[max(0, min(verbose, len(_LOG_LEVELS) - 1))]
    if json_output:
        # stdout is reserved for the JSON document
        handler: logging.Handler = logging.StreamHandler()
        fmt = "%(levelname)s %(name)s: %(message)s"
    else:
        handler = RichHandler(console=console, show_time=False, show_path=False)
        fmt = "%(message)s"
    logging.basicConfig(level=level, format=fmt, handlers=[handler], force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _cell(value: Any) -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, float):
        return f"{value:.1f}"
    if isinstance(value, str) and value in _STATUS_STYLES:
        return f"[{_STATUS_STYLES[value]}]{value}[/]"
    return str(value)


def _print_score(title: str, score: dict[str, Any]) -> None:
    """Factor breakdown with each factor's weighted contribution to the overall score."""
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Factor", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Points", justify="right")
    for name, weight in SCORING_WEIGHTS.items():
        value = score["factors"].get(name, 0.0)
        table.add_row(name, _cell(value), f"{weight:.0%}", _cell(value * weight))
    subtitle = f"overall [bold]{score['overall']}[/bold] · confidence {score['confidence']}"
    console.print(Panel(table, title=title, subtitle=subtitle, border_style="cyan"))


def _print_rows(title: str, columns: list[str], rows: list[dict[str, Any]], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        _emit_json(rows)
        return
    if not rows:
        console.print(f"[dim]{title}: nothing to show[/dim]")
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(_cell(row.get(c)) for c in columns))
    console.print(Panel(table, title=title, border_style="cyan"))


def _print_summary(counts: dict[str, int]) -> None:
    parts = [f"[{_STATUS_STYLES[k]}]{k}[/] {v}" for k, v in counts.items()]
    console.print("  ".join(parts))


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code=1)


@app.command("match")
def match_command(
    ctx: typer.Context,
    investor_id: int = typer.Argument(..., help="Investor user id."),
    company_id: int = typer.Argument(..., help="Company user id."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    runtime = build_runtime()
    with session_scope() as session:
        try:
            score = services.get_match(session, runtime.engine, investor_id, company_id)
        except MatchmakerError as exc:
            _fail(str(exc))
    payload = score.to_dict()
    if _wants_json(ctx):
        _emit_json(payload)
        return
    _print_score(f"investor {investor_id} → company {company_id}", payload)


@app.command("recommend")
def recommend_command(
    ctx: typer.Context,
    investor_id: int = typer.Argument(..., help="Investor user id."),
    limit: int = typer.Option(4, min=1, help="Number of companies to return."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    runtime = build_runtime()
    with session_scope() as session:
        companies = services.get_recommended_companies(session, runtime.engine, investor_id, limit)
    if _wants_json(ctx):
        _emit_json(companies)
        return
    rows = [
        {"company": c["company_name"] or c["user_id"], "sector": c["sector"], "stage": c["stage"],
         "overall": c["match_score"]["overall"], "confidence": c["match_score"]["confidence"]}
        for c in companies
    ]
    _print_rows(f"recommendations for investor {investor_id}",
                ["company", "sector", "stage", "overall", "confidence"], rows, ctx)


@app.command("pairs")
def pairs_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    matches = build_runtime().scheduler.find_potential_matches()
    rows = [
        {"investor_id": m.investor_id, "company_id": m.company_id,
         "slot": m.slot.start.isoformat(), "match_score": m.match_score}
        for m in matches
    ]
    _print_rows("potential pairs", ["investor_id", "company_id", "slot", "match_score"], rows, ctx)


@app.command("run-scheduler")
def run_scheduler_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    scheduler = build_runtime().scheduler
    if _wants_json(ctx):
        results = asyncio.run(scheduler.run_scheduler())
    else:
        with console.status("[bold cyan]Arranging meetings[/bold cyan]", spinner="dots"):
            results = asyncio.run(scheduler.run_scheduler())
    if _wants_json(ctx):
        _emit_json({"results": [r.to_dict() for r in results], **summarize(results)})
        return
    _print_rows(
        "scheduler results",
        ["investor_id", "company_id", "status", "suggested_time", "meeting_id", "calendar_sync_status", "reason"],
        [r.to_dict() for r in results], ctx,
    )
    _print_summary(summarize(results))


@app.command("sync-calendar")
def sync_calendar_command(
    ctx: typer.Context,
    meeting_id: int = typer.Argument(..., help="Meeting id."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    scheduler = build_runtime().scheduler
    try:
        status = asyncio.run(scheduler.retry_calendar_sync(meeting_id))
    except (MatchmakerError, ValueError) as exc:
        _fail(str(exc))
    if _wants_json(ctx):
        _emit_json({"meeting_id": meeting_id, "calendar_sync_status": status})
        return
    console.print(f"meeting {meeting_id}: calendar sync {_cell(status)}")


if __name__ == "__main__":
    app()
