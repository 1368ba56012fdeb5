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
from sqlalchemy import func, select

from leadscout.acquisition import AcquisitionEngine
from leadscout.client import ApolloClient
from leadscout.config import get_settings
from leadscout.db import current_db_path, get_session_factory, init_db, session_scope
from leadscout.enrichment import EnrichmentEngine
from leadscout.errors import ApolloAPIError, ApolloError
from leadscout.models import Company, Contact, RawResult
from leadscout.rate_limiter import build_rate_limiter
from leadscout.schemas import EnrichmentOptions, SearchParams

app = typer.Typer(help="Apollo lead acquisition and enrichment pipeline")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=True, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


def _client() -> ApolloClient:
    settings = get_settings()
    try:
        return ApolloClient(
            settings=settings, rate_limiter=build_rate_limiter(settings, get_session_factory()),
        )
    except ApolloError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, default=str))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for metric, value in payload.items():
        table.add_row(metric.replace("_", " "), "-" if value is None else str(value))
    console.print(Panel(table, title=title, border_style="cyan"))


@app.callback()
def app_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="-v for INFO, -vv for DEBUG"),
    json_output: bool = typer.Option(False, "--json", help="Plain log lines and JSON summaries"),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)
    init_db()


@app.command()
def search(
    ctx: typer.Context,
    title: list[str] = typer.Option([], "--title", "-t", help="Person title, repeatable"),
    person_location: list[str] = typer.Option([], "--person-location"),
    company_location: list[str] = typer.Option([], "--company-location"),
    employee_range: list[str] = typer.Option([], "--employees", help="Employee range 'min,max', repeatable"),
    email_status: list[str] = typer.Option([], "--email-status"),
    max_pages: int = typer.Option(1, "--max-pages", min=1, max=100),
    per_page: int = typer.Option(25, "--per-page", min=1, max=100),
    start_page: int = typer.Option(1, "--page", min=1),
) -> None:
    """Search Apollo and store new people as unprocessed raw results."""
    try:
        params = SearchParams(
            person_titles=title, person_locations=person_location,
            company_locations=company_location, employee_ranges=employee_range,
            contact_email_status=email_status, per_page=per_page, page=start_page,
        )
    except ValueError as exc:
        console.print(f"[red]Invalid search parameters:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    engine = AcquisitionEngine(_client(), get_session_factory())
    try:
        result = asyncio.run(engine.run(params, max_pages))
    except ApolloAPIError as exc:
        console.print(f"[red]{exc.user_message()}[/red]")
        raise typer.Exit(code=1) from exc

    _print("Apollo search", result.model_dump(), ctx)


@app.command()
def enrich(
    ctx: typer.Context,
    limit: int = typer.Option(100, "--limit", min=1, max=500),
    reveal_emails: bool = typer.Option(True, "--reveal-emails/--no-reveal-emails"),
    reveal_phones: bool = typer.Option(False, "--reveal-phones/--no-reveal-phones"),
    webhook_url: str | None = typer.Option(None, "--webhook-url"),
    actor: str | None = typer.Option(None, "--actor", help="Recorded as created_by"),
) -> None:
    """Enrich unprocessed raw results into companies and contacts."""
    try:
        options = EnrichmentOptions(
            reveal_personal_emails=reveal_emails, reveal_phone_numbers=reveal_phones,
            webhook_url=webhook_url,
        )
    except ValueError as exc:
        console.print(f"[red]Invalid enrichment options:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    engine = EnrichmentEngine(_client(), get_session_factory())
    result = asyncio.run(engine.process_unprocessed_results(limit, actor, options))

    payload = result.model_dump()
    if not _wants_json(ctx):
        payload["errors"] = len(result.errors)
    _print("Apollo enrichment", payload, ctx)
    if result.errors and not _wants_json(ctx):
        errors = Table(title="Not reconciled")
        errors.add_column("Result", justify="right")
        errors.add_column("Reason")
        for entry in result.errors:
            errors.add_row(str(entry.result_id), entry.error)
        console.print(errors)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show backlog and store counts."""
    with session_scope() as session:
        total = session.execute(select(func.count(RawResult.id))).scalar() or 0
        pending = session.execute(
            select(func.count(RawResult.id)).where(RawResult.processed.is_(False))
        ).scalar() or 0
        companies = session.execute(select(func.count(Company.id))).scalar() or 0
        contacts = session.execute(select(func.count(Contact.id))).scalar() or 0
    _print("leadscout", {
        "database": current_db_path(),
        "raw_results": total,
        "unprocessed_backlog": pending,
        "companies": companies,
        "contacts": contacts,
    }, ctx)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8001, "--port"),
) -> None:
    """Run the HTTP API."""
    import uvicorn
    uvicorn.run("leadscout.app:app", host=host, port=port)


if __name__ == "__main__":
    app()
