from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from partnerscout import services
from partnerscout.config import get_settings, load_yaml
from partnerscout.db import get_session_factory, init_db, session_scope
from partnerscout.errors import PipelineError, client_safe_error

app = typer.Typer(help="Match courses with partner organizations and generate project proposals")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    home: str | None = typer.Option(None, "--home", help="Directory holding data/ and the default database."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if home:
        os.environ["PARTNERSCOUT_HOME"] = str(Path(home).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, (list, dict)):
            value = json.dumps(value, ensure_ascii=False)
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _fail(ctx: typer.Context, exc: PipelineError) -> None:
    payload = client_safe_error(exc)
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2))
    else:
        console.print(f"[red]{payload['code']}[/red]: {payload['error']}")
    raise typer.Exit(code=1)


def _load_records(path: Path) -> Any:
    if not path.exists():
        raise typer.BadParameter(f"File not found: {path}")
    if path.suffix.lower() == ".json":
        return json.loads(path.read_text(encoding="utf-8"))
    return load_yaml(path)


@app.command("init-db")
def init_db_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    _print("init-db", {"status": "ok", "database_url": db_url or get_settings().database_url}, ctx)


@app.command("add-course")
def add_course_command(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="YAML or JSON file describing one course."),
) -> None:
    data = _load_records(path)
    if not isinstance(data, dict):
        raise typer.BadParameter("Course file must contain a mapping")
    init_db()
    with session_scope() as session:
        try:
            result = services.create_course(session, data)
        except PipelineError as exc:
            _fail(ctx, exc)
    _print("add-course", result, ctx)


@app.command("import-companies")
def import_companies_command(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="YAML or JSON file with a list of companies."),
    batch_id: str | None = typer.Option(None, "--batch-id", help="Tag imported rows with this enrichment batch."),
) -> None:
    data = _load_records(path)
    records = data.get("companies") if isinstance(data, dict) else data
    if not isinstance(records, list):
        raise typer.BadParameter("Expected a list of companies (or a 'companies' key)")
    init_db()
    with session_scope() as session:
        result = services.import_companies(session, records, enrichment_batch_id=batch_id)
    _print("import-companies", result, ctx)


@app.command("generate")
def generate_command(
    ctx: typer.Context,
    course_id: int = typer.Argument(..., help="Course to generate projects for."),
    principal_id: str = typer.Option(..., "--principal", help="Id of the course owner."),
    industries: list[str] = typer.Option([], "--industry", help="Sector filter; repeatable."),
    count: int = typer.Option(3, "--count", min=1, max=10, help="Number of candidates to process."),
    batch_id: str | None = typer.Option(None, "--batch-id", help="Prior enrichment batch to source from first."),
    timeout: float | None = typer.Option(None, help="Stop starting new candidates after this many seconds."),
) -> None:
    init_db()
    orchestrator = services.build_orchestrator(get_session_factory())

    async def _run() -> dict[str, Any]:
        return await services.generate_projects(
            orchestrator, course_id, principal_id,
            industries=industries,
            candidate_count=count,
            prior_enrichment_batch_id=batch_id,
            timeout=timeout,
        )

    try:
        if _wants_json(ctx):
            result = asyncio.run(_run())
        else:
            with console.status("[bold cyan]Generating projects[/bold cyan]", spinner="dots"):
                result = asyncio.run(_run())
    except PipelineError as exc:
        _fail(ctx, exc)
    _print("generate", result, ctx)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
) -> None:
    import uvicorn
    uvicorn.run("partnerscout.app:app", host=host, port=port)


@app.command("purge-cache")
def purge_cache_command(ctx: typer.Context) -> None:
    init_db()
    _print("purge-cache", services.purge_filter_cache(get_session_factory()), ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
