"""Typer CLI entrypoint for search-ingest."""

from __future__ import annotations

import signal
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from typing import Iterator, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import AppConfig, ConfigRepository
from .engine import PlanResult, SearchParams
from .errors import Cancelled, IngestError
from .infra import SQLiteManager
from .logging_conf import configure_logging, log_dir, tail_log
from .orchestrator import Orchestrator

app = typer.Typer(
    help="Paginated search ingestion: plan collections, collect pages, inspect progress.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: AppConfig
    storage: SQLiteManager
    orchestrator: Orchestrator


def build_state(verbose: bool, config_path: Path | None = None) -> AppState:
    repository = ConfigRepository(config_path=config_path)
    config = repository.load()
    configure_logging(verbose, directory=repository.locator.logs_dir)
    storage = SQLiteManager(repository.database_path(), busy_timeout=config.database.busy_timeout)
    orchestrator = Orchestrator(config, storage)
    return AppState(repository=repository, config=config, storage=storage, orchestrator=orchestrator)


def _state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


@contextmanager
def _cancel_on_signals() -> Iterator[Event]:
    """Yield an event set by SIGINT/SIGTERM; previous handlers are restored."""

    cancel = Event()

    def _handler(signum, frame) -> None:  # noqa: ARG001
        console.print(f"received {signal.Signals(signum).name}, stopping…", style="yellow")
        cancel.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _render_summary(summary: dict) -> Table:
    table = Table(title="Run summary", box=box.SIMPLE_HEAD, show_header=False, pad_edge=False)
    table.add_column("metric", style="cyan", no_wrap=True)
    table.add_column("value", style="green", justify="right")
    for key, value in summary.items():
        table.add_row(key.replace("_", " "), str(value))
    return table


def _render_status(status: dict) -> Table:
    table = Table(title="Ingest status", box=box.SIMPLE_HEAD)
    table.add_column("metric", style="cyan", no_wrap=True)
    table.add_column("count", style="green", justify="right")
    for progress, count in status["pages"].items():
        table.add_row(f"pages {progress}", str(count))
    for name, count in status["storage"].items():
        table.add_row(name, str(count))
    return table


def _render_collections(collections: list[dict]) -> Table:
    table = Table(title="Collections", box=box.SIMPLE_HEAD)
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("records", justify="right")
    table.add_column("pages", justify="right")
    table.add_column("complete", style="green")
    table.add_column("source", style="magenta", overflow="fold")
    for row in collections:
        table.add_row(
            str(row["collection_id"]),
            str(row["total_records"] if row["total_records"] is not None else "-"),
            f"{row['pages_complete'] or 0}/{row['pages']}",
            "yes" if row["is_complete"] else "no",
            str(row["source_url"]),
        )
    return table


def _render_plans(results: list[PlanResult]) -> Table:
    table = Table(title=f"Planned collections · {len(results)}", box=box.SIMPLE_HEAD)
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("records", justify="right")
    table.add_column("pages", justify="right")
    table.add_column("search url", style="magenta", overflow="fold")
    for result in results:
        table.add_row(
            str(result.collection_id),
            str(result.total_records),
            str(result.pages_inserted),
            result.search_url,
        )
    return table


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging.", is_flag=True),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML or JSON configuration file."),
) -> None:
    ctx.obj = build_state(verbose, config)


@app.command("init-db", help="Create the database schema and write the default configuration file.")
def init_db(
    ctx: typer.Context,
    reset: bool = typer.Option(False, "--reset", help="Delete the existing database first.", is_flag=True),
) -> None:
    state = _state(ctx)
    if reset:
        state.storage.reset()
        console.print(f"database reset: {state.storage.path}", style="yellow")
    else:
        state.storage.ensure_schema()
    if not state.repository.config_path.exists():
        state.repository.save(state.config)
        console.print(f"configuration written: {state.repository.config_path}", style="dim")
    console.print(f"database ready: {state.storage.path}", style="green")


@app.command("plan", help="Create a collection and its pending pages from a search.")
def plan(
    ctx: typer.Context,
    death_year: int = typer.Option(0, "--death-year", help="Restrict to a death year (0 disables)."),
    last_name: Optional[str] = typer.Option(None, "--last-name", help="Last name; * is a wildcard."),
    first_name: Optional[str] = typer.Option(None, "--first-name", help="First name; * is a wildcard."),
    limit: Optional[int] = typer.Option(None, "--limit", help="Records per page (defaults to search.page_limit)."),
    sweep: bool = typer.Option(False, "--sweep", help="Plan the A*..Z* last/first name grid.", is_flag=True),
) -> None:
    state = _state(ctx)
    params = SearchParams(
        limit=limit or state.config.search.page_limit,
        death_year=death_year,
        first_name=first_name,
        last_name=last_name,
    )
    with _cancel_on_signals() as cancel:
        try:
            results = state.orchestrator.plan(params, cancel, sweep=sweep)
        except Cancelled:
            console.print("planning cancelled", style="yellow")
            raise typer.Exit(code=130)
        except IngestError as exc:
            console.print(f"planning failed: {exc}", style="red")
            raise typer.Exit(code=1)
    console.print(_render_plans(results))


@app.command("run", help="Collect every reservable page.")
def run(ctx: typer.Context) -> None:
    state = _state(ctx)
    with _cancel_on_signals() as cancel:
        try:
            summary = state.orchestrator.run(cancel)
        except IngestError as exc:
            console.print(f"run failed: {exc}", style="red")
            raise typer.Exit(code=1)
        finally:
            state.orchestrator.close()
    console.print(_render_summary(summary))
    if summary["status"] == "cancelled":
        raise typer.Exit(code=130)


@app.command("status", help="Show page progress and stored row counts.")
def status(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", help="Number of recent collections to list."),
) -> None:
    state = _state(ctx)
    snapshot = state.orchestrator.status(limit)
    console.print(_render_status(snapshot))
    if snapshot["collections"]:
        console.print(_render_collections(snapshot["collections"]))


@app.command("log", help="Print the tail of the ingest log.")
def log(
    tail: int = typer.Option(100, "--tail", help="Show the last N lines."),
    errors: bool = typer.Option(False, "--errors", help="Read error.log instead of ingest.log.", is_flag=True),
) -> None:
    path = log_dir() / ("error.log" if errors else "ingest.log")
    lines = tail_log(path, tail)
    if not lines:
        console.print("no log entries yet", style="dim")
        return
    console.print(f"{path.name} · last {len(lines)} lines", style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
