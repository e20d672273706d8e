"""Command-line interface using Typer.

The CLI is the lifecycle owner for a run: it builds the ticket store,
model client and Orchestrator, and closes all three on the way out.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Annotated, Optional

import typer

from ..core.config import Config
from ..llm import ModelClient
from ..orchestrator.service import Orchestrator
from ..tickets import InMemoryTicketStore, SqliteTicketStore, TicketCreate, TicketStore
from .output import console, print_error, print_info, print_queue_status, print_success, print_tickets

app = typer.Typer(
    name="coe",
    help="Coding orchestration engine: dispatch tickets to planning, answer and verification workers",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to a YAML config file"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Verbose logging"),
]


def _setup(config_path: Path | None, verbose: bool) -> Config:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    return Config.load(config_path)


@contextlib.asynccontextmanager
async def open_store(config: Config) -> AsyncIterator[TicketStore]:
    """Open the configured ticket store for the duration of a command."""
    if config.store.backend == "sqlite":
        store = SqliteTicketStore(config.store.resolved_db_path)
        await store.open()
        try:
            yield store
        finally:
            await store.close()
    else:
        yield InMemoryTicketStore()


@contextlib.asynccontextmanager
async def open_orchestrator(config: Config) -> AsyncIterator[Orchestrator]:
    async with open_store(config) as store, ModelClient(config.llm) as client:
        async with Orchestrator(store, client, config) as orchestrator:
            yield orchestrator


@app.command()
def run(
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
    poll_interval: Annotated[
        float,
        typer.Option("--poll-interval", help="Seconds between claims when the queue is empty"),
    ] = 5.0,
) -> None:
    """Run the dispatch loop until interrupted."""
    config = _setup(config_path, verbose)

    async def _run() -> None:
        async with open_orchestrator(config) as orchestrator:
            status = orchestrator.get_queue_status()
            console.print(f"[cyan]Dispatching {status['queue_count']} queued task(s)...[/cyan]")
            try:
                await orchestrator.run(poll_interval=poll_interval)
            finally:
                orchestrator.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print_info("Stopped.")


@app.command()
def status(
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show queue counters and task status summary."""
    config = _setup(config_path, verbose)

    async def _status() -> None:
        async with open_orchestrator(config) as orchestrator:
            print_queue_status(orchestrator.get_queue_status(), orchestrator.get_status_summary())

    asyncio.run(_status())


@app.command()
def ask(
    question: Annotated[str, typer.Argument(help="Question for the answer worker")],
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Ask the answer worker a one-shot question."""
    config = _setup(config_path, verbose)

    async def _ask() -> str:
        async with open_orchestrator(config) as orchestrator:
            return await orchestrator.answer_question(question)

    console.print(asyncio.run(_ask()))


@app.command()
def verify(
    task_id: Annotated[str, typer.Argument(help="Ticket id of the task")],
    diff: Annotated[Path, typer.Option("--diff", "-d", help="File containing the code diff")],
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Ask the verification worker for a PASS/FAIL verdict on a diff."""
    config = _setup(config_path, verbose)
    try:
        diff_text = diff.read_text()
    except OSError as e:
        print_error(f"Cannot read diff: {e}")
        raise typer.Exit(1) from e

    async def _verify():
        async with open_orchestrator(config) as orchestrator:
            return await orchestrator.route_to_verification(task_id, diff_text)

    verdict = asyncio.run(_verify())
    if verdict.passed:
        print_success(f"PASS: {verdict.explanation}")
    else:
        print_error(f"FAIL: {verdict.explanation}")
        raise typer.Exit(1)


@app.command()
def tickets(
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """List tickets in the configured store."""
    config = _setup(config_path, verbose)

    async def _list():
        async with open_store(config) as store:
            return await store.list()

    print_tickets(asyncio.run(_list()))


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Ticket title")],
    description: Annotated[str, typer.Option("--description", "-m", help="Ticket body")] = "",
    priority: Annotated[int, typer.Option("--priority", "-p", help="1 (highest) to 3")] = 2,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Create an open ticket (a new task for the queue)."""
    config = _setup(config_path, verbose)
    if config.store.backend != "sqlite":
        print_error("Adding tickets needs a persistent store (set store.backend: sqlite)")
        raise typer.Exit(1)

    async def _add():
        async with open_store(config) as store:
            return await store.create(
                TicketCreate(title=title, description=description, priority=priority, creator="cli")
            )

    ticket = asyncio.run(_add())
    print_success(f"Created ticket {ticket.id}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
