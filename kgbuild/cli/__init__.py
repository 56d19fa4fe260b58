"""
Command-Line Interface

CLI commands for kgbuild operations.

Commands:
    kgbuild run               - Run the three pipeline stages until interrupted
    kgbuild submit            - Enqueue a file's chunks for extraction
    kgbuild status            - List extraction tasks
    kgbuild build-status      - List graph build tasks
    kgbuild schema            - Provision a graph's tables
    kgbuild cancel            - Fail a task's (or one chunk's) pending chunks
    kgbuild retry             - Retry a failed task, chunk or build task
    kgbuild remove            - Delete a task (or one chunk)
    kgbuild embedding-status  - Show stage 3 state and stale row counts

Usage:
    # Enqueue a file from a source chunk table
    kgbuild submit report.pdf --namespace acme --database docs --table chunks

    # Run the pipeline
    kgbuild run --data-dir ./kb_data

    # Inspect progress
    kgbuild status

The system database is opened by one process at a time, so status commands
cannot run against a data directory while `kgbuild run` holds it.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from kgbuild.errors import KGBuildError

__all__ = ["main", "app"]

app = typer.Typer(
    name="kgbuild",
    help="Knowledge-graph construction pipeline over embedded stores",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "progressing": "yellow",
    "completed": "green",
    "failed": "red",
}


class _Options:
    config_file: Optional[Path] = None
    data_dir: Optional[Path] = None


options = _Options()


@app.callback()
def _configure(
    data_dir: Optional[Path] = typer.Option(
        None,
        "--data-dir", "-d",
        help="Data directory (defaults to KGBUILD_DATA_DIR or ./kgbuild_data)",
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="TOML configuration file",
        exists=True,
        dir_okay=False,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log debug output",
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    options.data_dir = data_dir
    options.config_file = config_file


def _builder():
    from kgbuild.api.builder import KnowledgeGraphBuilder
    from kgbuild.config import KGBuildConfig

    config = KGBuildConfig.from_file(options.config_file) if options.config_file else KGBuildConfig()
    if options.data_dir is not None:
        config = config.with_overrides(data_dir=options.data_dir)
    return KnowledgeGraphBuilder(config)


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except KGBuildError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/]")
        raise typer.Exit(code=1)


def _status(value: str) -> str:
    style = STATUS_STYLES.get(value, "")
    return f"[{style}]{value}[/]" if style else value


@app.command()
def run(
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency", "-n",
        help="Chunks extracted in parallel by stage 1",
    ),
) -> None:
    """Run the extraction, graph build and embedding loops until interrupted."""

    async def _main() -> None:
        builder = _builder()
        if concurrency is not None:
            builder.update_concurrency(concurrency)
        try:
            await builder.start()
            console.print(f"[green]Pipeline running on {builder.config.data_dir}[/] (Ctrl-C to stop)")
            await asyncio.Event().wait()
        finally:
            await builder.stop()

    try:
        _run(_main())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/]")


@app.command()
def submit(
    file_key: str = typer.Argument(..., help="Source file key of the chunks"),
    namespace: str = typer.Option(..., "--namespace", "-N", help="Source namespace"),
    database: str = typer.Option(..., "--database", "-D", help="Source database"),
    table: str = typer.Option(..., "--table", "-t", help="Source chunk table"),
    graph: str = typer.Option("kg", "--graph", "-g", help="Graph-table base name"),
    target_namespace: Optional[str] = typer.Option(None, help="Target namespace (defaults to source)"),
    target_database: Optional[str] = typer.Option(None, help="Target database (defaults to source)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Extraction model"),
    language: Optional[str] = typer.Option(None, "--language", help="Output language"),
    entity_types: Optional[str] = typer.Option(
        None, "--entity-types", help="Comma-separated entity types"
    ),
) -> None:
    """Enqueue a file's chunks for extraction."""
    from kgbuild.types import ExtractionConfig, SubmitTaskParams

    params = SubmitTaskParams(
        file_key=file_key,
        source_namespace=namespace,
        source_database=database,
        source_table=table,
        graph_table_base=graph,
        target_namespace=target_namespace,
        target_database=target_database,
        config=ExtractionConfig(
            model=model,
            language=language,
            entity_types=[t.strip() for t in entity_types.split(",") if t.strip()] if entity_types else None,
        ),
    )

    async def _main() -> None:
        builder = _builder()
        try:
            result = await builder.submit_task(params)
        finally:
            await builder.stop()

        if result.task_id is None:
            console.print(f"[yellow]All {result.chunks_skipped} chunks of {file_key} are already covered[/]")
            return
        console.print(Panel(
            f"[green]Submitted {file_key}[/]\n\n"
            f"  Task ID: {result.task_id}\n"
            f"  Chunks: {result.chunks_total}\n"
            f"  Already covered: {result.chunks_skipped}",
            title="Task Created",
        ))

    _run(_main())


@app.command()
def status(
    task_id: Optional[str] = typer.Argument(None, help="Show the chunks of one task"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum tasks listed"),
) -> None:
    """List extraction tasks, or the chunks of one task."""

    async def _main() -> None:
        builder = _builder()
        try:
            if task_id is not None:
                chunks = await builder.list_chunks(task_id)
                table = Table(title=f"Task {task_id}")
                table.add_column("Chunk", justify="right")
                table.add_column("Ref", style="cyan")
                table.add_column("Status")
                table.add_column("Error", style="dim")
                for chunk in chunks:
                    table.add_row(
                        str(chunk.chunk_index), chunk.chunk_ref, _status(chunk.status.value), chunk.error or ""
                    )
                console.print(table)
                return

            tasks = await builder.query_status(limit)
        finally:
            await builder.stop()

        if not tasks:
            console.print("[yellow]No tasks[/]")
            return
        table = Table(title="Extraction Tasks")
        table.add_column("Task", style="cyan")
        table.add_column("File")
        table.add_column("Status")
        table.add_column("Done", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Total", justify="right")
        for task in tasks:
            table.add_row(
                task.id,
                task.file_key,
                _status(task.status.value),
                str(task.chunks_completed),
                str(task.chunks_failed),
                str(task.chunks_total),
            )
        console.print(table)

    _run(_main())


@app.command("build-status")
def build_status(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum build tasks listed"),
) -> None:
    """List graph build tasks."""

    async def _main() -> None:
        builder = _builder()
        try:
            builds = await builder.query_build_status(limit)
        finally:
            await builder.stop()

        if not builds:
            console.print("[yellow]No build tasks[/]")
            return
        table = Table(title="Build Tasks")
        table.add_column("Build", style="cyan")
        table.add_column("Graph")
        table.add_column("Status")
        table.add_column("Chunks", justify="right")
        table.add_column("Entities", justify="right", style="green")
        table.add_column("Relations", justify="right", style="green")
        for build in builds:
            table.add_row(
                build.id,
                build.target.key,
                _status(build.status.value),
                f"{build.chunks_completed + build.chunks_failed}/{build.chunks_total}",
                str(build.entities_upserted),
                str(build.relations_upserted),
            )
        console.print(table)

    _run(_main())


@app.command()
def schema(
    namespace: str = typer.Option(..., "--namespace", "-N", help="Target namespace"),
    database: str = typer.Option(..., "--database", "-D", help="Target database"),
    graph: str = typer.Option("kg", "--graph", "-g", help="Graph-table base name"),
) -> None:
    """Provision the four tables of a graph."""
    from kgbuild.types import GraphTarget

    target = GraphTarget(namespace=namespace, database=database, graph_table_base=graph)

    async def _main() -> None:
        builder = _builder()
        try:
            tables = await builder.create_graph_schema(target)
        finally:
            await builder.stop()
        console.print(f"[green]Provisioned {target.key}:[/] {', '.join(tables.all())}")

    _run(_main())


@app.command()
def cancel(
    task_id: str = typer.Argument(..., help="Task id"),
    chunk: Optional[int] = typer.Option(None, "--chunk", help="Cancel one chunk only"),
) -> None:
    """Fail the pending chunks of a task."""

    async def _main() -> None:
        builder = _builder()
        try:
            if chunk is None:
                task = await builder.cancel_task(task_id)
            else:
                task = await builder.cancel_chunk(task_id, chunk)
        finally:
            await builder.stop()
        console.print(f"Task {task.id}: {_status(task.status.value)}")

    _run(_main())


@app.command()
def retry(
    task_id: str = typer.Argument(..., help="Task id (or build task id with --build)"),
    chunk: Optional[int] = typer.Option(None, "--chunk", help="Retry one chunk only"),
    build: bool = typer.Option(False, "--build", help="Retry the failed chunks of a build task"),
) -> None:
    """Move failed chunks back to pending."""

    async def _main() -> None:
        builder = _builder()
        try:
            if build:
                record = await builder.retry_build_task(task_id)
            elif chunk is None:
                record = await builder.retry_task(task_id)
            else:
                record = await builder.retry_chunk(task_id, chunk)
        finally:
            await builder.stop()
        console.print(f"{record.id}: {_status(record.status.value)}")

    _run(_main())


@app.command()
def remove(
    task_id: str = typer.Argument(..., help="Task id"),
    chunk: Optional[int] = typer.Option(None, "--chunk", help="Remove one chunk only"),
) -> None:
    """Delete a task with its chunks and build task."""

    async def _main() -> None:
        builder = _builder()
        try:
            if chunk is None:
                await builder.remove_task(task_id)
                console.print(f"Removed task {task_id}")
            else:
                task = await builder.remove_chunk(task_id, chunk)
                if task is None:
                    console.print(f"Removed the last chunk; task {task_id} removed")
                else:
                    console.print(f"Removed chunk {chunk}; task {task.id}: {_status(task.status.value)}")
        finally:
            await builder.stop()

    _run(_main())


@app.command("embedding-status")
def embedding_status() -> None:
    """Show stage 3 state and stale row counts per graph."""

    async def _main() -> None:
        builder = _builder()
        try:
            report = await builder.embedding_status()
        finally:
            await builder.stop()

        if not report.targets:
            console.print("[yellow]No graphs provisioned[/]")
            return
        table = Table(title=f"Embeddings ({report.state})")
        table.add_column("Graph", style="cyan")
        table.add_column("Entities", justify="right")
        table.add_column("Stale entities", justify="right", style="yellow")
        table.add_column("Relations", justify="right")
        table.add_column("Stale relations", justify="right", style="yellow")
        for item in report.targets:
            table.add_row(
                item.target.key,
                str(item.embedded_entities),
                str(item.pending_entities),
                str(item.embedded_relations),
                str(item.pending_relations),
            )
        console.print(table)
        if report.last_error:
            console.print(f"[red]Last error: {report.last_error}[/]")

    _run(_main())


def main() -> None:
    """Entry point for the CLI."""
    app()
