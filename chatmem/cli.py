"""
chatmem Admin CLI
Commands for adding, searching and inspecting stored memories
"""

from __future__ import annotations

import asyncio
import json
import logging

import typer
from rich.console import Console
from rich.table import Table

from chatmem.kernel.backfill import backfill_embeddings
from chatmem.kernel.embedding_engine import EmbeddingEngine
from chatmem.kernel.errors import ChatmemError
from chatmem.kernel.hybrid_retriever import build_retriever
from chatmem.kernel.retrieval_config import Settings, load_settings
from chatmem.kernel.types import MemoryRecord, SearchMode, result_to_dict


app = typer.Typer(help="chatmem Admin CLI")
console = Console()
embeddings_app = typer.Typer(help="Embeddings management commands")
app.add_typer(embeddings_app, name="embeddings")

_state: dict[str, str | None] = {"config": None, "db": None}


@app.callback()
def main(
    config: str = typer.Option(None, "--config", "-c", help="Path to retrieval.yaml"),
    db: str = typer.Option(None, "--db", help="Database path (overrides config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Manage and query chatmem memories"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    _state["config"] = config
    _state["db"] = db


def _settings() -> Settings:
    try:
        return load_settings(_state["config"])
    except ChatmemError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1) from None


def _db_path(settings: Settings) -> str:
    return _state["db"] or settings.db_path


async def _closing(coro, resource):
    """Await coro, then close resource's HTTP clients on the same event loop"""
    try:
        return await coro
    finally:
        await resource.aclose()


@app.command("add")
def add_memory(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    content: str = typer.Argument(..., help="Memory text"),
    category: str = typer.Option("other", help="Memory category"),
    tag: list[str] = typer.Option(None, "--tag", "-t", help="Tag (repeatable)"),
    importance: int = typer.Option(5, min=1, max=10, help="Importance 1-10"),
    source: str = typer.Option("manual", help="conversation, upload or manual"),
    embed: bool = typer.Option(False, "--embed", help="Also store an embedding"),
):
    """Store a memory (duplicates of the same trimmed text are skipped)"""
    settings = _settings()
    try:
        record = MemoryRecord(
            user_id=user,
            content=content,
            category=category,
            tags=tag or [],
            importance=importance,
            source=source,
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from None

    retriever = build_retriever(settings, _db_path(settings))
    memory_id = retriever.memory_store.insert(record, skip_duplicates=True)
    console.print(f"Stored memory [bold]{memory_id}[/bold]")

    if not embed or retriever.embedding_engine is None:
        if embed:
            console.print("[yellow]Embedding engine unavailable; skipped embedding[/yellow]")
        asyncio.run(retriever.aclose())
        return

    stats = asyncio.run(
        _closing(
            backfill_embeddings(
                retriever.memory_store,
                retriever.vector_store,
                retriever.embedding_engine,
                user_id=user,
            ),
            retriever,
        )
    )
    console.print(f"Embedded {stats.embedded} memories ({stats.errors} errors)")


@app.command("search")
def search(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    query: str = typer.Argument("", help="Query text (empty lists top memories)"),
    mode: SearchMode = typer.Option(SearchMode.HYBRID, help="keyword, vector or hybrid"),
    keyword_weight: float = typer.Option(None, help="Keyword weight override"),
    vector_weight: float = typer.Option(None, help="Vector weight override"),
    threshold: float = typer.Option(None, help="Score threshold override"),
    limit: int = typer.Option(10, help="Maximum results"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
    debug: bool = typer.Option(False, "--debug", help="Print diagnostics"),
):
    """Search a user's memories"""
    settings = _settings()
    if debug:
        settings = Settings(
            db_path=settings.db_path,
            retrieval=settings.retrieval.with_overrides(debug=True),
            embeddings=settings.embeddings,
            remote_keywords=settings.remote_keywords,
        )
    retriever = build_retriever(settings, _db_path(settings))

    try:
        results = asyncio.run(
            _closing(
                retriever.hybrid_search(
                    user,
                    query,
                    mode=mode,
                    keyword_weight=keyword_weight,
                    vector_weight=vector_weight,
                    threshold=threshold,
                    limit=limit,
                ),
                retriever,
            )
        )
    except ChatmemError as e:
        console.print(f"[red]Search failed: {e}[/red]")
        raise typer.Exit(1) from None

    if as_json:
        console.print_json(json.dumps([result_to_dict(r) for r in results], ensure_ascii=False))
    else:
        table = Table(title=f"Results for {query!r} ({mode.value})")
        table.add_column("Score", style="green")
        table.add_column("Type", style="cyan")
        table.add_column("Id", style="magenta")
        table.add_column("Content")
        for r in results:
            ref = r.ref
            table.add_row(f"{r.relevance_score:.3f}", r.search_type.value, str(ref.id), ref.content)
        console.print(table)

    if debug:
        console.print_json(json.dumps(retriever.last_debug, ensure_ascii=False))


@app.command("stats")
def stats(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
):
    """Show memory and vector statistics for a user"""
    settings = _settings()
    retriever = build_retriever(settings, _db_path(settings))
    summary = asyncio.run(_closing(retriever.get_stats(user), retriever))

    memory = summary["memory"]
    vector = summary["vector"]
    console.print(f"\n[bold]Memories:[/bold] {memory['total']}")
    console.print(f"[bold]Vectorized:[/bold] {vector.get('vectorized_memories', 0)}")
    console.print(f"[bold]Avg dimension:[/bold] {vector.get('avg_vector_dimensions', 0):.0f}")
    if vector.get("dimension_mismatches"):
        console.print(
            f"[yellow]Dimension mismatches: {vector['dimension_mismatches']}[/yellow]"
        )

    table = Table(title="By category")
    table.add_column("Category", style="cyan")
    table.add_column("Memories", style="green")
    table.add_column("Vectors", style="yellow")
    categories = sorted(set(memory["by_category"]) | set(vector.get("categories", {})))
    for category in categories:
        table.add_row(
            category,
            str(memory["by_category"].get(category, 0)),
            str(vector.get("categories", {}).get(category, 0)),
        )
    console.print(table)


@app.command("delete")
def delete(memory_id: int = typer.Argument(..., help="Memory id")):
    """Delete a memory record (its vector, if any, becomes an orphan)"""
    settings = _settings()
    retriever = build_retriever(settings, _db_path(settings))
    deleted = retriever.memory_store.delete(memory_id)
    asyncio.run(retriever.aclose())
    if deleted:
        console.print(f"Deleted memory {memory_id}")
    else:
        console.print(f"[yellow]Memory {memory_id} not found[/yellow]")
        raise typer.Exit(1)


@embeddings_app.command("backfill")
def embeddings_backfill(
    user: str = typer.Option(None, "--user", "-u", help="Only this user"),
    batch: int = typer.Option(16, help="Texts per embedding request"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Count without writing"),
):
    """Embed memories that have no vector yet"""
    settings = _settings()
    retriever = build_retriever(settings, _db_path(settings))
    if retriever.embedding_engine is None:
        asyncio.run(retriever.aclose())
        console.print("[red]Embedding engine unavailable (check provider and API key)[/red]")
        raise typer.Exit(1)

    result = asyncio.run(
        _closing(
            backfill_embeddings(
                retriever.memory_store,
                retriever.vector_store,
                retriever.embedding_engine,
                user_id=user,
                batch_size=batch,
                dry_run=dry_run,
            ),
            retriever,
        )
    )
    console.print(result.report())
    if result.errors:
        raise typer.Exit(1)


@embeddings_app.command("ping")
def embeddings_ping():
    """Check that the embedding service answers"""
    settings = _settings()
    try:
        engine = EmbeddingEngine(settings.embeddings)
    except ValueError as e:
        console.print(f"[red]Error loading engine: {e}[/red]")
        raise typer.Exit(1) from None

    info = engine.model_info()
    console.print(f"Provider: {info['provider']}")
    console.print(f"Model: {info['name']}")
    console.print(f"Dimension: {info['dimension']}")

    check = asyncio.run(_closing(engine.test_connection(), engine))
    if check.success:
        console.print(f"[green]✓ OK[/green] ({check.response_time_ms:.0f}ms)")
    else:
        console.print(f"[red]✗ Failed: {check.error}[/red]")
        raise typer.Exit(1)


@app.command("analyze")
def analyze(
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    queries: list[str] = typer.Argument(..., help="Probe queries"),
):
    """Time keyword, vector and hybrid modes over probe queries"""
    settings = _settings()
    retriever = build_retriever(settings, _db_path(settings))
    report = asyncio.run(_closing(retriever.analyze_performance(user, queries), retriever))

    table = Table(title="Average latency")
    table.add_column("Mode", style="cyan")
    table.add_column("ms", style="green")
    table.add_row("keyword", f"{report.keyword_ms:.1f}")
    table.add_row("vector", f"{report.vector_ms:.1f}")
    table.add_row("hybrid", f"{report.hybrid_ms:.1f}")
    console.print(table)
    for line in report.recommendations:
        console.print(f"- {line}")


if __name__ == "__main__":
    app()
