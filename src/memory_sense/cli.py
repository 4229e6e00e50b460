"""CLI for MemorySense.

Commands:
    init-db                      - Create tables (and the pgvector extension)
    set <key> <json>             - Store a record, aligning entity fields
    get <key>                    - Show a record and its alignments
    query                        - Filtered retrieval
    recognize <json>             - Check whether a record is already stored
    enrich <key> <json>          - Merge new data into a stored record
    stats                        - Entity and alignment counts
    unlink <key> <field>         - Remove one alignment
    realign <key> <field> <id>   - Point a field at a specific entity
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Any, NoReturn
from uuid import UUID

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from memory_sense.clients.embeddings import EmbeddingClient
from memory_sense.config import settings
from memory_sense.db import async_session_factory, init_db
from memory_sense.errors import MemorySenseError
from memory_sense.memory import MemoryStore
from memory_sense.recognition.disambiguator import LLMDisambiguator
from memory_sense.recognition.enrichment import LLMEnricher

app = typer.Typer(
    name="memory-sense",
    help="MemorySense — entity-aware memory for agents",
    no_args_is_help=True,
)
console = Console()

TenantOption = Annotated[
    str | None, typer.Option("--tenant", "-t", help="Tenant ID (defaults to settings)")
]


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


@app.callback()
def main_callback(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] Invalid JSON: {e}")
        raise typer.Exit(1) from None


def parse_entity_options(entity: list[str] | None) -> dict[str, str]:
    """Turn ["venue=venue", "speakers[].name=person:0.7"] into a field spec."""
    spec: dict[str, str] = {}
    for item in entity or []:
        path, sep, type_spec = item.partition("=")
        if not sep or not path or not type_spec:
            console.print(f"[red]Error:[/red] Expected PATH=TYPE, got: {item}")
            raise typer.Exit(1)
        spec[path.strip()] = type_spec.strip()
    return spec


def fail(error: MemorySenseError) -> NoReturn:
    console.print(f"[red]Error ({error.code}):[/red] {error.message}")
    raise typer.Exit(1)


@app.command("init-db")
def init_database():
    """Initialize the database schema (creates tables if they don't exist)."""
    async def _init():
        await init_db()
        console.print("[green]Database initialized successfully.[/green]")

    run_async(_init())


@app.command("set")
def set_record(
    key: Annotated[str, typer.Argument(help="Record key")],
    value: Annotated[str, typer.Argument(help="Record value as JSON")],
    tag: Annotated[
        list[str] | None, typer.Option("--tag", help="Tag (repeatable)")
    ] = None,
    entity: Annotated[
        list[str] | None,
        typer.Option("--entity", "-e", help="Entity field PATH=TYPE[:THRESHOLD] (repeatable)"),
    ] = None,
    threshold: Annotated[
        float | None, typer.Option(help="Embedding threshold for entity alignment")
    ] = None,
    no_create: Annotated[
        bool, typer.Option("--no-create", help="Do not create entities for unmatched values")
    ] = False,
    tenant: TenantOption = None,
):
    """Store a record, aligning its entity fields."""
    data = parse_json(value)
    spec = parse_entity_options(entity)

    async def _set():
        await init_db()
        async with async_session_factory() as session:
            embed_fn = EmbeddingClient().embed if spec else None
            memory = MemoryStore(session, embed_fn=embed_fn)
            try:
                entry = await memory.set(
                    key,
                    data,
                    tags=tag,
                    entities=spec,
                    alignment_threshold=threshold,
                    auto_create_entities=not no_create,
                    tenant_id=tenant,
                )
            except MemorySenseError as e:
                fail(e)
            await session.commit()

        console.print(f"[green]Stored[/green] {entry.key}")
        for field_path, alignment in entry.alignments.items():
            console.print(
                f"  {field_path}: '{alignment.original_value}' → {alignment.canonical_name} "
                f"({alignment.confidence.value})"
            )

    run_async(_set())


@app.command("get")
def get_record(
    key: Annotated[str, typer.Argument(help="Record key")],
    tenant: TenantOption = None,
):
    """Show a record and its entity alignments."""
    async def _get():
        await init_db()
        async with async_session_factory() as session:
            entry = await MemoryStore(session).get(key, tenant_id=tenant)

        if entry is None:
            console.print(f"[red]Error:[/red] Record not found: {key}")
            raise typer.Exit(1)

        panel_content = [
            f"[bold]Key:[/bold] {entry.key}",
            f"[bold]Updated:[/bold] {entry.updated_at}",
        ]
        if entry.tags:
            panel_content.append(f"[bold]Tags:[/bold] {', '.join(entry.tags)}")
        panel_content.append("[bold]Value:[/bold]")
        panel_content.append(json.dumps(entry.value, indent=2, ensure_ascii=False))
        console.print(Panel("\n".join(panel_content), title="Record"))

        if entry.alignments:
            table = Table(title="Entity Alignments")
            table.add_column("Field")
            table.add_column("Value")
            table.add_column("Entity")
            table.add_column("ID", style="dim")
            table.add_column("Confidence")
            for field_path, alignment in entry.alignments.items():
                table.add_row(
                    field_path,
                    alignment.original_value,
                    alignment.canonical_name,
                    str(alignment.entity_id),
                    alignment.confidence.value,
                )
            console.print(table)

    run_async(_get())


@app.command()
def query(
    filter_: Annotated[
        list[str] | None,
        typer.Option("--filter", "-f", help="Filter expression, e.g. 'venue ~ \"KTMC\"'"),
    ] = None,
    tag: Annotated[str | None, typer.Option(help="Only records with this tag")] = None,
    pattern: Annotated[str | None, typer.Option(help="Key glob, e.g. 'event:*'")] = None,
    limit: Annotated[int, typer.Option(help="Max results")] = 20,
    tenant: TenantOption = None,
):
    """Query records with regular and entity-aware filters."""
    async def _query():
        await init_db()
        async with async_session_factory() as session:
            memory = MemoryStore(session, embed_fn=EmbeddingClient().embed)
            try:
                entries = await memory.get_many(
                    filters=filter_, tag=tag, pattern=pattern, limit=limit, tenant_id=tenant
                )
            except MemorySenseError as e:
                fail(e)

        if not entries:
            console.print("[yellow]No matching records.[/yellow]")
            return

        table = Table(title=f"Records ({len(entries)})")
        table.add_column("Key")
        table.add_column("Tags")
        table.add_column("Value", max_width=80)
        for entry in entries:
            table.add_row(
                entry.key,
                ", ".join(entry.tags),
                json.dumps(entry.value, ensure_ascii=False),
            )
        console.print(table)

    run_async(_query())


@app.command()
def recognize(
    candidate: Annotated[str, typer.Argument(help="Candidate record as JSON")],
    entity: Annotated[
        list[str] | None,
        typer.Option("--entity", "-e", help="Entity field PATH=TYPE[:THRESHOLD] (repeatable)"),
    ] = None,
    tag: Annotated[
        list[str] | None, typer.Option("--tag", help="Shortlist by tag (repeatable)")
    ] = None,
    threshold: Annotated[
        float, typer.Option(help="Recognition threshold")
    ] = settings.recognition_threshold,
    no_llm: Annotated[
        bool, typer.Option("--no-llm", help="Skip LLM disambiguation")
    ] = False,
    goal: Annotated[
        str | None, typer.Option(help="Agent goal passed to the LLM")
    ] = None,
    tenant: TenantOption = None,
):
    """Check whether a candidate record is already in memory."""
    data = parse_json(candidate)
    spec = parse_entity_options(entity)

    async def _recognize():
        await init_db()
        async with async_session_factory() as session:
            memory = MemoryStore(
                session,
                embed_fn=EmbeddingClient().embed,
                disambiguator=None if no_llm else LLMDisambiguator(),
            )
            try:
                result = await memory.recognize(
                    data,
                    tenant_id=tenant,
                    entities=spec,
                    tags=tag,
                    threshold=threshold,
                    agent_goal=goal,
                )
            except MemorySenseError as e:
                fail(e)

        verdict = "[green]MATCH[/green]" if result.is_match else "[yellow]NO MATCH[/yellow]"
        panel_content = [
            f"[bold]Result:[/bold] {verdict}",
            f"[bold]Confidence:[/bold] {result.confidence:.3f}",
            f"[bold]Used LLM:[/bold] {result.used_llm}",
        ]
        if result.matching_key:
            panel_content.append(f"[bold]Matching key:[/bold] {result.matching_key}")
        if result.explanation:
            panel_content.append(f"[bold]Explanation:[/bold] {result.explanation}")
        console.print(Panel("\n".join(panel_content), title="Recognition"))

    run_async(_recognize())


@app.command()
def enrich(
    key: Annotated[str, typer.Argument(help="Key of the record to enrich")],
    data: Annotated[str, typer.Argument(help="Additional data as JSON (object or list)")],
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Show the result without saving it")
    ] = False,
    force_llm: Annotated[
        bool, typer.Option("--force-llm", help="Let the LLM merge even simple differences")
    ] = False,
    focus: Annotated[
        list[str] | None, typer.Option("--focus", help="Field the LLM should focus on")
    ] = None,
    goal: Annotated[
        str | None, typer.Option(help="Agent goal passed to the LLM")
    ] = None,
    tenant: TenantOption = None,
):
    """Merge additional data into a stored record."""
    additional = parse_json(data)

    async def _enrich():
        await init_db()
        async with async_session_factory() as session:
            memory = MemoryStore(
                session, embed_fn=EmbeddingClient().embed, enricher=LLMEnricher()
            )
            try:
                outcome = await memory.enrich(
                    key,
                    additional,
                    dry_run=dry_run,
                    force_llm=force_llm,
                    focus_fields=focus,
                    agent_goal=goal,
                    tenant_id=tenant,
                )
            except MemorySenseError as e:
                fail(e)
            await session.commit()

        table = Table(title=f"Changes to {key}")
        table.add_column("Field", style="cyan")
        table.add_column("Action")
        table.add_column("Old")
        table.add_column("New")
        table.add_column("Source", style="dim")
        for change in outcome.changes:
            table.add_row(
                change.field,
                change.action,
                json.dumps(change.old_value, ensure_ascii=False),
                json.dumps(change.new_value, ensure_ascii=False),
                change.source,
            )
        console.print(table)
        if outcome.explanation:
            console.print(f"[bold]Explanation:[/bold] {outcome.explanation}")
        status = "[green]Saved[/green]" if outcome.saved else "[yellow]Not saved[/yellow]"
        console.print(f"{status} {key}")

    run_async(_enrich())


@app.command()
def stats(
    entity_type: Annotated[
        str | None, typer.Option("--type", help="Restrict to one entity type")
    ] = None,
    tenant: TenantOption = None,
):
    """Show entity and alignment statistics."""
    async def _stats():
        await init_db()
        async with async_session_factory() as session:
            result = await MemoryStore(session).entities.get_entity_stats(entity_type, tenant)

        console.print(Panel(
            f"[bold]Entities:[/bold] {result.total_entities}\n"
            f"[bold]Alignments:[/bold] {result.total_alignments}",
            title="MemorySense Statistics",
        ))

        if result.entities_by_type:
            table = Table(title="Entities by Type")
            table.add_column("Type")
            table.add_column("Count", justify="right")
            for name, count in sorted(result.entities_by_type.items(), key=lambda x: -x[1]):
                table.add_row(name, str(count))
            console.print(table)

    run_async(_stats())


@app.command()
def unlink(
    key: Annotated[str, typer.Argument(help="Record key")],
    field_path: Annotated[str, typer.Argument(help="Aligned field path")],
    tenant: TenantOption = None,
):
    """Remove the alignment of one field."""
    async def _unlink():
        await init_db()
        async with async_session_factory() as session:
            removed = await MemoryStore(session).entities.unlink_entity(key, field_path, tenant)
            await session.commit()

        if removed:
            console.print(f"[green]Unlinked[/green] {key}:{field_path}")
        else:
            console.print(f"[yellow]No alignment for[/yellow] {key}:{field_path}")

    run_async(_unlink())


@app.command()
def realign(
    key: Annotated[str, typer.Argument(help="Record key")],
    field_path: Annotated[str, typer.Argument(help="Field path")],
    entity_id: Annotated[str, typer.Argument(help="Target entity ID (UUID)")],
    tenant: TenantOption = None,
):
    """Force a field to align with a specific entity."""
    try:
        eid = UUID(entity_id)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid UUID: {entity_id}")
        raise typer.Exit(1) from None

    async def _realign():
        await init_db()
        async with async_session_factory() as session:
            try:
                alignment = await MemoryStore(session).entities.force_realign(
                    key, field_path, eid, tenant
                )
            except MemorySenseError as e:
                fail(e)
            await session.commit()

        console.print(
            f"[green]Realigned[/green] {key}:{field_path} → {alignment.canonical_name}"
        )

    run_async(_realign())


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
