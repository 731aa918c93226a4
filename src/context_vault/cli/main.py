"""
Context Vault CLI - manage knowledge objects, links and retrieval
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..errors import VaultError
from ..knowledge_graph.models import RelationshipFilters
from ..objects.types import OBJECT_TYPES, KnowledgeObject
from ..settings import VaultSettings, settings
from ..vault import Vault

console = Console()

TYPE_CHOICE = click.Choice(list(OBJECT_TYPES))


def _configure_logging(level: str | None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _vault(ctx: click.Context) -> Vault:
    if "vault" not in ctx.obj:
        s: VaultSettings = ctx.obj["settings"]
        vault = Vault.from_settings(s)
        ctx.obj["vault"] = vault
        ctx.call_on_close(vault.close)
    return ctx.obj["vault"]


def _short(text: str, n: int = 80) -> str:
    text = " ".join(text.split())
    return text[:n] + "..." if len(text) > n else text


def _objects_table(objs: list[KnowledgeObject], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type", style="magenta")
    table.add_column("Name", style="bold")
    table.add_column("Date", style="green")
    table.add_column("Embedding", style="blue")
    table.add_column("Content", overflow="fold")
    for o in objs:
        table.add_row(
            o.id, o.type.value, o.name, o.date or "", o.embedding_status.value, _short(o.content)
        )
    return table


def _fail(e: VaultError) -> click.ClickException:
    field = getattr(e, "field", None)
    return click.ClickException(f"{field}: {e}" if field else str(e))


@click.group()
@click.option("--db", "db_path", default=None, help="SQLite file (default: $CONTEXT_VAULT_DB_PATH)")
@click.option("--log-level", default=None, help="Logging level")
@click.version_option(__version__, prog_name="context-vault")
@click.pass_context
def cli(ctx, db_path, log_level):
    """Context Vault - typed knowledge objects with mention links and RAG retrieval"""
    _configure_logging(log_level)
    s = settings.model_copy(update={"db_path": db_path}) if db_path else settings
    ctx.obj = {"settings": s}


@cli.command()
@click.argument("object_type", type=TYPE_CHOICE)
@click.argument("name")
@click.option("--content", "-c", default="", help="Object text")
@click.option("--content-file", type=click.File("r", encoding="utf-8"), help="Read text from a file")
@click.option("--alias", "aliases", multiple=True, help="Alias (repeatable)")
@click.option("--date", default=None, help="YYYY-MM-DD (documents, letters, issues, logs, meetings)")
@click.option("--ocr", is_flag=True, help="Mark as OCR output (not embedded until edited)")
@click.pass_context
def add(ctx, object_type, name, content, content_file, aliases, date, ocr):
    """Create an object"""
    if content_file is not None:
        content = content_file.read()
    try:
        obj = _vault(ctx).create_object(
            {
                "type": object_type,
                "name": name,
                "content": content,
                "aliases": list(aliases),
                "date": date,
                "is_from_ocr": ocr,
            }
        )
    except VaultError as e:
        raise _fail(e) from e
    console.print(f"[green]Created[/green] {obj.type.value} [bold]{obj.name}[/bold] ({obj.id})")


@cli.command()
@click.argument("object_id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def show(ctx, object_id, as_json):
    """Show one object with its chunks and relationships"""
    vault = _vault(ctx)
    obj = vault.get_object(object_id)
    if obj is None:
        raise click.ClickException(f"object {object_id} not found")
    edges = vault.neighbors(object_id)
    chunks = vault.chunks.get_by_object(object_id)
    if as_json:
        d = obj.to_dict()
        d["relationships"] = [r.to_dict() for r in edges]
        d["chunks"] = len(chunks)
        click.echo(json.dumps(d, ensure_ascii=False, indent=2))
        return

    meta = [
        f"[magenta]{obj.type.value}[/magenta]  {obj.id}",
        f"aliases: {', '.join(obj.aliases) or '-'}",
        f"date: {obj.date or '-'}",
        f"embedding: {obj.embedding_status.value}  chunks: {len(chunks)}",
    ]
    if obj.file.has_file:
        meta.append(f"file: {obj.file.original_file_name} ({obj.file.mime_type})")
    console.print(Panel("\n".join(meta), title=obj.name))
    if obj.content:
        console.print(obj.content)
    if edges:
        console.print(f"\n[bold]Relationships ({len(edges)})[/bold]")
        for r in edges:
            arrow = "->" if r.source_id == object_id else "<-"
            other = r.target_id if r.source_id == object_id else r.source_id
            other_type = r.target_type if r.source_id == object_id else r.source_type
            console.print(f"  {arrow} [magenta]{other_type.value}[/magenta] {other}")


@cli.command(name="list")
@click.option("--type", "object_type", type=TYPE_CHOICE, default=None)
@click.pass_context
def list_objects(ctx, object_type):
    """List objects, newest first"""
    objs = _vault(ctx).list_objects(object_type)
    if not objs:
        console.print("[yellow]No objects[/yellow]")
        return
    console.print(_objects_table(objs, f"{len(objs)} objects"))


@cli.command()
@click.argument("query")
@click.option("--type", "object_type", type=TYPE_CHOICE, default=None)
@click.pass_context
def search(ctx, query, object_type):
    """Text search over name, content, aliases and dates"""
    res = _vault(ctx).search_objects(query, object_type)
    if not res.total:
        console.print("[yellow]No results found[/yellow]")
        return
    console.print(_objects_table(res.objects, f"Search results for '{query}' ({res.total})"))


@cli.command()
@click.argument("object_id")
@click.option("--name", default=None)
@click.option("--content", "-c", default=None)
@click.option("--content-file", type=click.File("r", encoding="utf-8"))
@click.option("--alias", "aliases", multiple=True, help="Replace aliases (repeatable)")
@click.option("--clear-aliases", is_flag=True)
@click.option("--date", default=None, help="YYYY-MM-DD, or '' to clear")
@click.option("--type", "object_type", type=TYPE_CHOICE, default=None)
@click.pass_context
def update(ctx, object_id, name, content, content_file, aliases, clear_aliases, date, object_type):
    """Update fields of an object"""
    changes: dict = {}
    if name is not None:
        changes["name"] = name
    if content_file is not None:
        content = content_file.read()
    if content is not None:
        changes["content"] = content
    if aliases or clear_aliases:
        changes["aliases"] = list(aliases)
    if date is not None:
        changes["date"] = date
    if object_type is not None:
        changes["type"] = object_type
    if not changes:
        raise click.UsageError("nothing to update")
    try:
        obj = _vault(ctx).update_object(object_id, changes)
    except VaultError as e:
        raise _fail(e) from e
    if obj is None:
        raise click.ClickException(f"object {object_id} not found")
    console.print(f"[green]Updated[/green] {obj.name} (embedding: {obj.embedding_status.value})")


@cli.command()
@click.argument("object_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx, object_id, yes):
    """Delete an object with its chunks and relationships"""
    vault = _vault(ctx)
    obj = vault.get_object(object_id)
    if obj is None:
        raise click.ClickException(f"object {object_id} not found")
    if not yes:
        click.confirm(f"Delete {obj.type.value} '{obj.name}'?", abort=True)
    try:
        vault.delete_object(object_id)
    except VaultError as e:
        raise _fail(e) from e
    console.print(f"[red]Deleted[/red] {obj.name}")


@cli.command()
@click.argument("text")
@click.option("--suggest", is_flag=True, help="Treat TEXT as a prefix and list mention candidates")
@click.option("--limit", default=10, help="Max suggestions")
@click.pass_context
def mentions(ctx, text, suggest, limit):
    """Parse and resolve @[type:name|alias] mentions in TEXT"""
    vault = _vault(ctx)
    if suggest:
        for item in vault.mention_suggestions(text, limit):
            aliases = f" ({', '.join(item.aliases)})" if item.aliases else ""
            console.print(f"@[{item.type.value}:{item.name}]{aliases}  [dim]{item.id}[/dim]")
        return

    parsed, _ids = vault.resolve_mentions(text)
    if not parsed:
        console.print("[yellow]No mentions[/yellow]")
        return
    table = Table(title="Mentions")
    table.add_column("Span", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Name")
    table.add_column("Alias")
    table.add_column("Object", style="green")
    for m in parsed:
        table.add_row(
            f"{m.start}-{m.end}",
            m.type.value,
            m.name,
            m.alias or "",
            m.object_id or "[red]unresolved[/red]",
        )
    console.print(table)


@cli.command()
@click.argument("source_id")
@click.argument("target_id")
@click.pass_context
def link(ctx, source_id, target_id):
    """Create a relationship SOURCE -> TARGET"""
    try:
        rel = _vault(ctx).link(source_id, target_id)
    except VaultError as e:
        raise _fail(e) from e
    if rel is None:
        raise click.ClickException("source or target object does not exist")
    console.print(
        f"[green]Linked[/green] {rel.source_type.value}:{rel.source_id} -> "
        f"{rel.target_type.value}:{rel.target_id} ({rel.id})"
    )


@cli.command()
@click.option("--source", "source_id", default=None)
@click.option("--target", "target_id", default=None)
@click.option("--source-type", type=TYPE_CHOICE, default=None)
@click.option("--target-type", type=TYPE_CHOICE, default=None)
@click.option("--of", "of_id", default=None, help="Edges touching this object (see --direction)")
@click.option("--direction", type=click.Choice(["outgoing", "incoming", "both"]), default="both")
@click.option("--limit", type=int, default=None)
@click.option("--offset", type=int, default=None)
@click.pass_context
def relationships(ctx, source_id, target_id, source_type, target_type, of_id, direction, limit, offset):
    """Query relationships"""
    vault = _vault(ctx)
    try:
        if of_id:
            rels = vault.neighbors(of_id, direction)
            total = len(rels)
        else:
            page = vault.relationships(
                RelationshipFilters(
                    source_id=source_id,
                    target_id=target_id,
                    source_type=source_type,
                    target_type=target_type,
                    limit=limit,
                    offset=offset,
                )
            )
            rels, total = page.relationships, page.total
    except VaultError as e:
        raise _fail(e) from e

    if not rels:
        console.print("[yellow]No relationships[/yellow]")
        return
    table = Table(title=f"Relationships ({len(rels)} of {total})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Source")
    table.add_column("Target")
    table.add_column("Created", style="green")
    for r in rels:
        table.add_row(
            r.id,
            f"{r.source_type.value}:{r.source_id}",
            f"{r.target_type.value}:{r.target_id}",
            r.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.pass_context
def embed(ctx):
    """Embed every object waiting in the queue, then exit"""
    stats = asyncio.run(_vault(ctx).embed_pending())
    if not stats:
        console.print("[yellow]Nothing to embed[/yellow]")
        return
    console.print(", ".join(f"{k}: {v}" for k, v in sorted(stats.items())))


@cli.command()
@click.argument("query")
@click.option("--budget", "budget_tokens", type=int, default=None, help="Token budget")
@click.option("--doc-top-k", type=int, default=None)
@click.option("--chunk-top-k", type=int, default=None)
@click.option("--window", "context_window", type=int, default=None, help="Neighbour chunks per hit")
@click.option("--no-citations", is_flag=True)
@click.option("--exclude", multiple=True, help="Object id to leave out (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def retrieve(ctx, query, budget_tokens, doc_top_k, chunk_top_k, context_window, no_citations, exclude, as_json):
    """Build the retrieval context for QUERY"""
    overrides = {
        k: v
        for k, v in {
            "budget_tokens": budget_tokens,
            "doc_top_k": doc_top_k,
            "chunk_top_k": chunk_top_k,
            "context_window": context_window,
        }.items()
        if v is not None
    }
    if no_citations:
        overrides["add_citations"] = False
    try:
        ranked = asyncio.run(_vault(ctx).build_context(query, exclude_ids=exclude, **overrides))
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    md = ranked.metadata
    if as_json:
        click.echo(
            json.dumps(
                {
                    "context_text": ranked.context_text,
                    "citations": [c.to_dict() for c in ranked.citations],
                    "used_docs": [{"id": d.id, "name": d.name, "type": d.type} for d in ranked.used_docs],
                    "metadata": {
                        "total_docs": md.total_docs,
                        "total_chunks": md.total_chunks,
                        "strategy": md.strategy,
                        "estimated_tokens": md.estimated_tokens,
                        "processing_time_ms": md.processing_time_ms,
                    },
                },
                ensure_ascii=False,
                indent=2,
            )
        )
        return

    if not ranked.items:
        console.print(f"[yellow]No context[/yellow] (strategy: {md.strategy})")
        return
    console.print(Panel(ranked.context_text, title=f"Context for '{query}'"))
    if ranked.citations:
        table = Table(title="Citations")
        table.add_column("#", style="cyan", width=4)
        table.add_column("Score", style="green", width=8)
        table.add_column("Object")
        table.add_column("Chunks", style="blue")
        for c in ranked.citations:
            table.add_row(
                str(c.id),
                f"{c.relevance_score:.3f}",
                f"{c.object_type}:{c.object_name}",
                ",".join(map(str, c.chunk_indexes)) if c.chunk_indexes else "full",
            )
        console.print(table)
    console.print(
        f"[dim]{md.total_docs} docs, {md.total_chunks} chunks, "
        f"~{md.estimated_tokens} tokens, {md.processing_time_ms:.1f} ms[/dim]"
    )


@cli.command()
@click.option("--type", "object_type", type=TYPE_CHOICE, default=None)
@click.option("--queue-only", is_flag=True, help="Only flag objects; let the worker pick them up")
@click.pass_context
def rechunk(ctx, object_type, queue_only):
    """Regenerate chunks and embeddings"""
    vault = _vault(ctx)
    res = vault.rechunk(object_type)
    console.print(f"Queued {res['processed']}/{res['total']} objects")
    if not queue_only and res["total"]:
        stats = asyncio.run(vault.embed_pending())
        console.print(", ".join(f"{k}: {v}" for k, v in sorted(stats.items())))


async def _run_worker(vault: Vault) -> None:
    await vault.start_worker()
    try:
        await asyncio.Event().wait()
    finally:
        await vault.aclose()


@cli.command()
@click.pass_context
def worker(ctx):
    """Run the embedding worker until interrupted"""
    vault = _vault(ctx)
    try:
        asyncio.run(_run_worker(vault))
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
