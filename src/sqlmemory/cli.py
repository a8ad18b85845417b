"""Command-line access to the graph memory database.

The CLI opens the same SQLite file the MCP server uses, so it can inspect
and edit memory while the server is running.
"""

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, NoReturn

import click
from rich.console import Console
from rich.table import Table

from .config import DB_PATH_ENV, get_db_path
from .engine import MemoryEngine
from .errors import GraphMemoryError
from .models import Entity
from .store import SQLiteStore
from .timeutil import format_relative_time, parse_time_reference

console = Console()


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    raise SystemExit(1)


@contextmanager
def open_engine(ctx: click.Context) -> Iterator[MemoryEngine]:
    """Open the database, make sure the schema exists, close it afterwards.

    Engine errors raised inside the block are reported and exit with status 1.
    """
    store = SQLiteStore(ctx.obj["db_path"])
    try:
        engine = MemoryEngine(store)
        engine.initialize()
        yield engine
    except GraphMemoryError as e:
        _fail(str(e))
    finally:
        store.close()


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _entity_table(entities: list[Entity], title: str | None = None) -> Table:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="green")
    table.add_column("Observations", justify="right")
    table.add_column("Updated", style="dim")
    for entity in entities:
        table.add_row(
            entity.name,
            entity.entity_type,
            str(len(entity.observations)),
            format_relative_time(entity.updated_at),
        )
    return table


def _relation_table(relations, title: str | None = None) -> Table:
    table = Table(title=title)
    table.add_column("From", style="cyan")
    table.add_column("Type")
    table.add_column("To", style="cyan")
    for relation in relations:
        table.add_row(relation.from_entity, relation.relation_type, relation.to_entity)
    return table


@click.group()
@click.option(
    "--db-path",
    envvar=DB_PATH_ENV,
    type=click.Path(path_type=Path),
    help="Path to the memory database (default: ./databases/memory.db)",
)
@click.pass_context
def cli(ctx, db_path):
    """sqlmemory - knowledge graph memory on SQLite."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = get_db_path(db_path)


@cli.command()
@click.pass_context
def init(ctx):
    """Create the memory tables and indexes."""
    with open_engine(ctx):
        pass
    console.print(f"[green]✓[/green] Initialized memory database at {ctx.obj['db_path']}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json):
    """Show entity and relation counts."""
    with open_engine(ctx) as engine:
        stats = engine.stats()

    if as_json:
        _echo_json(stats)
        return

    console.print(f"Database: [cyan]{ctx.obj['db_path']}[/cyan]")
    console.print(f"Entities: {stats['entity_count']}, Relations: {stats['relation_count']}")
    if stats["types"]:
        table = Table(title="Entity types")
        table.add_column("Type", style="green")
        table.add_column("Count", justify="right")
        for entity_type, count in stats["types"].items():
            table.add_row(entity_type, str(count))
        console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def graph(ctx, as_json):
    """Show every entity and relation."""
    with open_engine(ctx) as engine:
        kg = engine.read_graph()

    if as_json:
        _echo_json(kg.to_wire())
        return

    if not kg.entities:
        console.print("[dim]No entities[/dim]")
        return
    console.print(_entity_table(kg.entities, title="Entities"))
    if kg.relations:
        console.print(_relation_table(kg.relations, title="Relations"))


@cli.command()
@click.argument("query")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search(ctx, query, as_json):
    """Search entities and relations by substring (case-insensitive)."""
    with open_engine(ctx) as engine:
        result = engine.search_nodes(query)

    if as_json:
        _echo_json(result.to_wire())
        return

    if not result.entities and not result.relations:
        console.print(f"[dim]No matches for '{query}'[/dim]")
        return
    if result.entities:
        console.print(_entity_table(result.entities, title="Entities"))
    if result.relations:
        console.print(_relation_table(result.relations, title="Relations"))


@cli.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def show(ctx, name, as_json):
    """Show one entity with its observations and relations."""
    with open_engine(ctx) as engine:
        entity = engine.open_node(name)
        if entity is None:
            _fail(f"Entity '{name}' does not exist")
        relations = engine.get_relations_for(name)

    if as_json:
        data = entity.to_wire()
        data["relations"] = [r.to_wire() for r in relations]
        _echo_json(data)
        return

    console.print(f"[bold cyan]{entity.name}[/bold cyan] [green]({entity.entity_type})[/green]")
    console.print(
        f"[dim]created {format_relative_time(entity.created_at)}, "
        f"updated {format_relative_time(entity.updated_at)}[/dim]"
    )
    for obs in entity.observations:
        console.print(f"  • {obs}", markup=False)
    if relations:
        console.print()
        console.print(_relation_table(relations, title="Relations"))


@cli.command()
@click.option("-n", "--limit", default=10, show_default=True, help="Max entities to show")
@click.option("--since", help="Only entities updated since (e.g. '2 days ago', '2025-01-15')")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def recent(ctx, limit, since, as_json):
    """Show the most recently updated entities."""
    since_dt = None
    if since:
        try:
            since_dt = parse_time_reference(since)
        except ValueError as e:
            _fail(str(e))

    with open_engine(ctx) as engine:
        entities = engine.get_recent_entities(limit=limit, since=since_dt)

    if as_json:
        _echo_json([e.to_wire() for e in entities])
        return

    if not entities:
        console.print("[dim]No entities[/dim]")
        return
    console.print(_entity_table(entities, title="Recent entities"))


@cli.command()
@click.argument("name")
@click.argument("entity_type")
@click.option("-o", "--observation", "observations", multiple=True, help="Observation (repeatable)")
@click.pass_context
def add(ctx, name, entity_type, observations):
    """Create an entity."""
    with open_engine(ctx) as engine:
        entity = engine.create_entity(name, entity_type, list(observations))
    console.print(
        f"[green]✓[/green] Created [cyan]{entity.name}[/cyan] ({entity.entity_type}) "
        f"with {len(entity.observations)} observations"
    )


@cli.command()
@click.argument("name")
@click.argument("contents", nargs=-1, required=True)
@click.pass_context
def observe(ctx, name, contents):
    """Append observations to an existing entity."""
    with open_engine(ctx) as engine:
        entity = engine.add_observation(name, list(contents))
    console.print(
        f"[green]✓[/green] [cyan]{entity.name}[/cyan] now has "
        f"{len(entity.observations)} observations"
    )


@cli.command()
@click.argument("from_entity")
@click.argument("relation_type")
@click.argument("to_entity")
@click.pass_context
def link(ctx, from_entity, relation_type, to_entity):
    """Create a relation FROM --TYPE--> TO."""
    with open_engine(ctx) as engine:
        relation = engine.create_relation(from_entity, to_entity, relation_type)
    console.print(f"[green]✓[/green] {relation.to_summary()}", highlight=False)


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def delete(ctx, names):
    """Delete entities and every relation touching them."""
    with open_engine(ctx) as engine:
        count = engine.delete_entities(names)
    console.print(f"Deleted {count} of {len(names)} entities")


@cli.command()
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Write to file instead of stdout")
@click.pass_context
def export(ctx, output):
    """Export the whole graph as JSON."""
    with open_engine(ctx) as engine:
        data = engine.read_graph().to_wire()

    if output is None:
        _echo_json(data)
        return
    output.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    console.print(
        f"[green]✓[/green] Exported {len(data['entities'])} entities and "
        f"{len(data['relations'])} relations to {output}"
    )


@cli.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_(ctx, source):
    """Import a graph exported with 'export'.

    Entities that already exist and relations with missing endpoints are
    reported and skipped; everything else is created.
    """
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        _fail(f"Cannot read {source}: {e}")

    with open_engine(ctx) as engine:
        entities, relations = engine.import_graph(payload)

    console.print(f"Entities: {entities.summary}")
    console.print(f"Relations: {relations.summary}")
    failures = [*entities.failed, *relations.failed]
    if failures:
        table = Table(title="Skipped")
        table.add_column("Code", style="yellow")
        table.add_column("Error")
        for failure in failures:
            table.add_row(failure.code, failure.error)
        console.print(table)


@cli.command()
@click.argument("dest", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def backup(ctx, dest):
    """Copy the database to DEST."""
    with open_engine(ctx) as engine:
        result = engine.store.backup(dest)
    if not result.success:
        _fail(f"{result.message}: {result.error}")
    console.print(f"[green]✓[/green] {result.message}")


@cli.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.confirmation_option(prompt="Replace the current memory with this backup?")
@click.pass_context
def restore(ctx, source):
    """Replace the database contents with a backup made by 'backup'."""
    with open_engine(ctx) as engine:
        result = engine.store.restore(source)
    if not result.success:
        _fail(f"{result.message}: {result.error}")
    console.print(f"[green]✓[/green] {result.message}")


if __name__ == "__main__":
    cli()
