"""cataloger search command - find facts by symbol, collection or field name."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.table import Table

from cataloger.cli.utils import load_repo_config, open_store
from cataloger.config.constants import SEARCH_DEFAULT_LIMIT
from cataloger.core.progress import get_console, status
from cataloger.kb import KnowledgeBaseQueries
from cataloger.scan import repository_id


@click.command()
@click.argument("query")
@click.option(
    "--repo",
    "repo",
    default=".",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Repository whose knowledge base is searched.",
)
@click.option("--limit", default=SEARCH_DEFAULT_LIMIT, show_default=True, type=click.IntRange(min=1))
@click.option("--all-repos", is_flag=True, help="Search every repository in the knowledge base.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search_command(
    ctx: click.Context,
    query: str,
    repo: Path,
    limit: int,
    all_repos: bool,
    as_json: bool,
) -> None:
    """Search live facts whose symbol, collection or field name contains QUERY."""
    repo_root = repo.resolve()
    config = load_repo_config(ctx, repo_root, as_json=as_json)
    store = open_store(repo_root, config, as_json=as_json)
    try:
        hits = KnowledgeBaseQueries(store).search(
            query,
            repository=None if all_repos else repository_id(repo_root),
            limit=limit,
        )
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps([h.to_dict() for h in hits], indent=2))
        return
    if not hits:
        status(f"No facts match {query!r}", style="info")
        return

    table = Table(show_lines=False)
    table.add_column("Symbol")
    table.add_column("Kind", style="dim")
    table.add_column("Collection")
    table.add_column("Conf.", justify="right")
    table.add_column("Matched", style="dim")
    table.add_column("Location", style="cyan")
    for hit in hits:
        fact = hit.fact
        table.add_row(
            fact.symbol_name,
            fact.kind.value,
            fact.collection_name or "-",
            f"{fact.confidence:.2f}" if fact.confidence is not None else "-",
            f"{hit.matched_on}:{hit.matched_text}",
            f"{fact.file_path}:{fact.line_range}",
        )
    get_console().print(table)
