"""cataloger get-type command - full fact, resolution and sample for a symbol."""

from __future__ import annotations

import json
from pathlib import Path

import click

from cataloger.cli.utils import fail, load_repo_config, open_store
from cataloger.config.constants import EXIT_PARTIAL
from cataloger.core.errors import KnowledgeBaseError
from cataloger.core.progress import get_console, summary_table
from cataloger.kb import KnowledgeBaseQueries, TypeDetail
from cataloger.scan import repository_id


@click.command()
@click.argument("symbol_name")
@click.option(
    "--repo",
    "repo",
    default=".",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Repository whose knowledge base is queried.",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def get_type_command(ctx: click.Context, symbol_name: str, repo: Path, as_json: bool) -> None:
    """Show everything known about SYMBOL_NAME, with a deep link to its source."""
    repo_root = repo.resolve()
    config = load_repo_config(ctx, repo_root, as_json=as_json)
    store = open_store(repo_root, config, as_json=as_json)
    try:
        details = KnowledgeBaseQueries(store).get_type(symbol_name, repository=repository_id(repo_root))
    except KnowledgeBaseError as e:
        fail(e, as_json=as_json, exit_code=EXIT_PARTIAL)
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps([d.to_dict() for d in details], indent=2))
        return
    for detail in details:
        _print_detail(detail)


def _print_detail(detail: TypeDetail) -> None:
    console = get_console()
    fact = detail.fact
    rows: dict[str, object] = {
        "Kind": fact.kind.value,
        "Link": detail.deep_link,
        "Commit": fact.commit_sha,
        "Status": f"{fact.status.value}{' (drifted)' if fact.drifted else ''}",
    }
    if detail.collection is not None:
        c = detail.collection
        rows["Collection"] = f"{c.collection_name or '-'} ({c.method.value}, {c.confidence:.2f})"
        if len(c.candidates) > 1:
            rows["Alternatives"] = ", ".join(f"{a.name}={a.confidence:.2f}" for a in c.candidates[1:])
    console.print(summary_table(fact.symbol_name, rows))

    for spec in fact.payload.get("fields", []):
        nullable = "?" if spec.get("nullable") else ""
        console.print(f"  {spec['name']}: {spec.get('declared_type') or 'Any'}{nullable}", highlight=False)

    for op in detail.operations:
        console.print(
            f"  [dim]{op.payload.get('operation')}[/dim] {op.symbol_name} -> "
            f"{op.collection_name or '?'} [cyan]{op.file_path}:{op.line_range}[/cyan]",
            highlight=False,
        )

    if detail.sample is not None:
        sample = detail.sample
        console.print(
            f"  [bold]Sample[/bold] {sample.collection_name} "
            f"({sample.status.value}, {sample.document_count} docs)",
            highlight=False,
        )
        for shape in sample.field_shapes:
            if shape.redacted:
                console.print(f"    {shape.path}: {shape.type} [red]redacted[/red]", highlight=False)
                continue
            extra = []
            if shape.length_range is not None:
                extra.append(f"len {shape.length_range[0]}-{shape.length_range[1]}")
            if shape.format_signature:
                extra.append(shape.format_signature)
            if shape.nullable:
                extra.append("nullable")
            suffix = f" ({', '.join(extra)})" if extra else ""
            console.print(f"    {shape.path}: {shape.type}{suffix}", highlight=False)
    console.print()
