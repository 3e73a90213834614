"""cataloger scan command - run the extraction pipeline against a repository."""

from __future__ import annotations

import json
import signal
from pathlib import Path
from types import FrameType

import click

from cataloger.cli.utils import fail, load_repo_config, open_store
from cataloger.core.errors import CatalogerError
from cataloger.core.progress import get_console, pluralize, spinner, status, summary_table
from cataloger.facts.models import ScanMode
from cataloger.scan import CancellationToken, ScanOrchestrator, ScanSummary


@click.command()
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ScanMode]),
    default=ScanMode.INCREMENTAL.value,
    show_default=True,
    help="incremental diffs against the last successful run; full enumerates the tree; "
    "integrity re-validates stored facts without sampling.",
)
@click.option(
    "--repo",
    "repo",
    default=".",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Repository root.",
)
@click.option("--since", default=None, help="Baseline commit SHA for an incremental run.")
@click.option("--json", "as_json", is_flag=True, help="Output the run summary as JSON")
@click.pass_context
def scan_command(ctx: click.Context, mode: str, repo: Path, since: str | None, as_json: bool) -> None:
    """Scan a repository and commit its facts to the knowledge base.

    Exits 0 on success, 1 when files were skipped or facts are unresolved,
    2 when the repository or the knowledge base is unusable.
    """
    repo_root = repo.resolve()
    config = load_repo_config(ctx, repo_root, as_json=as_json)
    store = open_store(repo_root, config, as_json=as_json)

    token = CancellationToken(config.scan.timeout_sec)

    def _on_interrupt(_signum: int, _frame: FrameType | None) -> None:
        token.cancel()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    orchestrator: ScanOrchestrator | None = None
    try:
        orchestrator = ScanOrchestrator(repo_root, store, config)
        if as_json:
            summary = orchestrator.run(ScanMode(mode), since=since, cancel=token)
        else:
            with spinner(f"Scanning {repo_root.name} ({mode})"):
                summary = orchestrator.run(ScanMode(mode), since=since, cancel=token)
    except CatalogerError as e:
        fail(e, as_json=as_json)
    finally:
        signal.signal(signal.SIGINT, previous)
        if orchestrator is not None:
            orchestrator.close()
        store.close()

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)
    ctx.exit(summary.exit_code)


def _print_summary(summary: ScanSummary) -> None:
    run = summary.run
    console = get_console()
    rows: dict[str, object] = {
        "Run": run.id,
        "Mode": run.mode.value,
        "Commit": run.commit_sha or "-",
        "Status": run.status_label,
        "Files scanned": run.files_scanned,
        "Files skipped": run.files_skipped,
        "Facts added": run.facts_added,
        "Facts retired": run.facts_retired,
        "Unresolved": run.unresolved,
    }
    if run.mode is ScanMode.INTEGRITY:
        rows["Facts drifted"] = run.facts_drifted
    if summary.samples_taken:
        rows["Samples"] = f"{summary.samples_taken} ({summary.samples_degraded} degraded)"
    console.print(summary_table("Scan summary", rows))

    for diagnostic in summary.diagnostics:
        status(f"{diagnostic.file_path}: {diagnostic.message}", style="warning", indent=2)
    if summary.low_confidence_edges:
        status(
            f"{pluralize(len(summary.low_confidence_edges), 'low-confidence edge')} held as candidates",
            style="info",
        )
    if summary.error is not None:
        status(summary.error.message, style="error")
    elif summary.exit_code == 0:
        status("Scan complete", style="success")
