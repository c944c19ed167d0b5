"""Command line interface for Artifact Harvester."""

import base64
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ConfigManager, HarvestConfig, Source
from .errors import HarvestError
from .services.extraction_service import ExtractionService
from .services.git_history import repository_slug
from .services.harvest_pool import HarvestPool
from .storage.artifact_store import COMMIT_SORTS, ArtifactStore
from .storage.models import ExtractionRun, RunStatus
from .utils.git_runner import Deadline

console = Console()

_STATUS_STYLES = {
    RunStatus.SUCCESS: "green",
    RunStatus.FAILED: "red",
    RunStatus.RUNNING: "yellow",
    RunStatus.PENDING: "dim",
}


def _get_config(ctx: click.Context) -> HarvestConfig:
    try:
        return ctx.obj["config_manager"].get_config()
    except (ValueError, ValidationError) as e:
        console.print(f"❌ Invalid configuration: {e}", style="red")
        sys.exit(1)


def _get_store(ctx: click.Context) -> ArtifactStore:
    config = _get_config(ctx)
    try:
        return ArtifactStore(config.store_path)
    except HarvestError as e:
        console.print(f"❌ Cannot open artifact store: {e}", style="red")
        sys.exit(1)


def _run_table(runs: List[ExtractionRun], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Source", style="blue")
    table.add_column("Status")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_column("Started")
    table.add_column("Error", style="red")
    for run in runs:
        style = _STATUS_STYLES.get(run.status, "")
        table.add_row(
            run.id[:8],
            run.source_id,
            f"[{style}]{run.status.value}[/{style}]" if style else run.status.value,
            str(run.created_artifacts),
            str(run.updated_artifacts),
            str(run.skipped_artifacts),
            run.started_at.strftime("%Y-%m-%d %H:%M:%S") if run.started_at else "",
            run.error_message or "",
        )
    return table


def _print_stats(stats: Dict[str, Any]) -> None:
    if not stats:
        return
    console.print(
        f"Branches: {', '.join(stats.get('branches', [])) or '-'}  "
        f"Commits: {stats.get('commits_total', 0)} total, "
        f"{stats.get('commits_already_harvested', 0)} already harvested, "
        f"{stats.get('commits_new', 0)} new, "
        f"{stats.get('commits_failed', 0)} skipped",
        style="dim",
    )
    if stats.get("branches_failed"):
        console.print(
            f"⚠️  Unresolved branches: {', '.join(stats['branches_failed'])}",
            style="yellow",
        )


@click.group()
@click.option("--config", "-c", type=click.Path(exists=False), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__, prog_name="artifact-harvester")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """Harvest git history into versioned commit and file artifacts.

    \b
    CONFIGURATION:
      Config file: .artifact-harvester/config.json
      Environment: ARTIFACT_HARVESTER_STORE_PATH, ARTIFACT_HARVESTER_RUN_TIMEOUT,
                   ARTIFACT_HARVESTER_DEFAULT_BRANCH

    \b
    EXAMPLES:
      artifact-harvester harvest https://github.com/org/repo.git --branch main
      artifact-harvester commits github.com/org/repo --search fix
      artifact-harvester snapshot github.com/org/repo 1a2b3c4
      artifact-harvester show github.com/org/repo 1a2b3c4 README.md
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    ctx.obj["config_manager"] = ConfigManager(Path(config) if config else None)


@cli.command()
@click.argument("repo_url")
@click.option("--source-id", help="Source identifier (default: repository slug)")
@click.option("--name", default="", help="Display name of the source")
@click.option(
    "--branch", "-b", "branches", multiple=True, help="Branch to harvest (repeatable)"
)
@click.option("--token", envvar="ARTIFACT_HARVESTER_TOKEN", help="HTTPS access token")
@click.option(
    "--ssh-key-file",
    type=click.Path(exists=True, dir_okay=False),
    help="SSH private key used for the clone",
)
@click.option("--timeout", type=float, help="Deadline for the whole run in seconds")
@click.pass_context
def harvest(
    ctx,
    repo_url: str,
    source_id: Optional[str],
    name: str,
    branches: tuple,
    token: Optional[str],
    ssh_key_file: Optional[str],
    timeout: Optional[float],
):
    """Harvest the history of REPO_URL into the artifact store."""
    config = _get_config(ctx)
    options: Dict[str, Any] = {"repo_url": repo_url}
    if branches:
        options["branches"] = list(branches)
    if token:
        options["auth_token"] = token
    if ssh_key_file:
        options["ssh_private_key"] = Path(ssh_key_file).read_text()

    source = Source(
        id=source_id or repository_slug(repo_url),
        name=name or repo_url,
        options=options,
    )
    store = _get_store(ctx)
    service = ExtractionService(store, config)
    deadline = Deadline(timeout if timeout is not None else config.run_timeout_seconds)

    try:
        with console.status(f"Harvesting {source.id}..."):
            run = service.run_extraction(source, deadline=deadline)
    except HarvestError as e:
        failed = store.list_runs(page=1, limit=1, source_id=source.id)["items"]
        if failed:
            console.print(_run_table(failed, "Harvest Run"))
        console.print(f"❌ Harvest failed: {e}", style="red")
        sys.exit(1)

    console.print(_run_table([run], "Harvest Run"))
    _print_stats(run.stats)


@cli.command("harvest-all")
@click.argument("sources_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def harvest_all(ctx, sources_file: str):
    """Harvest every source listed in SOURCES_FILE concurrently.

    \b
    SOURCES_FILE is a JSON list of sources:
      [{"id": "repo-a", "options": {"repo_url": "https://..."}}, ...]
    """
    config = _get_config(ctx)
    try:
        with open(sources_file, "r") as f:
            sources = [Source(**item) for item in json.load(f)]
    except (json.JSONDecodeError, TypeError, ValidationError) as e:
        console.print(f"❌ Invalid sources file: {e}", style="red")
        sys.exit(1)

    pool = HarvestPool(
        ExtractionService(_get_store(ctx), config),
        max_workers=config.max_workers,
        run_timeout_seconds=config.run_timeout_seconds,
    )
    outcomes = pool.harvest_all(sources)

    runs = [outcome.run for outcome in outcomes if outcome.run is not None]
    if runs:
        console.print(_run_table(runs, "Harvest Runs"))
    failures = [outcome for outcome in outcomes if not outcome.succeeded]
    for outcome in failures:
        console.print(f"❌ {outcome.source_id}: {outcome.error}", style="red")
    if failures:
        sys.exit(1)


@cli.command()
@click.argument("source_id")
@click.option("--search", "-s", help="Match hash, author, message or changed path")
@click.option(
    "--sort", type=click.Choice(sorted(COMMIT_SORTS)), default="newest", show_default=True
)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=25, show_default=True)
@click.pass_context
def commits(ctx, source_id: str, search: Optional[str], sort: str, page: int, limit: int):
    """List harvested commits of SOURCE_ID."""
    result = _get_store(ctx).list_commits(
        source_id, search=search, sort=sort, page=page, limit=limit
    )
    if not result["items"]:
        console.print("ℹ️  No commits found", style="blue")
        return

    table = Table(
        title=f"Commits of {source_id} ({result['total']} total, page {result['page']})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Commit", style="cyan", no_wrap=True)
    table.add_column("Date", style="blue")
    table.add_column("Author", style="green")
    table.add_column("Files", justify="right")
    table.add_column("Message")
    for item in result["items"]:
        message = item.get("message", "").strip().splitlines()
        table.add_row(
            item["commitHash"][:10],
            item.get("committer", {}).get("date", ""),
            item.get("author", {}).get("name", ""),
            str(len(item.get("changes", []))),
            message[0] if message else "",
        )
    console.print(table)


@cli.command()
@click.argument("source_id")
@click.argument("commit")
@click.pass_context
def files(ctx, source_id: str, commit: str):
    """List the changes of COMMIT."""
    store = _get_store(ctx)
    payload = store.get_commit(source_id, commit)
    if payload is None:
        console.print(f"❌ Commit {commit} not found for {source_id}", style="red")
        sys.exit(1)

    table = Table(
        title=f"Changes in {payload['commitHash'][:10]}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Status", style="yellow")
    table.add_column("Path", style="cyan")
    table.add_column("+", justify="right", style="green")
    table.add_column("-", justify="right", style="red")
    table.add_column("Size", justify="right")
    for change in payload.get("changes", []):
        path = change["path"]
        if change.get("previousPath"):
            path = f"{change['previousPath']} → {path}"
        binary = change.get("binary")
        table.add_row(
            change["status"],
            path,
            "bin" if binary else str(change.get("added") or 0),
            "bin" if binary else str(change.get("removed") or 0),
            "" if change.get("size") is None else str(change["size"]),
        )
    console.print(table)


@cli.command()
@click.argument("source_id")
@click.argument("commit")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=500, show_default=True)
@click.pass_context
def snapshot(ctx, source_id: str, commit: str, page: int, limit: int):
    """List every file of the tree as of COMMIT."""
    result = _get_store(ctx).get_snapshot(source_id, commit, page=page, limit=limit)
    if result is None:
        console.print(f"❌ Commit {commit} not found for {source_id}", style="red")
        sys.exit(1)

    table = Table(
        title=(
            f"Tree at {result['commitHash'][:10]} "
            f"({result['total']} files, page {result['page']})"
        ),
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Path", style="cyan")
    table.add_column("Blob", style="dim", no_wrap=True)
    table.add_column("Size", justify="right")
    table.add_column("Last changed in", style="blue", no_wrap=True)
    for entry in result["items"]:
        table.add_row(
            entry["path"],
            entry["blobId"][:10],
            "" if entry.get("size") is None else str(entry["size"]),
            entry["commitHash"][:10],
        )
    console.print(table)


@cli.command()
@click.argument("source_id")
@click.argument("commit")
@click.argument("path")
@click.pass_context
def show(ctx, source_id: str, commit: str, path: str):
    """Print the content of PATH as of COMMIT."""
    payload = _get_store(ctx).get_file_content(source_id, commit, path)
    if payload is None:
        console.print(f"❌ {path} not found at {commit}", style="red")
        sys.exit(1)

    if payload.get("encoding") == "base64":
        click.get_binary_stream("stdout").write(base64.b64decode(payload["content"]))
    else:
        click.echo(payload["content"], nl=False)


@cli.command()
@click.option("--source-id", help="Only runs of this source")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=25, show_default=True)
@click.pass_context
def runs(ctx, source_id: Optional[str], page: int, limit: int):
    """List extraction runs, newest first."""
    result = _get_store(ctx).list_runs(page=page, limit=limit, source_id=source_id)
    if not result["items"]:
        console.print("ℹ️  No runs found", style="blue")
        return
    console.print(
        _run_table(result["items"], f"Extraction Runs ({result['total']} total)")
    )


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
