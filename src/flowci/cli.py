# cli.py
from __future__ import annotations

import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click
import yaml

from flowci.artifacts import ArtifactRegistry
from flowci.cache import CacheStore
from flowci.config import Settings, secrets_from_env
from flowci.context import RunContext, Secrets
from flowci.errors import DefinitionError
from flowci.git import GitError, current_branch, get_remote_url, head_sha, repository_slug, working_changes
from flowci.journal import Journal
from flowci.loader import load_pipeline, validate_pipeline
from flowci.model import RunResult
from flowci.scheduler import Scheduler
from flowci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_INTERRUPTED = 130

DEFAULT_PIPELINE_FILES = ("pipeline.yml", "pipeline.yaml", "flowci_workflow.py")


def find_pipeline_files() -> list[Path]:
    """Candidate pipeline files in the current directory."""
    cwd = Path(".")
    found = [cwd / name for name in DEFAULT_PIPELINE_FILES if (cwd / name).exists()]
    found.extend(sorted(p for p in cwd.glob("*_workflow.py") if p not in found))
    found.extend(sorted((cwd / ".github" / "workflows").glob("*.y*ml")))
    return found


def discover_pipeline(arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument or by discovery.

    Raises:
        SystemExit(2): nothing found, or several candidates
    """
    console = get_console()

    if arg:
        path = Path(arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {arg}",
                suggestion="Specify an existing file:\n  flowci run pipeline.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES),
                     "  *_workflow.py", "  .github/workflows/*.yml"],
            suggestion="Create pipeline.yml or pass the file explicitly:\n  flowci run path/to/pipeline.yml",
        )
        sys.exit(EXIT_DEFINITION)
    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(f) for f in files],
        )
        sys.exit(EXIT_DEFINITION)
    return files[0]


def _pairs(values: Tuple[str, ...], option: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=option)
        out[key] = value
    return out


def _load_secrets(secret: Tuple[str, ...], secrets_file: Optional[str]) -> Secrets:
    values = secrets_from_env()
    if secrets_file:
        data = yaml.safe_load(Path(secrets_file).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise click.BadParameter("secrets file must be a YAML mapping", param_hint="--secrets-file")
        values.update({str(k): str(v) for k, v in data.items()})
    values.update(_pairs(secret, "--secret"))
    return Secrets(values)


def _git_or(default, fn, *args):
    try:
        return fn(*args)
    except GitError as e:
        logging.getLogger(__name__).debug("git lookup failed: %s", e)
        return default


def new_run_id() -> str:
    return f"{int(time.time())}-{uuid.uuid4().hex[:8]}"


def _handle_definition_error(e: DefinitionError, path: Path) -> None:
    get_console().print_error("Invalid pipeline", f"{path}: {e}")
    sys.exit(EXIT_DEFINITION)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (debug logging, stack traces and step output)",
)
@click.pass_context
def cli(ctx, debug):
    """flowci: run GitHub-Actions-style CI pipelines locally."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = Settings.from_env()
    except DefinitionError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(EXIT_DEFINITION)


@cli.command()
@click.argument("pipeline_file", required=False)
@click.option("--event", default="push", show_default=True, help="Triggering event (push, pull_request, ...)")
@click.option("--branch", default=None, help="Branch the run is for (defaults to the current git branch)")
@click.option("--sha", default=None, help="Commit sha (defaults to git HEAD)")
@click.option("--repository", default=None, help="owner/name (defaults to the origin remote)")
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Maximum jobs running at once")
@click.option("--dry-run", is_flag=True, default=False, help="Evaluate guards and print the plan only")
@click.option("--secret", multiple=True, metavar="NAME=VALUE", help="Secret exposed as secrets.NAME")
@click.option("--secrets-file", type=click.Path(exists=True, dir_okay=False), help="YAML mapping of secrets")
@click.option("--env", "env_vars", multiple=True, metavar="NAME=VALUE", help="Extra environment variable")
@click.option("--workspace", type=click.Path(file_okay=False), default=".", show_default=True)
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--artifact-dir", default=None, help="Artifact directory")
@click.option("--journal", default=None, help="JSON-lines journal path")
@click.option("--git-diff/--no-git-diff", default=False, help="Use git to compute the changed files for path filters")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--changed-file", multiple=True, help="Changed file for path filters (repeatable)")
@click.pass_context
def run(ctx, pipeline_file, event, branch, sha, repository, concurrency, dry_run, secret, secrets_file,
        env_vars, workspace, cache_dir, artifact_dir, journal, git_diff, compare_ref, changed_file):
    """Run a pipeline."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].with_overrides(
        cache_dir=Path(cache_dir) if cache_dir else None,
        artifact_dir=Path(artifact_dir) if artifact_dir else None,
        journal=Path(journal) if journal else None,
        concurrency=concurrency,
    )
    path = discover_pipeline(pipeline_file)

    try:
        pipeline = load_pipeline(path)
    except DefinitionError as e:
        _handle_definition_error(e, path)

    ws = Path(workspace).resolve()
    branch = branch or _git_or("main", current_branch, ws)
    sha = sha or _git_or("0" * 40, head_sha, ws)
    repository = repository or repository_slug(_git_or(None, get_remote_url, "origin", ws)) or f"local/{ws.name}"

    changed: Optional[List[str]] = None
    if changed_file:
        changed = list(changed_file)
    elif git_diff:
        _head, changed = _git_or((None, None), working_changes, compare_ref, ws)

    if not pipeline.triggered_by(event, branch, changed):
        console.print_not_triggered(pipeline.name, event, branch)
        sys.exit(EXIT_OK)

    run_ctx = RunContext(
        run_id=new_run_id(),
        event=event,
        branch=branch,
        sha=sha,
        repository=repository,
        workspace=ws,
        env=_pairs(env_vars, "--env"),
        secrets=_load_secrets(secret, secrets_file),
    )

    try:
        scheduler = Scheduler(
            pipeline,
            run_ctx,
            cache=CacheStore(settings.cache_dir),
            artifacts=ArtifactRegistry(settings.artifact_dir, settings.artifact_retention_days),
            journal=Journal(settings.journal),
            concurrency=settings.concurrency,
            grace_period=settings.grace_period,
            poll_interval=settings.poll_interval,
        )
    except DefinitionError as e:
        _handle_definition_error(e, path)

    try:
        result = scheduler.run(dry_run=dry_run)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)

    if scheduler.interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK if result.result == RunResult.SUCCESS else EXIT_FAILED)


@cli.command()
@click.argument("pipeline_file", required=False)
def validate(pipeline_file):
    """Check a pipeline file without running it."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
        graph = validate_pipeline(pipeline)
    except DefinitionError as e:
        _handle_definition_error(e, path)

    console.print_header(pipeline.name)
    console.print_info(f"{path}: OK ({len(pipeline.jobs)} jobs)")
    for i, level in enumerate(graph.levels(), start=1):
        console.print_info(f"  stage {i}: {', '.join(level)}")


# ----------------------------------------------------------------------
# cache / artifacts maintenance
# ----------------------------------------------------------------------

@cli.group()
def cache():
    """Inspect and prune the cache store."""


@cache.command("list")
@click.option("--prefix", default="", help="Only keys starting with this prefix")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache_list(ctx, prefix, cache_dir):
    store = CacheStore(cache_dir or ctx.obj["settings"].cache_dir)
    console = get_console()
    entries = store.entries(prefix)
    if not entries:
        console.print_info("cache is empty")
        return
    now = time.time()
    for e in entries:
        console.print_info(f"{e.key}  {e.kind}  {e.size}B  {int(now - e.created_at)}s ago")


@cache.command("prune")
@click.option("--prefix", default="", help="Only prune keys starting with this prefix")
@click.option("--keep", default=3, show_default=True, type=click.IntRange(min=0), help="Newest entries to keep")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache_prune(ctx, prefix, keep, cache_dir):
    store = CacheStore(cache_dir or ctx.obj["settings"].cache_dir)
    removed = store.prune(prefix, keep=keep)
    get_console().print_info(f"removed {len(removed)} cache entries")


@cli.group()
def artifacts():
    """Inspect and expire published artifacts."""


@artifacts.command("list")
@click.argument("run_id")
@click.option("--artifact-dir", default=None, help="Artifact directory")
@click.pass_context
def artifacts_list(ctx, run_id, artifact_dir):
    registry = ArtifactRegistry(artifact_dir or ctx.obj["settings"].artifact_dir)
    for art in registry.list(run_id):
        get_console().print_info(f"{art.name}  producer={art.producer}  files={art.files}")


@artifacts.command("purge")
@click.option("--artifact-dir", default=None, help="Artifact directory")
@click.pass_context
def artifacts_purge(ctx, artifact_dir):
    """Delete artifacts past their retention period."""
    registry = ArtifactRegistry(artifact_dir or ctx.obj["settings"].artifact_dir)
    removed = registry.purge_expired()
    get_console().print_info(f"removed {len(removed)} expired artifacts")


if __name__ == "__main__":
    cli()
