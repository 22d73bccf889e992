# cli.py
from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Optional

import click

from flowci import settings
from flowci.actions import GitCheckout, RustupInstaller, WorkspaceCheckout
from flowci.cache import CacheManager, FileCacheStore
from flowci.engine import PipelineEngine, scheduler_factory
from flowci.errors import DefinitionError, ExternalToolError
from flowci.git_facts.git import current_branch, head_sha, remote_url
from flowci.loader import load_definition
from flowci.model import EXIT_DEFINITION_ERROR, EXIT_FAILED, Event, EventKind, PipelineDefinition
from flowci.report import definition_error_report
from flowci.trigger import evaluate
from flowci.ui.console import Console, get_console, set_console


def _load_or_exit(path: str, as_json: bool = False) -> PipelineDefinition:
    console = get_console()
    try:
        return load_definition(path)
    except DefinitionError as e:
        if as_json:
            click.echo(json.dumps(definition_error_report(e).to_dict(), indent=2))
        console.print_error(
            "Invalid pipeline definition",
            str(e),
            suggestion=f"Fix the definition and check it with:\n  flowci check --definition {path}",
        )
        sys.exit(EXIT_DEFINITION_ERROR)


def _resolve_event(kind: str, branch: Optional[str], ref: Optional[str], workspace: Path) -> Event:
    """Fill branch/ref from the local git checkout when they were not given."""
    console = get_console()
    try:
        if branch is None:
            branch = current_branch(cwd=workspace)
            console.print_debug(f"Using current branch: {branch}")
        if ref is None:
            ref = head_sha(cwd=workspace)
            console.print_debug(f"Using HEAD: {ref}")
    except ExternalToolError as e:
        console.print_error(
            "Could not determine the event branch",
            str(e),
            suggestion="Pass it explicitly:\n  flowci run --branch master --ref <sha>",
        )
        sys.exit(EXIT_FAILED)
    return Event(kind=EventKind(kind), branch=branch, ref=ref or "")


def _origin_or_exit() -> str:
    try:
        return remote_url()
    except ExternalToolError as e:
        get_console().print_error(
            "Could not determine the repository to clone",
            str(e),
            suggestion="Pass it explicitly:\n  flowci serve --repo <url>",
        )
        sys.exit(EXIT_FAILED)


def _cache_manager(cache_dir: str) -> CacheManager:
    return CacheManager(FileCacheStore(cache_dir))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """flowci: event-triggered CI pipeline runner."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--definition", "-d", default=settings.DEFINITION_PATH, show_default=True, help="Pipeline definition file")
@click.option("--event", "event_kind", type=click.Choice([k.value for k in EventKind]), default="push", show_default=True)
@click.option("--branch", default=None, help="Target branch (defaults to the current git branch)")
@click.option("--ref", default=None, help="Commit to build (defaults to HEAD)")
@click.option("--repo", default=None, help="Clone this repository for every job instead of running in place")
@click.option("--workspace", default=".", show_default=True, help="Source tree used when running in place")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Maximum jobs running at once")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Checkout directory used with --repo")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Cancel all jobs after the first failure")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
def run(definition, event_kind, branch, ref, repo, workspace, workers, cache_dir, work_dir, fail_fast, as_json):
    """Run the pipeline for one event.

    Exit codes: 0 succeeded, 1 failed, 2 cancelled, 3 invalid definition.
    """
    console = get_console()
    pipeline_def = _load_or_exit(definition, as_json)
    event = _resolve_event(event_kind, branch, ref, Path(workspace))

    engine = PipelineEngine(
        pipeline_def,
        scheduler_factory(
            workspace=Path(work_dir) if repo else Path(workspace),
            cache=_cache_manager(cache_dir),
            checkout=GitCheckout(repo) if repo else WorkspaceCheckout(),
            installer=RustupInstaller(),
            max_workers=workers,
            fail_fast=fail_fast,
            isolate=bool(repo),
        ),
    )

    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["report"] = engine.handle(event)
        except Exception as e:  # noqa: BLE001 - re-raised in the main thread
            outcome["error"] = e

    worker = threading.Thread(target=_target, name="flowci-pipeline")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted, cancelling jobs...")
        engine.abort()
        worker.join()

    if "error" in outcome:
        console.print_exception(outcome["error"])
        sys.exit(EXIT_FAILED)

    report = outcome.get("report")
    if report is None:
        # no trigger matched: nothing to do is a success
        if as_json:
            click.echo(json.dumps({"triggered": False}))
        sys.exit(0)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print_results(report)
    sys.exit(report.exit_code)


@cli.command()
@click.option("--definition", "-d", default=settings.DEFINITION_PATH, show_default=True, help="Pipeline definition file")
@click.option("--event", "event_kind", type=click.Choice([k.value for k in EventKind]), default=None, help="Also evaluate the triggers for this event")
@click.option("--branch", default=None, help="Branch used with --event")
def check(definition, event_kind, branch):
    """Validate a pipeline definition without running it."""
    console = get_console()
    pipeline_def = _load_or_exit(definition)

    console.print_info(f"Pipeline: {pipeline_def.name}")
    for rule in pipeline_def.triggers:
        branches = "*" if rule.branches is None else (", ".join(rule.branches) or "no branch")
        ignored = f" (ignoring {', '.join(rule.branches_ignore)})" if rule.branches_ignore else ""
        console.print_info(f"  on {rule.event.value}: {branches}{ignored}")
    for job in pipeline_def.jobs:
        needs = f" needs {', '.join(job.needs)}" if job.needs else ""
        console.print_info(f"  job {job.name}: {len(job.steps)} step(s){needs}")
        for step in job.steps:
            console.print_info(f"    - {step.name} [{step.kind.value}]")

    if event_kind:
        if branch is None:
            raise click.UsageError("--branch is required with --event")
        matched = evaluate(Event(kind=EventKind(event_kind), branch=branch), pipeline_def.triggers)
        console.print_info(f"{event_kind} on '{branch}': {'would run' if matched else 'would not run'}")


@cli.group()
def cache():
    """Inspect or prune the local cache."""


@cache.command("ls")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
def cache_ls(cache_dir):
    """List cache keys."""
    store = FileCacheStore(cache_dir)
    for key in store.entries():
        click.echo(key)


@cache.command("prune")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--scope", default=None, help="Only prune this scope")
@click.option("--keep", default=settings.CACHE_KEEP, show_default=True, type=int, help="Entries to keep per scope")
def cache_prune(cache_dir, scope, keep):
    """Keep only the newest entries of each scope."""
    store = FileCacheStore(cache_dir)
    removed = store.prune(scope, keep=keep)
    get_console().print_info(f"Removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


@cli.command()
@click.option("--definition", "-d", default=settings.DEFINITION_PATH, show_default=True, help="Pipeline definition file")
@click.option("--repo", default=None, help="Repository cloned for every run  [default: origin of the current checkout]")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Maximum jobs running at once")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Checkout directory")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True)
def serve(definition, repo, host, port, workers, cache_dir, work_dir, fail_fast):
    """Receive push / pull_request webhooks and run the pipeline."""
    import uvicorn

    from flowci.server import create_app

    pipeline_def = _load_or_exit(definition)
    if repo is None:
        repo = _origin_or_exit()
    get_console().print_info(f"Cloning {repo} for every run")
    engine = PipelineEngine(
        pipeline_def,
        scheduler_factory(
            workspace=Path(work_dir),
            cache=_cache_manager(cache_dir),
            checkout=GitCheckout(repo),
            installer=RustupInstaller(),
            max_workers=workers,
            fail_fast=fail_fast,
            isolate=True,
        ),
    )
    uvicorn.run(create_app(engine), host=host, port=port)


if __name__ == "__main__":
    cli()
