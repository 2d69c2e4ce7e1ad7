# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from pipegate.cache import CacheStore, DEFAULT_CACHE_DIR
from pipegate.errors import ConfigError
from pipegate.git_facts.git import get_current_ref, get_remote_url, head_sha, repository_slug
from pipegate.model import RunStatus
from pipegate.report import triggered_report, write_report
from pipegate.runner import DEFAULT_WORK_DIR, PipelineExecutor, run_event
from pipegate.triggers import RawEvent, resolve
from pipegate.ui.console import Console, get_console, set_console
from pipegate.workflow import DEFAULT_WORKFLOW_FILE, Workflow, load_workflow

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def find_workflow_files(directory: str | Path = ".") -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(directory)
    workflow_files = []

    default_workflow = current_dir / DEFAULT_WORKFLOW_FILE
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None, directory: str | Path = ".") -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit(2): If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipegate run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files(directory)

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW_FILE}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW_FILE}\n\nOr specify a workflow explicitly:\n  pipegate run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  pipegate run --workflow {DEFAULT_WORKFLOW_FILE}",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(ctx, workflow_arg: str | None, directory: str | Path = ".") -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg, directory)
    try:
        return load_workflow(workflow_path)
    except ConfigError as e:
        console.print_error(
            "Invalid workflow",
            f"{workflow_path} failed validation.",
            details=[str(e)],
        )
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[f"{type(e).__name__}: {e}"],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_CONFIG)


def _git_default(fn, what: str, workspace: str):
    """Ask git for a default; None when git is missing or this is not a checkout."""
    try:
        return fn(workspace)
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_debug(f"Could not determine {what} from git")
        return None


def get_remote_url_for(workspace: str) -> str:
    return get_remote_url("origin", cwd=workspace)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipegate: trigger-gated, wave-parallel CI/CR pipelines."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW_FILE} if present)",
)
@click.option(
    "--event",
    "event_name",
    type=click.Choice(["push", "pull_request"]),
    default="push",
    show_default=True,
    help="Trigger event name",
)
@click.option("--ref", default=None, help="Git ref (defaults to the current branch or HEAD)")
@click.option("--repository", default=None, help="owner/repo (defaults to the origin remote)")
@click.option("--actor", default="", help="Who triggered the event")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--workspace", default=".", show_default=True, help="Directory every job runs in")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, help="Cache directory")
@click.option(
    "--report-dir",
    default=None,
    help="Write one JSON report per pipeline run here, plus event.json for the whole event",
)
@click.option("--workers", default=None, type=int, help="Number of parallel jobs per wave")
@click.pass_context
def run(ctx, workflow, event_name, ref, repository, actor, sha, workspace, cache_dir, report_dir, workers):
    """Resolve an event and run every pipeline it selects."""
    console = get_console()
    wf = _load(ctx, workflow)

    if ref is None:
        ref = _git_default(get_current_ref, "ref", workspace)
        if ref is None:
            console.print_error(
                "Could not determine git ref",
                "No --ref specified and the workspace is not a git checkout.",
                suggestion="Specify --ref explicitly:\n  pipegate run --ref refs/heads/main",
            )
            sys.exit(EXIT_CONFIG)
    if repository is None:
        url = _git_default(get_remote_url_for, "repository", workspace)
        repository = repository_slug(url) if url else ""
    if sha is None:
        sha = _git_default(head_sha, "sha", workspace)

    raw = RawEvent(name=event_name, ref=ref, repository=repository, actor=actor, sha=sha)
    executor = PipelineExecutor(
        cache=CacheStore(cache_dir),
        workspace=workspace,
        work_root=DEFAULT_WORK_DIR,
        max_workers=workers,
        report_dir=report_dir,
        console=console,
    )

    try:
        triggered = run_event(raw, wf, executor)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if report_dir is not None:
        write_report(triggered_report(triggered), report_dir, name="event")
    if not triggered.runs:
        console.print_info("No pipeline applies to this event.")
    status = triggered.status
    if status is RunStatus.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    if status is not RunStatus.SUCCEEDED:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW_FILE} if present)",
)
@click.option(
    "--event",
    "event_name",
    type=click.Choice(["push", "pull_request"]),
    default=None,
    help="Only show pipelines this event would run",
)
@click.option("--ref", default=None, help="Ref of the event (with --event)")
@click.option("--repository", default="", help="owner/repo of the event (with --event)")
@click.pass_context
def plan(ctx, workflow, event_name, ref, repository):
    """Print the waves of every pipeline without running anything."""
    console = get_console()
    wf = _load(ctx, workflow)

    names = list(wf.order)
    if event_name is not None:
        if ref is None:
            raise click.UsageError("--ref is required with --event")
        resolution = resolve(RawEvent(name=event_name, ref=ref, repository=repository), wf.policy, wf.pipelines)
        console.print_event_resolved(
            resolution.event.kind.value,
            resolution.event.ref,
            resolution.pipelines,
            resolution.scope.granted,
        )
        names = [p.name for p in wf.ordered(resolution.pipelines)]

    for name in names:
        p = wf.pipeline(name)
        console.print_plan(p.name, p.trigger.value, wf.waves[p.name], p.requires)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW_FILE} if present)",
)
@click.pass_context
def validate(ctx, workflow):
    """Load and validate a workflow file."""
    console = get_console()
    wf = _load(ctx, workflow)
    jobs = sum(len(p.jobs) for p in wf.pipelines)
    console.print_info(f"OK: {len(wf.pipelines)} pipeline(s), {jobs} job(s) in {wf.path.name}")


if __name__ == "__main__":
    cli()
