# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from matrixci import settings
from matrixci.errors import ConfigurationError
from matrixci.loader import load_workflow
from matrixci.matrix import parse_selector
from matrixci.model import TriggerEvent, TriggerKind
from matrixci.run import execute_run, plan_run, plan_stages
from matrixci.trigger import any_event, event_from_git
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "matrixci_workflow.py"
YAML_WORKFLOWS = ("matrixci.yml", "matrixci.yaml")


def find_workflow_files() -> list[Path]:
    """Find all workflow files in the current directory."""
    current_dir = Path(".")
    found = {p for p in current_dir.glob("*_workflow.py")}
    found.update(current_dir / name for name in YAML_WORKFLOWS if (current_dir / name).exists())
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", *(f"  {n}" for n in YAML_WORKFLOWS)],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        default = Path(DEFAULT_WORKFLOW)
        if default in workflow_files:
            return default
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def _report_configuration_error(e: ConfigurationError) -> None:
    details = []
    if e.job:
        details.append(f"job: {e.job}")
    if e.step:
        details.append(f"step: {e.step}")
    details.extend(f"{k}: {v}" for k, v in e.details.items())
    get_console().print_error("Invalid workflow", e.message, details=details or None)


def _build_event(event_kind: str, branch: str | None, changed: tuple[str, ...], from_git: bool, compare_ref: str) -> TriggerEvent:
    kind = TriggerKind(event_kind)
    if from_git:
        event = event_from_git(kind, compare_ref)
        if branch:
            event = TriggerEvent(kind=kind, branch=branch, changed_paths=event.changed_paths)
        return event
    return TriggerEvent(kind=kind, branch=branch or "main", changed_paths=frozenset(changed))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Hide per-step progress lines")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: matrix CI pipelines with fail-fast scheduling."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option(
    "--event",
    "event_kind",
    type=click.Choice([k.value for k in TriggerKind]),
    default=TriggerKind.PUSH.value,
    show_default=True,
    help="Kind of trigger event",
)
@click.option("--branch", default=None, help="Target branch of the event (default: main, or current branch with --from-git)")
@click.option("--changed", multiple=True, help="Changed path (repeatable)")
@click.option("--from-git", is_flag=True, default=False, help="Take branch and changed paths from the local git checkout")
@click.option("--compare-ref", default=settings.COMPARE_REF, show_default=True, help="Git ref to diff against with --from-git")
@click.option("--force", is_flag=True, default=False, help="Ignore trigger rules and always run")
@click.option("--only", "only", multiple=True, help="Run only job or cell, e.g. 'check:os=macos-latest' (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel instances")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Disable cache restore/save")
@click.option("--timeout", "step_timeout", default=settings.STEP_TIMEOUT, type=float, help="Default per-step timeout in seconds")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write a JSON run report here")
@click.pass_context
def run(ctx, workflow, event_kind, branch, changed, from_git, compare_ref, force, only, workers, cache_dir, no_cache, step_timeout, report_path):
    """Run a matrixci workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        event = _build_event(event_kind, branch, changed, from_git, compare_ref)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_error("Could not read git state", str(e), suggestion="Pass --branch/--changed instead of --from-git")
        sys.exit(1)

    try:
        pipeline = load_workflow(workflow_path)
        report = execute_run(
            pipeline,
            event,
            triggers=any_event() if force else None,
            selectors=[parse_selector(s) for s in only],
            max_workers=workers,
            repo_root=".",
            cache_root=None if no_cache else cache_dir,
            console=console,
            default_timeout=step_timeout,
        )
    except ConfigurationError as e:
        _report_configuration_error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    if report is None:
        # not triggered is not a failure
        sys.exit(0)

    console.print_results(report)
    if report_path:
        Path(report_path).write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
        console.print_debug(f"report written to {report_path}")
    sys.exit(report.exit_code)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--only", "only", multiple=True, help="Restrict to job or cell (repeatable)")
def plan(workflow, only):
    """Show the matrix instances a run would create."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_workflow(workflow_path)
        stages = plan_stages(pipeline, selectors=[parse_selector(s) for s in only])
    except ConfigurationError as e:
        _report_configuration_error(e)
        sys.exit(1)

    total = sum(len(stage) for stage in stages)
    console.print_header(f"{pipeline.name}: {total} instance(s)")
    for n, stage in enumerate(stages, start=1):
        if len(stages) > 1:
            console.print_info(f"Stage {n}:")
        for inst in stage:
            console.print_plan_instance(inst)
    if pipeline.triggers is not None:
        console.print_header("Triggers")
        for rule in pipeline.triggers.rules:
            branches = ", ".join(rule.branches) or "any branch"
            ignored = f" (ignoring {', '.join(rule.paths_ignore)})" if rule.paths_ignore else ""
            console.print_info(f"  {rule.kind.value}: {branches}{ignored}")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def validate(workflow):
    """Check a workflow definition without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_workflow(workflow_path)
        instances = plan_run(pipeline)
    except ConfigurationError as e:
        _report_configuration_error(e)
        sys.exit(1)
    console.print_info(f"OK: {workflow_path} ({len(pipeline.jobs)} job(s), {len(instances)} instance(s))")


if __name__ == "__main__":
    cli()
