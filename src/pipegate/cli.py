# cli.py
from __future__ import annotations

import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

import click

from pipegate.config import EngineConfig
from pipegate.dag import plan as build_plan
from pipegate.errors import DefinitionError, ExpansionError, GraphError, PipelineError, UnsupportedEvent
from pipegate.git_facts.git import current_branch, head_sha, repo_root
from pipegate.loader import load_workflow
from pipegate.runner import execute
from pipegate.trigger import PULL_REQUEST, PUSH, TriggerEvent, TriggerPolicy, evaluate
from pipegate.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("pipegate_workflow.py", "pipegate.yml", "pipegate.yaml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in found:
            found.append(path)

    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipegate run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Create a workflow file:\n  pipegate_workflow.py\n\nOr specify a workflow explicitly:\n  pipegate run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  pipegate run --workflow pipegate_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _git_or_none(fn):
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def build_event(
    event: Optional[str],
    branch: Optional[str],
    base: Optional[str],
    from_env: bool,
) -> TriggerEvent:
    """Assemble the raw trigger record from CLI options, GITHUB_* or git."""
    if from_env:
        return TriggerEvent.from_env()

    kind = event or PUSH
    branch = branch or _git_or_none(current_branch)
    if kind == PULL_REQUEST:
        if not base:
            raise click.UsageError("--base is required for --event pull_request")
        return TriggerEvent(kind=kind, base_ref=base, head_ref=branch)
    return TriggerEvent(kind=kind, branch=branch)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipegate: matrix-aware pipeline runner with gated terminal actions."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        stream=sys.stdout,
        force=True,
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to pipegate_workflow.py / pipegate.yml if present)",
)
@click.option("--event", type=click.Choice([PUSH, PULL_REQUEST]), default=None, help="Trigger event kind (default: push)")
@click.option("--branch", default=None, help="Pushed branch, or PR source branch (default: current git branch)")
@click.option("--base", default=None, help="PR target branch (pull_request only)")
@click.option("--from-env", is_flag=True, default=False, help="Read the event from GITHUB_* environment variables")
@click.option("--workers", default=None, type=int, help="Max parallel job instances")
@click.option("--workdir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Directory shell steps run in")
@click.option("--primary-branch", default=None, help="Primary branch for the default trigger policy")
@click.option("--release-branch", default=None, help="Release branch for the default trigger policy")
@click.option("--allow-overwrite", is_flag=True, default=False, help="Let an instance rewrite its own artifact")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run report as JSON")
@click.pass_context
def run(ctx, workflow, event, branch, base, from_env, workers, workdir, primary_branch, release_branch, allow_overwrite, as_json):
    """Run a pipegate workflow for one trigger event."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    if as_json and not ctx.obj.get("debug", False):
        # stdout carries the report only
        logging.getLogger().setLevel(logging.CRITICAL)

    try:
        config = EngineConfig.from_env().override(
            max_parallel=workers,
            workdir=workdir,
            primary_branch=primary_branch,
            release_branch=release_branch,
            allow_overwrite=True if allow_overwrite else None,
        )
    except DefinitionError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(1)

    try:
        pipeline = load_workflow(workflow_path)
        raw_event = build_event(event, branch, base, from_env)
        policy = pipeline.triggers or TriggerPolicy.default(config.primary_branch, config.release_branch)

        try:
            trigger = evaluate(raw_event, policy)
        except UnsupportedEvent as e:
            console.print_not_triggered(str(e))
            return

        # structural errors surface here, before anything runs
        plan = build_plan(pipeline)

        if not as_json:
            root = _git_or_none(repo_root)
            console.print_run_started(
                repository=root.name if root else Path(".").resolve().name,
                pipeline=pipeline.name,
                workflow=workflow_path.name,
                trigger=trigger,
                instance_count=len(plan.all_instances()),
                commit=_git_or_none(head_sha),
            )

        report = execute(plan, trigger, config, pipeline_name=pipeline.name)

        if as_json:
            click.echo(json.dumps(report.to_dict(), indent=2))
        else:
            console.print_results(report)

        if not report.ok:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (GraphError, ExpansionError) as e:
        console.print_error("Invalid pipeline", str(e), suggestion="Nothing was run.")
        sys.exit(1)
    except DefinitionError as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        sys.exit(1)
    except PipelineError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def plan(ctx, workflow):
    """Validate a workflow and print its staged instance plan."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_workflow(workflow_path)
        execution_plan = build_plan(pipeline)
    except DefinitionError as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        sys.exit(1)
    except (GraphError, ExpansionError) as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)

    console.print_info(f"Pipeline: {pipeline.name} ({len(execution_plan.all_instances())} job instances)")
    console.print_plan(execution_plan)


if __name__ == "__main__":
    cli()
