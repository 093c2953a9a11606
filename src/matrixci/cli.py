# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import List

import click

from matrixci.config import RunnerConfig, load_config
from matrixci.errors import CIError
from matrixci.executor import ActionRegistry
from matrixci.git_facts.git import current_branch, repository_name
from matrixci.loader import load_workflow
from matrixci.model import Workflow
from matrixci.orchestrator import WorkflowOrchestrator
from matrixci.report import write_report
from matrixci.ui.console import Console, get_console, set_console


DEFAULT_WORKFLOW = "matrixci_workflow.py"
WORKFLOWS_DIR = Path(".github") / "workflows"

EXIT_INTERRUPTED = 130


def find_workflow_files(root: Path = Path(".")) -> List[Path]:
    """
    Find candidate workflow files under `root`.

    Looks for matrixci_workflow.py, other *_workflow.py files, and YAML
    declarations in .github/workflows/.
    """
    workflow_files = []

    default_workflow = root / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in root.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    wf_dir = root / WORKFLOWS_DIR
    if wf_dir.is_dir():
        workflow_files.extend(wf_dir.glob("*.yml"))
        workflow_files.extend(wf_dir.glob("*.yaml"))

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the CLI argument or by discovery.

    Raises:
        SystemExit: the file cannot be found, or discovery is ambiguous.
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
                suggestion="Create a workflow file or specify a different path:\n"
                "  matrixci run --workflow .github/workflows/ci.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
                f"  {WORKFLOWS_DIR}/*.yml",
            ],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx: click.Context, workflow_arg: str | None) -> tuple[Path, Workflow]:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return workflow_path, load_workflow(workflow_path)
    except (CIError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _config(ctx: click.Context, config_path: str | None, **overrides) -> RunnerConfig:
    try:
        return load_config(config_path).replace(**overrides)
    except CIError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and the output of passing steps)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: run build-matrix CI workflows locally."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered when omitted")
@click.option("--config", "config_path", default=None, help="Runner config file (defaults to matrixci.yaml if present)")
@click.option("--slots", default=None, type=int, help="Maximum number of jobs running at once")
@click.option("--timeout", default=None, type=float, help="Default step timeout in seconds")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel remaining jobs after the first failure")
@click.option("--host-only/--no-host-only", default=None, help="Skip jobs targeting a different OS family than this host")
@click.option("--workspace", default=None, type=click.Path(file_okay=False), help="Per-job working directory root")
@click.option("--event", default=None, help="Triggering event (e.g. push, pull_request); no event always runs")
@click.option("--branch", default=None, help="Branch for trigger filters (defaults to the current git branch)")
@click.option("--stub-action", "stub_actions", multiple=True, help="Treat this `uses:` action as a passing no-op")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write a JSON report here")
@click.pass_context
def run(ctx, workflow, config_path, slots, timeout, fail_fast, host_only, workspace, event, branch,
        stub_actions, report_path):
    """Run a workflow: expand matrices, execute jobs, report the outcome."""
    console = get_console()

    workflow_path, wf = _load(ctx, workflow)
    config = _config(
        ctx,
        config_path,
        slots=slots,
        step_timeout=timeout,
        fail_fast=fail_fast,
        host_only=host_only,
        workspace=workspace,
    )

    if event is not None:
        if branch is None:
            try:
                branch = current_branch()
            except (subprocess.CalledProcessError, FileNotFoundError):
                console.print_debug("could not determine the current git branch")
        if not wf.is_triggered_by(event, branch):
            console.print_info(f"Workflow {wf.name!r} is not triggered by {event} on {branch or '<unknown>'}; nothing to do")
            sys.exit(0)

    actions = ActionRegistry.from_commands(config.actions).stub(*stub_actions)
    orchestrator = WorkflowOrchestrator(config, actions=actions, console=console)

    try:
        jobs = orchestrator.plan(wf)
        console.print_run_started(
            repository=repository_name(),
            workflow=workflow_path.name,
            job_count=len(jobs),
            slots=config.slots,
        )
        result = orchestrator.run(wf)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except CIError as e:
        console.print_error(f"{e.kind} error", e.message, details=str(e).splitlines()[1:])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)

    console.print_results(result)
    if report_path:
        out = write_report(result, report_path)
        console.print_info(f"Report written to {out}")

    if result.cancelled and not config.fail_fast:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(result.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered when omitted")
@click.pass_context
def plan(ctx, workflow):
    """Expand the workflow and print its jobs without running anything."""
    console = get_console()
    _, wf = _load(ctx, workflow)
    try:
        jobs = WorkflowOrchestrator(RunnerConfig(slots=1)).plan(wf)
    except CIError as e:
        console.print_error(f"{e.kind} error", e.message, details=str(e).splitlines()[1:])
        sys.exit(1)
    console.print_plan(jobs)
    console.print_info(f"\n{len(jobs)} job(s)")


if __name__ == "__main__":
    cli()
