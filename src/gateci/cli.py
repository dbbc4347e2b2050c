# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from gateci.dag import topo_levels
from gateci.engine import Engine
from gateci.errors import ConfigError, DefinitionError, EngineFault
from gateci.git_facts.git import get_current_ref, get_remote_url, head_sha
from gateci.loader import load_pipeline
from gateci.model import EXIT_FAILED, EXIT_INVALID, EventKind, RunContext
from gateci.settings import Settings, load_settings
from gateci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_NAMES = ("gateci_workflow.py", "gateci.yml", "gateci.yaml", "gateci.json")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = [current_dir / n for n in DEFAULT_WORKFLOW_NAMES if (current_dir / n).exists()]

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in workflow_files:
            workflow_files.append(path)

    return sorted(workflow_files)


def _settings_or_exit() -> Settings:
    try:
        return load_settings()
    except ConfigError as e:
        get_console().print_error(
            "Invalid configuration",
            str(e),
            suggestion="Fix or unset the GATECI_* environment variable.",
        )
        sys.exit(EXIT_INVALID)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, GATECI_WORKFLOW or default names.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()
    workflow_arg = workflow_arg or _settings_or_exit().workflow

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gateci run --workflow ci.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *[f"  {n}" for n in DEFAULT_WORKFLOW_NAMES], "  *_workflow.py"],
            suggestion="Create a workflow file or specify one explicitly:\n  gateci run --workflow ci.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  gateci run --workflow gateci.yml",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _load_or_exit(ctx, workflow_path: Path):
    console = get_console()
    try:
        return load_pipeline(workflow_path)
    except DefinitionError as e:
        console.print_error(
            "Invalid pipeline definition",
            f"{workflow_path}: {e}",
            suggestion="Fix the definition; nothing was run.",
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_INVALID)
    except FileNotFoundError as e:
        console.print_error("Workflow file not found", str(e))
        sys.exit(EXIT_INVALID)


def _default_ref() -> str:
    try:
        return get_current_ref()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ""


def _default_sha() -> str | None:
    try:
        return head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def _repo_name() -> str:
    try:
        url = get_remote_url("origin")
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


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
    """gateci: dependency-ordered, gated CI pipeline runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml, .yaml or .json)")
@click.option(
    "--event",
    type=click.Choice(["push", "pull_request", "release", "manual", "workflow_dispatch"]),
    default="manual",
    show_default=True,
    help="Event kind that triggered the run",
)
@click.option("--ref", default=None, help="Git ref (defaults to the current branch or tag)")
@click.option("--action", default=None, help="Event action, e.g. 'published' for releases")
@click.option("--pr-number", default=None, type=int, help="Pull request number")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--cancel-grace", default=None, type=float, help="Seconds to wait for cancelled jobs before forcing")
@click.pass_context
def run(ctx, workflow, event, ref, action, pr_number, workers, cancel_grace):
    """Run a pipeline."""
    console = get_console()
    settings = _settings_or_exit()

    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(ctx, workflow_path)

    context = RunContext(
        event=EventKind.parse(event),
        ref=ref if ref is not None else _default_ref(),
        action=action,
        workflow=pipeline.name,
        pr_number=pr_number,
        sha=_default_sha(),
    )
    console.print_debug(f"repository={_repo_name()} context={context}")

    engine = Engine(
        max_workers=workers or settings.max_workers,
        cancel_grace=cancel_grace if cancel_grace is not None else settings.cancel_grace,
    )

    try:
        result = engine.run(pipeline, context)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except EngineFault as e:
        console.print_error("Engine fault", str(e), suggestion="This is a bug in gateci; rerun with --debug.")
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(result)
    sys.exit(result.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml, .yaml or .json)")
@click.pass_context
def plan(ctx, workflow):
    """Validate a pipeline and print its expanded jobs in stages."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(ctx, workflow_path)

    graph = Engine().plan(pipeline)
    console.print_plan(pipeline.name, topo_levels(graph))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
