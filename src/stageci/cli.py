# cli.py
from __future__ import annotations

import functools
import subprocess
import sys
from pathlib import Path

import click

from stageci import settings
from stageci.artifacts import ArtifactStore
from stageci.dag import build_graph
from stageci.errors import CIError
from stageci.model import Source, TriggerContext
from stageci.runner import CancelToken, JobExecutor, load_workflow, run_pipeline
from stageci.step_workflows.image import ImagePublisher, derive_version, floating_tag
from stageci.trigger import context_from_env, context_from_git, resolve_context
from stageci.ui.console import Console, get_console, set_console


DEFAULT_WORKFLOW = "stageci_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
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
                suggestion="Create a workflow file or specify a different path:\n  stageci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  stageci run --workflow my_workflow.py",
        )
        sys.exit(1)

    # the default file wins over other *_workflow.py files
    if workflow_files[0].name == DEFAULT_WORKFLOW or len(workflow_files) == 1:
        return workflow_files[0]

    file_list = "\n".join(f"  {f}" for f in workflow_files)
    console.print_error(
        "Multiple workflow files found",
        "Found multiple workflow files. Please specify which one to use:",
        details=[file_list],
        suggestion=f"Specify a workflow explicitly:\n  stageci run --workflow {workflow_files[0]}",
    )
    sys.exit(1)


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        key, value = pair.split("=", 1)
        out[key] = value
    return out


def trigger_options(fn):
    """Options shared by every command that needs a trigger context."""
    options = [
        click.option("--from-env", is_flag=True, default=False, help="Read CI_* variables from the environment"),
        click.option(
            "--source",
            type=click.Choice([s.value for s in Source]),
            default=None,
            help="Pipeline source (defaults to push for local runs)",
        ),
        click.option("--ref", default=None, help="Ref name (defaults to the current git branch)"),
        click.option("--tag", default=None, help="Commit tag"),
        click.option("--sha", default=None, help="Short commit sha"),
        click.option("--var", "variables", multiple=True, help="Context variable KEY=VALUE, e.g. PIPELINE=nightly"),
        click.option("--changed", multiple=True, help="Changed path (repeatable)"),
        click.option("--compare-ref", default=None, help="Compute changed paths against this git ref"),
    ]
    for option in reversed(options):
        fn = option(fn)

    @functools.wraps(fn)
    def wrapper(*args, from_env, source, ref, tag, sha, variables, changed, compare_ref, **kwargs):
        vars_ = _parse_vars(variables)
        changed_paths = list(changed) if changed else None
        trigger = _resolve_safely(
            lambda: _resolve_trigger(from_env, source, ref, tag, sha, vars_, changed_paths, compare_ref)
        )
        return fn(*args, trigger=trigger, **kwargs)

    return wrapper


def _resolve_trigger(from_env, source, ref, tag, sha, variables, changed_paths, compare_ref) -> TriggerContext:
    if from_env:
        return context_from_env(changed_paths=changed_paths, compare_ref=compare_ref)
    if ref is not None and sha is not None:
        return resolve_context(
            source=source or Source.PUSH,
            ref_name=ref,
            commit_tag=tag,
            short_sha=sha,
            variables=variables,
            changed_paths=changed_paths,
        )

    ctx = context_from_git(
        source=source or Source.PUSH,
        ref_name=ref,
        commit_tag=tag,
        variables=variables,
        compare_ref=compare_ref,
    )
    if changed_paths is None and sha is None:
        return ctx
    return resolve_context(
        source=ctx.source,
        ref_name=ctx.ref_name,
        commit_tag=ctx.commit_tag,
        short_sha=sha or ctx.short_sha,
        variables=ctx.variables,
        changed_paths=changed_paths if changed_paths is not None else ctx.changed_paths,
    )


def _resolve_safely(make) -> TriggerContext:
    try:
        return make()
    except CIError as e:
        _fail(e)
    except subprocess.CalledProcessError as e:
        get_console().print_error(
            "Could not read git state",
            f"git exited with {e.returncode}",
            suggestion="Pass --ref and --sha explicitly, or use --from-env inside CI.",
        )
        sys.exit(1)
    except FileNotFoundError:
        get_console().print_error(
            "Git command not found",
            "Could not find git command.",
            suggestion="Install Git or pass --ref and --sha explicitly.",
        )
        sys.exit(1)


def _fail(exc: Exception) -> None:
    console = get_console()
    if isinstance(exc, CIError):
        console.print_error("Pipeline configuration error", str(exc))
    else:
        console.print_exception(exc)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageci: stage-ordered, rule-driven CI pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@trigger_options
@click.pass_context
def plan(ctx, workflow, trigger: TriggerContext):
    """Show which jobs run for a trigger context, stage by stage."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_workflow(workflow_path)
        graph = build_graph(pipeline.jobs, trigger, pipeline.stages)
    except (CIError, TypeError, ValueError, FileNotFoundError) as e:
        _fail(e)
        return

    console.print_run_started(workflow=workflow_path.name, ctx=trigger, job_count=len(graph.jobs))
    for stage, members in graph.stages:
        console.print_header(stage)
        for name in members:
            console.print_plan_job(name, graph.included_reasons[name])
        for job in pipeline.jobs:
            if job.stage == stage and job.name in graph.excluded:
                console.print_plan_job_skipped(job.name, graph.excluded[job.name])


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=int, help="Number of parallel jobs per stage")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True, help="Artifact store directory")
@click.option("--workspace", default=".", show_default=True, help="Checkout each job gets a fresh copy of")
@click.option(
    "--jobs-dir",
    default=settings.JOBS_DIR,
    show_default=True,
    help="Where per-job working copies live (relative to the workspace)",
)
@trigger_options
@click.pass_context
def run(ctx, workflow, workers, artifact_dir, workspace, jobs_dir, trigger: TriggerContext):
    """Run a pipeline for a trigger context."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_workflow(workflow_path)
        graph = build_graph(pipeline.jobs, trigger, pipeline.stages)
    except (CIError, TypeError, ValueError, FileNotFoundError) as e:
        _fail(e)
        return

    console.print_run_started(workflow=workflow_path.name, ctx=trigger, job_count=len(graph.jobs))

    # one pipeline per process; superseding older pipelines of a ref is
    # SupersedeRegistry's job in a long-lived host
    token = CancelToken()
    try:
        store = ArtifactStore(artifact_dir, stages=pipeline.stages)
        pruned = store.prune()
        if pruned:
            console.print_debug(f"pruned expired artifacts: {pruned}")
        result = run_pipeline(
            graph,
            trigger,
            executor=JobExecutor(workspace=workspace, jobs_dir=jobs_dir),
            store=store,
            max_workers=workers,
            token=token,
        )
        console.print_results(result)
        if not result.ok:
            sys.exit(1)
    except KeyboardInterrupt:
        token.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)


@cli.command()
@click.option("--ref", required=True, help="Ref name")
@click.option("--tag", default=None, help="Commit tag")
@click.option("--sha", default="", help="Short commit sha")
@click.option("--repo", default=None, help="Image repository; prints the full image name when given")
def tags(ref, tag, sha, repo):
    """Print VERSION and the image tags a publish job would push."""
    console = get_console()
    trigger = _resolve_safely(
        lambda: resolve_context(source=Source.PUSH, ref_name=ref, commit_tag=tag, short_sha=sha),
    )
    version = derive_version(trigger)
    console.print_info(f"VERSION={version}")
    console.print_info(f"FLOATING_TAG={floating_tag(trigger.ref_name)}")
    tag_list = [version, f"sha-{sha}", floating_tag(trigger.ref_name)]
    if repo:
        console.print_tags(ImagePublisher().image_name(repo), tag_list)
    else:
        console.print_info(f"Effective tags = {' '.join(tag_list)}")


if __name__ == "__main__":
    cli()
