# runner.py
from __future__ import annotations

import os
import re
import runpy
import shutil
import subprocess
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Set

from . import settings
from .artifacts import ArtifactStore
from .dag import PipelineGraph
from .errors import CIError, JobCanceled, PushFailure, ScriptFailure, TransientFailure
from .model import (
    Job,
    JobResult,
    JobStatus,
    Pipeline,
    PipelineResult,
    StageStatus,
    Step,
    TriggerContext,
)
from .ui.console import get_console


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - workflow() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"stageci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    pipeline = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        pipeline = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        pipeline = globals_dict["PIPELINE"]

    if not isinstance(pipeline, Pipeline):
        raise TypeError(
            "Workflow must return/define a Pipeline. "
            "Define workflow() -> Pipeline or PIPELINE = pipeline(job(...), ...)."
        )
    return pipeline


# ----------------------------------------------------------------------
# Command execution boundary
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class StepOutcome:
    exit_code: int
    output: str = ""
    # self-reported infrastructure classification, e.g. "api_failure"
    failure_kind: Optional[str] = None


class CommandRunner(Protocol):
    def run(self, step: Step, env: Mapping[str, str], cwd: Path) -> StepOutcome: ...


# A step may classify its own failure as infrastructure by printing this marker.
FAILURE_MARKER = re.compile(r"^stageci:failure=(\w+)\s*$", re.MULTILINE)


class ShellRunner:
    """Runs each step through the shell and captures output for failure reports."""

    def run(self, step: Step, env: Mapping[str, str], cwd: Path) -> StepOutcome:
        wd = (cwd / (step.cwd or ".")).resolve()
        if not wd.exists():
            raise FileNotFoundError(f"step '{step.name}' cwd not found: {wd}")

        try:
            proc = subprocess.run(
                step.run,
                shell=True,
                cwd=str(wd),
                env=dict(env),
                text=True,
                capture_output=True,
            )
        except OSError as e:
            return StepOutcome(exit_code=-1, output=str(e), failure_kind="runner_system_failure")

        output = (proc.stdout or "") + (proc.stderr or "")
        kind = None
        if proc.returncode != 0:
            m = FAILURE_MARKER.search(output)
            kind = m.group(1) if m else None
        return StepOutcome(exit_code=proc.returncode, output=output[-4000:], failure_kind=kind)


def raise_for_outcome(job: str, step: Step, outcome: StepOutcome) -> None:
    """
    Turn a failed step outcome into the exception the executor acts on.

    A self-classified infrastructure failure becomes a TransientFailure (retried
    per the job's policy); any other non-zero exit is a ScriptFailure.
    """
    if outcome.exit_code == 0:
        return
    if outcome.failure_kind:
        raise TransientFailure(job=job, kind=outcome.failure_kind, message=f"step '{step.name}'")
    raise ScriptFailure(
        job=job,
        step=step.name,
        cmd=step.run,
        exit_code=outcome.exit_code,
        output=outcome.output,
    )


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancelToken:
    """Cooperative cancellation flag shared by one pipeline's jobs."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class SupersedeRegistry:
    """
    Tracks the newest pipeline per ref. Registering a newer pipeline for a ref
    cancels the previous one's token.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, CancelToken] = {}

    def register(self, ctx: TriggerContext) -> CancelToken:
        token = CancelToken()
        with self._lock:
            previous = self._active.get(ctx.ref_name)
            self._active[ctx.ref_name] = token
        if previous is not None:
            previous.cancel()
        return token

    def release(self, ctx: TriggerContext, token: CancelToken) -> None:
        with self._lock:
            if self._active.get(ctx.ref_name) is token:
                del self._active[ctx.ref_name]


# ----------------------------------------------------------------------
# Job executor
# ----------------------------------------------------------------------

class JobExecutor:
    """
    Runs one job: script steps in order, then after-steps, re-running the
    whole job on retryable infrastructure failures.

    Every attempt gets a fresh copy of the checkout under `jobs_dir/<job>`.
    Only the bundles visible to the job are restored into it, so files another
    job left behind never leak in.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        workspace: str | Path = ".",
        base_env: Optional[Mapping[str, str]] = None,
        jobs_dir: str | Path = settings.JOBS_DIR,
        exclude: Sequence[str] = settings.WORKSPACE_EXCLUDE,
    ):
        self.runner = runner or ShellRunner()
        self.workspace = Path(workspace).resolve()
        jobs = Path(jobs_dir).expanduser()
        self.jobs_dir = (jobs if jobs.is_absolute() else self.workspace / jobs).resolve()
        self.base_env = dict(os.environ if base_env is None else base_env)

        self._exclude = set(exclude)
        try:
            # jobs_dir inside the checkout must not be copied into itself
            self._exclude.add(self.jobs_dir.relative_to(self.workspace).parts[0])
        except (ValueError, IndexError):
            pass

    def job_workspace(self, name: str) -> Path:
        return self.jobs_dir / name

    def prepare_workspace(self, job: Job) -> Path:
        """Replace the job's working copy with a fresh copy of the checkout."""
        ws = self.job_workspace(job.name)
        if ws.exists():
            shutil.rmtree(ws)
        ws.parent.mkdir(parents=True, exist_ok=True)

        top = str(self.workspace)

        def _ignore(directory: str, names: List[str]) -> List[str]:
            if directory != top:
                return []
            return [n for n in names if n in self._exclude]

        shutil.copytree(top, ws, symlinks=True, ignore=_ignore)
        return ws

    def job_env(self, job: Job, ctx: TriggerContext, workspace: Optional[Path] = None) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(ctx.as_env())
        env.update(
            {
                "CI_JOB_NAME": job.name,
                "CI_JOB_STAGE": job.stage,
                "CI_PROJECT_DIR": str(workspace or self.job_workspace(job.name)),
            }
        )
        env.update(job.variables)
        return env

    def _run_steps(
        self, job: Job, steps, env: Dict[str, str], ws: Path, token: Optional[CancelToken]
    ) -> None:
        console = get_console()
        for step in steps:
            if token is not None and token.cancelled and job.interruptible:
                raise JobCanceled(job.name)
            console.print_step(job.name, step.name)
            raise_for_outcome(job.name, step, self.runner.run(step, env, ws))

    def _run_after_steps(self, job: Job, env: Dict[str, str], ws: Path) -> None:
        console = get_console()
        for step in job.after_steps:
            console.print_step(job.name, f"after: {step.name}")
            try:
                outcome = self.runner.run(step, env, ws)
            except (OSError, CIError, TransientFailure) as e:
                console.print_warning(f"[{job.name}] after-step '{step.name}' errored: {e}")
                continue
            if outcome.exit_code != 0:
                console.print_warning(
                    f"[{job.name}] after-step '{step.name}' failed (exit={outcome.exit_code}); job status unchanged"
                )

    def _attempt(
        self, job: Job, ctx: TriggerContext, store: ArtifactStore, ws: Path, token: Optional[CancelToken]
    ) -> None:
        env = self.job_env(job, ctx, ws)
        for bundle in store.visible_to(job):
            store.restore(bundle, ws)
        try:
            if job.action is not None:
                job.action(ctx=ctx, workspace=ws, runner=self.runner, env=env)
            else:
                self._run_steps(job, job.steps, env, ws, token)
        finally:
            self._run_after_steps(job, env, ws)

    def run(
        self,
        job: Job,
        ctx: TriggerContext,
        store: ArtifactStore,
        token: Optional[CancelToken] = None,
    ) -> JobResult:
        console = get_console()
        max_attempts = 1 + max(0, job.retry.max_retries)
        attempts = 0
        failure: Optional[str] = None

        while True:
            attempts += 1
            console.print_job_start(job.name, attempts)
            try:
                ws = self.prepare_workspace(job)
                self._attempt(job, ctx, store, ws, token)
            except JobCanceled as e:
                store.discard(job.name)
                console.print_job_skipped(job.name, "canceled")
                return JobResult(name=job.name, status=JobStatus.CANCELED, attempts=attempts, failure=str(e))
            except TransientFailure as e:
                if job.retry.retries(e.kind) and attempts < max_attempts:
                    console.print_retry(job.name, e.kind, attempts, max_attempts)
                    continue
                failure = str(e)
            except ScriptFailure as e:
                console.print_failure(e.step, e.output or str(e), exit_code=e.exit_code)
                failure = str(e)
            except (CIError, PushFailure) as e:
                failure = str(e)
            except (OSError, subprocess.SubprocessError) as e:
                failure = f"{type(e).__name__}: {e}"
            else:
                bundle = None
                if job.artifacts is not None:
                    bundle = store.collect(job, ctx, ws)
                    console.print_artifacts(job.name, bundle.name, len(bundle.paths))
                console.print_success(job.name)
                return JobResult(name=job.name, status=JobStatus.SUCCESS, attempts=attempts, bundle=bundle)
            break

        console.print_failure(job.name, failure or "", is_job=True)
        if job.allow_failure:
            console.print_warning(f"job '{job.name}' failed but is allowed to fail")
        return JobResult(
            name=job.name,
            status=JobStatus.FAILED,
            attempts=attempts,
            failure=failure,
            allowed_failure=job.allow_failure,
        )


# ----------------------------------------------------------------------
# Stage scheduler
# ----------------------------------------------------------------------

def _stage_status(results: List[JobResult]) -> StageStatus:
    if any(r.status is JobStatus.CANCELED for r in results):
        return StageStatus.CANCELED
    if any(r.blocking or (r.status is JobStatus.SKIPPED and not r.allowed_failure) for r in results):
        return StageStatus.FAILED
    if any(r.status is JobStatus.FAILED for r in results):
        return StageStatus.PARTIALLY_FAILED_ALLOWED
    return StageStatus.SUCCEEDED


def run_pipeline(
    graph: PipelineGraph,
    ctx: TriggerContext,
    *,
    executor: Optional[JobExecutor] = None,
    store: Optional[ArtifactStore] = None,
    max_workers: int | None = None,
    token: Optional[CancelToken] = None,
) -> PipelineResult:
    """
    Execute the graph stage by stage.

    - Stages run strictly in order; a stage only starts once every
      non-allow-failure job of all earlier stages succeeded.
    - Inside a stage, jobs whose same-stage needs are satisfied run concurrently.
    - A blocking failure lets running jobs finish, then stops the pipeline.
    """
    console = get_console()
    executor = executor or JobExecutor()
    store = store or ArtifactStore(stages=[s for s, _ in graph.stages])

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    result = PipelineResult(status="running")
    halted: Optional[str] = None

    for stage, members in graph.stages:
        if not members:
            result.stages[stage] = StageStatus.SKIPPED
            continue

        if halted is not None:
            for name in members:
                result.jobs[name] = JobResult(name=name, status=JobStatus.SKIPPED, failure=halted)
            result.stages[stage] = StageStatus.SKIPPED
            continue

        console.print_stage_started(stage, members)
        result.stages[stage] = StageStatus.RUNNING
        stage_results = _run_stage(graph, stage, members, ctx, executor, store, max_workers, token)
        result.jobs.update({r.name: r for r in stage_results})

        status = _stage_status(stage_results)
        result.stages[stage] = status
        console.print_stage_finished(stage, status.value)

        if status is StageStatus.CANCELED or (token is not None and token.cancelled):
            halted = "pipeline canceled"
        elif not status.passed:
            halted = f"stage {stage} failed"

    if token is not None and token.cancelled:
        result.status = "canceled"
    elif any(r.blocking for r in result.jobs.values()) or halted:
        result.status = "failed"
    else:
        result.status = "success"
    return result


def _run_stage(
    graph: PipelineGraph,
    stage: str,
    members: List[str],
    ctx: TriggerContext,
    executor: JobExecutor,
    store: ArtifactStore,
    max_workers: int,
    token: Optional[CancelToken],
) -> List[JobResult]:
    console = get_console()
    member_set = set(members)
    # same-stage needs only; earlier stages are already resolved
    waiting: Dict[str, Set[str]] = {
        n: {d for d in graph.jobs[n].needs_list if d in member_set} for n in members
    }
    done: Dict[str, JobResult] = {}
    in_flight: Dict[Future, str] = {}

    def _ready() -> List[str]:
        return [n for n in members if n not in done and n not in in_flight.values() and not waiting[n]]

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while len(done) < len(members):
            for name in _ready():
                job = graph.jobs[name]
                if token is not None and token.cancelled and job.interruptible:
                    done[name] = JobResult(name=name, status=JobStatus.CANCELED, failure="pipeline canceled")
                    console.print_job_skipped(name, "canceled")
                    _release(name, done[name], graph, waiting, done, member_set)
                    continue
                in_flight[pool.submit(executor.run, job, ctx, store, token)] = name

            if not in_flight:
                # everything left is blocked behind a failed dependency
                for name in members:
                    if name not in done:
                        done[name] = JobResult(name=name, status=JobStatus.SKIPPED, failure="needed job failed")
                        console.print_job_skipped(name, "needed job failed")
                break

            finished, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in finished:
                name = in_flight.pop(fut)
                try:
                    res = fut.result()
                except Exception as e:  # executor bug, not a job failure mode
                    res = JobResult(name=name, status=JobStatus.FAILED, failure=f"{type(e).__name__}: {e}")
                    console.print_exception(e)
                done[name] = res
                _release(name, res, graph, waiting, done, member_set)

    return [done[n] for n in members]


def _release(
    name: str,
    res: JobResult,
    graph: PipelineGraph,
    waiting: Dict[str, Set[str]],
    done: Dict[str, JobResult],
    member_set: Set[str],
) -> None:
    """Unlock same-stage dependents of a finished job, or skip them if it blocks."""
    for dependent in graph.edges.get(name, set()):
        if dependent not in member_set or dependent in done:
            continue
        if res.status is JobStatus.SUCCESS or (res.status is JobStatus.FAILED and res.allowed_failure):
            waiting[dependent].discard(name)
        else:
            waiting[dependent].add(f"!{name}")
