"""Run output for stageci: stage banners, job/step lines, plan listing and summaries."""

from __future__ import annotations

import sys
import traceback
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from stageci.model import PipelineResult, TriggerContext


class Console:
    """
    Every line a run prints goes through here so jobs running on worker
    threads share one format.

    Normal output goes to stdout, errors and debug lines to stderr.
    """

    def __init__(self, debug: bool = False):
        # debug: full error text and tracebacks instead of first lines
        self.debug = debug

    # ---- pipeline / stage ----

    def print_header(self, title: str) -> None:
        print(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(self, workflow: str, ctx: "TriggerContext", job_count: int) -> None:
        print(f"\nPIPELINE {workflow}")
        print(f"  source={ctx.source.value} ref={ctx.ref_name} sha={ctx.short_sha or '-'}")
        if ctx.commit_tag:
            print(f"  tag={ctx.commit_tag}")
        if ctx.variables:
            print("  vars: " + " ".join(f"{k}={v}" for k, v in sorted(ctx.variables.items())))
        if ctx.changed_paths is not None:
            print(f"  changed paths: {len(ctx.changed_paths)}")
        print(f"  included jobs: {job_count}\n")

    def print_stage_started(self, stage: str, jobs: Iterable[str]) -> None:
        print(f"\n=== Stage {stage}: {', '.join(jobs)} ===")

    def print_stage_finished(self, stage: str, status: str) -> None:
        print(f"=== Stage {stage}: {status} ===")

    # ---- jobs ----

    def print_job_start(self, name: str, attempt: int = 1) -> None:
        retry = f" (attempt {attempt})" if attempt > 1 else ""
        print(f"\n[{name}] started{retry}")

    def print_step(self, job: str, name: str) -> None:
        print(f"[{job}] $ {name}")

    def print_success(self, name: str) -> None:
        print(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Report a failed step (default) or a failed job.

        Outside debug mode only the first line of `reason` is shown; captured
        step output can be long.
        """
        what = "JOB FAILED" if is_job else "STEP FAILED"
        code = f" (exit {exit_code})" if exit_code is not None else ""
        print(f"{what}: {name}{code}")
        if not reason:
            reason = "Unknown error"
        print(f"  {reason if self.debug else reason.splitlines()[0]}")
        if hint:
            print(f"  hint: {hint}")

    def print_retry(self, name: str, kind: str, attempt: int, max_attempts: int) -> None:
        print(f"[{name}] RETRY: {kind} (attempt {attempt} of {max_attempts} failed)")

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}")

    def print_artifacts(self, job: str, name: str, count: int) -> None:
        print(f"[{job}] ARTIFACTS: {name} ({count} file(s))")

    def print_job_skipped(self, name: str, reason: str) -> None:
        print(f"[{name}] STATUS: skipped ({reason})")

    # ---- plan / tags ----

    def print_plan_job(self, name: str, reason: str) -> None:
        print(f"  ✓ {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        print(f"  ⏭ {name} (skipped: {reason})")

    def print_tags(self, image: str, tags: Iterable[str]) -> None:
        print(f"Effective tags = {' '.join(tags)}")
        print(f"Full docker image name = {image}")

    def print_results(self, result: "PipelineResult") -> None:
        rule = "=" * 40
        print(f"\n{rule}\nRESULTS\n{rule}")
        for stage, status in result.stages.items():
            print(f"  stage {stage}: {status.value.upper()}")
        for name, job in result.jobs.items():
            line = f"  {name}: {job.status.value.upper()}"
            if job.allowed_failure:
                line += " (allowed)"
            if job.attempts > 1:
                line += f" after {job.attempts} attempts"
            print(line)
        print(f"PIPELINE: {result.status.upper()}")

    # ---- errors ----

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        lines = [f"\nERROR: {title}", message]
        lines += [f"  {d}" for d in details or ()]
        if suggestion:
            lines.append(f"\n{suggestion}")
        print("\n".join(lines), file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# set by the CLI; library callers get a default console
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
