# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from . import settings
from .errors import ConfigError
from .model import STAGES, ArtifactSpec, Job, Pipeline, RetryPolicy, Rule, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def script(*cmds: str, cwd: str | None = None) -> List[Step]:
    """Turn bare command strings into steps named after the command."""
    return [Step(name=c, run=c, cwd=cwd) for c in cmds]


# ---------------------------------------------------------------------
# Defaults (global layer, overridden per job)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Defaults:
    """
    Pipeline-wide job settings. Job-level values override these when the job
    is constructed; nothing is looked up dynamically at run time.
    """
    interruptible: bool = True
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_retries=settings.DEFAULT_RETRY_MAX))
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


DEFAULTS = Defaults()


def collect_artifacts(*paths: str, expire_in: timedelta | None = None) -> ArtifactSpec:
    """`artifacts/` kept for the retention window, named <job>_<ref>."""
    return ArtifactSpec(
        paths=tuple(paths) or ("artifacts/",),
        expire_in=expire_in or timedelta(days=settings.ARTIFACT_RETENTION_DAYS),
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    stage: str,
    rules: Sequence[Rule] = (),
    steps_list: Optional[List[Step]] = None,
    after: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    artifacts: Optional[ArtifactSpec] = None,
    allow_failure: bool = False,
    interruptible: Optional[bool] = None,
    retry: Optional[RetryPolicy] = None,
    variables: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    defaults: Defaults = DEFAULTS,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    merged_vars = dict(defaults.variables)
    merged_vars.update({k: str(v) for k, v in (variables or {}).items()})

    return Job(
        name=name,
        stage=stage,
        steps=tuple(steps_final),
        rules=tuple(rules),
        after_steps=tuple(after or ()),
        retry=retry if retry is not None else defaults.retry,
        artifacts=artifacts,
        needs=tuple(needs) if needs is not None else None,
        allow_failure=allow_failure,
        interruptible=defaults.interruptible if interruptible is None else interruptible,
        variables=MappingProxyType(merged_vars),
    )


def extend(base: Job, name: str, **overrides) -> Job:
    """
    Derive a job from a template job (`extends:`). Variables are merged,
    everything else given in `overrides` replaces the template's value.
    """
    variables = dict(base.variables)
    variables.update({k: str(v) for k, v in (overrides.pop("variables", None) or {}).items()})
    for key in ("steps", "after_steps", "rules"):
        if key in overrides:
            overrides[key] = tuple(overrides[key])
    if overrides.get("needs") is not None:
        overrides["needs"] = tuple(overrides["needs"])
    return replace(base, name=name, variables=MappingProxyType(variables), **overrides)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str, stage: str, defaults: Defaults = DEFAULTS):
        self.name = name
        self.stage = stage
        self._defaults = defaults
        self._needs: Optional[list[str]] = None
        self._steps: list[Step] = []
        self._after: list[Step] = []
        self._rules: list[Rule] = []
        self._env: dict[str, str] = {}
        self._artifacts: Optional[ArtifactSpec] = None
        self._allow_failure = False
        self._interruptible: Optional[bool] = None
        self._retry: Optional[RetryPolicy] = None

    def needs(self, *job_names: str):
        self._needs = (self._needs or []) + list(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def after_step(self, name: str, run: str, cwd: str | None = None):
        self._after.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_rules(self, *rules: Rule):
        self._rules.extend(rules)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_artifacts(self, *paths: str, expire_in: timedelta | None = None):
        self._artifacts = collect_artifacts(*paths, expire_in=expire_in)
        return self

    def allow_failure(self, allowed: bool = True):
        self._allow_failure = allowed
        return self

    def interruptible(self, enabled: bool = True):
        self._interruptible = enabled
        return self

    def retry(self, max_retries: int, *when: str):
        self._retry = RetryPolicy(max_retries=max_retries, when=frozenset(when) or self._defaults.retry.when)
        return self

    def build(self) -> Job:
        return job(
            self.name,
            steps_list=self._steps,
            stage=self.stage,
            rules=self._rules,
            after=self._after,
            needs=self._needs,
            artifacts=self._artifacts,
            allow_failure=self._allow_failure,
            interruptible=self._interruptible,
            retry=self._retry,
            variables=self._env,
            defaults=self._defaults,
        )


def build(name: str, stage: str) -> JobBuilder:
    """Convenience: build('test', 'test').define_step(...).build()"""
    return JobBuilder(name, stage)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(*jobs: Job | Iterable[Job], stages: Sequence[str] = STAGES) -> Pipeline:
    """
    Workflow definition helper. Accepts jobs and lists of jobs:

        def workflow():
            return pipeline(
                job("fmt", sh("fmt", "cargo fmt --check"), stage="lint", rules=TEST_REFS),
                image_jobs(...),
            )
    """
    flat: List[Job] = []
    for item in jobs:
        if isinstance(item, Job):
            flat.append(item)
        else:
            flat.extend(item)
    return Pipeline(jobs=tuple(flat), stages=tuple(stages))
