# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Tuple


# Fixed stage order. A job in stage k may only consume artifacts from stages <= k.
STAGES: Tuple[str, ...] = (
    "lint",
    "check",
    "test",
    "build",
    "publish",
    "publish-docker-description",
)

DEFAULT_RETRY_WHEN: FrozenSet[str] = frozenset(
    {"runner_system_failure", "unknown_failure", "api_failure"}
)


class Source(str, enum.Enum):
    """What caused this pipeline run (CI_PIPELINE_SOURCE)."""
    PUSH = "push"
    WEB = "web"
    SCHEDULE = "schedule"
    PIPELINE = "pipeline"
    MERGE_REQUEST = "merge_request_event"
    TAG = "tag"


class When(str, enum.Enum):
    ON_SUCCESS = "on_success"
    MANUAL = "manual"
    DELAYED = "delayed"
    NEVER = "never"


@dataclass(frozen=True)
class TriggerContext:
    """Immutable facts about why this run started. Resolved once per pipeline."""
    source: Source
    ref_name: str
    commit_tag: Optional[str] = None
    short_sha: str = ""
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    changed_paths: Optional[FrozenSet[str]] = None
    pipeline_id: str = ""

    def lookup(self, var: str) -> Optional[str]:
        """
        Resolve a `$VAR` reference the way a rule `if:` expression sees it.

        Predefined CI_* names map onto context fields, anything else falls back
        to `variables` (e.g. the schedule label PIPELINE=nightly).
        """
        builtin = {
            "CI_PIPELINE_SOURCE": self.source.value,
            "CI_COMMIT_REF_NAME": self.ref_name,
            "CI_COMMIT_TAG": self.commit_tag,
            "CI_COMMIT_SHORT_SHA": self.short_sha or None,
            # branch pipelines only; tag pipelines have no CI_COMMIT_BRANCH
            "CI_COMMIT_BRANCH": None if self.commit_tag else self.ref_name,
            "CI_PIPELINE_ID": self.pipeline_id or None,
        }
        if var in builtin:
            return builtin[var]
        return self.variables.get(var)

    def as_env(self) -> Dict[str, str]:
        """CI_* variables exported into every step's environment."""
        env = {
            "CI_PIPELINE_SOURCE": self.source.value,
            "CI_COMMIT_REF_NAME": self.ref_name,
            "CI_COMMIT_SHORT_SHA": self.short_sha,
        }
        if self.commit_tag:
            env["CI_COMMIT_TAG"] = self.commit_tag
        else:
            env["CI_COMMIT_BRANCH"] = self.ref_name
        if self.pipeline_id:
            env["CI_PIPELINE_ID"] = self.pipeline_id
        env.update(self.variables)
        return env


@dataclass(frozen=True)
class Condition:
    """
    A single predicate over the trigger context.

    `describe` is the human readable form used in plan output.
    """
    describe: str
    test: Callable[[TriggerContext], bool] = field(compare=False)

    def __call__(self, ctx: TriggerContext) -> bool:
        return self.test(ctx)


@dataclass(frozen=True)
class Rule:
    """
    One entry of a job's rule list.

    All conditions must hold (logical AND). `changes` (globs) additionally
    requires a changed path to match. `when=never` turns a match into exclusion.
    """
    conditions: Tuple[Condition, ...] = ()
    when: When = When.ON_SUCCESS
    changes: Optional[Tuple[str, ...]] = None

    def describe(self) -> str:
        parts = [c.describe for c in self.conditions] or ["always"]
        text = " && ".join(parts)
        if self.changes is not None:
            text += f" changes={list(self.changes)}"
        if self.when is not When.ON_SUCCESS:
            text += f" when={self.when.value}"
        return text


@dataclass(frozen=True)
class Step:
    """A single opaque command inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Re-run the whole job on infrastructure failures listed in `when`."""
    max_retries: int = 2
    when: FrozenSet[str] = DEFAULT_RETRY_WHEN

    def retries(self, kind: str) -> bool:
        return kind in self.when


NO_RETRY = RetryPolicy(max_retries=0, when=frozenset())


@dataclass(frozen=True)
class ArtifactSpec:
    paths: Tuple[str, ...]
    expire_in: timedelta = timedelta(days=7)
    name_template: str = "{job}_{ref}"

    def bundle_name(self, job: str, ref: str) -> str:
        return self.name_template.format(job=job, ref=ref)


@dataclass(frozen=True)
class Job:
    """
    A job definition: what to run, in which stage, and when.

    Built once by the DSL (which applies pipeline defaults) and never
    mutated at run time.
    """
    name: str
    stage: str
    steps: Tuple[Step, ...]
    rules: Tuple[Rule, ...] = ()
    after_steps: Tuple[Step, ...] = ()
    retry: RetryPolicy = NO_RETRY
    artifacts: Optional[ArtifactSpec] = None

    # explicit artifact dependencies; None = inherit from all earlier stages
    needs: Optional[Tuple[str, ...]] = None
    allow_failure: bool = False
    interruptible: bool = False
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    # set by publish-stage helpers; run instead of `steps` when present
    action: Optional[Callable[..., None]] = field(default=None, compare=False)

    @property
    def needs_list(self) -> Tuple[str, ...]:
        return self.needs or ()


@dataclass(frozen=True)
class Pipeline:
    """A workflow file's top-level object: ordered stages plus job definitions."""
    jobs: Tuple[Job, ...]
    stages: Tuple[str, ...] = STAGES


@dataclass(frozen=True)
class ArtifactBundle:
    """A named, expiring set of files produced by one successful job."""
    owner_job: str
    stage: str
    name: str
    paths: Tuple[str, ...]
    expire_in: timedelta
    created_at: datetime
    location: Optional[Path] = None

    def expired(self, now: datetime) -> bool:
        return now - self.created_at > self.expire_in


class JobStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED_ALLOWED = "partially-failed-allowed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def passed(self) -> bool:
        """Later stages may start after this one."""
        return self in (StageStatus.SUCCEEDED, StageStatus.PARTIALLY_FAILED_ALLOWED, StageStatus.SKIPPED)


@dataclass
class JobResult:
    name: str
    status: JobStatus
    attempts: int = 0
    failure: Optional[str] = None
    allowed_failure: bool = False
    bundle: Optional[ArtifactBundle] = None

    @property
    def blocking(self) -> bool:
        """True when this result must stop later stages."""
        return self.status in (JobStatus.FAILED, JobStatus.CANCELED) and not self.allowed_failure


@dataclass
class PipelineResult:
    status: str
    stages: Dict[str, StageStatus] = field(default_factory=dict)
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "success"
