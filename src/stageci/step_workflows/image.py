# step_workflows/image.py
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .. import settings
from ..dsl import DEFAULTS, Defaults
from ..errors import ConfigError, PushFailure, TransientFailure
from ..model import Job, Rule, Step, TriggerContext
from ..rules import BUILD_REFS, RELEASE_TAG
from ..runner import raise_for_outcome
from ..ui.console import get_console


RELEASE_TAG_RE = re.compile(RELEASE_TAG)


# ---------------------------------------------------------------------
# Version / tag derivation
# ---------------------------------------------------------------------

def derive_version(ctx: TriggerContext) -> str:
    """Commit tag if present, else the ref name with every run of '/' turned into '-'."""
    if ctx.commit_tag:
        return ctx.commit_tag
    return re.sub(r"/+", "-", ctx.ref_name)


def floating_tag(ref_name: str) -> str:
    """
    Release refs (v1.0, v2.1rc1, ...) are tagged "production", everything else "latest".
    """
    return "production" if RELEASE_TAG_RE.match(ref_name) else "latest"


@dataclass(frozen=True)
class Credentials:
    user: str = ""
    password: str = field(default="", repr=False)

    @property
    def present(self) -> bool:
        return bool(self.user) and bool(self.password)

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str],
        user_var: str = settings.REGISTRY_USER_VAR,
        pass_var: str = settings.REGISTRY_PASS_VAR,
    ) -> "Credentials":
        return cls(user=env.get(user_var, ""), password=env.get(pass_var, ""))


def require_credentials(credentials: Optional[Credentials], job: str) -> Credentials:
    if credentials is None or not credentials.present:
        raise ConfigError("no docker credentials provided", job=job)
    return credentials


@dataclass(frozen=True)
class PublishSpec:
    image_name: str
    version: str
    floating_tag: str
    short_sha: str
    dockerfile: str
    build_args: Mapping[str, str]

    @property
    def tags(self) -> Tuple[str, str, str]:
        """Push order: VERSION, sha-<hash>, floating tag."""
        return (self.version, f"sha-{self.short_sha}", self.floating_tag)

    def refs(self) -> List[str]:
        return [f"{self.image_name}:{t}" for t in self.tags]


@dataclass
class PublishReport:
    image: str
    pushed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


# ---------------------------------------------------------------------
# Build + push
# ---------------------------------------------------------------------

class ImagePublisher:
    """
    Builds one image from the build-stage artifacts and pushes it under three tags.

    Registry coordinates are configuration, credentials are handed in per call.
    """

    def __init__(
        self,
        registry: str = settings.REGISTRY,
        org: str = settings.REGISTRY_ORG,
        *,
        dockerfile: str = settings.DOCKERFILE,
        tool: str = settings.BUILD_TOOL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.org = org
        self.dockerfile = dockerfile
        self.tool = tool
        self.clock = clock

    def image_name(self, repo: str) -> str:
        return f"{self.registry}/{self.org}/{repo}"

    def spec_for(self, ctx: TriggerContext, *, project: str, repo: str) -> PublishSpec:
        version = derive_version(ctx)
        return PublishSpec(
            image_name=self.image_name(repo),
            version=version,
            floating_tag=floating_tag(ctx.ref_name),
            short_sha=ctx.short_sha,
            dockerfile=self.dockerfile,
            build_args=MappingProxyType(
                {
                    "VCS_REF": ctx.short_sha,
                    "BUILD_DATE": self.clock().strftime("%d-%m-%Y"),
                    "PROJECT": project,
                    "VERSION": version,
                }
            ),
        )

    def build_command(self, spec: PublishSpec) -> str:
        parts = [self.tool, "bud", "--format=docker"]
        for key, value in spec.build_args.items():
            parts += ["--build-arg", f"{key}={value}"]
        for ref in spec.refs():
            parts += ["--tag", ref]
        parts += ["--file", spec.dockerfile, "."]
        return " ".join(shlex.quote(p) for p in parts)

    def publish(
        self,
        ctx: TriggerContext,
        credentials: Optional[Credentials],
        *,
        job_name: str,
        project: str,
        repo: str,
        context_dir: Path,
        runner,
        env: Mapping[str, str],
    ) -> PublishReport:
        """
        Credential check, build, login, push each tag in sequence, logout.

        Raises:
            ConfigError: credentials missing (nothing else has happened yet)
            ScriptFailure: build or login failed
            TransientFailure: a step reported an infrastructure failure; logout still ran
            PushFailure: at least one tag failed to push; the rest were still tried
        """
        creds = require_credentials(credentials, job_name)
        console = get_console()

        spec = self.spec_for(ctx, project=project, repo=repo)
        console.print_info(
            f"Starting docker image build/push with name '{spec.image_name}' "
            f"for '{project}' with Dockerfile = '{spec.dockerfile}'"
        )
        console.print_tags(spec.image_name, spec.tags)

        step_env: Dict[str, str] = dict(env)
        step_env.update({"REGISTRY_USER": creds.user, "REGISTRY_PASSWORD": creds.password})

        def _must(name: str, cmd: str) -> None:
            step = Step(name=name, run=cmd)
            console.print_step(job_name, name)
            raise_for_outcome(job_name, step, runner.run(step, step_env, context_dir))

        report = PublishReport(image=spec.image_name)
        transient: Optional[str] = None
        try:
            _must("build image", self.build_command(spec))
            _must(
                "registry login",
                f'echo "$REGISTRY_PASSWORD" | {self.tool} login --username "$REGISTRY_USER" '
                f"--password-stdin {shlex.quote(self.registry)}",
            )
            _must("build tool info", f"{self.tool} info")
            for ref in spec.refs():
                cmd = f"{self.tool} push --format=v2s2 {shlex.quote(ref)}"
                console.print_step(job_name, f"push {ref}")
                outcome = runner.run(Step(name=f"push {ref}", run=cmd), step_env, context_dir)
                if outcome.exit_code == 0:
                    report.pushed.append(ref)
                    continue
                report.failed.append(ref)
                transient = transient or outcome.failure_kind
                console.print_warning(f"[{job_name}] push of {ref} failed (exit={outcome.exit_code})")
        finally:
            runner.run(Step(name="registry logout", run=f"{self.tool} logout --all"), step_env, context_dir)

        if transient:
            raise TransientFailure(job=job_name, kind=transient, message=f"push of {', '.join(report.failed)}")
        if report.failed:
            raise PushFailure(image=spec.image_name, failed=report.failed, pushed=report.pushed)
        return report


@dataclass(frozen=True)
class PublishImage:
    """Job action: publish one image from the `artifacts/` directory of the build job."""
    job_name: str
    project: str
    repo: str
    publisher: ImagePublisher = field(compare=False)
    artifacts_dir: str = "artifacts"

    def __call__(self, *, ctx: TriggerContext, workspace: Path, runner, env: Mapping[str, str]) -> PublishReport:
        return self.publisher.publish(
            ctx,
            Credentials.from_env(env),
            job_name=self.job_name,
            project=self.project,
            repo=self.repo,
            context_dir=Path(workspace) / self.artifacts_dir,
            runner=runner,
            env=env,
        )


def image_job(
    name: str,
    *,
    project: Optional[str] = None,
    repo: Optional[str] = None,
    needs: Sequence[str] = ("build",),
    rules: Sequence[Rule] = BUILD_REFS,
    publisher: Optional[ImagePublisher] = None,
    defaults: Defaults = DEFAULTS,
) -> Job:
    """
    A publish-stage job that builds and pushes the image `<registry>/<org>/<repo>`.

    `project` and `repo` default to the job name.
    """
    project = project or name
    repo = repo or name
    publisher = publisher or ImagePublisher()
    return Job(
        name=name,
        stage="publish",
        steps=(),
        rules=tuple(rules),
        retry=defaults.retry,
        needs=tuple(needs),
        interruptible=defaults.interruptible,
        variables=MappingProxyType(
            {
                **defaults.variables,
                "DOCKERFILE": publisher.dockerfile,
                "BRIDGES_PROJECT": project,
                "DOCKER_IMAGE_NAME": repo,
                "IMAGE_NAME": publisher.image_name(repo),
            }
        ),
        action=PublishImage(job_name=name, project=project, repo=repo, publisher=publisher),
    )
