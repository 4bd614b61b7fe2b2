# step_workflows/description.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from .. import settings
from ..dsl import DEFAULTS, Defaults
from ..errors import ConfigError
from ..model import Job, Step, TriggerContext
from ..rules import description_refs
from ..runner import raise_for_outcome
from ..ui.console import get_console
from .image import Credentials, require_credentials

STAGE = "publish-docker-description"
JOB_PREFIX = "dockerhub-"


def readme_path(job_name: str) -> str:
    """Description file of a job, relative to the project dir."""
    return f"docs/{job_name}.README.md"


def repository_for(job_name: str, org: str = settings.REGISTRY_ORG) -> str:
    """`dockerhub-substrate-relay` -> `<org>/substrate-relay`."""
    repo = job_name[len(JOB_PREFIX):] if job_name.startswith(JOB_PREFIX) else job_name
    return f"{org}/{repo}"


@dataclass(frozen=True)
class PublishDescription:
    """Job action: push the README of one image to the registry's metadata endpoint."""
    job_name: str
    short_description: str
    org: str = settings.REGISTRY_ORG
    command: str = settings.DESCRIPTION_COMMAND

    def __call__(self, *, ctx: TriggerContext, workspace: Path, runner, env: Mapping[str, str]) -> None:
        creds = require_credentials(Credentials.from_env(env), self.job_name)
        readme = Path(workspace) / readme_path(self.job_name)
        if not readme.is_file():
            raise ConfigError(f"description file not found: {readme}", job=self.job_name)

        step_env = dict(env)
        step_env.update(
            {
                "DOCKER_USERNAME": creds.user,
                "DOCKER_PASSWORD": creds.password,
                "README_FILEPATH": str(readme),
                "DOCKERHUB_REPOSITORY": repository_for(self.job_name, self.org),
                "SHORT_DESCRIPTION": self.short_description,
            }
        )
        get_console().print_step(self.job_name, f"publish description {step_env['DOCKERHUB_REPOSITORY']}")
        step = Step(name="publish description", run=self.command)
        raise_for_outcome(self.job_name, step, runner.run(step, step_env, Path(workspace)))


def description_job(
    name: str,
    short_description: Optional[str] = None,
    *,
    org: str = settings.REGISTRY_ORG,
    protected_branch: str = settings.PROTECTED_BRANCH,
    defaults: Defaults = DEFAULTS,
) -> Job:
    """
    Publishes docs/<name>.README.md, only on the protected branch and only when
    that file changed.
    """
    if not name.startswith(JOB_PREFIX):
        raise ConfigError(f"description jobs must be named '{JOB_PREFIX}<image>'", job=name)
    return Job(
        name=name,
        stage=STAGE,
        steps=(),
        rules=description_refs(protected_branch),
        retry=defaults.retry,
        interruptible=defaults.interruptible,
        variables=MappingProxyType({**defaults.variables, "SHORT_DESCRIPTION": short_description or name[len(JOB_PREFIX):]}),
        action=PublishDescription(job_name=name, short_description=short_description or name[len(JOB_PREFIX):], org=org),
    )
