# trigger.py
from __future__ import annotations

import os
import subprocess
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional

from .errors import ConfigError
from .git_facts import git
from .model import Source, TriggerContext


def resolve_context(
    source: str | Source,
    ref_name: str,
    commit_tag: Optional[str] = None,
    short_sha: str = "",
    variables: Optional[Mapping[str, str]] = None,
    changed_paths: Optional[Iterable[str]] = None,
    pipeline_id: str = "",
) -> TriggerContext:
    """
    Capture the immutable trigger facts for one pipeline run.

    Ref names are kept verbatim. An unknown source aborts the pipeline before
    any job is considered.
    """
    try:
        src = source if isinstance(source, Source) else Source(source)
    except ValueError:
        known = ", ".join(s.value for s in Source)
        raise ConfigError(
            f"unknown pipeline source {source!r}",
            details={"known": known},
        ) from None

    return TriggerContext(
        source=src,
        ref_name=ref_name,
        commit_tag=commit_tag or None,
        short_sha=short_sha,
        variables=MappingProxyType(dict(variables or {})),
        changed_paths=frozenset(changed_paths) if changed_paths is not None else None,
        pipeline_id=pipeline_id,
    )


def context_from_env(
    environ: Optional[Mapping[str, str]] = None,
    *,
    schedule_vars: Iterable[str] = ("PIPELINE",),
    changed_paths: Optional[Iterable[str]] = None,
    compare_ref: Optional[str] = None,
    cwd: Optional[str] = None,
) -> TriggerContext:
    """
    Resolve a context from GitLab-compatible environment variables.

    Only the listed `schedule_vars` are lifted into context variables; the rest
    of the environment is ignored. Without explicit `changed_paths`, a
    `compare_ref` diffs the checkout in `cwd` against it.
    """
    env = os.environ if environ is None else environ
    if "CI_PIPELINE_SOURCE" not in env:
        raise ConfigError("CI_PIPELINE_SOURCE is not set")
    if changed_paths is None and compare_ref:
        changed_paths = changed_since(compare_ref, cwd=cwd)

    variables = {k: env[k] for k in schedule_vars if env.get(k)}
    return resolve_context(
        source=env["CI_PIPELINE_SOURCE"],
        ref_name=env.get("CI_COMMIT_REF_NAME", ""),
        commit_tag=env.get("CI_COMMIT_TAG"),
        short_sha=env.get("CI_COMMIT_SHORT_SHA", ""),
        variables=variables,
        changed_paths=changed_paths,
        pipeline_id=env.get("CI_PIPELINE_ID", ""),
    )


def context_from_git(
    source: str | Source = Source.PUSH,
    *,
    ref_name: Optional[str] = None,
    commit_tag: Optional[str] = None,
    variables: Optional[Mapping[str, str]] = None,
    compare_ref: Optional[str] = None,
    cwd: Optional[str] = None,
) -> TriggerContext:
    """
    Resolve a context for a local run from the git checkout.

    Explicit arguments win over what git reports. Changed paths are only
    computed when `compare_ref` is given.
    """
    ref = ref_name or git.current_ref(cwd=cwd)
    tag = commit_tag if commit_tag is not None else git.current_tag(cwd=cwd)

    changed = changed_since(compare_ref, cwd=cwd) if compare_ref else None
    return resolve_context(
        source=source,
        ref_name=ref,
        commit_tag=tag,
        short_sha=git.short_sha(cwd=cwd),
        variables=variables,
        changed_paths=changed,
    )


def changed_since(compare_ref: str, cwd: Optional[str] = None) -> List[str]:
    """Files changed between the merge base with `compare_ref` and HEAD."""
    try:
        base = git.merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"
    return git.changed_files(base, "HEAD", cwd=cwd)
