# git.py
# Read-only git queries used to resolve a trigger context for local runs.
# Callers handle subprocess.CalledProcessError themselves.

from __future__ import annotations

import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """Run `git <args>` in `cwd` and return stripped stdout; stderr is discarded."""
    out = subprocess.check_output(["git", *args], cwd=cwd, text=True, stderr=subprocess.DEVNULL)
    return out.strip()


def short_sha(cwd: Optional[str] = None) -> str:
    """
    Abbreviated SHA of HEAD (CI_COMMIT_SHORT_SHA).

    Used for the `sha-<hash>` image tag and the VCS_REF build argument.
    """
    return _git(["rev-parse", "--short=8", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Current branch name, or the exact tag / short sha when HEAD is detached.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name != "HEAD":
        return name
    return current_tag(cwd=cwd) or short_sha(cwd=cwd)


def current_tag(cwd: Optional[str] = None) -> Optional[str]:
    """Tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repo root.

    Typical usage:
        files = changed_files(merge_base("origin/master"))
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/master", cwd: Optional[str] = None) -> str:
    """Common ancestor of HEAD and `with_ref`: the point the branch diverged."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)
