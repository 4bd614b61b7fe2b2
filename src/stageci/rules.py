# rules.py
from __future__ import annotations

import re
from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Iterable, Optional, Sequence, Tuple

from .errors import ConfigError
from .model import Condition, Rule, Source, TriggerContext, When


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def source_is(source: str | Source) -> Condition:
    try:
        src = source if isinstance(source, Source) else Source(source)
    except ValueError:
        raise ConfigError(f"rule compares against unknown pipeline source {source!r}") from None
    return Condition(
        describe=f'$CI_PIPELINE_SOURCE == "{src.value}"',
        test=lambda ctx: ctx.source is src,
    )


def ref_is(ref: str) -> Condition:
    return Condition(
        describe=f'$CI_COMMIT_REF_NAME == "{ref}"',
        test=lambda ctx: ctx.ref_name == ref,
    )


def var_is(name: str, value: str) -> Condition:
    """Exact equality against a context variable (schedule label or CI_* name)."""
    return Condition(
        describe=f'${name} == "{value}"',
        test=lambda ctx: ctx.lookup(name) == value,
    )


def var_is_not(name: str, value: str) -> Condition:
    return Condition(
        describe=f'${name} != "{value}"',
        test=lambda ctx: ctx.lookup(name) != value,
    )


def var_set(name: str) -> Condition:
    """Bare `$VAR`: true when the variable is defined and non-empty."""
    return Condition(
        describe=f"${name}",
        test=lambda ctx: bool(ctx.lookup(name)),
    )


def var_matches(name: str, pattern: str) -> Condition:
    try:
        rx = re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"invalid regex /{pattern}/: {e}") from None

    def _test(ctx: TriggerContext) -> bool:
        value = ctx.lookup(name)
        return value is not None and rx.search(value) is not None

    return Condition(describe=f"${name} =~ /{pattern}/", test=_test)


def ref_matches(pattern: str) -> Condition:
    return var_matches("CI_COMMIT_REF_NAME", pattern)


# ---------------------------------------------------------------------
# `if:` expression parsing
# ---------------------------------------------------------------------

_EQ = re.compile(r"""^\$(\w+)\s*(==|!=)\s*(?:"([^"]*)"|'([^']*)')$""")
_RX = re.compile(r"^\$(\w+)\s*=~\s*/(.*)/$")
_BARE = re.compile(r"^\$(\w+)$")


def _parse_clause(clause: str) -> Condition:
    m = _EQ.match(clause)
    if m:
        name, op, dq, sq = m.groups()
        value = dq if dq is not None else sq
        if name == "CI_PIPELINE_SOURCE" and op == "==":
            return source_is(value)
        if name == "CI_COMMIT_REF_NAME" and op == "==":
            return ref_is(value)
        return var_is(name, value) if op == "==" else var_is_not(name, value)

    m = _RX.match(clause)
    if m:
        return var_matches(m.group(1), m.group(2))

    m = _BARE.match(clause)
    if m:
        return var_set(m.group(1))

    raise ConfigError(f"cannot parse rule clause {clause!r}")


def parse_if(expr: str) -> Tuple[Condition, ...]:
    """
    Compile a GitLab-style `if:` expression into AND-ed conditions.

    Supported forms, joined with `&&`:
        $VAR == "x"    $VAR != "x"    $VAR =~ /regex/    $VAR
    """
    if "||" in expr:
        raise ConfigError(f"'||' is not supported in rule expressions, split into separate rules: {expr!r}")
    clauses = [c.strip() for c in expr.split("&&")]
    if not all(clauses):
        raise ConfigError(f"empty clause in rule expression {expr!r}")
    return tuple(_parse_clause(c) for c in clauses)


def rule(
    expr: str | None = None,
    *conditions: Condition,
    when: str | When = When.ON_SUCCESS,
    changes: Optional[Iterable[str]] = None,
) -> Rule:
    """
    Build a Rule from an `if:` expression and/or explicit conditions.

        rule('$CI_PIPELINE_SOURCE == "pipeline"', when="never")
        rule(None, ref_is("master"), changes=["docs/{job}.README.md"])
    """
    conds: Tuple[Condition, ...] = parse_if(expr) if expr else ()
    conds += tuple(conditions)
    try:
        w = when if isinstance(when, When) else When(when)
    except ValueError:
        raise ConfigError(f"unknown rule outcome when={when!r}") from None
    return Rule(
        conditions=conds,
        when=w,
        changes=tuple(changes) if changes is not None else None,
    )


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Verdict:
    include: bool
    when: When | None = None
    rule_index: int | None = None
    reason: str = ""


def _changes_match(globs: Sequence[str], ctx: TriggerContext, job_name: str | None) -> bool:
    # unknown change set (no diff base) never satisfies a `changes` filter
    paths = ctx.changed_paths or frozenset()
    patterns = [g.format(job=job_name) if job_name else g for g in globs]
    return any(fnmatch(p, g) for p in paths for g in patterns)


def rule_matches(r: Rule, ctx: TriggerContext, job_name: str | None = None) -> bool:
    if not all(c(ctx) for c in r.conditions):
        return False
    if r.changes is not None and not _changes_match(r.changes, ctx, job_name):
        return False
    return True


def evaluate(rules: Sequence[Rule], ctx: TriggerContext, *, job_name: str | None = None) -> Verdict:
    """
    Decide whether a job runs for this context.

    Rules are tried top to bottom and the first full match decides:
    `when: never` excludes, anything else includes. No match excludes.
    Pure: the same (rules, ctx) always yields the same verdict.
    """
    for idx, r in enumerate(rules):
        if not rule_matches(r, ctx, job_name):
            continue
        if r.when is When.NEVER:
            return Verdict(include=False, when=r.when, rule_index=idx, reason=f"rule {idx} says never: {r.describe()}")
        return Verdict(include=True, when=r.when, rule_index=idx, reason=f"rule {idx}: {r.describe()}")
    return Verdict(include=False, reason="no rule matched")


# ---------------------------------------------------------------------
# Shared rule lists
# ---------------------------------------------------------------------

RELEASE_TAG = r"^v[0-9]+\.[0-9]+.*$"        # i.e. v1.0, v2.1rc1
DATED_TAG = r"^v[0-9]{4}-[0-9]{2}-[0-9]{2}.*$"  # i.e. v2021-09-27, v2021-09-27-1
PR_REF = r"^[0-9]+$"

# Skipping docs-only pushes is switched off; the rule stays available for when it is re-enabled.
PATH_SKIP_ENABLED = False

DOCS_ONLY_SKIP = rule(
    '$CI_PIPELINE_SOURCE == "push" && $CI_COMMIT_BRANCH',
    changes=["**.md", "diagrams/*", "docs/*"],
    when=When.NEVER,
)


def test_refs(path_skip: bool = PATH_SKIP_ENABLED) -> Tuple[Rule, ...]:
    refs = (
        rule('$CI_PIPELINE_SOURCE == "pipeline"'),
        rule('$CI_PIPELINE_SOURCE == "web"'),
        rule('$CI_PIPELINE_SOURCE == "schedule"'),
        rule('$CI_COMMIT_REF_NAME == "master"'),
        rule(f"$CI_COMMIT_REF_NAME =~ /{PR_REF}/"),
        rule(f"$CI_COMMIT_REF_NAME =~ /{RELEASE_TAG}/"),
    )
    return ((DOCS_ONLY_SKIP,) + refs) if path_skip else refs


TEST_REFS: Tuple[Rule, ...] = test_refs()

BUILD_REFS: Tuple[Rule, ...] = (
    # won't run on the CI image update pipeline
    rule('$CI_PIPELINE_SOURCE == "pipeline"', when=When.NEVER),
    rule(f"$CI_COMMIT_REF_NAME =~ /{RELEASE_TAG}/"),
    rule(f"$CI_COMMIT_REF_NAME =~ /{DATED_TAG}/"),
    # nightly release pipeline: scheduled with PIPELINE=nightly
    rule('$CI_PIPELINE_SOURCE == "schedule" && $PIPELINE == "nightly"'),
)

NIGHTLY_TEST: Tuple[Rule, ...] = (
    # CI image update pipeline, triggered from the scripts repo
    rule('$CI_PIPELINE_SOURCE == "pipeline"'),
)


def description_refs(protected_branch: str = "master") -> Tuple[Rule, ...]:
    return (rule(None, ref_is(protected_branch), changes=["docs/{job}.README.md"]),)
