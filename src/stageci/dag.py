# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple

from .errors import ConfigError
from .model import STAGES, Job, TriggerContext
from .rules import evaluate


@dataclass
class PipelineGraph:
    """
    The eligible subgraph for one run.

    `stages` keeps every stage of the sequence (possibly with no jobs) in order;
    `edges` maps a producer to the jobs that need it.
    """
    jobs: Dict[str, Job]
    stages: List[Tuple[str, List[str]]]
    edges: Dict[str, Set[str]] = field(default_factory=dict)
    excluded: Dict[str, str] = field(default_factory=dict)
    included_reasons: Dict[str, str] = field(default_factory=dict)

    def stage_of(self, name: str) -> str:
        return self.jobs[name].stage

    def stage_index(self, stage: str) -> int:
        return [s for s, _ in self.stages].index(stage)


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert a set of jobs into topological "levels".
    Each level can run in parallel. Raises on cycles.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                if child not in indeg:
                    continue
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigError(f"needs form a cycle. Stuck jobs: {remaining}")

    return levels


def build_graph(
    jobs: Sequence[Job],
    ctx: TriggerContext,
    stages: Sequence[str] = STAGES,
) -> PipelineGraph:
    """
    Expand job definitions + rule verdicts into the DAG to execute.

    Fails before any execution when:
      - two jobs share a name
      - a job names a stage outside the sequence
      - a `needs` reference points at an excluded/unknown job or a later stage
      - same-stage needs form a cycle
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate job names found: {dupes}")

    stage_pos = {s: i for i, s in enumerate(stages)}
    for j in jobs:
        if j.stage not in stage_pos:
            raise ConfigError(
                f"Job '{j.name}' uses unknown stage '{j.stage}'",
                job=j.name,
                details={"stages": list(stages)},
            )

    included: Dict[str, Job] = {}
    excluded: Dict[str, str] = {}
    reasons: Dict[str, str] = {}
    for j in jobs:
        verdict = evaluate(j.rules, ctx, job_name=j.name)
        if verdict.include:
            included[j.name] = j
            reasons[j.name] = verdict.reason
        else:
            excluded[j.name] = verdict.reason

    edges: Dict[str, Set[str]] = {n: set() for n in included}
    for j in included.values():
        for need in j.needs_list:
            if need not in included:
                why = "is not part of this pipeline" if need in excluded else "does not exist"
                raise ConfigError(
                    f"Job '{j.name}' needs '{need}', which {why}",
                    job=j.name,
                    details={"included": sorted(included)},
                )
            if stage_pos[included[need].stage] > stage_pos[j.stage]:
                raise ConfigError(
                    f"Job '{j.name}' (stage {j.stage}) needs '{need}' from later stage {included[need].stage}",
                    job=j.name,
                )
            edges[need].add(j.name)

    grouped: List[Tuple[str, List[str]]] = []
    for stage in stages:
        members = [n for n in names if n in included and included[n].stage == stage]
        # validates there are no same-stage cycles
        indeg = {n: sum(1 for d in included[n].needs_list if d in members) for n in members}
        topo_levels({n: edges[n] for n in members}, indeg)
        grouped.append((stage, members))

    return PipelineGraph(
        jobs=included,
        stages=grouped,
        edges=edges,
        excluded=excluded,
        included_reasons=reasons,
    )
