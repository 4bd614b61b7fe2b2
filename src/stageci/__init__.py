from .dsl import job, sh, script, pipeline, extend, collect_artifacts, JobBuilder, build, Defaults
from .rules import rule, TEST_REFS, BUILD_REFS, NIGHTLY_TEST
from .runner import run_pipeline, JobExecutor
from .model import Job, Step, Pipeline, STAGES

__all__ = [
    "job", "sh", "script", "pipeline", "extend", "collect_artifacts", "JobBuilder", "build", "Defaults",
    "rule", "TEST_REFS", "BUILD_REFS", "NIGHTLY_TEST",
    "run_pipeline", "JobExecutor",
    "Job", "Step", "Pipeline", "STAGES",
]
