"""
Executor and stage scheduler: retries, after-steps, allow-failure,
stage ordering, same-stage needs and cancellation.
"""

import os
import textwrap
from dataclasses import replace

import pytest

from helpers import FakeRunner, fail, ok, transient
from stageci.dag import build_graph
from stageci.dsl import DEFAULTS, Defaults, collect_artifacts, job, script, sh
from stageci.model import NO_RETRY, JobStatus, Pipeline, RetryPolicy, StageStatus, Step
from stageci.rules import rule
from stageci.runner import (
    CancelToken,
    JobExecutor,
    ShellRunner,
    SupersedeRegistry,
    load_workflow,
    run_pipeline,
)

ALWAYS = (rule("$CI_COMMIT_REF_NAME =~ /.*/"),)


def _job(name, stage="test", steps=None, **kwargs):
    kwargs.setdefault("rules", ALWAYS)
    return job(name, *(steps or [sh(f"{name}:run", f"echo {name}")]), stage=stage, **kwargs)


class TestJobExecutor:
    def test_steps_run_in_order(self, executor, runner, store, make_ctx):
        j = _job("check", steps=script("one", "two", "three"))
        res = executor.run(j, make_ctx(), store)
        assert res.status is JobStatus.SUCCESS
        assert res.attempts == 1
        assert runner.calls == ["one", "two", "three"]

    def test_script_failure_stops_and_is_not_retried(self, executor, runner, store, make_ctx):
        runner.outcomes["two"] = fail(101)
        j = _job("check", steps=script("one", "two", "three"))
        assert j.retry.max_retries == 2

        res = executor.run(j, make_ctx(), store)
        assert res.status is JobStatus.FAILED
        assert res.attempts == 1
        assert runner.calls == ["one", "two"]
        assert "exit=101" in res.failure

    def test_transient_failure_retried_until_bound(self, executor, runner, store, make_ctx):
        runner.outcomes["flaky"] = transient("runner_system_failure")
        j = _job("test", steps=script("flaky"))

        res = executor.run(j, make_ctx(), store)
        assert res.status is JobStatus.FAILED
        assert res.attempts == 3
        assert runner.calls == ["flaky"] * 3

    def test_transient_then_success(self, executor, runner, store, make_ctx):
        runner.outcomes["flaky"] = [transient("api_failure"), ok()]
        res = executor.run(_job("test", steps=script("flaky")), make_ctx(), store)
        assert res.status is JobStatus.SUCCESS
        assert res.attempts == 2

    def test_unlisted_failure_kind_not_retried(self, executor, runner, store, make_ctx):
        runner.outcomes["slow"] = transient("stuck_or_timeout_failure")
        res = executor.run(_job("test", steps=script("slow")), make_ctx(), store)
        assert res.status is JobStatus.FAILED
        assert res.attempts == 1

    def test_no_retry_policy(self, executor, runner, store, make_ctx):
        runner.outcomes["flaky"] = transient()
        res = executor.run(_job("test", steps=script("flaky"), retry=NO_RETRY), make_ctx(), store)
        assert res.attempts == 1

    def test_after_steps_run_on_failure(self, executor, runner, store, make_ctx):
        runner.outcomes["cargo deny"] = fail()
        j = _job("deny", steps=script("cargo deny"), after=script("collect logs"))
        res = executor.run(j, make_ctx(), store)
        assert res.status is JobStatus.FAILED
        assert runner.calls == ["cargo deny", "collect logs"]

    def test_after_steps_run_on_every_attempt(self, executor, runner, store, make_ctx):
        runner.outcomes["flaky"] = [transient(), ok()]
        j = _job("test", steps=script("flaky"), after=script("cleanup"))
        executor.run(j, make_ctx(), store)
        assert runner.calls == ["flaky", "cleanup", "flaky", "cleanup"]

    def test_after_step_failure_keeps_job_status(self, executor, runner, store, make_ctx):
        runner.outcomes["cleanup"] = fail()
        j = _job("test", steps=script("ok"), after=script("cleanup"))
        assert executor.run(j, make_ctx(), store).status is JobStatus.SUCCESS

    def test_allow_failure_recorded(self, executor, runner, store, make_ctx):
        runner.outcomes["bench"] = fail()
        res = executor.run(_job("bench", steps=script("bench"), allow_failure=True), make_ctx(), store)
        assert res.status is JobStatus.FAILED
        assert res.allowed_failure is True
        assert res.blocking is False

    def test_job_environment(self, executor, runner, store, make_ctx):
        j = _job("clippy", stage="lint", steps=script("clippy"), variables={"RUSTFLAGS": "-D warnings"})
        executor.run(j, make_ctx(variables={"PIPELINE": "nightly"}), store)
        env = runner.envs[0]
        assert env["CI_JOB_NAME"] == "clippy"
        assert env["CI_JOB_STAGE"] == "lint"
        assert env["CI_PROJECT_DIR"] == str(executor.job_workspace("clippy"))
        assert env["RUSTFLAGS"] == "-D warnings"
        assert env["PIPELINE"] == "nightly"
        assert env["CI_COMMIT_REF_NAME"] == "master"

    def test_defaults_merged_into_job(self):
        defaults = Defaults(variables={"ARCH": "x86_64", "GIT_DEPTH": "100"})
        j = job("x", sh("a", "true"), stage="lint", variables={"GIT_DEPTH": "1"}, defaults=defaults)
        assert dict(j.variables) == {"ARCH": "x86_64", "GIT_DEPTH": "1"}
        assert j.interruptible is True
        assert j.retry == DEFAULTS.retry

    def test_action_replaces_steps(self, executor, runner, store, make_ctx):
        seen = {}

        def action(*, ctx, workspace, runner, env):
            seen["ref"] = ctx.ref_name
            seen["workspace"] = workspace
            seen["job"] = env["CI_JOB_NAME"]
            runner.run(Step(name="from-action", run="true"), env, workspace)

        j = replace(_job("publish-x", stage="publish"), action=action)
        res = executor.run(j, make_ctx(), store)
        assert res.status is JobStatus.SUCCESS
        assert seen == {"ref": "master", "workspace": executor.job_workspace("publish-x"), "job": "publish-x"}
        assert runner.calls == ["from-action"]

    def test_canceled_interruptible_job(self, executor, runner, store, make_ctx):
        token = CancelToken()

        def cancel_after(step, env, cwd):
            token.cancel()
            return ok()

        runner.outcomes["one"] = cancel_after
        res = executor.run(_job("test", steps=script("one", "two")), make_ctx(), store, token)
        assert res.status is JobStatus.CANCELED
        assert runner.calls == ["one"]

    def test_non_interruptible_job_ignores_cancel(self, executor, runner, store, make_ctx):
        token = CancelToken()
        token.cancel()
        j = _job("test", steps=script("one", "two"), interruptible=False)
        res = executor.run(j, make_ctx(), store, token)
        assert res.status is JobStatus.SUCCESS
        assert runner.calls == ["one", "two"]

    def test_artifacts_collected_after_after_steps(self, store, make_ctx, workspace):
        def write_binary(step, env, cwd):
            (cwd / "artifacts").mkdir(exist_ok=True)
            (cwd / "artifacts" / "node").write_text("bin")
            return ok()

        runner = FakeRunner({"prepare": write_binary})
        executor = JobExecutor(runner=runner, workspace=workspace, base_env={})
        j = _job("build", stage="build", steps=script("cargo build"), after=script("prepare"),
                 artifacts=collect_artifacts())
        res = executor.run(j, make_ctx(), store)
        assert res.status is JobStatus.SUCCESS
        assert res.bundle is not None
        assert res.bundle.paths == ("artifacts/node",)

    def test_job_runs_in_copy_of_checkout(self, store, make_ctx, workspace, tmp_path):
        (workspace / "Cargo.toml").write_text("[workspace]")
        (workspace / "artifacts").mkdir()
        (workspace / "artifacts" / "stale").write_text("old")
        seen = {}

        def look(step, env, cwd):
            seen["cwd"] = cwd
            seen["manifest"] = (cwd / "Cargo.toml").read_text()
            seen["stale"] = (cwd / "artifacts" / "stale").exists()
            (cwd / "scratch").write_text("x")
            return ok()

        executor = JobExecutor(runner=FakeRunner({"look": look}), workspace=workspace, base_env={},
                               jobs_dir=tmp_path / "jobs")
        executor.run(_job("check", steps=script("look")), make_ctx(), store)

        assert seen["cwd"] == (tmp_path / "jobs" / "check").resolve()
        assert seen["manifest"] == "[workspace]"
        assert seen["stale"] is False
        assert not (workspace / "scratch").exists()

    def test_retry_starts_from_fresh_copy(self, store, make_ctx, workspace, tmp_path):
        attempts = []

        def half_done(step, env, cwd):
            attempts.append((cwd / "partial").exists())
            (cwd / "partial").write_text("x")
            return transient() if len(attempts) == 1 else ok()

        executor = JobExecutor(runner=FakeRunner({"build": half_done}), workspace=workspace, base_env={},
                               jobs_dir=tmp_path / "jobs")
        res = executor.run(_job("build", steps=script("build")), make_ctx(), store)
        assert res.attempts == 2
        assert attempts == [False, False]

    def test_jobs_dir_inside_checkout_not_copied(self, store, make_ctx, workspace):
        executor = JobExecutor(runner=FakeRunner(), workspace=workspace, base_env={})
        executor.run(_job("a"), make_ctx(), store)
        executor.run(_job("b"), make_ctx(), store)

        b = executor.job_workspace("b")
        assert b == workspace.resolve() / ".stageci" / "jobs" / "b"
        assert not (b / ".stageci").exists()


class TestRunPipeline:
    def _run(self, jobs, ctx, executor, store, token=None):
        graph = build_graph(jobs, ctx)
        return run_pipeline(graph, ctx, executor=executor, store=store, max_workers=2, token=token)

    def test_success_and_empty_stages_skipped(self, executor, store, make_ctx):
        result = self._run([_job("fmt", "lint"), _job("test", "test")], make_ctx(), executor, store)
        assert result.ok
        assert result.stages["lint"] is StageStatus.SUCCEEDED
        assert result.stages["check"] is StageStatus.SKIPPED
        assert result.stages["publish"] is StageStatus.SKIPPED

    def test_stages_run_in_order(self, executor, runner, store, make_ctx):
        jobs = [_job("build", "build"), _job("fmt", "lint"), _job("test", "test"), _job("check", "check")]
        self._run(jobs, make_ctx(), executor, store)
        assert runner.calls == ["fmt:run", "check:run", "test:run", "build:run"]

    def test_failure_halts_later_stages(self, executor, runner, store, make_ctx):
        runner.outcomes["test:run"] = fail()
        jobs = [_job("test", "test"), _job("other", "test"), _job("build", "build")]
        result = self._run(jobs, make_ctx(), executor, store)

        assert result.status == "failed"
        assert result.stages["test"] is StageStatus.FAILED
        assert result.stages["build"] is StageStatus.SKIPPED
        assert result.jobs["other"].status is JobStatus.SUCCESS
        assert result.jobs["build"].status is JobStatus.SKIPPED
        assert "build:run" not in runner.calls

    def test_allowed_failure_lets_pipeline_continue(self, executor, runner, store, make_ctx):
        runner.outcomes["deny:run"] = fail()
        jobs = [_job("deny", "test", allow_failure=True), _job("test", "test"), _job("build", "build")]
        result = self._run(jobs, make_ctx(), executor, store)

        assert result.ok
        assert result.stages["test"] is StageStatus.PARTIALLY_FAILED_ALLOWED
        assert result.stages["build"] is StageStatus.SUCCEEDED

    def test_allowed_job_exhausts_retries_before_failure_is_allowed(self, executor, runner, store, make_ctx):
        """Transient failures are retried first; allow-failure only applies to the final outcome."""
        runner.outcomes["bench:run"] = transient("api_failure")
        jobs = [_job("bench", "test", allow_failure=True), _job("test", "test"), _job("build", "build")]
        result = self._run(jobs, make_ctx(), executor, store)

        bench = result.jobs["bench"]
        assert bench.status is JobStatus.FAILED
        assert bench.attempts == 3
        assert bench.allowed_failure is True
        assert runner.calls.count("bench:run") == 3
        assert result.stages["test"] is StageStatus.PARTIALLY_FAILED_ALLOWED
        assert result.stages["test"].passed
        assert result.jobs["build"].status is JobStatus.SUCCESS
        assert "build:run" in runner.calls
        assert result.ok

    def test_same_stage_needs_wait_for_producer(self, executor, runner, store, make_ctx):
        jobs = [_job("b", "test", needs=["a"]), _job("a", "test")]
        result = self._run(jobs, make_ctx(), executor, store)
        assert result.ok
        assert runner.calls.index("a:run") < runner.calls.index("b:run")

    def test_dependent_skipped_when_producer_fails(self, executor, runner, store, make_ctx):
        runner.outcomes["a:run"] = fail()
        jobs = [_job("a", "test"), _job("b", "test", needs=["a"])]
        result = self._run(jobs, make_ctx(), executor, store)
        assert result.jobs["b"].status is JobStatus.SKIPPED
        assert result.jobs["b"].failure == "needed job failed"
        assert "b:run" not in runner.calls

    def test_cancel_between_stages(self, executor, runner, store, make_ctx):
        token = CancelToken()

        def cancel(step, env, cwd):
            token.cancel()
            return ok()

        runner.outcomes["fmt:run"] = cancel
        jobs = [_job("fmt", "lint"), _job("test", "test")]
        result = self._run(jobs, make_ctx(), executor, store, token=token)
        assert result.status == "canceled"
        assert result.jobs["test"].status is JobStatus.SKIPPED
        assert "test:run" not in runner.calls

    def test_unstarted_interruptible_jobs_canceled(self, executor, runner, store, make_ctx):
        token = CancelToken()
        token.cancel()
        jobs = [_job("fmt", "lint"), _job("keep", "lint", interruptible=False)]
        result = self._run(jobs, make_ctx(), executor, store, token=token)
        assert result.jobs["fmt"].status is JobStatus.CANCELED
        assert result.jobs["keep"].status is JobStatus.SUCCESS
        assert result.stages["lint"] is StageStatus.CANCELED

    def test_artifacts_flow_to_later_stage(self, store, make_ctx, workspace):
        def build(step, env, cwd):
            (cwd / "artifacts").mkdir(exist_ok=True)
            (cwd / "artifacts" / "relay").write_text("bin")
            return ok()

        seen = {}

        def publish(step, env, cwd):
            seen["present"] = (cwd / "artifacts" / "relay").exists()
            return ok()

        runner = FakeRunner({"build:run": build, "publish:run": publish})
        executor = JobExecutor(runner=runner, workspace=workspace, base_env={})
        jobs = [
            _job("build", "build", artifacts=collect_artifacts()),
            _job("publish", "publish", needs=["build"]),
        ]
        result = self._run(jobs, make_ctx(), executor, store)
        assert result.ok
        assert seen["present"] is True
        assert store.get("build") is not None

    def test_consumer_without_needs_sees_no_producer_files(self, store, make_ctx, workspace, tmp_path):
        def build(step, env, cwd):
            (cwd / "artifacts").mkdir(exist_ok=True)
            (cwd / "artifacts" / "secret").write_text("bin")
            (cwd / "target").mkdir(exist_ok=True)
            return ok()

        seen = {}

        def publish(step, env, cwd):
            seen["artifact"] = (cwd / "artifacts" / "secret").exists()
            seen["target"] = (cwd / "target").exists()
            return ok()

        runner = FakeRunner({"build:run": build, "publish:run": publish})
        executor = JobExecutor(runner=runner, workspace=workspace, base_env={}, jobs_dir=tmp_path / "jobs")
        jobs = [
            _job("build", "build", artifacts=collect_artifacts()),
            _job("publish", "publish", needs=[]),
        ]
        result = self._run(jobs, make_ctx(), executor, store)
        assert result.ok
        assert store.get("build") is not None
        assert seen == {"artifact": False, "target": False}


class TestSupersedeRegistry:
    def test_newer_pipeline_cancels_older(self, make_ctx):
        registry = SupersedeRegistry()
        first = registry.register(make_ctx(sha="aaaa"))
        second = registry.register(make_ctx(sha="bbbb"))
        assert first.cancelled
        assert not second.cancelled

    def test_different_refs_independent(self, make_ctx):
        registry = SupersedeRegistry()
        master = registry.register(make_ctx(ref="master"))
        registry.register(make_ctx(ref="feature"))
        assert not master.cancelled

    def test_release_only_current_token(self, make_ctx):
        registry = SupersedeRegistry()
        ctx = make_ctx()
        old = registry.register(ctx)
        new = registry.register(ctx)
        registry.release(ctx, old)
        third = registry.register(ctx)
        assert new.cancelled
        assert not third.cancelled


class TestShellRunner:
    def test_success_and_failure(self, tmp_path):
        env = dict(os.environ)
        ok = ShellRunner().run(Step(name="ok", run="echo hello"), env, tmp_path)
        assert ok.exit_code == 0
        assert "hello" in ok.output

        bad = ShellRunner().run(Step(name="bad", run="exit 3"), env, tmp_path)
        assert bad.exit_code == 3
        assert bad.failure_kind is None

    def test_failure_marker_classifies(self, tmp_path):
        step = Step(name="api", run="echo stageci:failure=api_failure; exit 1")
        outcome = ShellRunner().run(step, dict(os.environ), tmp_path)
        assert outcome.failure_kind == "api_failure"

    def test_missing_cwd(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ShellRunner().run(Step(name="x", run="true", cwd="nope"), dict(os.environ), tmp_path)


class TestLoadWorkflow:
    def test_workflow_function(self, tmp_path):
        path = tmp_path / "mini_workflow.py"
        path.write_text(textwrap.dedent(
            """
            from stageci.dsl import job, pipeline, sh

            def workflow():
                return pipeline(job("fmt", sh("fmt", "cargo fmt"), stage="lint"))
            """
        ))
        p = load_workflow(path)
        assert isinstance(p, Pipeline)
        assert [j.name for j in p.jobs] == ["fmt"]

    def test_pipeline_constant(self, tmp_path):
        path = tmp_path / "const_workflow.py"
        path.write_text(
            "from stageci.dsl import job, pipeline, sh\n"
            "PIPELINE = pipeline(job('fmt', sh('fmt', 'cargo fmt'), stage='lint'))\n"
        )
        assert load_workflow(path).jobs[0].name == "fmt"

    def test_rejects_non_pipeline(self, tmp_path):
        path = tmp_path / "bad_workflow.py"
        path.write_text("PIPELINE = 3\n")
        with pytest.raises(TypeError):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.py")


def test_retry_policy_membership():
    policy = RetryPolicy(max_retries=2)
    assert policy.retries("runner_system_failure")
    assert policy.retries("unknown_failure")
    assert policy.retries("api_failure")
    assert not policy.retries("script_failure")
