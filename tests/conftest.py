"""
Pytest fixtures for stageci tests.
Fake command runner, frozen clock and trigger-context helpers.
"""

import pytest

from helpers import Clock, FakeRunner
from stageci.artifacts import ArtifactStore
from stageci.runner import JobExecutor
from stageci.trigger import resolve_context


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_ctx():
    def _make(source="push", ref="master", tag=None, sha="abc12345", variables=None, changed=None):
        return resolve_context(
            source=source,
            ref_name=ref,
            commit_tag=tag,
            short_sha=sha,
            variables=variables,
            changed_paths=changed,
        )
    return _make


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def store(tmp_path, clock):
    return ArtifactStore(tmp_path / "store", clock=clock)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def executor(runner, workspace, tmp_path):
    return JobExecutor(runner=runner, workspace=workspace, base_env={}, jobs_dir=tmp_path / "jobs")
