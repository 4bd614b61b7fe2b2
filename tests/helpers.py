"""Test doubles shared across the stageci test modules."""

import threading
from datetime import datetime, timedelta, timezone

from stageci.runner import StepOutcome


class FakeRunner:
    """
    Stands in for the shell. Outcomes are keyed by step name:
      - StepOutcome           -> returned every time
      - list[StepOutcome]     -> consumed in order, last one repeats
      - callable(step, env, cwd) -> called
    Unknown steps succeed.
    """

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.calls = []
        self.envs = []
        self._lock = threading.Lock()

    def run(self, step, env, cwd):
        with self._lock:
            self.calls.append(step.name)
            self.envs.append(dict(env))
            spec = self.outcomes.get(step.name)
            if isinstance(spec, list):
                spec = spec.pop(0) if len(spec) > 1 else spec[0]
        if spec is None:
            return StepOutcome(exit_code=0)
        if callable(spec):
            return spec(step, env, cwd)
        return spec


class Clock:
    def __init__(self, start=None):
        self.now = start or datetime(2022, 9, 27, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def fail(code=1):
    return StepOutcome(exit_code=code, output="boom")


def transient(kind="runner_system_failure"):
    return StepOutcome(exit_code=1, output="runner lost", failure_kind=kind)


def ok(output=""):
    return StepOutcome(exit_code=0, output=output)
