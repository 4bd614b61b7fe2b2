# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - reporting which job/step broke
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    """Malformed rule, unsatisfiable needs, missing credentials. Never retried."""

    def __init__(self, message: str, *, job: str | None = None, details: dict | None = None):
        super().__init__(kind="config_error", message=message, job=job, details=details or {})


@dataclass
class ScriptFailure(Exception):
    """A step's command exited non-zero. Terminal for the job."""
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class TransientFailure(Exception):
    """
    Infrastructure-level failure (runner unavailable, unknown error, API failure).

    `kind` is matched against RetryPolicy.when.
    """
    job: str
    kind: str
    message: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] {self.kind}: {self.message}" if self.message else f"[{self.job}] {self.kind}"


class JobCanceled(Exception):
    """Raised inside the executor when a superseded pipeline cancels an interruptible job."""

    def __init__(self, job: str):
        super().__init__(f"[{job}] canceled: superseded by a newer pipeline")
        self.job = job


@dataclass
class PushFailure(Exception):
    """One or more tags failed to push after a successful build."""
    image: str
    failed: list[str]
    pushed: list[str]

    def __str__(self) -> str:
        return (
            f"push failed for {self.image}: {', '.join(self.failed)} "
            f"(already pushed: {', '.join(self.pushed) or 'none'})"
        )
