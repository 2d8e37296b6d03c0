from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class JobResult:
    """What a job body reports back to the worker.

    The worker never inspects exceptions to decide on retries; it reads
    ``outcome`` instead.
    """

    outcome: JobOutcome
    detail: str | None = None

    @classmethod
    def succeeded(cls, detail: str | None = None) -> "JobResult":
        return cls(JobOutcome.SUCCEEDED, detail)

    @classmethod
    def retryable(cls, detail: str) -> "JobResult":
        return cls(JobOutcome.RETRYABLE, detail)

    @classmethod
    def fatal(cls, detail: str) -> "JobResult":
        return cls(JobOutcome.FATAL, detail)

    @property
    def ok(self) -> bool:
        return self.outcome is JobOutcome.SUCCEEDED
