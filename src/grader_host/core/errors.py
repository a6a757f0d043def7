from __future__ import annotations
from typing import Any, Optional


class GraderError(Exception):
    """Base class for every error raised by the grader host."""


class ConfigurationError(GraderError):
    pass


class QueueError(GraderError):
    """Queue backend could not be reached or rejected a request."""


class InvalidMessageError(QueueError):
    """
    A delivered message could not be turned into a JobSpec.

    The raw message is kept so the worker loop can log it; the message is
    never acked, the backend's redelivery policy decides what happens next.
    """

    def __init__(self, reason: str, raw: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class ArtifactStoreError(GraderError):
    pass


class JobFailedError(GraderError):
    """A job failed before reaching a terminal sandbox outcome."""

    def __init__(self, job_id: str, reason: str, cause: Optional[BaseException] = None):
        super().__init__(f"job {job_id} failed: {reason}")
        self.job_id = job_id
        self.reason = reason
        self.cause = cause


class SandboxWatchdogError(GraderError):
    """The container runtime did not answer within the watchdog interval."""


class LoadInvariantError(GraderError):
    """current_jobs left [0, max_jobs]. Programming error, never recovered."""
