from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_JOB_TIMEOUT = 30


class JobSpec(BaseModel):
    """
    A grading job as delivered on the queue.

    Field aliases are the camelCase names used in queue messages.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    job_id: str = Field(alias="jobId", min_length=1)
    image: str = Field(min_length=1)
    entrypoint: str = Field(min_length=1)
    # absent or non-positive means the deployment default
    timeout: Optional[float] = None
    enable_networking: bool = Field(default=False, alias="enableNetworking")

    # artifact location (S3 store only; the disk store keys on job_id)
    s3_bucket: Optional[str] = Field(default=None, alias="s3Bucket")
    s3_root_key: Optional[str] = Field(default=None, alias="s3RootKey")

    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    csrf_token: Optional[str] = Field(default=None, alias="csrfToken")

    @field_validator("job_id", mode="before")
    @classmethod
    def _job_id_as_str(cls, v: Any) -> str:
        if isinstance(v, bool) or not isinstance(v, (str, int, float)):
            raise ValueError("jobId must be a string or a number")
        return str(v)

    @field_validator("image", "entrypoint", mode="before")
    @classmethod
    def _strict_str(cls, v: Any) -> Any:
        if not isinstance(v, str):
            raise ValueError("must be a string")
        return v

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout_is_number(cls, v: Any) -> Any:
        if isinstance(v, (bool, str)):
            raise ValueError("timeout must be a number")
        return v

    @field_validator("enable_networking", mode="before")
    @classmethod
    def _strict_bool(cls, v: Any) -> Any:
        if not isinstance(v, bool):
            raise ValueError("enableNetworking must be a boolean")
        return v

    def effective_timeout(self, default: float = DEFAULT_JOB_TIMEOUT) -> float:
        if self.timeout is None or self.timeout <= 0:
            return default
        return self.timeout


@dataclass
class LeasedMessage:
    """A JobSpec together with whatever the backend needs to ack it."""

    job: JobSpec
    ack_token: Any
    lease_expires_at: Optional[datetime] = None
    raw: Any = None

    @property
    def job_id(self) -> str:
        return self.job.job_id


@dataclass(frozen=True)
class SandboxLimits:
    memory_bytes: int = 1 << 30
    memory_swap_bytes: int = 1 << 30  # == memory: no swap on top of the cap
    kernel_memory_bytes: Optional[int] = 1 << 29
    disk_quota_bytes: Optional[int] = 1 << 30
    pids_limit: int = 1024
    cpu_period: int = 100_000  # microseconds
    cpu_quota: int = 90_000
    ipc_mode: str = "private"
    network_enabled: bool = False

    def for_job(self, job: JobSpec) -> "SandboxLimits":
        return SandboxLimits(
            memory_bytes=self.memory_bytes,
            memory_swap_bytes=self.memory_swap_bytes,
            kernel_memory_bytes=self.kernel_memory_bytes,
            disk_quota_bytes=self.disk_quota_bytes,
            pids_limit=self.pids_limit,
            cpu_period=self.cpu_period,
            cpu_quota=self.cpu_quota,
            ipc_mode=self.ipc_mode,
            network_enabled=job.enable_networking,
        )


class SandboxResult(BaseModel):
    """Terminal record of one job; written once to the artifact store."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    received_time: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    succeeded: bool
    timed_out: bool = False
    message: Optional[str] = None
    results: Any = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "SandboxResult":
        if self.succeeded:
            if self.timed_out:
                raise ValueError("a timed out job cannot have succeeded")
            if self.message is not None:
                raise ValueError("a succeeded job carries no failure message")
        else:
            if not self.message:
                raise ValueError("a failed job needs a message")
            if self.results is not None:
                raise ValueError("a failed job carries no results")
        return self

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "job_id": self.job_id,
            "received_time": self.received_time,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "succeeded": self.succeeded,
        }
        if self.timed_out:
            doc["timedOut"] = True
        if self.message is not None:
            doc["message"] = self.message
        if self.succeeded:
            doc["results"] = self.results
        return doc


@dataclass
class LoadSample:
    instance_id: str
    queue_name: Optional[str]
    average_jobs: float
    max_jobs: int
