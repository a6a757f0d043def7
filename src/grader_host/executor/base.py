from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..core.models import SandboxLimits

CONTAINER_WORKDIR = "/grade"


@dataclass
class SandboxSpec:
    job_id: str
    image: str
    entrypoint: str
    workdir: Path
    limits: SandboxLimits
    timeout_s: float
    # named volume mounted instead of workdir (shared-volume deployments)
    volume_name: Optional[str] = None

    def bind(self) -> str:
        source = self.volume_name or str(self.workdir)
        return f"{source}:{CONTAINER_WORKDIR}"


@dataclass
class SandboxOutcome:
    """What happened to one container. timed_out is only ever set by the timeout path."""

    timeout_s: float
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0


class SandboxRunner:
    def run(self, spec: SandboxSpec, logger: Any) -> SandboxOutcome: ...
