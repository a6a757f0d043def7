from __future__ import annotations
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO

from ..core.errors import ArtifactStoreError

INPUT_ARCHIVE = "job.tar.gz"
RESULTS_FILE = "results.json"
OUTPUT_ARCHIVE = "archive.tar.gz"
LOG_FILE = "output.log"


class ArtifactStore(ABC):
    """
    Named blobs for one job:
      job.tar.gz      (input, written by the submitter)
      output.log      (job log, appended while the job runs)
      results.json    (SandboxResult document)
      archive.tar.gz  (snapshot of the working directory)
    Writes overwrite, so a duplicate run of a job replaces the earlier blobs.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def get(self, name: str) -> BinaryIO: ...

    @abstractmethod
    def put_buffer(self, name: str, data: bytes) -> None: ...

    @abstractmethod
    def put_stream(self, name: str, stream: BinaryIO) -> None: ...

    @abstractmethod
    def create_log_sink(self) -> BinaryIO: ...


class DiskArtifactStore(ArtifactStore):
    """Flat directory per job: <file_store_path>/job_<job_id>/<name>."""

    def __init__(self, root: Path, job_id: str):
        root = root if root.is_absolute() else root.resolve()
        self.base_path = root / f"job_{job_id}"

    @property
    def name(self) -> str:
        return f"([disk] {self.base_path})"

    def file_path(self, name: str) -> Path:
        return self.base_path / name

    def get(self, name: str) -> BinaryIO:
        try:
            return open(self.file_path(name), "rb")
        except OSError as e:
            raise ArtifactStoreError(f"cannot read {name} from {self.name}: {e}") from e

    def put_buffer(self, name: str, data: bytes) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            self.file_path(name).write_bytes(data)
        except OSError as e:
            raise ArtifactStoreError(f"cannot write {name} to {self.name}: {e}") from e

    def put_stream(self, name: str, stream: BinaryIO) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            with open(self.file_path(name), "wb") as out:
                shutil.copyfileobj(stream, out)
        except OSError as e:
            raise ArtifactStoreError(f"cannot write {name} to {self.name}: {e}") from e

    def create_log_sink(self) -> BinaryIO:
        self.base_path.mkdir(parents=True, exist_ok=True)
        return open(self.file_path(LOG_FILE), "ab")
