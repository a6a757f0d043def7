from __future__ import annotations
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog

log = structlog.get_logger()


class Workspaces:
    """
    Working directories for jobs.

    Default: a fresh temp dir per job, removed when the job leaves the
    context. With a shared volume (one job at a time) the volume's host path
    is emptied before use and left in place afterwards.
    """

    def __init__(self, shared_path: Optional[Path] = None, base_dir: Optional[Path] = None):
        self.shared_path = shared_path
        self.base_dir = base_dir

    @contextmanager
    def acquire(self, job_id: str) -> Iterator[Path]:
        if self.shared_path is not None:
            _empty_dir(self.shared_path)
            yield self.shared_path
            return

        path = Path(tempfile.mkdtemp(prefix=f"job_{job_id}_", dir=self.base_dir))
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)
            log.debug("workspace_released", job_id=job_id, path=str(path))


def _empty_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
