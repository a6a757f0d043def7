from __future__ import annotations
import json
import shutil
import stat
import tarfile
import tempfile
import zlib
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import closing
from pathlib import Path, PurePosixPath

from docker.errors import DockerException
from requests.exceptions import RequestException

from ..context import WorkerContext
from ..core.errors import ArtifactStoreError, JobFailedError
from ..core.models import JobSpec, SandboxResult
from ..core.utils import utc_now
from ..executor.base import CONTAINER_WORKDIR, SandboxSpec
from ..logging import make_job_logger
from .notifier import GRADING_RESULT, JOB_RECEIVED
from .storage import INPUT_ARCHIVE, OUTPUT_ARCHIVE, RESULTS_FILE

_STAGING_ERRORS = (ArtifactStoreError, tarfile.TarError, OSError, EOFError, zlib.error)
_PULL_ERRORS = (DockerException, RequestException)


class JobOrchestrator:
    """
    Runs one leased job end to end:
      pull image + stage files (in parallel) -> run container -> extract results
      -> store results.json / webhook + archive.tar.gz (in parallel).
    Anything that fails before the container runs raises JobFailedError so the
    message is left for redelivery. Once there is a SandboxResult it is
    returned even if storing or reporting it fails.
    """

    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.s = ctx.settings
        self.limits = ctx.settings.sandbox_limits()

    def run(self, job: JobSpec) -> SandboxResult:
        received_time = utc_now()
        self.ctx.load.start_job()
        try:
            return self._run(job, received_time)
        finally:
            self.ctx.load.end_job()

    def _run(self, job: JobSpec, received_time: str) -> SandboxResult:
        try:
            store = self.ctx.stores.provide(job)
            sink = store.create_log_sink()
        except (ArtifactStoreError, OSError) as e:
            raise JobFailedError(job.job_id, "cannot open the artifact store", e) from e

        mirror = self.ctx.log if self.s.use_console_logging_for_jobs else None
        logger = make_job_logger(job.job_id, sink, level=self.s.log_level, mirror_to=mirror)
        try:
            logger.info("job_received", job_id=job.job_id, image=job.image, store=store.name)
            self.ctx.notifier.notify(job, JOB_RECEIVED, {"received_time": received_time}, logger)

            with self.ctx.workspaces.acquire(job.job_id) as workdir:
                self._prepare(job, store, workdir, logger)
                result = self._grade(job, workdir, received_time, logger)
                self._publish(job, store, workdir, result, logger)
            logger.info("job_done", succeeded=result.succeeded)
            return result
        finally:
            sink.close()

    # ------------ before the container ------------

    def _prepare(self, job: JobSpec, store, workdir: Path, logger) -> None:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"prepare-{job.job_id}") as pool:
            pulled = pool.submit(self.ctx.runner.pull_image, job.image, logger)
            staged = pool.submit(self._stage_files, job, store, workdir, logger)
            wait([pulled, staged])

        try:
            pulled.result()
        except _PULL_ERRORS as e:
            logger.error("docker_unavailable", error=str(e))
            raise JobFailedError(job.job_id, f"cannot prepare image {job.image}: {e}", e) from e
        try:
            staged.result()
        except _STAGING_ERRORS as e:
            logger.error("staging_failed", error=str(e))
            raise JobFailedError(job.job_id, f"cannot stage job files: {e}", e) from e

    def _stage_files(self, job: JobSpec, store, workdir: Path, logger) -> None:
        logger.debug("downloading_job_files", name=INPUT_ARCHIVE)
        with tempfile.TemporaryFile() as tmp:
            with closing(store.get(INPUT_ARCHIVE)) as src:
                shutil.copyfileobj(src, tmp)
            tmp.seek(0)
            with tarfile.open(fileobj=tmp, mode="r:gz") as tar:
                tar.extractall(workdir, filter="data")
        logger.debug("job_files_extracted", workdir=str(workdir))
        self._make_entrypoint_executable(job, workdir, logger)

    @staticmethod
    def _make_entrypoint_executable(job: JobSpec, workdir: Path, logger) -> None:
        target = PurePosixPath(job.entrypoint.split(" ")[0])
        try:
            relative = target.relative_to(CONTAINER_WORKDIR)
        except ValueError:
            return
        path = (workdir / relative).resolve()
        if not path.is_relative_to(workdir.resolve()):
            logger.warning("entrypoint_outside_workdir", path=str(target))
            return
        try:
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            logger.warning("entrypoint_chmod_failed", path=str(target), error=str(e))

    # ------------ container ------------

    def _grade(self, job: JobSpec, workdir: Path, received_time: str, logger) -> SandboxResult:
        spec = SandboxSpec(
            job_id=job.job_id,
            image=job.image,
            entrypoint=job.entrypoint,
            workdir=workdir,
            limits=self.limits.for_job(job),
            timeout_s=job.effective_timeout(self.s.default_timeout),
            volume_name=self.s.job_files_volume_name,
        )
        outcome = self.ctx.runner.run(spec, logger)
        extraction = self.ctx.extractor.extract(workdir, outcome, logger)
        return SandboxResult(
            job_id=job.job_id,
            received_time=received_time,
            start_time=outcome.start_time,
            end_time=outcome.end_time,
            succeeded=extraction.succeeded,
            timed_out=outcome.timed_out,
            message=extraction.message,
            results=extraction.results,
        )

    # ------------ after the container ------------

    def _publish(self, job: JobSpec, store, workdir: Path, result: SandboxResult, logger) -> None:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"publish-{job.job_id}") as pool:
            done = [
                pool.submit(self._store_results, job, store, result, logger),
                pool.submit(self._store_archive, store, workdir, logger),
            ]
        for f in done:
            f.result()

    def _store_results(self, job: JobSpec, store, result: SandboxResult, logger) -> None:
        doc = result.to_document()
        try:
            logger.debug("storing_results", name=RESULTS_FILE)
            store.put_buffer(RESULTS_FILE, json.dumps(doc, indent=2).encode("utf-8"))
        except (ArtifactStoreError, OSError) as e:
            logger.error("results_store_failed", error=str(e))
            return
        self.ctx.notifier.notify(job, GRADING_RESULT, doc, logger)

    @staticmethod
    def _store_archive(store, workdir: Path, logger) -> None:
        try:
            logger.debug("building_archive", workdir=str(workdir))
            with tempfile.TemporaryFile() as tmp:
                with tarfile.open(fileobj=tmp, mode="w:gz") as tar:
                    tar.add(workdir, arcname=workdir.name)
                tmp.seek(0)
                store.put_stream(OUTPUT_ARCHIVE, tmp)
        except _STAGING_ERRORS as e:
            logger.error("archive_store_failed", error=str(e))
