from __future__ import annotations
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

import docker
import structlog
from docker.errors import DockerException, NotFound
from docker.utils import parse_repository_tag
from requests.exceptions import RequestException

from ..core.errors import SandboxWatchdogError
from ..core.models import DEFAULT_JOB_TIMEOUT, SandboxLimits
from ..core.utils import container_name, format_seconds, utc_now
from .base import SandboxOutcome, SandboxRunner, SandboxSpec

log = structlog.get_logger()

WATCHDOG_FACTOR = 2
OUTPUT_DRAIN_S = 5.0
UNHEALTHY_REASON = "Job timeout exceeded; Docker presumed dead."

_DOCKER_ERRORS = (DockerException, RequestException)


def effective_timeout(timeout_s: Optional[float]) -> float:
    if timeout_s is None or timeout_s <= 0:
        return DEFAULT_JOB_TIMEOUT
    return timeout_s


def container_limits(limits: SandboxLimits) -> Dict[str, Any]:
    """docker-py create() kwargs for the fixed resource policy."""
    kwargs: Dict[str, Any] = {
        "mem_limit": limits.memory_bytes,
        "memswap_limit": limits.memory_swap_bytes,
        "pids_limit": limits.pids_limit,
        "cpu_period": limits.cpu_period,
        "cpu_quota": limits.cpu_quota,
        "ipc_mode": limits.ipc_mode,
        "network_disabled": not limits.network_enabled,
    }
    if limits.kernel_memory_bytes:
        kwargs["kernel_memory"] = limits.kernel_memory_bytes
    if limits.disk_quota_bytes:
        kwargs["storage_opt"] = {"size": str(limits.disk_quota_bytes)}
    return kwargs


class _Conclusion:
    """Set exactly once, by whichever of the run or the watchdog gets there first."""

    def __init__(self):
        self._lock = threading.Lock()
        self.by: Optional[str] = None

    def claim(self, who: str) -> bool:
        with self._lock:
            if self.by is None:
                self.by = who
                return True
            return False


class _RunLogger:
    # once the watchdog has given up on a run, its job log may already be
    # closed; whatever the run still says goes to the process log instead
    def __init__(self, job_logger, conclusion: _Conclusion, job_id: str):
        self._job_logger = job_logger
        self._conclusion = conclusion
        self._late = log.bind(job_id=job_id, abandoned=True)

    def __getattr__(self, name):
        target = self._late if self._conclusion.by == "watchdog" else self._job_logger
        return getattr(target, name)


class DockerSandboxRunner(SandboxRunner):
    """
    Runs one container per job under two timers:
      - the container timeout kills the container and marks the run timed out;
      - the watchdog (2x the timeout, started before container creation)
        assumes dockerd is hung, flags the host unhealthy and fails the job.
    The Docker calls run on a daemon thread so the watchdog can give up on a
    run that never comes back.
    """

    def __init__(self, health, *, client_factory: Callable[[], Any] = docker.from_env,
                 clock: Callable[[], str] = utc_now, watchdog_factor: float = WATCHDOG_FACTOR):
        self.health = health
        self.client_factory = client_factory
        self.clock = clock
        self.watchdog_factor = watchdog_factor

    # ------------ image ------------

    def pull_image(self, image: str, logger) -> None:
        """Refresh the local copy of image; on pull failure keep the cached one."""
        client = self.client_factory()
        try:
            logger.debug("pinging_docker")
            client.ping()
            repository, tag = parse_repository_tag(image)
            logger.info("pulling_image", image=image)
            try:
                client.images.pull(repository, tag=tag or "latest")
            except _DOCKER_ERRORS as e:
                logger.warning("image_pull_failed_using_cached", image=image, error=str(e))
        finally:
            client.close()

    # ------------ run ------------

    def run(self, spec: SandboxSpec, logger) -> SandboxOutcome:
        timeout_s = effective_timeout(spec.timeout_s)
        watchdog_s = timeout_s * self.watchdog_factor
        conclusion = _Conclusion()
        run_logger = _RunLogger(logger, conclusion, spec.job_id)
        done: Future = Future()

        def work():
            try:
                outcome = self._execute(spec, timeout_s, run_logger)
            except BaseException as e:
                if conclusion.claim("run"):
                    done.set_exception(e)
                else:
                    log.error("abandoned_run_failed", job_id=spec.job_id, error=str(e))
                return
            if conclusion.claim("run"):
                done.set_result(outcome)
            else:
                log.warning("abandoned_run_finished", job_id=spec.job_id,
                            exit_code=outcome.exit_code, timed_out=outcome.timed_out)

        logger.info("launching_container", image=spec.image, timeout_s=timeout_s)
        threading.Thread(target=work, name=f"sandbox-{spec.job_id}", daemon=True).start()
        try:
            return done.result(timeout=watchdog_s)
        except FutureTimeout:
            if not conclusion.claim("watchdog"):
                # the run concluded between the timeout and the claim
                return done.result()
        logger.error("watchdog_fired", watchdog_s=watchdog_s)
        self.health.flag_unhealthy(UNHEALTHY_REASON)
        raise SandboxWatchdogError(f"Job timeout of {format_seconds(watchdog_s)}s exceeded.")

    def _execute(self, spec: SandboxSpec, timeout_s: float, logger) -> SandboxOutcome:
        outcome = SandboxOutcome(timeout_s=timeout_s)
        client = self.client_factory()
        container = None
        try:
            container = client.containers.create(
                image=spec.image,
                entrypoint=spec.entrypoint.split(" "),
                name=container_name(spec.job_id),
                tty=True,
                volumes=[spec.bind()],
                **container_limits(spec.limits),
            )
            stream = container.attach(stdout=True, stderr=True, stream=True)
            pump = threading.Thread(
                target=_pump_output, args=(stream, logger),
                name=f"output-{spec.job_id}", daemon=True,
            )
            pump.start()

            container.start()
            logger.debug("container_started", container=container.name)
            outcome.start_time = self.clock()

            timer = threading.Timer(timeout_s, self._on_timeout, args=(container, outcome, logger))
            timer.daemon = True
            timer.start()
            try:
                logger.info("waiting_for_container")
                container.wait()
            finally:
                timer.cancel()
                timer.join()
            outcome.end_time = self.clock()
            # the last lines may still be in flight after the container exits
            pump.join(OUTPUT_DRAIN_S)
            if pump.is_alive():
                logger.warning("container_output_still_streaming", waited_s=OUTPUT_DRAIN_S)

            container.reload()
            outcome.exit_code = container.attrs["State"]["ExitCode"]
            if outcome.timed_out:
                logger.info("container_timed_out", timeout_s=timeout_s)
            else:
                logger.info("container_exited", exit_code=outcome.exit_code)
        except _DOCKER_ERRORS as e:
            logger.error("container_error", error=str(e))
            outcome.error = str(e) or type(e).__name__
            if outcome.start_time and not outcome.end_time:
                outcome.end_time = self.clock()
        finally:
            if container is not None:
                _remove(container, logger)
            client.close()
        return outcome

    @staticmethod
    def _on_timeout(container, outcome: SandboxOutcome, logger) -> None:
        outcome.timed_out = True
        logger.info("killing_container", reason="timeout")
        try:
            container.kill()
        except _DOCKER_ERRORS as e:
            # usually: it exited on its own while we were deciding to kill it
            logger.warning("container_kill_failed", error=str(e))


def _pump_output(stream, logger) -> None:
    try:
        pending = b""
        try:
            for chunk in stream:
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for line in lines:
                    logger.info("container> " + line.rstrip(b"\r").decode("utf-8", errors="replace"))
        except _DOCKER_ERRORS as e:
            logger.warning("container_output_interrupted", error=str(e))
        if pending:
            logger.info("container> " + pending.rstrip(b"\r").decode("utf-8", errors="replace"))
    except ValueError as e:
        # job log already closed
        log.warning("container_output_dropped", error=str(e))


def _remove(container, logger) -> None:
    try:
        container.remove(force=True)
    except NotFound:
        logger.debug("container_already_removed")
    except _DOCKER_ERRORS as e:
        logger.error("container_remove_failed", container=getattr(container, "name", None), error=str(e))
