from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import structlog

from ..context import WorkerContext
from ..core.errors import (
    GraderError,
    InvalidMessageError,
    JobFailedError,
    LoadInvariantError,
    SandboxWatchdogError,
)
from ..core.models import LeasedMessage
from ..queue.base import QueueClient
from .orchestrator import JobOrchestrator

log = structlog.get_logger()


class WorkerPool:
    """
    max_concurrent_jobs independent loops, one daemon thread and one queue
    handle each. A loop holds at most one message at a time.
    """

    def __init__(self, ctx: WorkerContext, orchestrator: Optional[JobOrchestrator] = None):
        self.ctx = ctx
        self.orchestrator = orchestrator or JobOrchestrator(ctx)
        self._stop = threading.Event()
        self._fatal: Optional[BaseException] = None
        self._threads: List[threading.Thread] = []

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run(self) -> None:
        """Start the loops and block until stop() or a fatal error."""
        n = self.ctx.settings.max_concurrent_jobs
        log.info("worker_pool_starting", loops=n)
        for i in range(n):
            queue = self.ctx.queues.provide_queue()
            t = threading.Thread(target=self._loop, args=(i, queue), name=f"worker-{i}", daemon=True)
            self._threads.append(t)
            t.start()

        self._stop.wait()
        if self._fatal is not None:
            raise self._fatal
        log.info("worker_pool_stopped")

    def stop(self) -> None:
        self._stop.set()

    def _loop(self, index: int, queue: QueueClient) -> None:
        bound = log.bind(loop=index)
        try:
            while not self._stop.is_set():
                self._consume_one(queue, bound)
        except LoadInvariantError as e:
            bound.critical("load_invariant_violated", error=str(e))
            self._fatal = e
            self._stop.set()
        finally:
            queue.close()

    def _consume_one(self, queue: QueueClient, logger=log) -> Optional[LeasedMessage]:
        """One receive -> lease -> cancel check -> run -> ack cycle."""
        try:
            msg = queue.receive_message()
        except InvalidMessageError as e:
            logger.error("invalid_message", reason=e.reason, raw=repr(e.raw)[:500])
            return None
        except GraderError as e:
            logger.error("receive_failed", error=str(e))
            return None

        job = msg.job
        logger = logger.bind(job_id=job.job_id)
        s = self.ctx.settings
        try:
            lease_s = job.effective_timeout(s.default_timeout) + s.lease_overhead_seconds
            queue.extend_message_lease(msg, lease_s)

            if self.ctx.cancellation.is_canceled(job.job_id):
                logger.info("job_canceled_skipping")
                queue.ack_message(msg)
                return msg

            self._run_held(queue, msg)
            queue.ack_message(msg)
            logger.info("job_acked")
        except LoadInvariantError:
            raise
        except (JobFailedError, SandboxWatchdogError) as e:
            logger.error("job_failed_not_acked", error=str(e))
        except GraderError as e:
            logger.error("job_infrastructure_error", error=str(e))
        except Exception as e:
            # database or other infrastructure failure; leave the message for redelivery
            logger.exception("job_unexpected_error", error=str(e))
        return msg

    def _run_held(self, queue: QueueClient, msg: LeasedMessage) -> None:
        # the job runs on a helper thread so this loop can keep its queue
        # connection alive; ack happens back here on the connection's thread
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"job-{msg.job_id}") as pool:
            job = pool.submit(self.orchestrator.run, msg.job)
            queue.hold_until_done(msg, job)
            job.result()
