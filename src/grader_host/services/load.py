from __future__ import annotations
import threading
import time
from typing import Callable, Optional

import structlog

from ..core.errors import LoadInvariantError
from ..core.models import LoadSample

log = structlog.get_logger()

MIN_ELAPSED_S = 0.001


class DatabaseLoadReporter:
    def __init__(self, db):
        self.db = db

    def report(self, sample: LoadSample) -> None:
        self.db.insert_load(sample)


class LogLoadReporter:
    def report(self, sample: LoadSample) -> None:
        log.info(
            "load_report",
            instance_id=sample.instance_id,
            queue_name=sample.queue_name,
            average_jobs=sample.average_jobs,
            max_jobs=sample.max_jobs,
        )


class LoadTracker:
    """
    Time-weighted number of jobs running on this host.

    integrated_load accumulates current_jobs x elapsed seconds and is brought
    up to date on every start, end and report; report() turns it into an
    average over the interval and starts a new one.
    """

    def __init__(self, max_jobs: int, reporter=None, *, instance_id: str = "",
                 queue_name: Optional[str] = None, interval_s: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_jobs = max_jobs
        self.reporter = reporter
        self.instance_id = instance_id
        self.queue_name = queue_name
        self.interval_s = interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self.current_jobs = 0
        self.integrated_load = 0.0
        self._interval_start = clock()
        self._last_change = self._interval_start
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _integrate(self, now: float) -> None:
        self.integrated_load += (now - self._last_change) * self.current_jobs
        self._last_change = now

    def _change(self, delta: int) -> None:
        with self._lock:
            self._integrate(self._clock())
            current = self.current_jobs + delta
            if current < 0:
                raise LoadInvariantError(f"current_jobs went negative ({current})")
            if current > self.max_jobs:
                raise LoadInvariantError(
                    f"current_jobs {current} exceeds max_jobs {self.max_jobs}"
                )
            self.current_jobs = current

    def start_job(self) -> None:
        self._change(+1)

    def end_job(self) -> None:
        self._change(-1)

    def sample(self) -> LoadSample:
        """Average load since the previous sample; resets the interval."""
        with self._lock:
            now = self._clock()
            self._integrate(now)
            elapsed = max(now - self._interval_start, MIN_ELAPSED_S)
            average = self.integrated_load / elapsed
            self.integrated_load = 0.0
            self._interval_start = now
        return LoadSample(
            instance_id=self.instance_id,
            queue_name=self.queue_name,
            average_jobs=average,
            max_jobs=self.max_jobs,
        )

    def report(self) -> Optional[LoadSample]:
        if self.reporter is None:
            return None
        s = self.sample()
        try:
            self.reporter.report(s)
        except Exception as e:
            log.error("load_report_failed", error=str(e))
        return s

    # ------------ periodic reporting ------------

    def start(self) -> None:
        if self.reporter is None or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="load-reporter", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.report()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_s)
            self._thread = None
