from __future__ import annotations
import argparse
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .context import build_context
from .core.errors import ConfigurationError, LoadInvariantError
from .core.settings import load_settings
from .logging import setup_logging
from .services.worker_pool import WorkerPool


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="grader-host", description="Pull grading jobs from a queue and run them in containers.")
    parser.add_argument("--config", type=Path, default=None, help="YAML config (default: $GRADER_CONF or conf/config.yaml)")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        structlog.get_logger().error("bad_configuration", error=str(e))
        return 2

    log = setup_logging(settings.log_level, settings.log_format)
    log.info("grader_host_starting", instance_id=settings.instance_id,
             queue_type=settings.queue_type, file_store_type=settings.file_store_type,
             max_concurrent_jobs=settings.max_concurrent_jobs)

    ctx = build_context(settings)
    pool = WorkerPool(ctx)

    def _graceful(signum, _frame):
        log.info("stop_requested", signal=signum)
        pool.stop()

    signal.signal(signal.SIGTERM, _graceful)
    signal.signal(signal.SIGINT, _graceful)

    try:
        if settings.use_health_check:
            ctx.health.serve(settings.health_check_port)
        ctx.queues.start()
        ctx.load.start()
        pool.run()
    except ConfigurationError as e:
        log.error("startup_failed", error=str(e))
        return 2
    except LoadInvariantError as e:
        log.critical("fatal_error", error=str(e))
        return 1
    finally:
        ctx.load.stop()
        ctx.health.shutdown()
        if ctx.db is not None:
            ctx.db.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
