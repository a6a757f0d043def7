import logging
import sys
from typing import Any, BinaryIO, Optional

import structlog


def _level(level: str) -> int:
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str = "INFO", fmt: str = "json"):
    lvl = _level(level)
    logging.basicConfig(level=lvl, stream=sys.stdout, format="%(message)s")
    if fmt == "json":
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.dev.ConsoleRenderer()]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *tail,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger()


def _to_bytes(_: Any, __: str, rendered: str) -> bytes:
    return rendered.encode("utf-8", errors="replace")


def _mirror(target):
    def processor(_: Any, method_name: str, event_dict: dict) -> dict:
        fields = {k: v for k, v in event_dict.items() if k != "event"}
        getattr(target, method_name, target.info)(event_dict.get("event"), **fields)
        return event_dict

    return processor


def make_job_logger(job_id: str, sink: BinaryIO, *, level: str = "INFO", mirror_to: Optional[Any] = None):
    """
    Logger for a single job. Lines go to the job's output.log sink in plain
    text; with mirror_to set they are also sent to the process logger.
    """
    processors = []
    if mirror_to is not None:
        processors.append(_mirror(mirror_to.bind(job_id=job_id)))
    processors += [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=False),
        _to_bytes,
    ]
    return structlog.wrap_logger(
        structlog.BytesLogger(file=sink),
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level(level)),
    )
