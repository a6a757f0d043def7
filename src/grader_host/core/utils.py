from __future__ import annotations
import re
import uuid
from datetime import datetime, timezone
from typing import Any

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def container_name(job_id: str) -> str:
    # unique per run: duplicate deliveries of one job must not collide
    return f"grader-{_NAME_UNSAFE.sub('_', job_id)[:64]}-{uuid.uuid4().hex[:8]}"


def format_seconds(value: float) -> str:
    return f"{value:g}"


def sanitize_object(value: Any) -> Any:
    """
    Recursively escape NUL characters in keys and string values so the
    document can be stored and redisplayed safely (JSONB rejects \\u0000).
    """
    if isinstance(value, str):
        return value.replace("\u0000", "\\u0000")
    if isinstance(value, dict):
        return {sanitize_object(k): sanitize_object(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_object(v) for v in value]
    return value
