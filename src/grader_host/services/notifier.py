from __future__ import annotations
from typing import Any, Optional

import requests

from ..core.models import JobSpec

JOB_RECEIVED = "job_received"
GRADING_RESULT = "grading_result"


class CallbackNotifier:
    """Best-effort webhook to whoever submitted the job. Never raises."""

    def __init__(self, timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def notify(self, job: JobSpec, event: str, data: Any, logger) -> bool:
        if not job.webhook_url:
            return False
        body = {
            "data": data,
            "event": event,
            "job_id": job.job_id,
            "__csrf_token": job.csrf_token,
        }
        try:
            r = self.session.post(job.webhook_url, json=body, timeout=self.timeout_s)
            r.raise_for_status()
        except requests.RequestException as e:
            logger.error("webhook_failed", webhook_event=event, error=str(e))
            return False
        logger.debug("webhook_sent", webhook_event=event)
        return True
