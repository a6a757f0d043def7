from __future__ import annotations
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..core.errors import ConfigurationError, QueueError
from ..core.models import LeasedMessage
from .base import QueueClient, parse_job_spec

log = structlog.get_logger()

# SQS refuses visibility timeouts above 12 hours
MAX_VISIBILITY_TIMEOUT = 12 * 60 * 60


def resolve_queue_url(sqs, queue_url: Optional[str], queue_name: Optional[str]) -> str:
    if queue_url:
        log.info("sqs_queue_url_from_config", queue_url=queue_url)
        return queue_url
    if not queue_name:
        raise ConfigurationError("sqs queue needs queue_url or queue_name")
    log.info("sqs_queue_url_lookup", queue_name=queue_name)
    try:
        url = sqs.get_queue_url(QueueName=queue_name)["QueueUrl"]
    except (BotoCoreError, ClientError) as e:
        raise ConfigurationError(f"unable to load url for queue {queue_name!r}: {e}") from e
    log.info("sqs_queue_url_loaded", queue_name=queue_name, queue_url=url)
    return url


class SqsQueue(QueueClient):
    """
    Lease-based backend: a received message stays invisible for the
    visibility window; extending the lease changes that window and acking
    deletes the message. Receiving long-polls one message at a time.
    """

    def __init__(self, sqs, queue_url: str, *, wait_time_seconds: int = 20, retry_delay_s: float = 1.0):
        self.sqs = sqs
        self.queue_url = queue_url
        self.name = queue_url
        self.wait_time_seconds = wait_time_seconds
        self.retry_delay_s = retry_delay_s

    def receive_message(self) -> LeasedMessage:
        while True:
            try:
                resp = self.sqs.receive_message(
                    QueueUrl=self.queue_url,
                    MaxNumberOfMessages=1,
                    WaitTimeSeconds=self.wait_time_seconds,
                )
            except (BotoCoreError, ClientError) as e:
                log.error("sqs_receive_failed", queue_url=self.queue_url, error=str(e))
                time.sleep(self.retry_delay_s)
                continue

            messages = resp.get("Messages") or []
            if not messages:
                continue
            raw = messages[0]
            job = parse_job_spec(raw.get("Body", ""), raw=raw)
            return LeasedMessage(job=job, ack_token=raw["ReceiptHandle"], raw=raw)

    def extend_message_lease(self, message: LeasedMessage, timeout_seconds: float) -> None:
        seconds = min(int(math.ceil(timeout_seconds)), MAX_VISIBILITY_TIMEOUT)
        try:
            self.sqs.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=message.ack_token,
                VisibilityTimeout=seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"could not extend lease of job {message.job_id}: {e}") from e
        message.lease_expires_at = datetime.now(timezone.utc) + timedelta(seconds=seconds)

    def ack_message(self, message: LeasedMessage) -> None:
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message.ack_token)
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"could not delete message of job {message.job_id}: {e}") from e
