from __future__ import annotations
from typing import Callable, Optional

import boto3
import structlog

from ..core.errors import ConfigurationError
from ..core.settings import Settings
from .base import QueueClient
from .rabbitmq import RabbitMqQueue
from .sqs import SqsQueue, resolve_queue_url

log = structlog.get_logger()


class QueueProvider:
    """Picks the queue backend once at startup and hands out one handle per worker loop."""

    def __init__(self, settings: Settings, *, sqs_client_factory: Optional[Callable[[], object]] = None):
        self.settings = settings
        self._sqs_client_factory = sqs_client_factory
        self._sqs = None
        self._queue_url: Optional[str] = None

    def start(self) -> None:
        s = self.settings
        log.info("queue_provider_init", queue_type=s.queue_type)
        if s.queue_type == "sqs":
            self._sqs = self._make_sqs_client()
            self._queue_url = resolve_queue_url(self._sqs, s.queue_url, s.queue_name)
        elif s.queue_type != "rabbitmq":
            raise ConfigurationError(f"unknown queue type: {s.queue_type}")

    def _make_sqs_client(self):
        if self._sqs_client_factory is not None:
            return self._sqs_client_factory()
        return boto3.client("sqs", region_name=self.settings.aws_region)

    def provide_queue(self) -> QueueClient:
        s = self.settings
        if s.queue_type == "sqs":
            if self._sqs is None:
                raise ConfigurationError("QueueProvider.start() was not called")
            # handles share one client
            return SqsQueue(self._sqs, self._queue_url)
        if s.queue_type == "rabbitmq":
            queue = RabbitMqQueue(s.rabbitmq_url, s.queue_name)
            queue.connect()
            return queue
        raise ConfigurationError(f"unknown queue type: {s.queue_type}")
