from __future__ import annotations
import time
from concurrent.futures import Future, wait
from typing import Callable, List, Optional, Tuple

import pika
import structlog
from pika.exceptions import AMQPError

from ..core.errors import InvalidMessageError, QueueError
from ..core.models import LeasedMessage
from .base import QueueClient, parse_job_spec

log = structlog.get_logger()


class RabbitMqQueue(QueueClient):
    """
    Subscribe-and-cancel backend. Each handle owns its connection and a
    single channel with prefetch 1; receiving subscribes, cancels the
    consumer as soon as the first delivery arrives and returns it. The
    delivery stays unacked (and so redeliverable) until ack_message.
    """

    def __init__(
        self,
        url: str,
        queue_name: str,
        *,
        connection_factory: Optional[Callable[[], "pika.BlockingConnection"]] = None,
        reconnect_delay_s: float = 1.0,
        poll_interval_s: float = 1.0,
    ):
        self.url = url
        self.name = queue_name
        self.reconnect_delay_s = reconnect_delay_s
        self.poll_interval_s = poll_interval_s
        self._connection_factory = connection_factory or (
            lambda: pika.BlockingConnection(pika.URLParameters(url))
        )
        self._connection = None
        self._channel = None

    # ------------ connection ------------

    def connect(self) -> None:
        while True:
            try:
                self._connection = self._connection_factory()
                channel = self._connection.channel()
                channel.queue_declare(queue=self.name, durable=True)
                channel.basic_qos(prefetch_count=1)
                self._channel = channel
                return
            except AMQPError as e:
                log.error("rabbitmq_connect_failed", queue=self.name, error=str(e))
                self._drop_connection()
                time.sleep(self.reconnect_delay_s)

    def _drop_connection(self) -> None:
        conn, self._connection, self._channel = self._connection, None, None
        if conn is not None and conn.is_open:
            try:
                conn.close()
            except AMQPError as e:
                log.warning("rabbitmq_close_failed", queue=self.name, error=str(e))

    def close(self) -> None:
        self._drop_connection()

    # ------------ queue contract ------------

    def receive_message(self) -> LeasedMessage:
        while True:
            if self._channel is None or not self._channel.is_open:
                self.connect()
            try:
                return self._consume_one()
            except AMQPError as e:
                log.error("rabbitmq_receive_failed", queue=self.name, error=str(e))
                self._drop_connection()
                time.sleep(self.reconnect_delay_s)

    def _consume_one(self) -> LeasedMessage:
        channel = self._channel
        delivered: List[Tuple[object, bytes]] = []

        def on_message(ch, method, properties, body):
            if delivered:
                return
            ch.basic_cancel(method.consumer_tag)
            delivered.append((method, body))

        channel.basic_consume(queue=self.name, on_message_callback=on_message)
        while not delivered:
            self._connection.process_data_events(time_limit=self.poll_interval_s)

        method, body = delivered[0]
        try:
            job = parse_job_spec(body, raw=body)
        except InvalidMessageError:
            # dead-letter it if the queue has a DLX; never run it
            channel.basic_reject(delivery_tag=method.delivery_tag, requeue=False)
            raise
        return LeasedMessage(job=job, ack_token=(channel, method.delivery_tag), raw=method)

    def hold_until_done(self, message: LeasedMessage, job: Future) -> None:
        # BlockingConnection only answers heartbeats inside process_data_events;
        # without this the broker drops the connection during long jobs and
        # requeues the delivery
        channel, _ = message.ack_token
        while not job.done():
            if self._connection is None or not channel.is_open:
                log.error("rabbitmq_connection_lost_during_job", queue=self.name, job_id=message.job_id)
                wait([job])
                return
            try:
                self._connection.process_data_events(time_limit=self.poll_interval_s)
            except AMQPError as e:
                log.error("rabbitmq_heartbeat_failed", queue=self.name, error=str(e))
                self._drop_connection()

    def extend_message_lease(self, message: LeasedMessage, timeout_seconds: float) -> None:
        # no lease in AMQP: an unacked delivery is held until the channel closes
        return None

    def ack_message(self, message: LeasedMessage) -> None:
        channel, delivery_tag = message.ack_token
        if not channel.is_open:
            raise QueueError(
                f"channel for job {message.job_id} is closed; the broker will redeliver it"
            )
        try:
            channel.basic_ack(delivery_tag=delivery_tag)
        except AMQPError as e:
            raise QueueError(f"could not ack job {message.job_id}: {e}") from e
