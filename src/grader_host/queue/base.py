from __future__ import annotations
import json
from abc import ABC, abstractmethod
from concurrent.futures import Future, wait
from typing import Any, Union

from pydantic import ValidationError

from ..core.errors import InvalidMessageError
from ..core.models import JobSpec, LeasedMessage


def parse_job_spec(body: Union[str, bytes], raw: Any = None) -> JobSpec:
    """Decode a queue message body into a JobSpec or raise InvalidMessageError."""
    try:
        content = json.loads(body)
    except (TypeError, ValueError) as e:
        raise InvalidMessageError(f"message body is not valid JSON: {e}", raw=raw) from e
    if not isinstance(content, dict):
        raise InvalidMessageError("message body must be a JSON object", raw=raw)
    try:
        return JobSpec.model_validate(content)
    except ValidationError as e:
        raise InvalidMessageError(f"message did not match schema: {e}", raw=raw) from e


class QueueClient(ABC):
    """
    One consumer handle on the jobs queue. A handle has at most one message
    in flight; each worker loop owns its own handle.
    """

    name: str = "queue"

    @abstractmethod
    def receive_message(self) -> LeasedMessage:
        """Block until a valid job message arrives."""

    @abstractmethod
    def extend_message_lease(self, message: LeasedMessage, timeout_seconds: float) -> None:
        """Push back the point at which the backend redelivers the message."""

    @abstractmethod
    def ack_message(self, message: LeasedMessage) -> None:
        """Remove the message from the queue for good."""

    def hold_until_done(self, message: LeasedMessage, job: Future) -> None:
        """
        Block the owning loop until job completes. Backends whose connection
        must be serviced while a message is held do that here.
        """
        wait([job])

    def close(self) -> None:
        pass
