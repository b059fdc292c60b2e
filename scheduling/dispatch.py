"""
Dispatch queue gateway

Abstraction over the durable delayed-delivery mechanism: enqueue an item
for an instant, and the queue later calls the executor at-or-after it.
Delivery is at-least-once, so the executor's status guard must absorb
duplicates.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from rq import Queue

from scheduling.models import Channel
from utils.time_utils import ensure_utc

logger = logging.getLogger("dispatch-gateway")

# rq resolves the job function by import path when the worker runs it
FIRE_TASK_PATH = "scheduling.tasks.fire_scheduled_item"


class DispatchError(Exception):
    """Raised when a message could not be placed on the dispatch queue"""


class DispatchQueueGateway(ABC):
    """Abstract delayed-dispatch queue"""

    @abstractmethod
    def enqueue(self, channel: Channel, item_id: str, when_utc: datetime) -> str:
        """
        Enqueue a scheduled item for delivery at when_utc

        Returns:
            Opaque message id

        Raises:
            DispatchError: If the queue rejected the message
        """
        pass


class RQDispatchGateway(DispatchQueueGateway):
    """Dispatch gateway on an rq queue using enqueue_at"""

    def __init__(self, queue: Queue, job_timeout: int = 300):
        """
        Args:
            queue: rq queue; its worker must run with the scheduler enabled
            job_timeout: Seconds a single fire job may run
        """
        self.queue = queue
        self.job_timeout = job_timeout

    def enqueue(self, channel, item_id, when_utc):
        when_utc = ensure_utc(when_utc)
        try:
            job = self.queue.enqueue_at(
                when_utc,
                FIRE_TASK_PATH,
                channel.value,
                item_id,
                job_timeout=self.job_timeout,
                description=f"fire {channel.value} {item_id}",
            )
        except Exception as e:
            logger.error(f"Failed to enqueue {channel.value} {item_id} for {when_utc.isoformat()}: {e}")
            raise DispatchError(str(e)) from e

        logger.info(f"Enqueued {channel.value} {item_id} for {when_utc.isoformat()} (job {job.id})")
        return job.id


@dataclass
class DispatchedMessage:
    message_id: str
    channel: Channel
    item_id: str
    when_utc: datetime


class MockDispatchGateway(DispatchQueueGateway):
    """
    In-memory gateway for tests and dry environments

    Records every message instead of delivering it.
    """

    def __init__(self, should_fail: bool = False):
        self.should_fail = should_fail
        self.messages: List[DispatchedMessage] = []

    def enqueue(self, channel, item_id, when_utc):
        if self.should_fail:
            raise DispatchError("Mock dispatch failure")
        message = DispatchedMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            channel=channel,
            item_id=item_id,
            when_utc=ensure_utc(when_utc),
        )
        self.messages.append(message)
        logger.info(f"Mock: enqueued {channel.value} {item_id} for {message.when_utc.isoformat()}")
        return message.message_id

    def last_message(self) -> Optional[DispatchedMessage]:
        return self.messages[-1] if self.messages else None

    def messages_for(self, item_id: str) -> List[DispatchedMessage]:
        return [message for message in self.messages if message.item_id == item_id]
