"""Queue Consumer - applies queued SyncEvents through the orchestrators.

Each message is decoded once into a SyncEvent and handed to the
orchestrator for its entity class:
- success                   -> ack
- malformed payload         -> dead-letter with the decode error
- apply failure             -> nack without requeue; the queue's
                               x-dead-letter-exchange routes it to the
                               dead-letter queue, so there is no retry
- apply failure, redelivery -> dead-letter with the failure reason header

The redelivered branch only sees messages the broker redelivered after a
connection or channel dropped mid-handling. Retries come from the next
sweep, not the queue. A failing message never blocks the queue and never
stops the consumer.
"""

import asyncio
import json
import logging
from typing import Any

from aio_pika.abc import AbstractIncomingMessage

from ...api.exceptions import SerializationError
from ..adapters.amqp_queue import QUEUE_FOR_CLASS, AmqpQueueAdapter
from ..domain.entities import EntityClass, SyncEvent
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class QueueConsumer:
    """Consumes the per-class sync queues.

    Concurrency is bounded by the channel's prefetch count and by a
    semaphore shared across this consumer's queues.
    """

    def __init__(
        self,
        queue: AmqpQueueAdapter,
        orchestrators: dict[EntityClass, SyncOrchestrator],
        max_concurrency: int = 10,
    ):
        self.queue = queue
        self.orchestrators = orchestrators
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.stats = {"acked": 0, "nacked": 0, "dead_lettered": 0}

    async def start(self) -> None:
        """Begin consuming the queue of every orchestrated entity class."""
        for entity_class in self.orchestrators:
            await self.queue.consume(QUEUE_FOR_CLASS[entity_class], self.handle_message)

    def _decode(self, body: bytes) -> SyncEvent:
        try:
            data = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SerializationError(f"Message body is not JSON: {e}", cause=e)
        return SyncEvent.from_dict(data)

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        async with self._semaphore:
            try:
                event = self._decode(message.body)
            except SerializationError as e:
                await self._dead_letter(message, f"Malformed sync event: {e.message}")
                return

            orchestrator = self.orchestrators.get(event.entity_class)
            if orchestrator is None:
                await self._dead_letter(message, f"No orchestrator for {event.entity_class.value}")
                return

            result = await orchestrator.handle_event(event)
            if result.success:
                await self.queue.ack(message)
                self.stats["acked"] += 1
                return

            reason = result.error or "apply failed"
            if message.redelivered:
                await self._dead_letter(message, f"Failed again on redelivery: {reason}")
            else:
                logger.warning(f"Event {event.event_id} failed, rejecting: {reason}")
                await self.queue.nack(message, requeue=False)
                self.stats["nacked"] += 1

    async def _dead_letter(self, message: AbstractIncomingMessage, reason: str) -> None:
        await self.queue.dead_letter(message, reason)
        self.stats["dead_lettered"] += 1

    def get_stats(self) -> dict[str, Any]:
        return {**self.stats, "max_concurrency": self.max_concurrency}
