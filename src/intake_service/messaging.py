from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

logger = logging.getLogger(__name__)

PREQUAL_LEADS_TOPIC = "prequal_leads"
CASE_EVENTS_TOPIC = "case_events"
WIZARD_SUBMISSIONS_TOPIC = "wizard_submissions"
TOPICS = (PREQUAL_LEADS_TOPIC, CASE_EVENTS_TOPIC, WIZARD_SUBMISSIONS_TOPIC)

FALLBACK_QUEUE_LIMIT = 10_000


@dataclass(frozen=True)
class IntakeEvent:
    """Envelope for everything the intake service announces downstream."""

    topic: str
    name: str
    key: str
    data: dict[str, Any]
    correlation_id: str = ""
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.topic not in TOPICS:
            raise ValueError(f"unknown topic {self.topic!r}")

    def to_message(self) -> dict[str, Any]:
        return json.loads(
            json.dumps(
                {
                    "event": self.name,
                    "key": self.key,
                    "correlationId": self.correlation_id,
                    "occurredAt": self.occurred_at.isoformat(),
                    "data": self.data,
                },
                default=str,
            )
        )


class KafkaBus:
    """Publishes intake events for follow-up (lead emails, CRM sync, payment).

    Without a reachable broker, events land on bounded in-process queues and
    the oldest event is dropped once a queue is full.
    """

    def __init__(self, bootstrap_servers: str, client_id: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(
            lambda: asyncio.Queue(maxsize=FALLBACK_QUEUE_LIMIT)
        )

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            acks="all",
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.info("Kafka unavailable at %s, queueing events in-process", self.bootstrap_servers)
            self._producer = None
            try:
                await producer.stop()
            except Exception as exc:
                logger.debug("Kafka producer cleanup failed: %s", exc)

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            return await self._producer.partitions_for(CASE_EVENTS_TOPIC) is not None
        except Exception:
            return False

    def pending(self, topic: str) -> int:
        return self._queues[topic].qsize()

    async def publish(self, event: IntakeEvent) -> None:
        message = event.to_message()
        if self._producer is not None:
            try:
                await self._producer.send_and_wait(event.topic, value=message, key=event.key.encode("utf-8"))
                return
            except Exception as exc:
                logger.warning("Kafka publish failed, queueing in-process: %s", exc, extra={"topic": event.topic})

        queue = self._queues[event.topic]
        if queue.full():
            dropped = queue.get_nowait()
            logger.warning("Fallback queue full, dropped %s event", dropped["event"], extra={"topic": event.topic})
        queue.put_nowait(message)

    async def consume_forever(
        self,
        topic: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
    ) -> None:
        if self._producer is not None:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.client_id}-{topic}",
                value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            )
            await asyncio.wait_for(consumer.start(), timeout=1.0)
            try:
                while not stop_event.is_set():
                    msg = await consumer.getone()
                    await handler(msg.value)
            finally:
                await consumer.stop()
            return

        queue = self._queues[topic]
        while not stop_event.is_set():
            try:
                message = await asyncio.wait_for(queue.get(), timeout=0.5)
            except TimeoutError:
                continue
            await handler(message)
