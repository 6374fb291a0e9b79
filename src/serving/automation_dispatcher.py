"""Hand-off of segment transitions to downstream automation.

The segment engine calls :meth:`AutomationDispatcher.notify` after each
committed transition.  The Kafka publisher puts the transition on
``gdp.segment.transitions``; :class:`TransitionConsumer` reads it back,
claims each ``dedup_key`` in ``automation_deliveries`` and runs the
registered handlers at most once per key.  Offsets are committed only after
the handlers succeed, so Kafka's at-least-once delivery becomes
effectively-once handling.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

import pydantic
from aiokafka import AIOKafkaConsumer, TopicPartition
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from src.common.errors import DownstreamError
from src.ingestion.kafka_producer import GrowthKafkaProducer, kafka_security_kwargs
from src.storage.models.base import utcnow
from src.storage.models.segment import SegmentTransition, Transition
from src.storage.mongo import AUTOMATION_DELIVERIES

logger = logging.getLogger(__name__)

TRANSITIONS_TOPIC = os.getenv("TRANSITIONS_TOPIC", "gdp.segment.transitions")
CONSUMER_GROUP = os.getenv("TRANSITIONS_CONSUMER_GROUP", "gdp-automation-cg")
RETRY_BACKOFF_S = float(os.getenv("TRANSITIONS_RETRY_BACKOFF_S", "5"))

TransitionHandler = Callable[[SegmentTransition], Awaitable[None]]


class AutomationDispatcher(Protocol):
    async def notify(
        self,
        person_id: str,
        segment_id: str,
        transition: Transition,
        timestamp: datetime,
        segment_name: str | None = None,
    ) -> None: ...


def transition_message(transition: SegmentTransition) -> dict[str, Any]:
    """Wire form of a transition, carrying its dedup key."""
    payload = transition.model_dump(mode="json")
    payload["dedup_key"] = transition.dedup_key
    return payload


class KafkaTransitionPublisher:
    """Publishes transitions keyed by person id, preserving per-person order."""

    def __init__(
        self, producer: GrowthKafkaProducer, topic: str = TRANSITIONS_TOPIC
    ) -> None:
        self._producer = producer
        self._topic = topic

    async def notify(
        self,
        person_id: str,
        segment_id: str,
        transition: Transition,
        timestamp: datetime,
        segment_name: str | None = None,
    ) -> None:
        message = SegmentTransition(
            person_id=person_id,
            segment_id=segment_id,
            segment_name=segment_name,
            transition=transition,
            timestamp=timestamp,
        )
        try:
            await self._producer.start()
            await self._producer.send(
                self._topic, value=transition_message(message), key=person_id
            )
        except DownstreamError:
            raise
        except Exception as exc:
            raise DownstreamError(f"could not publish transition: {exc}") from exc


class TransitionConsumer:
    """Consumes transitions and fans them out to handlers once per dedup key."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,  # type: ignore[type-arg]
        topic: str = TRANSITIONS_TOPIC,
        group_id: str = CONSUMER_GROUP,
    ) -> None:
        self._deliveries = db[AUTOMATION_DELIVERIES]
        self._topic = topic
        self._group_id = group_id
        self._handlers: list[TransitionHandler] = []
        self._consumer: AIOKafkaConsumer | None = None

    def register(self, handler: TransitionHandler) -> TransitionHandler:
        """Add a handler; usable as a decorator."""
        self._handlers.append(handler)
        return handler

    async def handle(self, payload: dict[str, Any]) -> bool:
        """Process one message.  Returns False for duplicates and bad payloads.

        A handler failure releases the claim so a redelivery retries it.
        """
        try:
            transition = SegmentTransition.model_validate(payload)
        except pydantic.ValidationError as exc:
            logger.warning("Invalid transition message: %d errors", exc.error_count())
            return False

        dedup_key = transition.dedup_key
        if payload.get("dedup_key") not in (None, dedup_key):
            logger.warning("Transition dedup key mismatch for %s", transition.person_id)

        try:
            await self._deliveries.insert_one(
                {
                    "dedup_key": dedup_key,
                    "person_id": transition.person_id,
                    "segment_id": transition.segment_id,
                    "transition": transition.transition.value,
                    "delivered_at": utcnow(),
                }
            )
        except DuplicateKeyError:
            logger.info("Skipping duplicate transition %s", dedup_key)
            return False

        try:
            for handler in self._handlers:
                await handler(transition)
        except Exception:
            await self._deliveries.delete_one({"dedup_key": dedup_key})
            raise
        return True

    async def start(self) -> None:
        self._consumer = AIOKafkaConsumer(
            self._topic,
            group_id=self._group_id,
            value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            **kafka_security_kwargs(),
        )
        await self._consumer.start()
        logger.info("TransitionConsumer started on topic=%s", self._topic)

    async def stop(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            logger.info("TransitionConsumer stopped")

    async def process(self, msg: Any) -> None:
        """Handle one record, then commit past it.

        On handler failure the offset stays uncommitted and the consumer seeks
        back to it, so the record is delivered again after a pause.
        """
        assert self._consumer is not None
        tp = TopicPartition(msg.topic, msg.partition)
        try:
            await self.handle(msg.value)
        except Exception:
            logger.exception(
                "Handler failed for transition (offset=%d); retrying in %.1fs",
                msg.offset,
                RETRY_BACKOFF_S,
            )
            self._consumer.seek(tp, msg.offset)
            await asyncio.sleep(RETRY_BACKOFF_S)
            return
        await self._consumer.commit({tp: msg.offset + 1})

    async def run(self) -> None:
        """Consume until cancelled."""
        if self._consumer is None:
            await self.start()
        assert self._consumer is not None

        async for msg in self._consumer:
            await self.process(msg)
