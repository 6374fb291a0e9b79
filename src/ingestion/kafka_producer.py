"""Async Kafka producer shared by everything that publishes growth events.

Wraps aiokafka with exponential-backoff retry, Prometheus counters and
pydantic-aware JSON serialization.  Exhausted retries surface as
:class:`DownstreamError` so callers never see broker-specific exceptions.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from aiokafka import AIOKafkaProducer
from prometheus_client import Counter
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryError,
    stop_after_attempt,
    wait_exponential,
)

from src.common.errors import DownstreamError

logger = logging.getLogger(__name__)

messages_produced_total = Counter(
    "gdp_messages_produced_total",
    "Messages successfully published to Kafka.",
    labelnames=["topic"],
)
produce_errors_total = Counter(
    "gdp_produce_errors_total",
    "Failed publish attempts.",
    labelnames=["topic"],
)

KAFKA_BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
KAFKA_SECURITY = os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT")
KAFKA_SASL_MECHANISM = os.getenv("KAFKA_SASL_MECHANISM", "PLAIN")
KAFKA_SASL_USER = os.getenv("KAFKA_SASL_USERNAME", "")
KAFKA_SASL_PASS = os.getenv("KAFKA_SASL_PASSWORD", "")
MAX_RETRIES = int(os.getenv("KAFKA_PRODUCER_MAX_RETRIES", "5"))
BASE_BACKOFF_S = float(os.getenv("KAFKA_PRODUCER_BACKOFF_S", "0.5"))


def kafka_security_kwargs() -> dict[str, Any]:
    """Connection settings common to producers and consumers."""
    kwargs: dict[str, Any] = {
        "bootstrap_servers": KAFKA_BOOTSTRAP,
        "security_protocol": KAFKA_SECURITY,
    }
    if KAFKA_SECURITY != "PLAINTEXT":
        kwargs["sasl_mechanism"] = KAFKA_SASL_MECHANISM
        kwargs["sasl_plain_username"] = KAFKA_SASL_USER
        kwargs["sasl_plain_password"] = KAFKA_SASL_PASS
    return kwargs


def serialize_value(value: BaseModel | dict[str, Any]) -> bytes:
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    return json.dumps(value, default=str).encode("utf-8")


def serialize_key(key: str | None) -> bytes | None:
    return key.encode("utf-8") if key else None


class GrowthKafkaProducer:
    """Async Kafka producer with retry.

    Usage::

        producer = GrowthKafkaProducer()
        await producer.start()
        await producer.send("gdp.segment.transitions", value=msg, key=person_id)
        await producer.stop()
    """

    def __init__(self, client_id: str = "gdp-producer") -> None:
        self._producer = AIOKafkaProducer(
            client_id=client_id,
            value_serializer=serialize_value,
            key_serializer=serialize_key,
            enable_idempotence=True,
            **kafka_security_kwargs(),
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self._producer.start()
        self._started = True
        logger.info("GrowthKafkaProducer started (bootstrap=%s)", KAFKA_BOOTSTRAP)

    async def stop(self) -> None:
        """Flush pending messages and close."""
        if not self._started:
            return
        await self._producer.stop()
        self._started = False
        logger.info("GrowthKafkaProducer stopped")

    async def send(
        self,
        topic: str,
        value: BaseModel | dict[str, Any],
        key: str | None = None,
    ) -> None:
        """Publish one message, retrying with exponential backoff.

        Raises:
            DownstreamError: after *MAX_RETRIES* failed attempts.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_RETRIES),
                wait=wait_exponential(multiplier=BASE_BACKOFF_S),
            ):
                with attempt:
                    try:
                        await self._producer.send_and_wait(topic, value=value, key=key)
                    except Exception as exc:
                        produce_errors_total.labels(topic=topic).inc()
                        logger.warning(
                            "Kafka send failed (attempt %d/%d, topic=%s): %s",
                            attempt.retry_state.attempt_number,
                            MAX_RETRIES,
                            topic,
                            exc,
                        )
                        raise
        except RetryError as exc:
            raise DownstreamError(
                f"failed to publish to {topic} after {MAX_RETRIES} attempts"
            ) from exc.last_attempt.exception()
        messages_produced_total.labels(topic=topic).inc()
