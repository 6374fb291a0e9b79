"""Click-based operator CLI for the Growth Data Plane.

Commands:

* ``ensure-indexes`` -- create the MongoDB indexes every invariant relies on.
* ``seed-segments`` -- insert the built-in segments that do not exist yet.
* ``compute-features`` -- recompute feature snapshots (one person or all).
* ``evaluate-segments`` -- run segment evaluation (one person or all).
* ``consume-transitions`` -- run the automation transition consumer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import click

from src.common.errors import GrowthDataPlaneError
from src.common.logging_config import setup_logging
from src.ingestion.kafka_producer import GrowthKafkaProducer
from src.processing.feature_aggregator import FeatureAggregator
from src.serving.automation_dispatcher import (
    KafkaTransitionPublisher,
    TransitionConsumer,
)
from src.serving.segmentation_engine import SegmentationEngine, seed_builtin_segments
from src.storage.event_store import MongoEventStore
from src.storage.feature_store import MongoFeatureStore
from src.storage.identity_store import MongoIdentityStore
from src.storage.models.base import BatchSummary
from src.storage.models.segment import SegmentTransition
from src.storage.mongo import ensure_indexes, get_database
from src.storage.segment_store import MongoSegmentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except GrowthDataPlaneError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_summary(summary: BatchSummary) -> None:
    colour = "green" if summary.failed == 0 else "yellow"
    click.secho(
        f"{summary.successful}/{summary.total} succeeded, {summary.failed} failed",
        fg=colour,
        bold=True,
    )
    for err in summary.errors:
        click.echo(f"  - {err}")


def _segmentation_engine(producer: GrowthKafkaProducer) -> SegmentationEngine:
    db = get_database()
    return SegmentationEngine(
        MongoSegmentStore(db),
        MongoFeatureStore(db),
        MongoIdentityStore(db),
        KafkaTransitionPublisher(producer),
    )


# --------------------------------------------------------------------------- #
# CLI group                                                                    #
# --------------------------------------------------------------------------- #


@click.group()
@click.option("--log-level", default=None, help="Override $LOG_LEVEL.")
def cli(log_level: str | None) -> None:
    """Growth Data Plane -- maintenance and batch jobs."""
    setup_logging("growth-cli", log_level)


@cli.command("ensure-indexes")
def ensure_indexes_cmd() -> None:
    """Create MongoDB indexes (safe to repeat)."""

    async def _main() -> None:
        await ensure_indexes(get_database())

    _run(_main())
    click.secho("Indexes ensured.", fg="green", bold=True)


@cli.command("seed-segments")
def seed_segments() -> None:
    """Insert missing built-in segments."""

    async def _main() -> int:
        return await seed_builtin_segments(MongoSegmentStore(get_database()))

    added = _run(_main())
    click.secho(f"{added} segment(s) added.", fg="green", bold=True)


@cli.command("compute-features")
@click.option("--person-id", default=None, help="Recompute a single person only.")
def compute_features(person_id: str | None) -> None:
    """Recompute person feature snapshots from event history."""

    async def _main() -> Any:
        db = get_database()
        aggregator = FeatureAggregator(
            MongoIdentityStore(db), MongoEventStore(db), MongoFeatureStore(db)
        )
        if person_id:
            return await aggregator.compute_person_features(person_id)
        return await aggregator.compute_all()

    result = _run(_main())
    if isinstance(result, BatchSummary):
        _echo_summary(result)
    else:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))


@cli.command("evaluate-segments")
@click.option("--person-id", default=None, help="Evaluate a single person only.")
def evaluate_segments(person_id: str | None) -> None:
    """Evaluate segment membership and publish transitions."""

    async def _main() -> Any:
        producer = GrowthKafkaProducer(client_id="gdp-cli")
        engine = _segmentation_engine(producer)
        try:
            if person_id:
                return await engine.evaluate_all_segments_for_person(person_id)
            return await engine.evaluate_all_persons()
        finally:
            await producer.stop()

    result = _run(_main())
    if isinstance(result, BatchSummary):
        _echo_summary(result)
    else:
        click.echo(json.dumps(result.model_dump(), indent=2))


@cli.command("consume-transitions")
def consume_transitions() -> None:
    """Consume segment transitions until interrupted."""

    async def _main() -> None:
        consumer = TransitionConsumer(get_database())

        @consumer.register
        async def log_transition(transition: SegmentTransition) -> None:
            logger.info(
                "Automation trigger: person %s %s segment %s",
                transition.person_id,
                transition.transition.value,
                transition.segment_name or transition.segment_id,
            )

        try:
            await consumer.run()
        finally:
            await consumer.stop()

    try:
        _run(_main())
    except KeyboardInterrupt:
        click.echo("Stopped.")


if __name__ == "__main__":
    cli()
