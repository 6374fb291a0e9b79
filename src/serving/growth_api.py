"""FastAPI service for the Growth Data Plane.

Touch tracking (page views, email click redirects, conversions), identity
resolution and stitching, cron-triggered feature and segment recomputation,
segment membership reads and attribution reports.  Only this layer reads or
writes the attribution cookie; everything below it takes the cookie payload
as a plain value.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, Field

from src.common.errors import (
    ConflictError,
    DownstreamError,
    GrowthDataPlaneError,
    NotFoundError,
    ValidationError,
)
from src.common.logging_config import set_correlation_id, setup_logging
from src.common.metrics import PrometheusMiddleware, get_metrics_app
from src.ingestion.email_events import EmailEngagement, EmailEventRecorder
from src.ingestion.kafka_producer import GrowthKafkaProducer
from src.processing.attribution import (
    COOKIE_NAME,
    AttributionTracker,
    cookie_options,
    decode_destination_url,
    parse_cookie,
    serialize_cookie,
)
from src.processing.attribution_reports import conversion_paths, person_attribution
from src.processing.feature_aggregator import FeatureAggregator
from src.processing.identity_resolution import IdentityResolver
from src.serving.automation_dispatcher import (
    AutomationDispatcher,
    KafkaTransitionPublisher,
)
from src.serving.segmentation_engine import SegmentationEngine, segment_members
from src.storage.attribution_store import MongoAttributionStore
from src.storage.event_store import MongoEventStore
from src.storage.feature_store import MongoFeatureStore
from src.storage.identity_store import MongoIdentityStore
from src.storage.models.base import utcnow
from src.storage.models.event import AttributionCookie
from src.storage.models.person import IdentityType
from src.storage.mongo import get_database
from src.storage.segment_store import MongoSegmentStore

logger = logging.getLogger(__name__)

CRON_SECRET = os.getenv("CRON_SECRET")

_ERROR_STATUS: dict[type[GrowthDataPlaneError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    DownstreamError: 502,
}

_kafka: dict[str, GrowthKafkaProducer] = {}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logging("growth-api")
    yield
    producer = _kafka.pop("producer", None)
    if producer is not None:
        await producer.stop()


app = FastAPI(title="Growth Data Plane API", version="1.0.0", lifespan=lifespan)
app.add_middleware(PrometheusMiddleware)
app.include_router(get_metrics_app().router)


# ── Dependencies (overridden in tests) ────────────────────────────────


@lru_cache(maxsize=1)
def get_db() -> AsyncIOMotorDatabase:  # type: ignore[type-arg]
    return get_database()


def get_clock() -> Callable[[], datetime]:
    return utcnow


async def get_dispatcher() -> AutomationDispatcher:
    # Runs on the event loop; the producer binds to it when constructed.
    producer = _kafka.get("producer")
    if producer is None:
        producer = _kafka["producer"] = GrowthKafkaProducer(client_id="gdp-api")
    return KafkaTransitionPublisher(producer)


Db = Annotated[AsyncIOMotorDatabase, Depends(get_db)]  # type: ignore[type-arg]
Clock = Annotated[Callable[[], datetime], Depends(get_clock)]


def _resolver(db: Db, clock: Clock) -> IdentityResolver:
    return IdentityResolver(MongoIdentityStore(db), clock=clock)


def _tracker(db: Db, clock: Clock) -> AttributionTracker:
    return AttributionTracker(
        MongoAttributionStore(db),
        MongoEventStore(db),
        MongoIdentityStore(db),
        clock=clock,
    )


def _aggregator(db: Db, clock: Clock) -> FeatureAggregator:
    return FeatureAggregator(
        MongoIdentityStore(db), MongoEventStore(db), MongoFeatureStore(db), clock=clock
    )


def _segment_store(db: Db) -> MongoSegmentStore:
    return MongoSegmentStore(db)


def _engine(
    db: Db,
    clock: Clock,
    dispatcher: Annotated[AutomationDispatcher, Depends(get_dispatcher)],
) -> SegmentationEngine:
    return SegmentationEngine(
        MongoSegmentStore(db),
        MongoFeatureStore(db),
        MongoIdentityStore(db),
        dispatcher,
        clock=clock,
    )


def _cookie(request: Request) -> AttributionCookie:
    return parse_cookie(request.cookies.get(COOKIE_NAME))


def _set_cookie(response: Response, cookie: AttributionCookie) -> None:
    response.set_cookie(COOKIE_NAME, serialize_cookie(cookie), **cookie_options())


def _check_cron_secret(supplied: str | None) -> None:
    """A secret that is supplied must match; an absent one is not checked."""
    if supplied is None:
        return
    if not CRON_SECRET or not secrets.compare_digest(supplied, CRON_SECRET):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


# ── Middleware and error mapping ──────────────────────────────────────


@app.middleware("http")
async def request_tracing(request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_correlation_id(request_id)
    start = time.monotonic()
    response: Response = await call_next(request)
    elapsed = time.monotonic() - start
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "req=%s method=%s path=%s status=%d latency=%.4fs",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed,
    )
    return response


@app.exception_handler(GrowthDataPlaneError)
async def _domain_error(_: Request, exc: GrowthDataPlaneError) -> JSONResponse:
    status = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    if status >= 500:
        logger.error("Request failed: %s", exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# ── Request / Response schemas ────────────────────────────────────────


class PageViewRequest(BaseModel):
    url: str = Field(..., min_length=1)
    referrer: str | None = None
    utm_params: dict[str, str] | None = None


class ConversionRequest(BaseModel):
    event_name: str = Field(..., min_length=1)
    person_id: str = Field(..., min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)


class CronRequest(BaseModel):
    person_id: str | None = None
    cron_secret: str | None = None


# ── Endpoints ─────────────────────────────────────────────────────────


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/track/page-view")
async def track_page_view(
    body: PageViewRequest,
    request: Request,
    response: Response,
    tracker: Annotated[AttributionTracker, Depends(_tracker)],
) -> dict[str, str]:
    cookie = await tracker.track_page_view(
        body.url, body.referrer, body.utm_params, _cookie(request)
    )
    _set_cookie(response, cookie)
    return {"anonymous_id": cookie.anonymous_id, "session_id": cookie.session_id}


@app.get("/r/click")
async def email_click_redirect(
    request: Request,
    tracker: Annotated[AttributionTracker, Depends(_tracker)],
    resolver: Annotated[IdentityResolver, Depends(_resolver)],
    m: Annotated[str | None, Query()] = None,
    u: Annotated[str | None, Query()] = None,
) -> Response:
    if not m:
        raise HTTPException(status_code=400, detail="Missing email message id")
    try:
        destination = decode_destination_url(u or "")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    cookie = _cookie(request)
    person_id = await resolver.find_person_by_identity(
        IdentityType.ANONYMOUS_ID, cookie.anonymous_id
    )
    await tracker.track_email_click_attribution(m, destination, cookie, person_id)
    redirect = RedirectResponse(destination, status_code=307)
    _set_cookie(redirect, cookie)
    return redirect


@app.post("/identify")
async def identify(
    body: dict[str, Any],
    request: Request,
    resolver: Annotated[IdentityResolver, Depends(_resolver)],
    tracker: Annotated[AttributionTracker, Depends(_tracker)],
) -> dict[str, Any]:
    person_id = await resolver.resolve_person(body)
    stitched = 0
    if COOKIE_NAME in request.cookies:
        cookie = _cookie(request)
        stitched = await tracker.stitch_anonymous_touch(
            person_id, cookie.anonymous_id, cookie.session_id
        )
    return {"person_id": person_id, "stitched": stitched}


@app.post("/track/conversion")
async def track_conversion(
    body: ConversionRequest,
    request: Request,
    resolver: Annotated[IdentityResolver, Depends(_resolver)],
    tracker: Annotated[AttributionTracker, Depends(_tracker)],
) -> dict[str, Any]:
    await resolver.get_person(body.person_id)
    cookie = _cookie(request) if COOKIE_NAME in request.cookies else None
    event = await tracker.track_conversion_attribution(
        body.event_name, body.person_id, cookie, body.properties
    )
    return {"event_id": event.event_id, "attribution": event.properties["attribution"]}


@app.post("/track/email-engagement")
async def track_email_engagement(
    body: EmailEngagement,
    db: Db,
    resolver: Annotated[IdentityResolver, Depends(_resolver)],
) -> dict[str, str]:
    recorder = EmailEventRecorder(resolver, MongoEventStore(db), MongoIdentityStore(db))
    event = await recorder.record(body)
    return {"event_id": event.event_id, "person_id": event.person_id or ""}


@app.post("/features/compute")
async def compute_features(
    body: CronRequest,
    aggregator: Annotated[FeatureAggregator, Depends(_aggregator)],
) -> dict[str, Any]:
    _check_cron_secret(body.cron_secret)
    if body.person_id:
        features = await aggregator.compute_person_features(body.person_id)
        return {"success": True, "features": features.model_dump(mode="json")}
    summary = await aggregator.compute_all()
    return {"success": True, **summary.model_dump()}


@app.post("/segments/evaluate")
async def evaluate_segments(
    body: CronRequest,
    engine: Annotated[SegmentationEngine, Depends(_engine)],
) -> dict[str, Any]:
    _check_cron_secret(body.cron_secret)
    if body.person_id:
        result = await engine.evaluate_all_segments_for_person(body.person_id)
        return {"success": True, **result.model_dump()}
    summary = await engine.evaluate_all_persons()
    return {"success": True, **summary.model_dump()}


@app.get("/segments/{segment_id}/members")
async def list_segment_members(
    segment_id: str,
    store: Annotated[MongoSegmentStore, Depends(_segment_store)],
) -> dict[str, Any]:
    members = await segment_members(store, segment_id)
    return {
        "segment_id": segment_id,
        "count": len(members),
        "members": [m.model_dump(mode="json") for m in members],
    }


@app.get("/attribution/persons/{person_id}")
async def get_person_attribution(
    person_id: str,
    db: Db,
    resolver: Annotated[IdentityResolver, Depends(_resolver)],
) -> dict[str, Any]:
    await resolver.get_person(person_id)
    report = await person_attribution(
        person_id, MongoEventStore(db), MongoFeatureStore(db)
    )
    return report.model_dump(mode="json")


@app.get("/attribution/conversions")
async def get_conversion_paths(
    db: Db,
    event_name: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[dict[str, Any]]:
    paths = await conversion_paths(event_name, MongoEventStore(db), limit)
    return [p.model_dump(mode="json") for p in paths]
