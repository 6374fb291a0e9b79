"""Unit tests for attribution tracking and anonymous-touch stitching."""

import base64
from datetime import UTC, datetime

import pytest

from src.common.errors import ValidationError
from src.processing.attribution import (
    AttributionTracker,
    apply_page_view,
    decode_destination_url,
    new_attribution,
    parse_cookie,
    serialize_cookie,
    strip_utm_params,
    utm_params_from_url,
)
from src.processing.identity_resolution import IdentityResolver
from src.storage.attribution_store import MongoAttributionStore
from src.storage.event_store import MongoEventStore
from src.storage.identity_store import MongoIdentityStore
from src.storage.models.event import AttributionCookie, Event, UtmParams
from src.storage.models.person import IdentityType

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _b64(url: str) -> str:
    return base64.urlsafe_b64encode(url.encode()).decode().rstrip("=")


@pytest.fixture
def tracker(db, clock) -> AttributionTracker:
    return AttributionTracker(
        MongoAttributionStore(db),
        MongoEventStore(db),
        MongoIdentityStore(db),
        clock=clock,
    )


@pytest.fixture
def resolver(db, clock) -> IdentityResolver:
    return IdentityResolver(MongoIdentityStore(db), clock=clock)


class TestCookie:
    """Cookie payload parsing."""

    def test_roundtrip_keeps_ids(self) -> None:
        cookie = AttributionCookie()
        assert parse_cookie(serialize_cookie(cookie)) == cookie

    @pytest.mark.parametrize("raw", [None, "", "{not json", '{"anonymous_id": "x", "session_id": "y"}'])
    def test_malformed_cookie_mints_fresh_ids(self, raw: str | None) -> None:
        cookie = parse_cookie(raw)
        assert cookie.anonymous_id != "x"
        assert len(cookie.anonymous_id) == 36


class TestUrlHelpers:
    """UTM extraction and click destination decoding."""

    def test_utm_params_from_url(self) -> None:
        utm = utm_params_from_url("https://site.test/landing?utm_source=newsletter&utm_campaign=launch&x=1")
        assert utm.source == "newsletter"
        assert utm.campaign == "launch"
        assert utm.medium is None

    def test_strip_utm_params_keeps_other_query(self) -> None:
        assert strip_utm_params("https://site.test/p?utm_source=a&ref=b") == "https://site.test/p?ref=b"

    def test_decode_destination(self) -> None:
        assert decode_destination_url(_b64("https://site.test/pricing?a=1")) == "https://site.test/pricing?a=1"

    @pytest.mark.parametrize(
        "encoded",
        [
            "",
            "!!!not-base64!!!",
            _b64("javascript:alert(1)"),
            _b64("/relative/path"),
            _b64("https://site.test/a b"),
            _b64("https:///nohost"),
        ],
    )
    def test_decode_rejects_unsafe_destinations(self, encoded: str) -> None:
        with pytest.raises(ValidationError):
            decode_destination_url(encoded)


class TestTouchRules:
    """Pure first-touch / last-touch transitions."""

    def test_first_touch_is_write_once(self) -> None:
        data = new_attribution(AttributionCookie(), NOW)
        data = apply_page_view(data, "https://site.test/landing", "https://google.com", UtmParams(), NOW)
        data = apply_page_view(data, "https://site.test/other", "https://bing.com", UtmParams(), NOW)
        assert data.first_landing_page == "https://site.test/landing"
        assert data.first_referrer == "https://google.com"

    def test_present_utm_params_overwrite_individually(self) -> None:
        data = new_attribution(AttributionCookie(), NOW)
        data = apply_page_view(data, "https://site.test/", None, UtmParams(source="news", campaign="launch"), NOW)
        data = apply_page_view(data, "https://site.test/", None, UtmParams(source="email"), NOW)
        assert data.utm_source == "email"
        assert data.utm_campaign == "launch"

    def test_page_view_without_utm_keeps_last_touch(self) -> None:
        data = new_attribution(AttributionCookie(), NOW)
        data = apply_page_view(data, "https://site.test/", None, UtmParams(source="news"), NOW)
        data = apply_page_view(data, "https://site.test/about", None, UtmParams(), NOW)
        assert data.utm_source == "news"


class TestTracker:
    """Tracker flows against the event and attribution stores."""

    @pytest.mark.asyncio
    async def test_page_view_emits_landing_view(self, tracker: AttributionTracker, db) -> None:
        cookie = await tracker.track_page_view(
            "https://site.test/landing?utm_source=newsletter", "https://google.com", None, None
        )
        doc = await db["events"].find_one({"anonymous_id": cookie.anonymous_id})
        assert doc["event_name"] == "landing_view"
        assert doc["properties"]["utm_source"] == "newsletter"
        assert doc["context"]["first_landing_page"] == "https://site.test/landing"

    @pytest.mark.asyncio
    async def test_missing_url_rejected(self, tracker: AttributionTracker) -> None:
        with pytest.raises(ValidationError):
            await tracker.track_page_view("", None, None, None)

    @pytest.mark.asyncio
    async def test_end_to_end_snapshot(self, tracker: AttributionTracker, resolver: IdentityResolver, clock) -> None:
        cookie = await tracker.track_page_view(
            "https://site.test/landing?utm_source=newsletter&utm_campaign=launch",
            "https://google.com",
            None,
            None,
        )
        clock.advance(days=3)
        await tracker.track_email_click_attribution("msg_42", "https://site.test/pricing", cookie)
        clock.advance(minutes=1)
        await tracker.track_page_view(
            "https://site.test/pricing?utm_source=email", "https://mail.test", None, cookie
        )
        person_id = await resolver.resolve_person({"email": "buyer@example.com"})
        clock.advance(minutes=2)
        event = await tracker.track_conversion_attribution(
            "course.purchased", person_id, cookie, {"amount": 4900}
        )

        snapshot = event.properties["attribution"]
        assert snapshot["first_landing_page"] == "https://site.test/landing"
        assert snapshot["first_referrer"] == "https://google.com"
        assert snapshot["utm_source"] == "email"
        assert snapshot["utm_campaign"] == "launch"
        assert snapshot["email_message_id"] == "msg_42"
        assert event.properties["email_message_id"] == "msg_42"
        assert event.properties["amount"] == 4900

    @pytest.mark.asyncio
    async def test_conversion_without_cookie_has_empty_snapshot(self, tracker: AttributionTracker, db) -> None:
        event = await tracker.track_conversion_attribution("signup", "person_1", None)
        assert event.properties["attribution"]["first_landing_page"] is None
        assert event.anonymous_id is None
        assert await db["identity_links"].count_documents({"person_id": "person_1"}) == 0

    @pytest.mark.asyncio
    async def test_expired_attribution_is_ignored(self, tracker: AttributionTracker, clock) -> None:
        cookie = await tracker.track_page_view("https://site.test/old?utm_source=ads", None, None, None)
        clock.advance(days=31)
        event = await tracker.track_conversion_attribution("signup", "person_1", cookie)
        assert event.properties["attribution"]["utm_source"] is None


class TestStitching:
    """Back-filling anonymous history onto a person."""

    @pytest.mark.asyncio
    async def test_stitching_is_idempotent(self, tracker: AttributionTracker, resolver: IdentityResolver, db) -> None:
        cookie = await tracker.track_page_view("https://site.test/a", None, None, None)
        await tracker.track_page_view("https://site.test/b", None, None, cookie)
        person_id = await resolver.resolve_person({"email": "visitor@example.com"})

        assert await tracker.stitch_anonymous_touch(person_id, cookie.anonymous_id, cookie.session_id) == 2
        assert await tracker.stitch_anonymous_touch(person_id, cookie.anonymous_id, cookie.session_id) == 0
        assert await db["events"].count_documents({"person_id": person_id}) == 2
        assert (
            await resolver.find_person_by_identity(IdentityType.ANONYMOUS_ID, cookie.anonymous_id)
            == person_id
        )

    @pytest.mark.asyncio
    async def test_stitching_leaves_other_persons_events(self, tracker: AttributionTracker, db) -> None:
        cookie = AttributionCookie()
        await MongoEventStore(db).append(
            Event(event_name="login", person_id="someone_else", anonymous_id=cookie.anonymous_id)
        )
        assert await tracker.stitch_anonymous_touch("person_1", cookie.anonymous_id) == 0
        doc = await db["events"].find_one({"event_name": "login"})
        assert doc["person_id"] == "someone_else"

    @pytest.mark.asyncio
    async def test_conversion_stitches_prior_touches(self, tracker: AttributionTracker, db) -> None:
        cookie = await tracker.track_page_view("https://site.test/a", None, None, None)
        await tracker.track_conversion_attribution("signup", "person_1", cookie)
        assert await db["events"].count_documents({"person_id": "person_1"}) == 2
