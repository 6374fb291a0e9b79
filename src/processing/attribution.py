"""Attribution tracking: email -> click -> session -> conversion.

The cookie holds only two opaque ids.  Everything else lives server-side in
:class:`AttributionData`, keyed by those ids.  The functions at the top of
this module are pure: they take the current value and return the next one.
Reading and writing the cookie is left to the HTTP layer.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import pydantic

from src.common.errors import ValidationError
from src.storage.attribution_store import MongoAttributionStore
from src.storage.event_store import MongoEventStore
from src.storage.identity_store import IdentityStore
from src.storage.models.base import utcnow
from src.storage.models.event import (
    ATTRIBUTION_TTL,
    UTM_FIELDS,
    AttributionCookie,
    AttributionData,
    AttributionSnapshot,
    Event,
    EventSource,
    UtmParams,
)
from src.storage.models.person import IdentityKey, IdentityType

logger = logging.getLogger(__name__)

COOKIE_NAME = "gdp_attribution"
COOKIE_MAX_AGE = int(ATTRIBUTION_TTL.total_seconds())
COOKIE_SECURE = os.getenv("GDP_ENV", "development") == "production"

# Comma-separated host allow-list for click redirects; empty allows any host.
ALLOWED_REDIRECT_HOSTS = frozenset(
    h.strip().lower()
    for h in os.getenv("ALLOWED_REDIRECT_HOSTS", "").split(",")
    if h.strip()
)

LANDING_VIEW = "landing_view"
EMAIL_CLICK = "attribution.email_click"


# --------------------------------------------------------------------------- #
# Cookie                                                                       #
# --------------------------------------------------------------------------- #
def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def parse_cookie(raw: str | None) -> AttributionCookie:
    """Decode the cookie value, minting fresh ids if absent or malformed."""
    if not raw:
        return AttributionCookie()
    try:
        cookie = AttributionCookie.model_validate(json.loads(raw))
    except (ValueError, pydantic.ValidationError):
        logger.info("Discarding malformed attribution cookie")
        return AttributionCookie()
    if not (_is_uuid(cookie.anonymous_id) and _is_uuid(cookie.session_id)):
        return AttributionCookie()
    return cookie


def serialize_cookie(cookie: AttributionCookie) -> str:
    return cookie.model_dump_json()


def cookie_options() -> dict[str, Any]:
    """Keyword arguments for ``Response.set_cookie``."""
    return {
        "max_age": COOKIE_MAX_AGE,
        "path": "/",
        "httponly": True,
        "samesite": "lax",
        "secure": COOKIE_SECURE,
    }


# --------------------------------------------------------------------------- #
# URL helpers                                                                  #
# --------------------------------------------------------------------------- #
def utm_params_from_url(url: str) -> UtmParams:
    query = dict(parse_qsl(urlsplit(url).query))
    return UtmParams(**{
        field.removeprefix("utm_"): query[field] for field in UTM_FIELDS if query.get(field)
    })


def strip_utm_params(url: str) -> str:
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in UTM_FIELDS]
    return urlunsplit(parts._replace(query=urlencode(kept)))


def decode_destination_url(encoded: str) -> str:
    """Decode a base64url click destination and check it is safe to redirect to.

    Raises:
        ValidationError: not base64url, not UTF-8, not an absolute http(s)
            URL, or a host outside ``ALLOWED_REDIRECT_HOSTS``.
    """
    if not encoded:
        raise ValidationError("missing destination")
    try:
        padded = encoded + "=" * (-len(encoded) % 4)
        url = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError("destination is not valid base64url") from exc

    if any(ch.isspace() or ord(ch) < 0x20 for ch in url):
        raise ValidationError("destination contains whitespace or control characters")
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as exc:
        raise ValidationError("destination is not a valid URL") from exc
    if parts.scheme not in ("http", "https") or not host:
        raise ValidationError("destination must be an absolute http(s) URL")
    if ALLOWED_REDIRECT_HOSTS and host.lower() not in ALLOWED_REDIRECT_HOSTS:
        raise ValidationError(f"destination host {host} is not allowed")
    return url


# --------------------------------------------------------------------------- #
# Pure transitions                                                             #
# --------------------------------------------------------------------------- #
def new_attribution(cookie: AttributionCookie, now: datetime) -> AttributionData:
    return AttributionData(
        anonymous_id=cookie.anonymous_id,
        session_id=cookie.session_id,
        created_at=now,
        last_touch_at=now,
        expires_at=now + ATTRIBUTION_TTL,
    )


def _touched(data: AttributionData, updates: dict[str, Any], now: datetime) -> AttributionData:
    return data.model_copy(
        update={**updates, "last_touch_at": now, "expires_at": now + ATTRIBUTION_TTL}
    )


def apply_page_view(
    data: AttributionData,
    url: str,
    referrer: str | None,
    utm: UtmParams,
    now: datetime,
) -> AttributionData:
    """First-touch fields fill only when empty; each UTM parameter present on
    the touch overwrites its own last-touch value."""
    updates: dict[str, Any] = {}
    if not data.first_landing_page:
        updates["first_landing_page"] = strip_utm_params(url)
    if not data.first_referrer and referrer:
        updates["first_referrer"] = referrer
    updates.update({k: v for k, v in utm.as_fields().items() if v})
    return _touched(data, updates, now)


def apply_email_click(
    data: AttributionData,
    email_message_id: str,
    link_url: str,
    now: datetime,
) -> AttributionData:
    return _touched(
        data, {"email_message_id": email_message_id, "link_url": link_url}, now
    )


def attribution_snapshot(data: AttributionData | None) -> AttributionSnapshot:
    if data is None:
        return AttributionSnapshot()
    return AttributionSnapshot.model_validate(
        data.model_dump(include=set(AttributionSnapshot.model_fields))
    )


# --------------------------------------------------------------------------- #
# Tracker                                                                      #
# --------------------------------------------------------------------------- #
class AttributionTracker:
    """Applies touches to stored attribution data and records events."""

    def __init__(
        self,
        attribution_store: MongoAttributionStore,
        event_store: MongoEventStore,
        identity_store: IdentityStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._attribution = attribution_store
        self._events = event_store
        self._identities = identity_store
        self._clock = clock

    async def _load(self, cookie: AttributionCookie, now: datetime) -> AttributionData:
        data = await self._attribution.get(cookie.anonymous_id, cookie.session_id, now)
        return data if data is not None else new_attribution(cookie, now)

    async def track_page_view(
        self,
        url: str,
        referrer: str | None,
        utm_params: UtmParams | dict[str, str] | None,
        cookie: AttributionCookie | None,
    ) -> AttributionCookie:
        """Record a landing page view; returns the cookie to set.

        When *utm_params* is None the UTM values are read from *url*.
        """
        if not url:
            raise ValidationError("url is required")
        cookie = cookie or AttributionCookie()
        if utm_params is None:
            utm = utm_params_from_url(url)
        elif isinstance(utm_params, UtmParams):
            utm = utm_params
        else:
            utm = UtmParams.model_validate(utm_params)
        now = self._clock()

        data = apply_page_view(await self._load(cookie, now), url, referrer, utm, now)
        await self._attribution.save(data)
        await self._events.append(
            Event(
                event_name=LANDING_VIEW,
                anonymous_id=cookie.anonymous_id,
                session_id=cookie.session_id,
                source=EventSource.WEB,
                properties={
                    "url": url,
                    "referrer": referrer,
                    **{k: v for k, v in utm.as_fields().items() if v},
                },
                context={
                    "first_landing_page": data.first_landing_page,
                    "first_referrer": data.first_referrer,
                    **{field: getattr(data, field) for field in UTM_FIELDS},
                },
                created_at=now,
            )
        )
        return cookie

    async def track_email_click_attribution(
        self,
        email_message_id: str,
        link_url: str,
        cookie: AttributionCookie | None,
        person_id: str | None = None,
    ) -> AttributionCookie:
        if not email_message_id:
            raise ValidationError("email_message_id is required")
        cookie = cookie or AttributionCookie()
        now = self._clock()

        data = apply_email_click(await self._load(cookie, now), email_message_id, link_url, now)
        await self._attribution.save(data)
        await self._events.append(
            Event(
                event_name=EMAIL_CLICK,
                person_id=person_id,
                anonymous_id=cookie.anonymous_id,
                session_id=cookie.session_id,
                source=EventSource.EMAIL,
                properties={"email_message_id": email_message_id, "link_url": link_url},
                created_at=now,
            )
        )
        return cookie

    async def track_conversion_attribution(
        self,
        event_name: str,
        person_id: str,
        cookie: AttributionCookie | None,
        properties: dict[str, Any] | None = None,
    ) -> Event:
        """Emit *event_name* with a frozen copy of the attribution chain and
        stitch this browser's anonymous history to *person_id*.

        Without a cookie the snapshot is empty and nothing is stitched.
        """
        if not event_name:
            raise ValidationError("event_name is required")
        if not person_id:
            raise ValidationError("person_id is required")
        now = self._clock()

        data = None
        if cookie is not None:
            data = await self._attribution.get(cookie.anonymous_id, cookie.session_id, now)
        snapshot = attribution_snapshot(data)
        event = await self._events.append(
            Event(
                event_name=event_name,
                person_id=person_id,
                anonymous_id=cookie.anonymous_id if cookie else None,
                session_id=cookie.session_id if cookie else None,
                source=EventSource.WEB,
                properties={
                    **(properties or {}),
                    "email_message_id": snapshot.email_message_id,
                    "link_url": snapshot.link_url,
                    "attribution": snapshot.model_dump(),
                },
                created_at=now,
            )
        )
        if cookie is not None:
            await self.stitch_anonymous_touch(
                person_id, cookie.anonymous_id, cookie.session_id
            )
        return event

    async def stitch_anonymous_touch(
        self, person_id: str, anonymous_id: str, session_id: str | None = None
    ) -> int:
        """Attach earlier anonymous events to *person_id*; safe to repeat.

        Returns the number of events newly attached.
        """
        if not person_id or not anonymous_id:
            raise ValidationError("person_id and anonymous_id are required")
        stitched = await self._events.stitch(person_id, anonymous_id, session_id)
        await self._identities.link(
            IdentityKey(identity_type=IdentityType.ANONYMOUS_ID, identity_value=anonymous_id),
            person_id,
        )
        if session_id:
            await self._identities.link(
                IdentityKey(identity_type=IdentityType.SESSION_ID, identity_value=session_id),
                person_id,
            )
        if stitched:
            logger.info("Stitched %d anonymous events to person %s", stitched, person_id)
        return stitched
