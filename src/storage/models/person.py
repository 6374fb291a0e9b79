"""Person, identity link and identity signal models.

A Person is the canonical record for one human.  Every identity key we
learn about (email, account id, billing customer id, anonymous cookie id,
...) is recorded as an append-only :class:`IdentityLink` pointing at it.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from src.storage.models.base import DocumentModel, utcnow

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class IdentityType(StrEnum):
    """Kinds of identity key that can point at a Person."""

    EMAIL = "email"
    ACCOUNT = "account"
    BILLING = "billing"
    ANONYMOUS_ID = "anonymous_id"
    SESSION_ID = "session_id"
    ANALYTICS = "analytics"
    AD_PLATFORM = "ad_platform"
    EMAIL_PROVIDER = "email_provider"


# Resolution order; the first key present is also the one a new Person is
# created under.
PRIMARY_IDENTITY_TYPES: tuple[IdentityType, ...] = (
    IdentityType.EMAIL,
    IdentityType.ACCOUNT,
    IdentityType.BILLING,
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_email(email: str) -> str:
    """SHA-256 of the normalised address, the form ad platforms match on."""
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()


class IdentityKey(BaseModel):
    """One (type, value) pair; the unit of uniqueness for identity links."""

    identity_type: IdentityType
    identity_value: str = Field(..., min_length=1, max_length=512)

    def __str__(self) -> str:
        return f"{self.identity_type.value}:{self.identity_value}"


class IdentityLink(DocumentModel):
    identity_type: IdentityType
    identity_value: str
    person_id: str
    created_at: datetime = Field(default_factory=utcnow)


class Person(DocumentModel):
    """Canonical person record."""

    person_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str | None = None
    email_hash: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    account_id: str | None = None
    billing_customer_id: str | None = None
    analytics_distinct_id: str | None = None
    ad_external_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        if doc["email"] is None:
            del doc["email"]
        return doc


# Profile fields a resolve call may carry, in Person attribute names.
PERSON_FIELDS: tuple[str, ...] = (
    "email",
    "first_name",
    "last_name",
    "phone",
    "account_id",
    "billing_customer_id",
    "analytics_distinct_id",
    "ad_external_id",
)


class IdentitySignals(BaseModel):
    """Input to identity resolution.

    At least one of ``email``, ``account_id`` or ``billing_customer_id``
    must be present.  Anonymous cookie ids are deliberately absent: they are
    only used for stitching, never to resolve a person.
    """

    email: str | None = None
    account_id: str | None = None
    billing_customer_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    analytics_distinct_id: str | None = None
    ad_external_id: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = normalize_email(v)
        if not _EMAIL_RE.match(v):
            raise ValueError("malformed email address")
        return v

    @model_validator(mode="after")
    def _require_primary_key(self) -> IdentitySignals:
        if not (self.email or self.account_id or self.billing_customer_id):
            raise ValueError(
                "one of email, account_id or billing_customer_id is required"
            )
        return self

    def primary_keys(self) -> list[IdentityKey]:
        """Resolution keys in lookup order."""
        values = {
            IdentityType.EMAIL: self.email,
            IdentityType.ACCOUNT: self.account_id,
            IdentityType.BILLING: self.billing_customer_id,
        }
        return [
            IdentityKey(identity_type=t, identity_value=values[t])
            for t in PRIMARY_IDENTITY_TYPES
            if values[t]
        ]

    def secondary_keys(self) -> list[IdentityKey]:
        keys: list[IdentityKey] = []
        if self.analytics_distinct_id:
            keys.append(
                IdentityKey(
                    identity_type=IdentityType.ANALYTICS,
                    identity_value=self.analytics_distinct_id,
                )
            )
        if self.ad_external_id:
            keys.append(
                IdentityKey(
                    identity_type=IdentityType.AD_PLATFORM,
                    identity_value=self.ad_external_id,
                )
            )
        return keys

    def person_fields(self) -> dict[str, str]:
        """Non-empty profile fields, ready to merge into a Person."""
        fields = {
            name: value
            for name in PERSON_FIELDS
            if (value := getattr(self, name)) is not None
        }
        if self.email:
            fields["email_hash"] = hash_email(self.email)
        return fields


IDENTITY_FIELD_BY_TYPE: dict[IdentityType, str] = {
    IdentityType.EMAIL: "email",
    IdentityType.ACCOUNT: "account_id",
    IdentityType.BILLING: "billing_customer_id",
    IdentityType.ANALYTICS: "analytics_distinct_id",
    IdentityType.AD_PLATFORM: "ad_external_id",
}
