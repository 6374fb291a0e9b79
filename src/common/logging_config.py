"""Structured JSON logging with PII and secret redaction for the data plane.

Every module logs through ``logging.getLogger(__name__)``.  Once a process
entry point calls :func:`setup_logging`, those stdlib records and any
structlog loggers share one JSON renderer.  Each line carries the request's
correlation ID, the service name, the environment and an ISO-8601 timestamp.

Redaction runs last before rendering: values under person-identifying keys
(email, phone, names) or secret-looking keys (``cron_secret``, passwords,
tokens) become ``[REDACTED]``, and email addresses or phone numbers embedded
in free-text messages are masked in place.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

_REDACTED = "[REDACTED]"

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"\+?\d[\d\-\s()]{7,}\d")
_PII_KEYS = frozenset(
    {
        "email",
        "email_address",
        "phone",
        "phone_number",
        "first_name",
        "last_name",
        "full_name",
        "name",
    }
)
_SECRET_KEY_PARTS = ("secret", "password", "token", "api_key")


# ── Request context ───────────────────────────────────────────────────


def get_correlation_id() -> str:
    """Current correlation ID; one is minted and bound if none exists."""
    cid = get_contextvars().get("correlation_id")
    if cid is None:
        cid = uuid.uuid4().hex
        bind_contextvars(correlation_id=cid)
    return str(cid)


def set_correlation_id(cid: str) -> None:
    """Start a fresh request context tagged with *cid* (e.g. ``X-Request-ID``)."""
    clear_contextvars()
    bind_contextvars(correlation_id=cid)


# ── Processors ────────────────────────────────────────────────────────


def _is_secret_key(key: str) -> bool:
    key = key.lower()
    return any(part in key for part in _SECRET_KEY_PARTS)


def redact_pii(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor masking PII and secrets in string values."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if key.lower() in _PII_KEYS or _is_secret_key(key):
            event_dict[key] = _REDACTED
            continue
        value = _EMAIL_RE.sub(_REDACTED, value)
        event_dict[key] = _PHONE_RE.sub(_REDACTED, value)
    return event_dict


def _service_context(service_name: str) -> structlog.typing.Processor:
    environment = os.getenv("GDP_ENV", "development")

    def inject(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("correlation_id", get_correlation_id())
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("environment", environment)
        return event_dict

    return inject


# ── Setup ─────────────────────────────────────────────────────────────


def setup_logging(
    service_name: str,
    log_level: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib logging through one redacting JSON renderer.

    Parameters
    ----------
    service_name:
        Logical name of the process (``"growth-api"``, ``"growth-cli"``).
    log_level:
        Standard level name.  Defaults to ``$LOG_LEVEL`` or ``"INFO"``.
    """
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, log_level, logging.INFO)

    shared: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_context(service_name),
    ]
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*shared, structlog.stdlib.ExtraAdder()],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                redact_pii,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    logging.basicConfig(handlers=[handler], level=level, force=True)

    logger: structlog.stdlib.BoundLogger = structlog.get_logger(service_name)
    logger.info("logging_initialised", log_level=log_level)
    return logger
