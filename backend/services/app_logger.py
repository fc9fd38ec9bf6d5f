"""Structured application logging and best-effort side effects.

`log_event` is the fire-and-forget logger used by the event pipeline: it redacts
sensitive metadata, emits through the standard logging module, optionally stores an
`AppLog` row, and never raises. `run_best_effort` is the single place where a side
effect is allowed to fail without affecting the primary result.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from config import settings

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

SENSITIVE_FIELDS = (
    "api_key", "apikey", "token", "password", "email",
    "phone", "ssn", "address", "credit_card", "x-api-key",
)


def sanitize(data: Any) -> Any:
    if isinstance(data, list):
        return [sanitize(item) for item in data]
    if not isinstance(data, dict):
        return data

    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        lower_key = str(key).lower()
        if any(field in lower_key for field in SENSITIVE_FIELDS):
            cleaned[key] = "[REDACTED]"
            continue
        # Health payloads are summarized, never logged verbatim.
        if key == "event_data" and isinstance(value, dict):
            cleaned[key] = {
                "has_description": bool(value.get("description")),
                "has_name": bool(value.get("name")),
                "fields_present": sorted(value.keys()),
            }
            continue
        cleaned[key] = sanitize(value)
    return cleaned


def _persist_log(level: str, category: str, message: str, metadata: dict[str, Any], user_id: str | None) -> None:
    from db.database import SessionLocal
    from db.models import AppLog

    db = SessionLocal()
    try:
        db.add(
            AppLog(
                user_id=user_id,
                level=level,
                category=category,
                message=message[:1000],
                metadata_json=metadata,
            )
        )
        db.commit()
    finally:
        db.close()


def log_event(
    level: str,
    category: str,
    message: str,
    metadata: dict[str, Any] | None = None,
    user_id: str | None = None,
) -> None:
    try:
        safe_metadata = sanitize(metadata or {})
        logger.log(
            LOG_LEVELS.get(str(level).lower(), logging.INFO),
            f"[{category}] {message}",
            extra={"category": category, "user_id": user_id, "event_metadata": safe_metadata},
        )
        if settings.APP_LOG_PERSIST:
            _persist_log(str(level).lower(), category, message, safe_metadata, user_id)
    except Exception as e:  # noqa: BLE001
        logger.debug(f"log_event dropped a log line: {e}")


def run_best_effort(
    db: Session,
    operation: str,
    fn: Callable[..., Any],
    *args: Any,
    user_id: str | None = None,
    **kwargs: Any,
) -> bool:
    """Run a side effect whose failure must not affect the caller.

    The primary work must already be committed: on failure this rolls the session
    back, which only discards the side effect's own pending changes.
    """
    try:
        fn(*args, **kwargs)
        db.commit()
        return True
    except Exception as e:  # noqa: BLE001
        try:
            db.rollback()
        except Exception as rollback_error:  # noqa: BLE001
            logger.error(f"Rollback after {operation} failed: {rollback_error}")
        log_event(
            "warn",
            "best_effort",
            f"{operation} failed and was ignored",
            {"operation": operation, "error_message": str(e)},
            user_id,
        )
        return False
