"""Per-user learned product registry.

Maps normalized product keys to the classification the user confirmed before.
Lookups fail closed: missing input or a database error is reported as "no match"
so the caller can fall through to the classifier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import UserProductRegistry
from services.app_logger import log_event
from services.errors import RegistryUpsertError
from services.event_schema import PRODUCT_EVENT_TYPES, parse_event_type
from utils.text_utils import fuzzy_key_match, normalize_product_key

logger = logging.getLogger(__name__)

SOURCE_EXACT = "user_registry_exact"
SOURCE_FUZZY = "user_registry_fuzzy"

# Entries logged fewer times than this are not trusted for fuzzy matching.
FUZZY_MIN_TIMES_LOGGED = 3
FUZZY_CANDIDATE_LIMIT = 50


@dataclass(frozen=True)
class RegistryMatch:
    event_type: str
    product_name: str
    brand: str | None
    times_logged: int
    source: str
    product_key: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_match(row: UserProductRegistry, source: str) -> RegistryMatch:
    return RegistryMatch(
        event_type=row.event_type,
        product_name=row.product_name,
        brand=row.brand,
        times_logged=int(row.times_logged or 0),
        source=source,
        product_key=row.product_key,
    )


def _recover_session(db: Session) -> None:
    try:
        db.rollback()
    except SQLAlchemyError as e:
        logger.error(f"Registry session rollback failed: {e}")


def check_exact(db: Session, description: str | None, user_id: str | None) -> RegistryMatch | None:
    if not description or not user_id:
        return None

    product_key = normalize_product_key(description)
    if not product_key:
        return None

    try:
        row = (
            db.query(UserProductRegistry)
            .filter(
                UserProductRegistry.user_id == user_id,
                UserProductRegistry.product_key == product_key,
            )
            .first()
        )
    except SQLAlchemyError as e:
        _recover_session(db)
        log_event(
            "error",
            "registry",
            "Error checking user product registry",
            {"product_key": product_key, "error_message": str(e)},
            user_id,
        )
        return None

    if row is None:
        return None

    log_event(
        "info",
        "registry",
        "Found exact match in user product registry",
        {"product_key": product_key, "event_type": row.event_type, "times_logged": row.times_logged},
        user_id,
    )
    return _to_match(row, SOURCE_EXACT)


def fuzzy_match(db: Session, description: str | None, user_id: str | None) -> RegistryMatch | None:
    """Match against frequently logged entries, most logged first.

    Ties on `times_logged` go to the most recently logged entry, then the oldest row.
    """
    if not description or not user_id:
        return None

    normalized_input = normalize_product_key(description)
    if not normalized_input:
        return None

    try:
        candidates = (
            db.query(UserProductRegistry)
            .filter(
                UserProductRegistry.user_id == user_id,
                UserProductRegistry.times_logged >= FUZZY_MIN_TIMES_LOGGED,
            )
            .order_by(
                UserProductRegistry.times_logged.desc(),
                UserProductRegistry.last_logged_at.desc(),
                UserProductRegistry.id.asc(),
            )
            .limit(FUZZY_CANDIDATE_LIMIT)
            .all()
        )
    except SQLAlchemyError as e:
        _recover_session(db)
        log_event(
            "error",
            "registry",
            "Error fuzzy matching user products",
            {"error_message": str(e)},
            user_id,
        )
        return None

    for row in candidates:
        if fuzzy_key_match(normalized_input, row.product_key):
            log_event(
                "info",
                "registry",
                "Found fuzzy match in user product registry",
                {
                    "input": description,
                    "matched_product": row.product_name,
                    "event_type": row.event_type,
                    "times_logged": row.times_logged,
                },
                user_id,
            )
            return _to_match(row, SOURCE_FUZZY)
    return None


def _find_entry(db: Session, user_id: str, product_key: str) -> UserProductRegistry | None:
    return (
        db.query(UserProductRegistry)
        .filter(
            UserProductRegistry.user_id == user_id,
            UserProductRegistry.product_key == product_key,
        )
        .first()
    )


def upsert_registry_entry(
    db: Session,
    user_id: str | None,
    event_type: str | None,
    product_name: str | None,
    brand: str | None = None,
    external_product_id: str | None = None,
    external_source: str | None = None,
) -> UserProductRegistry:
    """Insert a registry row or bump its counter. Caller commits.

    Concurrent writers for the same key are tolerated: losing the insert race turns
    into an update, and the counter is last-write-wins.
    """
    parsed_type = parse_event_type(event_type)
    if not user_id or not product_name or parsed_type not in PRODUCT_EVENT_TYPES:
        raise RegistryUpsertError(
            f"Missing or invalid registry fields (user={bool(user_id)}, type={event_type!r}, name={bool(product_name)})"
        )

    product_key = normalize_product_key(product_name)
    if not product_key:
        raise RegistryUpsertError(f"Product name {product_name!r} normalizes to an empty key")

    now = _utcnow()
    row = _find_entry(db, user_id, product_key)
    if row is None:
        row = UserProductRegistry(
            user_id=user_id,
            product_key=product_key,
            event_type=parsed_type.value,
            product_name=product_name,
            brand=brand,
            external_product_id=external_product_id,
            external_source=external_source,
            times_logged=1,
            first_logged_at=now,
            last_logged_at=now,
        )
        db.add(row)
        try:
            db.flush()
            log_event(
                "info",
                "registry",
                "Created user product registry entry",
                {"product_name": product_name, "event_type": parsed_type.value},
                user_id,
            )
            return row
        except IntegrityError:
            db.rollback()
            row = _find_entry(db, user_id, product_key)
            if row is None:
                raise

    row.times_logged = int(row.times_logged or 0) + 1
    row.last_logged_at = now
    if brand:
        row.brand = brand
    if external_product_id:
        row.external_product_id = external_product_id
    if external_source:
        row.external_source = external_source
    db.flush()
    log_event(
        "info",
        "registry",
        "Updated user product registry",
        {"product_name": product_name, "times_logged": row.times_logged},
        user_id,
    )
    return row


def list_registry_entries(db: Session, user_id: str) -> list[dict[str, Any]]:
    rows = (
        db.query(UserProductRegistry)
        .filter(UserProductRegistry.user_id == user_id)
        .order_by(UserProductRegistry.times_logged.desc(), UserProductRegistry.last_logged_at.desc())
        .all()
    )
    return [
        {
            "product_key": row.product_key,
            "product_name": row.product_name,
            "event_type": row.event_type,
            "brand": row.brand,
            "times_logged": row.times_logged,
            "first_logged_at": row.first_logged_at.isoformat() if row.first_logged_at else None,
            "last_logged_at": row.last_logged_at.isoformat() if row.last_logged_at else None,
            "external_product_id": row.external_product_id,
            "external_source": row.external_source,
        }
        for row in rows
    ]
