"""Second half of the pipeline: turn a pending parse plus the user's choice into an event."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from db.models import AuditRecord, VoiceEvent
from services.app_logger import log_event
from services.errors import (
    ConfirmationConflictError,
    ConfirmationError,
    ConfirmationNotFoundError,
    IncompleteEventError,
)
from services.event_processor import AuditStatus, create_voice_event, record_registry_use
from services.event_schema import (
    EventType,
    missing_required_fields,
    parse_event_type,
    product_event_data,
    product_query_text,
)

logger = logging.getLogger(__name__)

_FOOD_NUTRIENT_KEYS = ("calories", "protein", "carbs", "fat")


@dataclass
class ConfirmationChoice:
    selected_option: int | None = None  # index into the stored product options
    event_type: str | None = None
    event_data: dict[str, Any] = field(default_factory=dict)


def _load_pending_audit(db: Session, audit_id: int, user_id: str) -> AuditRecord:
    audit = db.get(AuditRecord, audit_id)
    if audit is None or audit.user_id != user_id:
        raise ConfirmationNotFoundError(f"No pending event {audit_id} for this user")
    if audit.nlp_status != AuditStatus.AWAITING_CLARIFICATION.value:
        raise ConfirmationConflictError(f"Event {audit_id} is not awaiting confirmation (status={audit.nlp_status})")
    return audit


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _apply_option(event_type: EventType, data: dict[str, Any], option: dict[str, Any]) -> dict[str, Any]:
    merged = product_event_data(event_type, option.get("name") or "")
    if event_type == EventType.FOOD:
        nutrients = option.get("nutrients") or {}
        for key in _FOOD_NUTRIENT_KEYS:
            if nutrients.get(key) is not None:
                merged[key] = nutrients[key]
        if option.get("serving_size"):
            merged["serving_size"] = option["serving_size"]
    else:
        for key in ("dosage", "units"):
            if data.get(key) not in (None, ""):
                merged[key] = data[key]
        if option.get("brand"):
            merged["brand"] = option["brand"]
    return merged


def resolve_confirmation(db: Session, audit_id: int, user_id: str, choice: ConfirmationChoice) -> VoiceEvent:
    """Persist the event for a pending audit record.

    Raises ConfirmationNotFoundError for unknown/foreign audits, ConfirmationConflictError
    when already resolved, and IncompleteEventError when required fields are still missing.
    """
    audit = _load_pending_audit(db, audit_id, user_id)
    metadata = dict(audit.nlp_metadata or {})
    parsed = metadata.get("parsed_event")
    if not isinstance(parsed, dict):
        raise ConfirmationError(f"Audit {audit_id} has no parsed event to confirm")

    parsed_type = parse_event_type(parsed.get("event_type"))
    event_type = parse_event_type(choice.event_type) if choice.event_type else parsed_type
    if event_type is None:
        raise ConfirmationError(f"Unknown event type: {choice.event_type or parsed.get('event_type')}")

    data = dict(parsed.get("event_data") or {}) if event_type == parsed_type else {}

    selected: dict[str, Any] | None = None
    if choice.selected_option is not None:
        options = metadata.get("product_options") or []
        if not 0 <= choice.selected_option < len(options):
            raise ConfirmationError(f"Product option {choice.selected_option} does not exist")
        selected = options[choice.selected_option]
        data = _apply_option(event_type, data, selected)

    data.update(choice.event_data or {})

    missing = missing_required_fields(event_type, data)
    if missing:
        raise IncompleteEventError(f"Missing required fields: {', '.join(missing)}", missing)

    row = create_voice_event(
        db,
        user_id,
        event_type.value,
        data,
        _parse_time(parsed.get("event_time")),
        audit.id,
        metadata.get("capture_method") or "manual",
        audit=audit,
        audit_status=AuditStatus.CLARIFICATION_SUCCESS,
        audit_metadata={
            "final_event_data": data,
            "selected_product": selected,
            "user_corrected_type": event_type != parsed_type,
        },
    )

    record_registry_use(
        db,
        user_id,
        event_type.value,
        product_query_text(data),
        brand=(selected or {}).get("brand") or data.get("brand"),
        external_product_id=(selected or {}).get("id") or None,
        external_source=(selected or {}).get("source") or None,
    )
    log_event(
        "info",
        "confirmation",
        "Pending event confirmed",
        {"audit_id": audit.id, "event_type": event_type.value, "selected_product": bool(selected)},
        user_id,
    )
    return row
