"""Free-text input -> structured health event.

Order of authority, cheapest first: exact registry hit, fuzzy registry hit, then the
LLM classifier followed by deterministic reclassification and optional catalog
verification. Registry hits short-circuit everything after them.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ai.event_classifier import extract_frequent_items, get_user_recent_events
from db.models import AuditRecord, VoiceEvent
from services.app_logger import log_event, run_best_effort
from services.errors import (
    ClassifierError,
    EventProcessingError,
    InputValidationError,
    PersistenceError,
)
from services.event_schema import (
    PRODUCT_EVENT_TYPES,
    ClassifiedEvent,
    EventType,
    parse_event_type,
    product_event_data,
    product_query_text,
)
from services.product_registry import RegistryMatch, check_exact, fuzzy_match, upsert_registry_entry
from services.product_search import ProductSearchResult, build_default_aggregator
from services.reclassifier import apply_reclassification
from services.search_policy import should_search_products

logger = logging.getLogger(__name__)

REGISTRY_CONFIDENCE = 95
# Top search hit must score above this before its category replaces the classifier's.
CATEGORY_OVERRIDE_CONFIDENCE = 80

REGISTRY_SOURCE = "user_registry"
NLP_MODEL_REGISTRY_EXACT = "registry_bypass"
NLP_MODEL_REGISTRY_FUZZY = "registry_fuzzy_bypass"

MAX_INPUT_LENGTH = 2000
CAPTURE_METHODS = frozenset({"manual", "voice", "photo"})


class AuditStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CLARIFICATION = "awaiting_user_clarification"
    PARSED = "parsed"
    CLARIFICATION_SUCCESS = "awaiting_user_clarification_success"
    ERROR = "error"
    CATALOG_PRODUCT_CREATED = "catalog_product_created"
    MULTI_ITEM_EVENTS_CREATED = "multi_item_events_created"


class Classifier(Protocol):
    model: str

    async def classify(
        self,
        text: str,
        frequent_items: list[tuple[str, int]] | None = None,
        user_id: str | None = None,
    ) -> ClassifiedEvent: ...


class ProductSearcher(Protocol):
    async def search_all(self, query: str | None, user_id: str | None = None) -> list[ProductSearchResult]: ...


@dataclass
class ProcessingResult:
    success: bool
    complete: bool = False
    event: dict[str, Any] | None = None
    audit_id: int | None = None
    missing_fields: list[str] | None = None
    product_options: list[dict[str, Any]] | None = None
    confidence: int | None = None
    parsed: dict[str, Any] | None = None
    source: str | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------

def _naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _numeric_or_none(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def create_audit_record(
    db: Session,
    user_id: str,
    raw_text: str,
    record_type: str | None = None,
    value: float | None = None,
    units: str | None = None,
    nlp_model: str | None = None,
    nlp_metadata: dict[str, Any] | None = None,
) -> AuditRecord:
    audit = AuditRecord(
        user_id=user_id,
        raw_text=raw_text,
        record_type=record_type or "unknown",
        value=value,
        units=units,
        nlp_status=AuditStatus.PENDING.value,
        nlp_model=nlp_model,
        nlp_metadata=nlp_metadata or {},
    )
    try:
        db.add(audit)
        db.commit()
        db.refresh(audit)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to create audit record: {e}") from e
    return audit


def update_audit_record(
    db: Session,
    audit: AuditRecord,
    status: AuditStatus | str | None = None,
    metadata: dict[str, Any] | None = None,
    **fields: Any,
) -> AuditRecord:
    """Apply status/field changes and merge `metadata` into `nlp_metadata`, then commit."""
    try:
        if status is not None:
            audit.nlp_status = status.value if isinstance(status, AuditStatus) else str(status)
        for key, value in fields.items():
            setattr(audit, key, value)
        if metadata:
            # Reassign so the JSON column is flagged dirty.
            audit.nlp_metadata = {**(audit.nlp_metadata or {}), **metadata}
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to update audit record {audit.id}: {e}") from e
    return audit


def create_voice_event(
    db: Session,
    user_id: str,
    event_type: str,
    event_data: dict[str, Any],
    event_time: datetime | None,
    source_record_id: int | None,
    capture_method: str = "manual",
    audit: AuditRecord | None = None,
    audit_status: AuditStatus | None = None,
    audit_metadata: dict[str, Any] | None = None,
) -> VoiceEvent:
    """Insert the event and (optionally) move its audit record, in one commit."""
    row = VoiceEvent(
        user_id=user_id,
        event_type=event_type,
        event_data=dict(event_data),
        event_time=_naive_utc(event_time),
        source_record_id=source_record_id,
        capture_method=capture_method,
    )
    try:
        db.add(row)
        if audit is not None and audit_status is not None:
            audit.nlp_status = audit_status.value
            if audit_metadata:
                audit.nlp_metadata = {**(audit.nlp_metadata or {}), **audit_metadata}
        db.commit()
        db.refresh(row)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to create voice event: {e}") from e
    return row


def voice_event_to_dict(row: VoiceEvent) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "event_type": row.event_type,
        "event_data": row.event_data or {},
        "event_time": row.event_time.isoformat() if row.event_time else None,
        "source_record_id": row.source_record_id,
        "capture_method": row.capture_method,
    }


def _mark_audit_error(db: Session, audit: AuditRecord, error: Exception, user_id: str) -> None:
    try:
        update_audit_record(
            db,
            audit,
            status=AuditStatus.ERROR,
            metadata={"error_message": str(error), "error_code": getattr(error, "code", "processing_error")},
        )
    except PersistenceError as e:
        logger.error(f"Could not mark audit {audit.id} as error for user {user_id}: {e}")


def record_registry_use(
    db: Session,
    user_id: str,
    event_type: str,
    product_name: str | None,
    brand: str | None = None,
    external_product_id: str | None = None,
    external_source: str | None = None,
) -> bool:
    """Best-effort registry counter bump after an event has been committed."""
    if parse_event_type(event_type) not in PRODUCT_EVENT_TYPES or not product_name:
        return False
    return run_best_effort(
        db,
        "registry_upsert",
        upsert_registry_entry,
        db,
        user_id,
        event_type,
        product_name,
        brand=brand,
        external_product_id=external_product_id,
        external_source=external_source,
        user_id=user_id,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def _validate_input(text: Any, user_id: Any, capture_method: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InputValidationError("user_id is required")
    if not isinstance(text, str) or not text.strip():
        raise InputValidationError("Input text is empty")
    cleaned = text.strip()
    if len(cleaned) > MAX_INPUT_LENGTH:
        raise InputValidationError(f"Input text exceeds {MAX_INPUT_LENGTH} characters")
    if capture_method not in CAPTURE_METHODS:
        raise InputValidationError(f"Unsupported capture method: {capture_method}")
    return cleaned


def _persist_registry_match(
    db: Session,
    text: str,
    user_id: str,
    match: RegistryMatch,
    nlp_model: str,
    capture_method: str,
) -> ProcessingResult:
    event_type = parse_event_type(match.event_type) or EventType.FOOD
    event = ClassifiedEvent(
        event_type=event_type,
        event_data=product_event_data(event_type, match.product_name),
        confidence=REGISTRY_CONFIDENCE,
    )
    audit = create_audit_record(
        db,
        user_id,
        text,
        record_type=event_type.value,
        nlp_model=nlp_model,
        nlp_metadata={
            "capture_method": capture_method,
            "source": REGISTRY_SOURCE,
            "registry_source": match.source,
            "times_logged": match.times_logged,
            "confidence": REGISTRY_CONFIDENCE,
        },
    )
    row = create_voice_event(
        db,
        user_id,
        event_type.value,
        event.event_data,
        event.event_time,
        audit.id,
        capture_method,
        audit=audit,
        audit_status=AuditStatus.PARSED,
    )
    record_registry_use(db, user_id, event_type.value, match.product_name, brand=match.brand)
    log_event(
        "info",
        "voice_processing",
        "Registry match persisted without classification",
        {"registry_source": match.source, "event_type": event_type.value, "audit_id": audit.id},
        user_id,
    )
    return ProcessingResult(
        success=True,
        complete=True,
        event=voice_event_to_dict(row),
        audit_id=audit.id,
        confidence=REGISTRY_CONFIDENCE,
        parsed=event.to_dict(),
        source=REGISTRY_SOURCE,
    )


def _category_override(event: ClassifiedEvent, top: ProductSearchResult | None) -> dict[str, Any] | None:
    """Let a high-confidence catalog hit correct the classifier's event type."""
    if top is None or top.confidence <= CATEGORY_OVERRIDE_CONFIDENCE:
        return None
    catalog_type = parse_event_type(top.event_type)
    if catalog_type not in PRODUCT_EVENT_TYPES or catalog_type == event.event_type:
        return None

    previous_type = event.event_type
    new_data = product_event_data(catalog_type, top.name)
    if catalog_type != EventType.FOOD:
        for key in ("dosage", "units"):
            value = event.event_data.get(key)
            if value not in (None, ""):
                new_data[key] = value
    event.event_type = catalog_type
    event.event_data = new_data
    return {
        "from": previous_type.value,
        "to": catalog_type.value,
        "product_name": top.name,
        "product_source": top.source,
        "product_confidence": top.confidence,
    }


async def _classify_and_decide(
    db: Session,
    text: str,
    user_id: str,
    classifier: Classifier,
    searcher: ProductSearcher,
    capture_method: str,
    transcription: dict[str, Any] | None,
) -> ProcessingResult:
    history = get_user_recent_events(db, user_id)
    frequent_items = extract_frequent_items(history)

    initial_metadata: dict[str, Any] = {
        "capture_method": capture_method,
        "user_history_count": len(history),
        "classifier_model": classifier.model,
    }
    if transcription:
        initial_metadata["transcription"] = transcription
    audit = create_audit_record(db, user_id, text, nlp_model=classifier.model, nlp_metadata=initial_metadata)

    try:
        event = await classifier.classify(text, frequent_items, user_id)
    except ClassifierError as e:
        _mark_audit_error(db, audit, e, user_id)
        raise

    classified_type = event.event_type
    reclassification = apply_reclassification(event)

    classifier_output = product_query_text(event.event_data)
    should_search = should_search_products(
        event.event_type,
        event.event_data,
        event.confidence,
        user_input=text,
        classifier_output=classifier_output,
    )
    log_event(
        "info",
        "voice_processing",
        "Product search decision",
        {"should_search": should_search, "event_type": event.event_type.value, "confidence": event.confidence},
        user_id,
    )

    product_options: list[dict[str, Any]] | None = None
    override = None
    search_query = None
    if should_search:
        search_query = product_query_text(event.event_data, fallback=text)
        results = await searcher.search_all(search_query, user_id)
        product_options = [r.to_dict() for r in results]
        override = _category_override(event, results[0] if results else None)
        if override:
            log_event("info", "voice_processing", "Catalog category overrode classifier", override, user_id)

    metadata: dict[str, Any] = {
        "confidence": event.confidence,
        "parsed_at": datetime.now(timezone.utc).isoformat(),
        "classified_event_type": classified_type.value,
        "should_search": should_search,
        "search_query": search_query,
        "results_count": len(product_options) if product_options is not None else None,
    }
    if reclassification is not None:
        metadata["reclassification"] = {
            "tier": reclassification.tier,
            "rule": reclassification.rule,
            "score": reclassification.score,
        }
    if override:
        metadata["category_override"] = override

    update_audit_record(
        db,
        audit,
        metadata=metadata,
        record_type=event.event_type.value,
        value=_numeric_or_none(event.event_data.get("value")),
        units=event.event_data.get("units") if isinstance(event.event_data.get("units"), str) else None,
    )

    complete = event.complete
    needs_confirmation = not complete or (
        event.event_type in PRODUCT_EVENT_TYPES and bool(product_options)
    )

    if not needs_confirmation:
        row = create_voice_event(
            db,
            user_id,
            event.event_type.value,
            event.event_data,
            event.event_time,
            audit.id,
            capture_method,
            audit=audit,
            audit_status=AuditStatus.PARSED,
        )
        record_registry_use(db, user_id, event.event_type.value, product_query_text(event.event_data))
        return ProcessingResult(
            success=True,
            complete=True,
            event=voice_event_to_dict(row),
            audit_id=audit.id,
            confidence=event.confidence,
            parsed=event.to_dict(),
            product_options=product_options,
        )

    missing_fields = event.missing_fields
    update_audit_record(
        db,
        audit,
        status=AuditStatus.AWAITING_CLARIFICATION,
        metadata={
            "parsed_event": event.to_dict(),
            "missing_fields": missing_fields,
            "product_options": product_options,
        },
    )
    log_event(
        "info",
        "voice_processing",
        "Awaiting user confirmation",
        {
            "audit_id": audit.id,
            "complete": complete,
            "missing_fields": missing_fields,
            "product_options": len(product_options or []),
        },
        user_id,
    )
    return ProcessingResult(
        success=True,
        complete=False,
        audit_id=audit.id,
        missing_fields=missing_fields,
        product_options=product_options,
        confidence=event.confidence,
        parsed=event.to_dict(),
    )


async def process_input(
    db: Session,
    text: str,
    user_id: str,
    classifier: Classifier,
    capture_method: str = "manual",
    searcher: ProductSearcher | None = None,
    transcription: dict[str, Any] | None = None,
) -> ProcessingResult:
    """Classify one input and either persist it or return what the user must confirm."""
    try:
        cleaned = _validate_input(text, user_id, capture_method)
        log_event(
            "info",
            "voice_processing",
            "Starting text input processing",
            {"input_length": len(cleaned), "capture_method": capture_method, "has_transcription": bool(transcription)},
            user_id,
        )

        match = check_exact(db, cleaned, user_id)
        if match is not None:
            return _persist_registry_match(db, cleaned, user_id, match, NLP_MODEL_REGISTRY_EXACT, capture_method)

        match = fuzzy_match(db, cleaned, user_id)
        if match is not None:
            return _persist_registry_match(db, cleaned, user_id, match, NLP_MODEL_REGISTRY_FUZZY, capture_method)

        return await _classify_and_decide(
            db,
            cleaned,
            user_id,
            classifier,
            searcher or build_default_aggregator(db),
            capture_method,
            transcription,
        )
    except EventProcessingError as e:
        log_event(
            "error",
            "voice_processing",
            "process_input failed",
            {"error_message": str(e), "error_code": e.code, "capture_method": capture_method},
            user_id if isinstance(user_id, str) else None,
        )
        return ProcessingResult(success=False, error=str(e), error_code=e.code)
