"""Photo-driven logging: product detection, catalog matching, quantity follow-up.

The same decision pattern as text input, applied per detected item: a catalog match
only needs a quantity, an unmatched product needs a nutrition label first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.orm import Session

from ai.photo_analyzer import detect_barcode, detect_products, extract_nutrition_label
from ai.providers import AIProvider
from db.models import AuditRecord, ProductCatalog
from services.app_logger import log_event, run_best_effort
from services.errors import (
    ConfirmationConflictError,
    ConfirmationError,
    ConfirmationNotFoundError,
    IncompleteEventError,
    InputValidationError,
    PersistenceError,
)
from services.event_processor import (
    AuditStatus,
    create_audit_record,
    create_voice_event,
    record_registry_use,
    update_audit_record,
    voice_event_to_dict,
)
from services.event_schema import PRODUCT_EVENT_TYPES, EventType, missing_required_fields, parse_event_type
from services.product_catalog import (
    add_product_to_catalog,
    catalog_product_to_dict,
    increment_product_usage,
    lookup_by_barcode,
    search_catalog,
)
from utils.nutrients import build_supplement_event_data, format_serving_size, parse_quantity

logger = logging.getLogger(__name__)

CATALOG_MATCH_LIMIT = 5
DEFAULT_FORM = "capsules"
CATALOG_SOURCE = "catalog"

# A follow-up answer is accepted while the photo event is still open.
_OPEN_PHOTO_STATUSES = {
    AuditStatus.PENDING.value,
    AuditStatus.AWAITING_CLARIFICATION.value,
    AuditStatus.CATALOG_PRODUCT_CREATED.value,
}


def _search_query(item: dict[str, Any]) -> str:
    name = item.get("name") or ""
    brand = item.get("brand")
    return f"{brand} {name}" if brand else name


def _match_by_text(db: Session, item: dict[str, Any]) -> dict[str, Any] | None:
    rows = search_catalog(db, _search_query(item), limit=CATALOG_MATCH_LIMIT)
    if not rows:
        return None
    return {**catalog_product_to_dict(rows[0]), "match_method": "text_search"}


async def find_catalog_match(
    db: Session,
    provider: AIProvider,
    image_bytes: bytes,
    item: dict[str, Any],
) -> dict[str, Any] | None:
    """Barcode first, then name/brand text search."""
    barcode = await detect_barcode(provider, image_bytes)
    if barcode.get("success") and barcode.get("barcode"):
        product = lookup_by_barcode(db, barcode["barcode"])
        if product is not None:
            return {**catalog_product_to_dict(product), "match_method": "barcode"}
    return _match_by_text(db, item)


async def _match_item_by_text(db: Session, item: dict[str, Any]) -> dict[str, Any]:
    match = _match_by_text(db, item)
    return {
        "item": item,
        "catalog_match": match,
        "requires_nutrition_label": match is None and parse_event_type(item.get("event_type")) in PRODUCT_EVENT_TYPES,
    }


async def find_catalog_matches_for_items(db: Session, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return list(await asyncio.gather(*(_match_item_by_text(db, item) for item in items)))


def build_event_data_from_detection(item: dict[str, Any], catalog_match: dict[str, Any] | None) -> dict[str, Any]:
    name = item.get("name")
    brand = item.get("brand")
    product_id = (catalog_match or {}).get("id")
    event_type = item.get("event_type")

    if event_type == "food":
        serving = None
        if catalog_match and catalog_match.get("serving_quantity"):
            serving = format_serving_size(
                {"quantity": catalog_match.get("serving_quantity"), "unit": catalog_match.get("serving_unit")}
            )
        return {
            "description": f"{brand} {name}" if brand else name,
            "product_catalog_id": product_id,
            "calories": (catalog_match or {}).get("calories"),
            "carbs": (catalog_match or {}).get("carbs"),
            "protein": (catalog_match or {}).get("protein"),
            "fat": (catalog_match or {}).get("fat"),
            "serving_size": serving,
        }

    # Dosage is filled in after the quantity question.
    return {"name": name, "brand": brand or None, "product_catalog_id": product_id, "dosage": None, "units": None}


def quantified_event_data(
    item: dict[str, Any], product: dict[str, Any] | None, quantity: int | float
) -> tuple[EventType, dict[str, Any], list[str]]:
    """Event data for a detected item once its quantity is known, with any missing required fields."""
    event_type = parse_event_type(item.get("event_type")) or EventType.SUPPLEMENT
    event_data = build_supplement_event_data(product, quantity, detected_info=item)
    if event_type == EventType.FOOD:
        name = event_data.get("name")
        brand = event_data.get("brand")
        event_data["description"] = f"{brand} {name}" if brand and name else name
    return event_type, event_data, missing_required_fields(event_type, event_data)


def quantity_question(item: dict[str, Any]) -> str:
    return f"How many {item.get('form') or DEFAULT_FORM} of {item.get('name')} did you take?"


def _summarize_match(entry: dict[str, Any]) -> dict[str, Any]:
    item = entry["item"]
    match = entry["catalog_match"]
    return {
        "name": item.get("name"),
        "brand": item.get("brand"),
        "event_type": item.get("event_type"),
        "catalog_match": {
            "product_id": match["id"],
            "product_name": match["product_name"],
            "brand": match.get("brand"),
            "match_method": match["match_method"],
        } if match else None,
        "requires_nutrition_label": entry["requires_nutrition_label"],
    }


async def process_photo_input(
    db: Session,
    provider: AIProvider,
    image_bytes: bytes,
    user_id: str,
    photo_url: str | None = None,
    capture_method: str = "photo",
) -> dict[str, Any]:
    if not user_id:
        raise InputValidationError("user_id is required")
    if not image_bytes:
        raise InputValidationError("Image is empty")

    analysis = await detect_products(provider, image_bytes)
    items = analysis.get("items") or []
    if not analysis.get("success") or not items:
        return {"success": False, "error": analysis.get("error") or "Could not identify any products in the photo"}

    if len(items) == 1:
        match = await find_catalog_match(db, provider, image_bytes, items[0])
        matches = [{
            "item": items[0],
            "catalog_match": match,
            "requires_nutrition_label": match is None
            and parse_event_type(items[0].get("event_type")) in PRODUCT_EVENT_TYPES,
        }]
    else:
        matches = await find_catalog_matches_for_items(db, items)

    for entry in matches:
        if entry["catalog_match"]:
            run_best_effort(
                db, "catalog_usage", increment_product_usage, db, entry["catalog_match"]["id"], user_id=user_id
            )

    matched_count = sum(1 for entry in matches if entry["catalog_match"])
    needs_label_count = sum(1 for entry in matches if entry["requires_nutrition_label"])
    summaries = [_summarize_match(entry) for entry in matches]
    vision_model = analysis.get("model") or provider.get_vision_model()

    audit = create_audit_record(
        db,
        user_id,
        f"[Photo: {len(items)} item(s) detected]",
        record_type=items[0].get("event_type"),
        nlp_model=vision_model,
        nlp_metadata={
            "photo_url": photo_url,
            "detected_items": items,
            "items_with_matches": summaries,
            "catalog_match": summaries[0]["catalog_match"] if len(items) == 1 else None,
            "confidence": analysis.get("confidence"),
            "capture_method": capture_method,
            "vision_model": vision_model,
        },
    )
    update_audit_record(db, audit, status=AuditStatus.AWAITING_CLARIFICATION)
    log_event(
        "info",
        "photo_processing",
        "Photo analyzed",
        {"items": len(items), "matched": matched_count, "needs_label": needs_label_count, "audit_id": audit.id},
        user_id,
    )

    if len(items) > 1:
        return {
            "success": True,
            "is_multi_item": True,
            "complete": False,
            "audit_id": audit.id,
            "photo_url": photo_url,
            "parsed": {"event_type": "multiple", "confidence": analysis.get("confidence"), "complete": False},
            "detected_items": [
                {
                    **entry["item"],
                    "catalog_match": entry["catalog_match"],
                    "requires_nutrition_label": entry["requires_nutrition_label"],
                    "selected": True,
                }
                for entry in matches
            ],
            "matched_count": matched_count,
            "needs_label_count": needs_label_count,
        }

    entry = matches[0]
    item = entry["item"]
    result: dict[str, Any] = {
        "success": True,
        "is_multi_item": False,
        "complete": False,
        "audit_id": audit.id,
        "photo_url": photo_url,
        "requires_nutrition_label": entry["requires_nutrition_label"],
        "parsed": {
            "event_type": item.get("event_type"),
            "event_data": build_event_data_from_detection(item, entry["catalog_match"]),
            "confidence": analysis.get("confidence"),
            "complete": False,
        },
        "detected_item": item,
        "catalog_match": entry["catalog_match"],
    }
    if not entry["requires_nutrition_label"]:
        result["missing_fields"] = ["quantity"]
        result["follow_up_question"] = quantity_question(item)
    return result


async def process_nutrition_label(
    provider: AIProvider,
    image_bytes: bytes,
    detected_item: dict[str, Any] | None,
    front_photo_url: str | None = None,
    label_photo_url: str | None = None,
) -> dict[str, Any]:
    """Extract label data for user review. Nothing is written to the catalog here."""
    if not detected_item:
        return {"success": False, "error": "No detected item provided for nutrition label processing"}
    if not detected_item.get("name"):
        return {"success": False, "error": "Detected item is missing product name"}

    extraction = await extract_nutrition_label(provider, image_bytes)
    if not extraction.get("success"):
        return {
            "success": False,
            "error": extraction.get("error"),
            "needs_retake": bool(extraction.get("needs_retake")),
        }

    data = extraction["data"]
    return {
        "success": True,
        "extracted_data": {
            "product_name": detected_item["name"],
            "brand": detected_item.get("brand") or None,
            "product_type": detected_item.get("event_type") or "supplement",
            "serving_quantity": data.get("serving_quantity"),
            "serving_unit": data.get("serving_unit"),
            "serving_weight_grams": data.get("serving_weight_grams"),
            "micros": data.get("micros") or {},
            "active_ingredients": data.get("active_ingredients") or [],
            "barcode": data.get("barcode") or None,
            "photo_front_url": front_photo_url,
            "photo_label_url": label_photo_url,
        },
    }


def _load_user_audit(db: Session, audit_id: int, user_id: str) -> AuditRecord:
    audit = db.get(AuditRecord, audit_id)
    if audit is None or audit.user_id != user_id:
        raise ConfirmationNotFoundError(f"No photo event {audit_id} for this user")
    return audit


def confirm_and_add_to_catalog(
    db: Session,
    product_data: dict[str, Any],
    audit_id: int,
    user_id: str,
) -> dict[str, Any]:
    audit = _load_user_audit(db, audit_id, user_id)
    try:
        product = add_product_to_catalog(db, product_data, user_id)
    except ConfirmationError as e:
        db.rollback()
        return {"success": False, "error": str(e)}

    update_audit_record(
        db,
        audit,
        status=AuditStatus.CATALOG_PRODUCT_CREATED,
        metadata={
            "product_catalog_id": product.id,
            "product_name": product.product_name,
            "catalog_match": {
                "product_id": product.id,
                "product_name": product.product_name,
                "brand": product.brand,
                "match_method": "label_scan",
            },
        },
    )
    return {"success": True, "catalog_product": catalog_product_to_dict(product)}


def _catalog_product(db: Session, product_id: Any) -> dict[str, Any] | None:
    if not product_id:
        return None
    try:
        product = db.get(ProductCatalog, int(product_id))
    except (TypeError, ValueError):
        return None
    return catalog_product_to_dict(product) if product is not None else None


def handle_follow_up_response(db: Session, audit_id: int, quantity_text: str, user_id: str) -> dict[str, Any]:
    quantity = parse_quantity(quantity_text)
    if not quantity or quantity <= 0:
        raise InputValidationError("Could not parse quantity from response")

    audit = _load_user_audit(db, audit_id, user_id)
    if audit.nlp_status not in _OPEN_PHOTO_STATUSES:
        raise ConfirmationConflictError(f"Photo event {audit_id} is already resolved")

    metadata = audit.nlp_metadata or {}
    detected_items = metadata.get("detected_items") or []
    if not detected_items:
        raise ConfirmationError("Missing detected item data in audit record")
    item = detected_items[0]

    product = _catalog_product(db, (metadata.get("catalog_match") or {}).get("product_id"))
    event_type, event_data, missing = quantified_event_data(item, product, quantity)
    if missing:
        raise IncompleteEventError(f"Photo event {audit_id} is missing required fields", missing)

    row = create_voice_event(
        db,
        user_id,
        event_type.value,
        event_data,
        None,
        audit.id,
        "photo",
        audit=audit,
        audit_status=AuditStatus.CLARIFICATION_SUCCESS,
        audit_metadata={
            "quantity_response": quantity_text,
            "parsed_quantity": quantity,
            "final_event_data": event_data,
        },
    )
    record_registry_use(
        db,
        user_id,
        row.event_type,
        event_data.get("name"),
        brand=event_data.get("brand"),
        external_product_id=str(product["id"]) if product else None,
        external_source=CATALOG_SOURCE if product else None,
    )
    return {"success": True, "complete": True, "event": voice_event_to_dict(row)}


def create_multi_item_events(
    db: Session,
    audit_id: int,
    items_with_quantities: list[dict[str, Any]],
    user_id: str,
    photo_url: str | None = None,
) -> dict[str, Any]:
    """One event per selected item; a failing item is reported, not fatal."""
    audit = _load_user_audit(db, audit_id, user_id)
    if audit.nlp_status not in _OPEN_PHOTO_STATUSES:
        raise ConfirmationConflictError(f"Photo event {audit_id} is already resolved")

    events: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    for entry in items_with_quantities:
        item = entry.get("item") or {}
        name = item.get("name") or "Unknown"
        quantity = entry.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity <= 0:
            errors.append({"item": name, "error": "Quantity must be a positive number"})
            continue

        product = _catalog_product(db, (entry.get("catalog_match") or {}).get("id"))
        event_type, event_data, missing = quantified_event_data(item, product, quantity)
        if missing:
            errors.append({"item": name, "error": f"Missing required fields: {', '.join(missing)}"})
            continue
        event_data["photo_url"] = photo_url
        try:
            row = create_voice_event(db, user_id, event_type.value, event_data, None, audit.id, "photo")
        except PersistenceError as e:
            logger.error(f"Error creating event for {name}: {e}")
            errors.append({"item": name, "error": str(e)})
            continue

        record_registry_use(
            db,
            user_id,
            row.event_type,
            event_data.get("name"),
            brand=event_data.get("brand"),
            external_product_id=str(product["id"]) if product else None,
            external_source=CATALOG_SOURCE if product else None,
        )
        events.append({**voice_event_to_dict(row), "item_name": name, "item_brand": item.get("brand")})

    update_audit_record(
        db,
        audit,
        status=AuditStatus.MULTI_ITEM_EVENTS_CREATED,
        metadata={
            "total_items": len(items_with_quantities),
            "events_created": len(events),
            "errors": errors or None,
        },
    )
    return {"success": not errors, "events": events, "errors": errors}
