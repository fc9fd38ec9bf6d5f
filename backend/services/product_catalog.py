"""Shared product catalog built from scanned labels and barcodes."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from db.models import ProductCatalog
from services.app_logger import log_event
from services.errors import ConfirmationError
from services.event_schema import PRODUCT_EVENT_TYPES, parse_event_type
from utils.text_utils import normalize_product_key

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10


class DuplicateBarcodeError(ConfirmationError):
    code = "duplicate_barcode"


def search_catalog(db: Session, query: str | None, limit: int = DEFAULT_SEARCH_LIMIT) -> list[ProductCatalog]:
    """Products whose name or brand contains every word of the query, most used first."""
    words = normalize_product_key(query).split()
    if not words:
        return []

    conditions = [
        or_(
            ProductCatalog.product_name.ilike(f"%{word}%"),
            ProductCatalog.brand.ilike(f"%{word}%"),
            ProductCatalog.product_key.ilike(f"%{word}%"),
        )
        for word in words
    ]
    return (
        db.query(ProductCatalog)
        .filter(*conditions)
        .order_by(ProductCatalog.times_logged.desc(), ProductCatalog.id.asc())
        .limit(max(int(limit), 1))
        .all()
    )


def lookup_by_barcode(db: Session, barcode: str | None) -> ProductCatalog | None:
    code = (barcode or "").strip()
    if not code:
        return None
    return db.query(ProductCatalog).filter(ProductCatalog.barcode == code).first()


def increment_product_usage(db: Session, product_id: int) -> None:
    """Bump the usage counter. Caller commits."""
    product = db.get(ProductCatalog, product_id)
    if product is None:
        raise LookupError(f"Catalog product {product_id} not found")
    product.times_logged = int(product.times_logged or 0) + 1
    db.flush()


def add_product_to_catalog(db: Session, product: dict[str, Any], user_id: str | None) -> ProductCatalog:
    name = str(product.get("product_name") or "").strip()
    if not name:
        raise ConfirmationError("Product name is required")

    product_type = parse_event_type(product.get("product_type") or "supplement")
    if product_type not in PRODUCT_EVENT_TYPES:
        raise ConfirmationError(f"Unsupported product type {product.get('product_type')!r}")

    barcode = (product.get("barcode") or "").strip() or None
    if barcode and lookup_by_barcode(db, barcode) is not None:
        raise DuplicateBarcodeError("A product with this barcode already exists")

    row = ProductCatalog(
        barcode=barcode,
        product_key=normalize_product_key(name),
        product_name=name,
        brand=product.get("brand") or None,
        product_type=product_type.value,
        serving_quantity=product.get("serving_quantity"),
        serving_unit=product.get("serving_unit"),
        serving_weight_grams=product.get("serving_weight_grams"),
        calories=product.get("calories"),
        protein=product.get("protein"),
        carbs=product.get("carbs"),
        fat=product.get("fat"),
        fiber=product.get("fiber"),
        sugar=product.get("sugar"),
        micros=product.get("micros") or {},
        active_ingredients=product.get("active_ingredients") or [],
        photo_front_url=product.get("photo_front_url"),
        photo_label_url=product.get("photo_label_url"),
        submitted_by_user_id=user_id,
        verification_status="unverified",
        times_logged=0,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    log_event(
        "info",
        "catalog",
        "Product added to catalog",
        {"product_id": row.id, "product_name": name, "product_type": row.product_type},
        user_id,
    )
    return row


def catalog_product_to_dict(product: ProductCatalog) -> dict[str, Any]:
    return {
        "id": product.id,
        "barcode": product.barcode,
        "product_name": product.product_name,
        "brand": product.brand,
        "product_type": product.product_type,
        "serving_quantity": product.serving_quantity,
        "serving_unit": product.serving_unit,
        "calories": product.calories,
        "protein": product.protein,
        "carbs": product.carbs,
        "fat": product.fat,
        "micros": product.micros or {},
        "verification_status": product.verification_status,
        "times_logged": product.times_logged,
    }
