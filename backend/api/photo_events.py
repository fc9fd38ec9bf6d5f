import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.events import raise_http_error, resolve_provider
from db.database import get_db
from services.errors import EventProcessingError
from services.photo_event_service import (
    confirm_and_add_to_catalog,
    create_multi_item_events,
    handle_follow_up_response,
    process_nutrition_label,
    process_photo_input,
)
from utils.image_utils import store_photo, validate_photo

router = APIRouter(prefix="/events/photo", tags=["photo-events"])


class QuantityRequest(BaseModel):
    user_id: str
    response: str


class ItemQuantity(BaseModel):
    item: dict[str, Any]
    catalog_match: Optional[dict[str, Any]] = None
    quantity: float = Field(gt=0)


class MultiItemRequest(BaseModel):
    user_id: str
    items: list[ItemQuantity]
    photo_url: Optional[str] = None


class CatalogProductRequest(BaseModel):
    user_id: str
    product: dict[str, Any]


async def _read_photo(file: UploadFile, user_id: str) -> tuple[bytes, str]:
    contents = await file.read()
    try:
        _mime, extension = validate_photo(contents, content_type=file.content_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return contents, store_photo(contents, user_id, extension)


@router.post("")
async def create_photo_event(
    user_id: str = Form(...),
    file: UploadFile = File(...),
    api_key: Optional[str] = Form(None),
    ai_provider: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    """Detect products in a photo and match them against the catalog."""
    provider = resolve_provider(api_key, ai_provider)
    contents, photo_url = await _read_photo(file, user_id)
    try:
        result = await process_photo_input(db, provider, contents, user_id, photo_url=photo_url)
    except EventProcessingError as exc:
        raise_http_error(exc)
    if not result.get("success"):
        raise HTTPException(status_code=502, detail=result.get("error"))
    return result


@router.post("/label")
async def read_nutrition_label(
    user_id: str = Form(...),
    detected_item: str = Form(...),
    file: UploadFile = File(...),
    front_photo_url: Optional[str] = Form(None),
    api_key: Optional[str] = Form(None),
    ai_provider: Optional[str] = Form(None),
):
    try:
        item = json.loads(detected_item)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="detected_item must be a JSON object") from exc
    if not isinstance(item, dict):
        raise HTTPException(status_code=400, detail="detected_item must be a JSON object")

    provider = resolve_provider(api_key, ai_provider)
    contents, label_url = await _read_photo(file, user_id)
    result = await process_nutrition_label(
        provider, contents, item, front_photo_url=front_photo_url, label_photo_url=label_url
    )
    if not result.get("success"):
        status = 422 if result.get("needs_retake") else 502
        raise HTTPException(status_code=status, detail=result)
    return result


@router.post("/{audit_id}/catalog")
def add_catalog_product(audit_id: int, req: CatalogProductRequest, db: Session = Depends(get_db)):
    try:
        result = confirm_and_add_to_catalog(db, req.product, audit_id, req.user_id)
    except EventProcessingError as exc:
        raise_http_error(exc)
    if not result.get("success"):
        raise HTTPException(status_code=409, detail=result.get("error"))
    return result


@router.post("/{audit_id}/quantity")
def answer_quantity(audit_id: int, req: QuantityRequest, db: Session = Depends(get_db)):
    try:
        return handle_follow_up_response(db, audit_id, req.response, req.user_id)
    except EventProcessingError as exc:
        raise_http_error(exc)


@router.post("/{audit_id}/items")
def create_items(audit_id: int, req: MultiItemRequest, db: Session = Depends(get_db)):
    try:
        return create_multi_item_events(
            db,
            audit_id,
            [entry.model_dump() for entry in req.items],
            req.user_id,
            photo_url=req.photo_url,
        )
    except EventProcessingError as exc:
        raise_http_error(exc)
