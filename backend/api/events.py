from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ai.event_classifier import EventClassifier
from ai.providers import AIProvider, get_provider
from config import settings
from db.database import get_db
from services.confirmation_service import ConfirmationChoice, resolve_confirmation
from services.errors import (
    ConfirmationError,
    ConfirmationNotFoundError,
    EventProcessingError,
    IncompleteEventError,
    InputValidationError,
)
from services.event_processor import process_input, voice_event_to_dict

router = APIRouter(prefix="/events", tags=["events"])


# --- Pydantic Schemas ---

class TextEventRequest(BaseModel):
    user_id: str
    text: str
    capture_method: str = "manual"
    api_key: Optional[str] = None
    ai_provider: Optional[str] = None
    transcription: Optional[dict[str, Any]] = None


class ConfirmEventRequest(BaseModel):
    user_id: str
    selected_option: Optional[int] = Field(default=None, ge=0)
    event_type: Optional[str] = None
    event_data: dict[str, Any] = Field(default_factory=dict)


def resolve_provider(api_key: str | None, provider_name: str | None) -> AIProvider:
    key = (api_key or settings.AI_API_KEY or "").strip()
    if not key:
        raise HTTPException(status_code=400, detail="An AI provider API key is required")
    try:
        return get_provider(
            provider_name or settings.DEFAULT_AI_PROVIDER,
            key,
            classifier_model=settings.CLASSIFIER_MODEL,
            vision_model=settings.VISION_MODEL,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def raise_http_error(exc: EventProcessingError) -> None:
    if isinstance(exc, InputValidationError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, ConfirmationNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, IncompleteEventError):
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "missing_fields": exc.missing_fields},
        ) from exc
    if isinstance(exc, ConfirmationError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/text")
async def create_text_event(req: TextEventRequest, db: Session = Depends(get_db)):
    """Classify free text and either log it or return what needs confirmation."""
    provider = resolve_provider(req.api_key, req.ai_provider)
    result = await process_input(
        db,
        req.text,
        req.user_id,
        EventClassifier(provider),
        capture_method=req.capture_method,
        transcription=req.transcription,
    )
    if not result.success:
        status = 400 if result.error_code == InputValidationError.code else 502
        raise HTTPException(status_code=status, detail={"error": result.error, "error_code": result.error_code})
    return result.to_dict()


@router.post("/{audit_id}/confirm")
def confirm_event(audit_id: int, req: ConfirmEventRequest, db: Session = Depends(get_db)):
    choice = ConfirmationChoice(
        selected_option=req.selected_option,
        event_type=req.event_type,
        event_data=req.event_data,
    )
    try:
        row = resolve_confirmation(db, audit_id, req.user_id, choice)
    except EventProcessingError as exc:
        raise_http_error(exc)
    return {"success": True, "complete": True, "event": voice_event_to_dict(row)}
