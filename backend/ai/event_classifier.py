import asyncio
import json
import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ai.providers import AIProvider
from config import settings
from db.models import VoiceEvent
from services.app_logger import log_event
from services.errors import ClassifierError, UnknownEventTypeError
from services.event_schema import EVENT_TYPE_SCHEMAS, ClassifiedEvent, parse_event_type

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 50
FREQUENT_ITEMS_LIMIT = 20

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

CLASSIFIER_PROMPT = """You are a health event parser. Analyze the user's text and extract structured health event data.

Return a JSON object with these fields:
- event_type: one of [{event_types}]
- event_data: object containing extracted fields based on event type
- event_time: ISO 8601 timestamp (use current time if not specified)
- confidence: number 0-100 indicating how confident you are in the parsing (100=certain, 50=moderate, 0=guessing)

Event type schemas:
{schemas}
{user_context}
Rules:
1. Always identify the most appropriate event_type
2. Extract all available information
3. Use reasonable defaults for units (mg/dL for glucose, units for insulin, etc.)
4. For food, try to extract nutritional info if mentioned
5. For timestamps, interpret relative times ("30 min jog" = started 30 min ago)
6. Match input against the user's frequent items for better accuracy (e.g., "element" -> "LMNT")

Example inputs and outputs:
Input: "Log 6 units of basal insulin"
Output: {{"event_type": "insulin", "event_data": {{"value": 6, "units": "units", "insulin_type": "basal"}}, "event_time": "2024-01-01T12:00:00Z", "confidence": 95}}

Input: "Ate large chicken thigh with broccoli"
Output: {{"event_type": "food", "event_data": {{"description": "large chicken thigh with broccoli", "protein": 45, "carbs": 8}}, "event_time": "2024-01-01T12:00:00Z", "confidence": 85}}

Current time (UTC): {now}"""

USER_CONTEXT_TEMPLATE = """
USER'S FREQUENTLY LOGGED ITEMS (use these for better accuracy):
{items}

When parsing input, check if it matches any of the user's frequent items. For example:
- "element lemonade" likely means "LMNT lemonade" if that's in their history
- Brand names and specific products should match their historical entries
"""


class RawClassification(BaseModel):
    """Untrusted classifier output; nothing past this model sees the raw blob."""

    event_type: str
    event_data: dict[str, Any]
    event_time: datetime | None = None
    confidence: float | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def _strip_event_type(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("event_time", mode="before")
    @classmethod
    def _lenient_time(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None

    @field_validator("confidence", mode="before")
    @classmethod
    def _lenient_confidence(cls, value: Any) -> Any:
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a model reply, tolerating markdown fences and prose."""
    cleaned = (text or "").strip()
    # Handle markdown code blocks
    if "```" in cleaned:
        cleaned = cleaned.split("```")[1]
        if cleaned.startswith("json"):
            cleaned = cleaned[4:]
        cleaned = cleaned.strip()

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text or "")
        if not match:
            raise ValueError("No JSON object found in model response")
        parsed = json.loads(match.group(0))

    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def get_user_recent_events(db: Session, user_id: str, limit: int | None = None) -> list[dict[str, Any]]:
    """Most recent events first. A read failure yields an empty history."""
    try:
        rows = (
            db.query(VoiceEvent)
            .filter(VoiceEvent.user_id == user_id)
            .order_by(VoiceEvent.event_time.desc(), VoiceEvent.id.desc())
            .limit(limit or settings.USER_HISTORY_LIMIT)
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error fetching user history for {user_id}: {e}")
        return []
    return [
        {"event_type": row.event_type, "event_data": row.event_data or {}, "event_time": row.event_time}
        for row in rows
    ]


def extract_frequent_items(history: list[dict[str, Any]]) -> list[tuple[str, int]]:
    counts: Counter[str] = Counter()
    for event in history:
        data = event.get("event_data") or {}
        event_type = event.get("event_type")
        if event_type == "food":
            value = data.get("description")
        elif event_type in ("supplement", "medication"):
            value = data.get("name")
        else:
            continue
        if isinstance(value, str) and value.strip():
            counts[value.strip().lower()] += 1
    return counts.most_common(FREQUENT_ITEMS_LIMIT)


def build_system_prompt(frequent_items: list[tuple[str, int]] | None = None) -> str:
    schemas = {
        event_type.value: {"required": list(schema.required), "optional": list(schema.optional)}
        for event_type, schema in EVENT_TYPE_SCHEMAS.items()
    }
    user_context = ""
    if frequent_items:
        lines = "\n".join(f'- "{item}" (logged {count}x)' for item, count in frequent_items)
        user_context = USER_CONTEXT_TEMPLATE.format(items=lines)
    return CLASSIFIER_PROMPT.format(
        event_types=", ".join(t.value for t in EVENT_TYPE_SCHEMAS),
        schemas=json.dumps(schemas, indent=2),
        user_context=user_context,
        now=datetime.now(timezone.utc).isoformat(timespec="seconds"),
    )


def _to_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_confidence(value: float | None) -> int:
    if not value:
        return DEFAULT_CONFIDENCE
    return max(0, min(100, int(round(value))))


def validate_classification(payload: dict[str, Any]) -> ClassifiedEvent:
    """Convert the raw classifier JSON into a typed event or raise."""
    try:
        raw = RawClassification.model_validate(payload)
    except ValidationError as e:
        raise ClassifierError(f"Invalid classifier response: missing or malformed fields ({e.error_count()} errors)") from e

    if not raw.event_type:
        raise ClassifierError("Invalid classifier response: missing event_type")

    event_type = parse_event_type(raw.event_type)
    if event_type is None:
        raise UnknownEventTypeError(f"Unknown event type: {raw.event_type}")

    return ClassifiedEvent(
        event_type=event_type,
        event_data=dict(raw.event_data),
        confidence=_normalize_confidence(raw.confidence),
        event_time=_to_utc(raw.event_time),
    )


class EventClassifier:
    """LLM-backed free-text to structured event classifier."""

    def __init__(self, provider: AIProvider, model: str | None = None, timeout_seconds: float | None = None):
        self.provider = provider
        self.model = model or provider.get_classifier_model()
        self.timeout_seconds = timeout_seconds or settings.CLASSIFIER_TIMEOUT_SECONDS

    async def classify(
        self,
        text: str,
        frequent_items: list[tuple[str, int]] | None = None,
        user_id: str | None = None,
    ) -> ClassifiedEvent:
        system = build_system_prompt(frequent_items)
        try:
            result = await asyncio.wait_for(
                self.provider.chat(
                    messages=[{"role": "user", "content": text}],
                    model=self.model,
                    system=system,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ClassifierError(f"Classifier timed out after {self.timeout_seconds}s") from e
        except Exception as e:
            raise ClassifierError(f"Classifier request failed: {e}") from e

        content = str((result or {}).get("content") or "")
        log_event(
            "info",
            "parsing",
            "Received classifier response",
            {"input_length": len(text), "response_length": len(content), "model": self.model},
            user_id,
        )

        try:
            payload = extract_json_object(content)
        except ValueError as e:
            log_event(
                "error",
                "parsing",
                "Failed to extract JSON from classifier response",
                {"response_preview": content[:500], "error_message": str(e)},
                user_id,
            )
            raise ClassifierError("Failed to extract JSON from classifier response") from e

        event = validate_classification(payload)
        log_event(
            "info",
            "parsing",
            "Successfully parsed event",
            {
                "event_type": event.event_type.value,
                "complete": event.complete,
                "confidence": event.confidence,
                "missing_fields": event.missing_fields,
            },
            user_id,
        )
        return event
