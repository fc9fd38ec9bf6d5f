"""Event type schema table and the typed classification result.

Every event type declares required and optional `event_data` fields. An event is
complete when all required fields are present, non-null and not an empty string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EventType(str, Enum):
    FOOD = "food"
    GLUCOSE = "glucose"
    INSULIN = "insulin"
    ACTIVITY = "activity"
    SUPPLEMENT = "supplement"
    SAUNA = "sauna"
    MEDICATION = "medication"
    SYMPTOM = "symptom"


@dataclass(frozen=True)
class EventTypeSchema:
    required: tuple[str, ...]
    optional: tuple[str, ...] = ()


EVENT_TYPE_SCHEMAS: dict[EventType, EventTypeSchema] = {
    EventType.FOOD: EventTypeSchema(
        required=("description",),
        optional=("calories", "carbs", "protein", "fat", "serving_size"),
    ),
    EventType.GLUCOSE: EventTypeSchema(required=("value", "units"), optional=("context",)),
    EventType.INSULIN: EventTypeSchema(required=("value", "units", "insulin_type"), optional=("site",)),
    EventType.ACTIVITY: EventTypeSchema(
        required=("activity_type", "duration"),
        optional=("intensity", "distance", "calories_burned"),
    ),
    EventType.SUPPLEMENT: EventTypeSchema(required=("name", "dosage"), optional=("units",)),
    EventType.SAUNA: EventTypeSchema(required=("duration", "temperature"), optional=("temperature_units",)),
    EventType.MEDICATION: EventTypeSchema(required=("name", "dosage"), optional=("units", "route")),
    EventType.SYMPTOM: EventTypeSchema(required=("description",), optional=("severity", "duration")),
}

# Event types that describe a consumable product and can be matched against catalogs.
PRODUCT_EVENT_TYPES = frozenset({EventType.FOOD, EventType.SUPPLEMENT, EventType.MEDICATION})

DEFAULT_DOSAGE = "1 serving"
DEFAULT_UNITS = "serving"


def parse_event_type(raw: Any) -> EventType | None:
    try:
        return EventType(str(raw or "").strip().lower())
    except ValueError:
        return None


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def missing_required_fields(event_type: EventType, event_data: dict[str, Any] | None) -> list[str]:
    schema = EVENT_TYPE_SCHEMAS[event_type]
    data = event_data or {}
    return [name for name in schema.required if not _is_present(data.get(name))]


def is_complete(event_type: EventType, event_data: dict[str, Any] | None) -> bool:
    return not missing_required_fields(event_type, event_data)


def product_event_data(event_type: EventType, product_name: str) -> dict[str, Any]:
    """Event data for a product known only by name (registry hits, catalog overrides)."""
    if event_type == EventType.FOOD:
        return {"description": product_name}
    return {"name": product_name, "dosage": DEFAULT_DOSAGE, "units": DEFAULT_UNITS}


def product_query_text(event_data: dict[str, Any] | None, fallback: str = "") -> str:
    data = event_data or {}
    for key in ("description", "name"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return fallback


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClassifiedEvent:
    """A validated classification; `event_type` is the discriminant for `event_data`."""

    event_type: EventType
    event_data: dict[str, Any]
    confidence: int = 50
    event_time: datetime = field(default_factory=_now_utc)

    @property
    def complete(self) -> bool:
        return is_complete(self.event_type, self.event_data)

    @property
    def missing_fields(self) -> list[str]:
        return missing_required_fields(self.event_type, self.event_data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "event_data": dict(self.event_data),
            "event_time": self.event_time.isoformat(),
            "confidence": self.confidence,
            "complete": self.complete,
        }
