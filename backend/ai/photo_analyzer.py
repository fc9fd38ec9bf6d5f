import asyncio
import json
import logging

from ai.event_classifier import extract_json_object
from ai.providers import AIProvider
from config import settings
from services.event_schema import EVENT_TYPE_SCHEMAS, EventType, parse_event_type

logger = logging.getLogger(__name__)

BARCODE_CONFIDENCE_THRESHOLD = 80
DEFAULT_DETECTION_CONFIDENCE = 80

PRODUCT_DETECTION_PROMPT = """You are analyzing a photo that may contain one or more supplement/medication bottles or packages.

Detect ALL visible products in the photo, not just one.

For each product visible, extract:
- Product name (required)
- Brand name
- Form factor (capsules, tablets, softgels, gummies, powder, liquid)

Return JSON with:
{{
  "items": [
    {{"name": "string", "brand": "string", "form": "string", "event_type": "string"}}
  ],
  "confidence": 85
}}

Event type schemas:
{schemas}

Rules:
1. If multiple bottles/packages are visible, return ALL of them in the items array
2. Focus on clearly visible product names and brands
3. Don't try to read serving sizes or dosages - they are looked up separately
4. Distinguish between different products (don't merge multiple items into one)
5. event_type should be one of: supplement, medication, food"""

NUTRITION_LABEL_PROMPT = """Extract nutrition/supplement facts from this label photo.

Return structured JSON with:
{
  "serving_quantity": number,
  "serving_unit": string,
  "serving_weight_grams": number | null,
  "micros": {"nutrient_name": {"amount": number, "unit": "mg" | "mcg" | "g" | "IU" | "kcal"}},
  "active_ingredients": [{"name": string, "atc_code": string | null, "strength": string | null}],
  "barcode": string | null,
  "barcode_confidence": 0-100
}

For supplements: include all vitamins, minerals, and active compounds in micros.
For medications: include active ingredients with strength (e.g., "200mg").
For foods: include calories, protein, carbs, fat, fiber, sugar in micros.

If the label is unreadable or too blurry, return:
{"error": "Unable to read nutrition label", "readable": false}

Return ONLY valid JSON, no explanation."""

BARCODE_PROMPT = """Detect and extract the barcode from this image.

Look for:
- UPC-A (12 digits)
- EAN-13 (13 digits)
- Other standard product barcodes

Return JSON:
{"barcode": string | null, "format": "UPC-A" | "EAN-13" | "unknown" | null, "confidence": 0-100}

If no barcode is visible, return {"barcode": null, "format": null, "confidence": 0}."""


async def _ask_vision(provider: AIProvider, image_bytes: bytes, prompt: str, max_tokens: int = 2048) -> dict:
    result = await asyncio.wait_for(
        provider.chat_with_vision(
            messages=[{"role": "user", "content": prompt}],
            image_bytes=image_bytes,
            model=provider.get_vision_model(),
            max_tokens=max_tokens,
        ),
        timeout=settings.VISION_TIMEOUT_SECONDS,
    )
    return extract_json_object(str(result.get("content") or ""))


def _product_type(raw) -> str:
    parsed = parse_event_type(raw)
    if parsed in (EventType.SUPPLEMENT, EventType.MEDICATION, EventType.FOOD):
        return parsed.value
    return EventType.SUPPLEMENT.value


async def detect_products(provider: AIProvider, image_bytes: bytes) -> dict:
    """Detect every product visible in a photo."""
    schemas = {
        t.value: {"required": list(s.required), "optional": list(s.optional)}
        for t, s in EVENT_TYPE_SCHEMAS.items()
    }
    try:
        parsed = await _ask_vision(
            provider,
            image_bytes,
            PRODUCT_DETECTION_PROMPT.format(schemas=json.dumps(schemas, indent=2)),
        )
        raw_items = parsed.get("items")
        if not isinstance(raw_items, list):
            raise ValueError("Invalid response structure - missing items array")

        items = []
        for raw in raw_items:
            if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
                raise ValueError("Invalid item structure - missing name")
            items.append({
                "name": str(raw["name"]).strip(),
                "brand": (str(raw.get("brand")).strip() or None) if raw.get("brand") else None,
                "form": raw.get("form") or None,
                "event_type": _product_type(raw.get("event_type")),
            })

        return {
            "success": True,
            "items": items,
            "confidence": parsed.get("confidence") or DEFAULT_DETECTION_CONFIDENCE,
            "model": provider.get_vision_model(),
        }
    except Exception as e:
        logger.error(f"Product detection failed: {e}")
        return {"success": False, "items": [], "confidence": 0, "error": str(e)}


def _validate_label(data: dict) -> str | None:
    quantity = data.get("serving_quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity <= 0:
        return "Missing required field: serving_quantity"
    if not isinstance(data.get("serving_unit"), str) or not data["serving_unit"].strip():
        return "Missing required field: serving_unit"
    if not data.get("micros") and not data.get("active_ingredients"):
        return "Must have at least one nutrient or active ingredient"
    return None


async def extract_nutrition_label(provider: AIProvider, image_bytes: bytes) -> dict:
    try:
        parsed = await _ask_vision(provider, image_bytes, NUTRITION_LABEL_PROMPT)
    except Exception as e:
        logger.error(f"Nutrition label extraction failed: {e}")
        return {"success": False, "error": f"Failed to extract nutrition label: {e}"}

    if parsed.get("error") or parsed.get("readable") is False:
        return {
            "success": False,
            "error": parsed.get("error") or "Unable to read nutrition label",
            "needs_retake": True,
        }

    validation_error = _validate_label(parsed)
    if validation_error:
        return {"success": False, "error": validation_error}

    if parsed.get("barcode") and (parsed.get("barcode_confidence") or 0) < BARCODE_CONFIDENCE_THRESHOLD:
        parsed["barcode"] = None

    return {"success": True, "data": parsed}


async def detect_barcode(provider: AIProvider, image_bytes: bytes) -> dict:
    try:
        parsed = await _ask_vision(provider, image_bytes, BARCODE_PROMPT, max_tokens=256)
    except Exception as e:
        logger.error(f"Barcode detection failed: {e}")
        return {"success": False, "barcode": None, "error": str(e)}

    barcode = str(parsed.get("barcode") or "").strip()
    if not barcode:
        return {"success": False, "barcode": None}
    return {
        "success": True,
        "barcode": barcode,
        "format": parsed.get("format"),
        "confidence": parsed.get("confidence"),
    }
