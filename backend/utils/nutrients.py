"""Quantity parsing and per-serving nutrient scaling for photo-logged products."""

import math
import re
from typing import Any

_FIRST_NUMBER_RE = re.compile(r"(\d+)")
_LEADING_INT_RE = re.compile(r"^[+-]?\d+")

WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

DEFAULT_FORM = "capsule"


def parse_quantity(response: str | None) -> int | None:
    """Parse "2", "3 capsules" or "two pills" into a positive count."""
    if not response:
        return None

    cleaned = response.strip().lower()
    leading = _LEADING_INT_RE.match(cleaned)
    if leading and int(leading.group(0)) > 0:
        return int(leading.group(0))

    match = _FIRST_NUMBER_RE.search(cleaned)
    if match:
        return int(match.group(1))

    for word, number in WORD_NUMBERS.items():
        if word in cleaned:
            return number
    return None


def format_serving_size(serving_size: dict[str, Any] | None) -> str | None:
    if not serving_size:
        return None
    quantity = serving_size.get("quantity")
    unit = serving_size.get("unit")
    if quantity and unit:
        suffix = "s" if quantity > 1 else ""
        return f"{quantity} {unit}{suffix}"
    return None


def _round_1(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def calculate_consumed_nutrients(product: dict[str, Any] | None, amount_consumed: float) -> dict[str, dict[str, Any]]:
    """Scale a product's per-serving micros to the amount actually taken.

    Returns an empty dict when the product has no micros or no usable serving size.
    """
    micros = (product or {}).get("micros")
    if not isinstance(micros, dict) or not micros:
        return {}

    serving_quantity = (product or {}).get("serving_quantity")
    if not serving_quantity or serving_quantity <= 0:
        return {}

    ratio = amount_consumed / serving_quantity
    calculated: dict[str, dict[str, Any]] = {}
    for nutrient, data in micros.items():
        if not isinstance(data, dict):
            continue
        amount = data.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            continue
        calculated[nutrient] = {"amount": _round_1(amount * ratio), "unit": data.get("unit")}
    return calculated


def build_supplement_event_data(
    catalog_product: dict[str, Any] | None,
    amount_consumed: int | float,
    is_manual_override: bool = False,
    user_edited_nutrients: dict[str, Any] | None = None,
    detected_info: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if not catalog_product:
        info = detected_info or {}
        return {
            "product_catalog_id": None,
            "name": info.get("name") or "Unknown",
            "brand": info.get("brand") or None,
            "dosage": str(amount_consumed),
            "units": info.get("form") or DEFAULT_FORM,
        }

    if is_manual_override and user_edited_nutrients:
        nutrients = user_edited_nutrients
    else:
        nutrients = calculate_consumed_nutrients(catalog_product, amount_consumed)

    return {
        "product_catalog_id": catalog_product.get("id"),
        "name": catalog_product.get("product_name"),
        "brand": catalog_product.get("brand"),
        "amount_consumed": amount_consumed,
        "unit": catalog_product.get("serving_unit"),
        "dosage": str(amount_consumed),
        "units": catalog_product.get("serving_unit"),
        "calculated_nutrients": nutrients,
        "is_manual_override": is_manual_override,
    }
