"""Decides whether a classified event needs an external product lookup."""

from __future__ import annotations

import logging
from typing import Any

from services.event_schema import EventType, parse_event_type, product_query_text
from utils.text_utils import detect_phonetic_transformation, normalize_product_key

logger = logging.getLogger(__name__)

# Confidence at or below this always triggers verification.
SEARCH_CONFIDENCE_THRESHOLD = 83

KNOWN_SUPPLEMENT_BRANDS = (
    "now", "thorne", "jarrow", "lmnt", "nature made", "garden of life", "pure encapsulations",
    "life extension", "nordic naturals", "optimum nutrition", "doctors best",
    "solgar", "kirkland", "natures bounty", "liquid iv", "nuun", "momentous",
    "ag1", "athletic greens", "transparent labs", "klean athlete", "centrum", "olly",
    "advil", "tylenol", "motrin", "aleve", "bayer", "excedrin", "zyrtec", "claritin",
)


def _contains_known_brand(text: str) -> bool:
    lowered = f" {normalize_product_key(text)} "
    for brand in KNOWN_SUPPLEMENT_BRANDS:
        if f" {brand} " in lowered:
            return True
    return False


def should_search_products(
    event_type: str | EventType,
    event_data: dict[str, Any] | None,
    confidence: float | int | None,
    user_input: str | None = None,
    classifier_output: str | None = None,
) -> bool:
    parsed_type = parse_event_type(event_type)
    if parsed_type not in {EventType.FOOD, EventType.SUPPLEMENT, EventType.MEDICATION}:
        return False

    if parsed_type == EventType.FOOD:
        return True

    score = float(confidence) if confidence is not None else 0.0
    if score <= SEARCH_CONFIDENCE_THRESHOLD:
        return True

    if user_input and classifier_output and detect_phonetic_transformation(user_input, classifier_output):
        logger.info(f"Phonetic transformation detected: {user_input!r} -> {classifier_output!r}")
        return True

    description = product_query_text(event_data, fallback=classifier_output or "")
    if _contains_known_brand(description):
        return False

    return True
