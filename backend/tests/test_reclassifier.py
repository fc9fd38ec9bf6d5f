from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.event_schema import ClassifiedEvent, EventType  # noqa: E402
from services.reclassifier import (  # noqa: E402
    SEMANTIC_RECLASSIFY_THRESHOLD,
    apply_reclassification,
    match_supplement_pattern,
    reclassify_food_description,
    semantic_supplement_score,
)


def _food(description: str) -> ClassifiedEvent:
    return ClassifiedEvent(event_type=EventType.FOOD, event_data={"description": description}, confidence=88)


def test_brand_pattern_rewrites_element_to_lmnt():
    event = _food("element citrus")
    result = apply_reclassification(event)

    assert result is not None
    assert result.tier == "pattern"
    assert result.rule == "lmnt"
    assert event.event_type == EventType.SUPPLEMENT
    assert event.event_data == {"name": "LMNT Citrus", "dosage": "1", "units": "pack"}


def test_brand_pattern_drops_serving_and_connector_words():
    hit = match_supplement_pattern("2 packs of element citrus")
    assert hit is not None
    assert hit.event_data == {"name": "LMNT Citrus", "dosage": "2", "units": "packs"}


def test_brand_pattern_without_flavor_uses_default_name():
    hit = match_supplement_pattern("LMNT")
    assert hit is not None
    assert hit.event_data["name"] == "LMNT Electrolyte Drink Mix"


def test_category_pattern_keeps_dose_from_text():
    hit = match_supplement_pattern("2 scoops of protein powder")
    assert hit is not None
    assert hit.rule == "protein_powder"
    assert hit.event_data == {"name": "Protein Powder", "dosage": "2", "units": "scoops"}

    creatine = match_supplement_pattern("creatine 5g")
    assert creatine is not None
    assert creatine.event_data == {"name": "Creatine Monohydrate", "dosage": "5", "units": "g"}


def test_scoring_tier_reclassifies_at_threshold():
    assert semantic_supplement_score("whey protein shake") == SEMANTIC_RECLASSIFY_THRESHOLD

    event = _food("whey protein shake")
    result = apply_reclassification(event)

    assert result is not None
    assert result.tier == "semantic"
    assert result.score == 0.7
    assert event.event_type == EventType.SUPPLEMENT
    assert event.event_data["name"] == "whey protein shake"
    assert event.event_data["dosage"] == "1 serving"


def test_scoring_tier_examples():
    assert reclassify_food_description("vitamin D capsules") is not None
    assert reclassify_food_description("magnesium powder") is not None
    assert reclassify_food_description("electrolyte drink mix") is not None
    assert semantic_supplement_score("vitamin D 1000 IU capsules") == 1.0


def test_plain_food_stays_food():
    for description in ("cocoa powder", "apple", "chicken breast", "orange juice"):
        event = _food(description)
        assert apply_reclassification(event) is None
        assert event.event_type == EventType.FOOD
        assert event.event_data == {"description": description}

    assert semantic_supplement_score("cocoa powder") == 0.2


def test_non_food_events_are_untouched():
    event = ClassifiedEvent(
        event_type=EventType.MEDICATION,
        event_data={"name": "magnesium", "dosage": "400 mg"},
    )
    assert apply_reclassification(event) is None
    assert event.event_type == EventType.MEDICATION
