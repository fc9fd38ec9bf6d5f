from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.search_policy import SEARCH_CONFIDENCE_THRESHOLD, should_search_products  # noqa: E402


def test_non_product_events_never_search():
    assert not should_search_products("glucose", {"value": 110, "units": "mg/dL"}, 20)
    assert not should_search_products("activity", {"activity_type": "run", "duration": 30}, 99)
    assert not should_search_products("nonsense", {}, 10)


def test_food_always_searches():
    assert should_search_products("food", {"description": "chicken thigh"}, 99)
    assert should_search_products("food", {"description": "oatmeal"}, None)


def test_low_confidence_always_searches_even_with_known_brand():
    data = {"name": "NOW Vitamin D", "dosage": "1"}
    assert should_search_products("supplement", data, SEARCH_CONFIDENCE_THRESHOLD)
    assert should_search_products("supplement", data, 75)
    assert not should_search_products("supplement", data, SEARCH_CONFIDENCE_THRESHOLD + 1)


def test_phonetic_transformation_forces_search():
    assert should_search_products(
        "supplement",
        {"name": "LMNT Lemonade", "dosage": "1"},
        95,
        user_input="element lemonade",
        classifier_output="LMNT Lemonade",
    )


def test_known_brand_without_transformation_skips_search():
    assert not should_search_products(
        "supplement",
        {"name": "NOW Vitamin D 5000 IU", "dosage": "1"},
        90,
        user_input="NOW Vitamin D",
        classifier_output="NOW Vitamin D 5000 IU",
    )
    assert not should_search_products("medication", {"name": "Advil", "dosage": "200 mg"}, 95)


def test_unbranded_high_confidence_product_searches():
    assert should_search_products("supplement", {"name": "Electrolyte Drink", "dosage": "1"}, 90)
    assert should_search_products("medication", {"name": "ibuprofen", "dosage": "200 mg"}, 97)
