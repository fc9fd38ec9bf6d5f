from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from utils.text_utils import (  # noqa: E402
    are_phonetically_close,
    detect_phonetic_transformation,
    fuzzy_key_match,
    normalize_product_key,
    phonetic_key,
    phonetic_variants,
)


def test_normalize_product_key_strips_punctuation_and_whitespace():
    assert normalize_product_key("  NOW Vitamin-D,  5000 IU!! ") == "now vitamind 5000 iu"
    assert normalize_product_key("Liquid I.V.") == "liquid iv"
    assert normalize_product_key(None) == ""
    assert normalize_product_key("   ") == ""


def test_normalize_product_key_is_idempotent():
    samples = ["  Hello,   World!! ", "a - b", "LMNT  Citrus Salt", "__x__", "Café  Crème", "3 scoops (whey)"]
    for sample in samples:
        once = normalize_product_key(sample)
        assert normalize_product_key(once) == once


def test_phonetic_key_drops_vowels():
    assert phonetic_key("element") == "lmnt"
    assert phonetic_key("Lemonade") == "lmnd"
    assert phonetic_key("") == ""


def test_phonetic_variants_per_word_then_all_words():
    assert phonetic_variants("element lemonade") == [
        "lmnt lemonade",
        "element lmnd",
        "lmnt lmnd",
    ]


def test_phonetic_variants_skip_unchanged_queries():
    assert phonetic_variants("vitamin") == ["vtmn"]
    assert phonetic_variants("lmnt") == []
    assert phonetic_variants("") == []


def test_are_phonetically_close_uses_consonant_containment():
    assert are_phonetically_close("element", "LMNT")
    assert are_phonetically_close("lmnt citrus", "element citrus salt")
    assert not are_phonetically_close("magnesium", "zinc")
    assert not are_phonetically_close("", "lmnt")


def test_detect_phonetic_transformation():
    assert detect_phonetic_transformation("element lemonade", "LMNT Lemonade")
    assert not detect_phonetic_transformation("LMNT lemonade", "LMNT Lemonade")
    # single-consonant forms never count
    assert not detect_phonetic_transformation("vitamin d", "vitamin do")
    assert not detect_phonetic_transformation(None, "LMNT")


def test_fuzzy_key_match_substring_and_word_order():
    assert fuzzy_key_match("mag", "magnesium glycinate")
    assert fuzzy_key_match("glycinate magnesium", "magnesium glycinate")
    assert fuzzy_key_match("magnesium", "doctors best magnesium glycinate")


def test_fuzzy_key_match_ignores_words_that_only_sound_alike():
    assert not fuzzy_key_match("citrus element", "citrus lmnt")
    assert not fuzzy_key_match("beer", "protein bar")
    assert not fuzzy_key_match("pesto", "pasta")


def test_fuzzy_key_match_rejects_unrelated_products():
    assert not fuzzy_key_match("vitamin c", "magnesium")
    assert not fuzzy_key_match("fish oil", "whey isolate")
    assert not fuzzy_key_match("", "magnesium")
