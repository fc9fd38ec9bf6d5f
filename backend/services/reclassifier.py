"""Post-classification correction of items labelled "food" that are really supplements.

Two tiers:
- pattern tier: known brands and product categories, deterministic, wins outright
- scoring tier: weighted keyword groups, reclassifies at or above the threshold
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from services.event_schema import DEFAULT_DOSAGE, ClassifiedEvent, EventType

logger = logging.getLogger(__name__)

SEMANTIC_RECLASSIFY_THRESHOLD = 0.7

SUPPLEMENT_KEYWORD_WEIGHT = 0.5
DOSAGE_WEIGHT = 0.3
FORM_FACTOR_WEIGHT = 0.2
CATEGORY_WEIGHT = 0.4

SUPPLEMENT_KEYWORDS_RE = re.compile(
    r"\b(vitamins?|minerals?|magnesium|zinc|iron|calcium|potassium|protein|whey|casein|collagen|"
    r"creatine|electrolytes?|omega[\s-]?3s?|fish\s+oil|probiotics?|prebiotics?|supplements?|"
    r"melatonin|ashwagandha|turmeric|curcumin|coq10|b12|d3|biotin|glutamine)\b",
    re.IGNORECASE,
)
DOSAGE_RE = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(mg|mcg|iu|g|packs?|scoops?|tablets?|capsules?|softgels?|gumm(?:y|ies))\b",
    re.IGNORECASE,
)
FORM_FACTOR_RE = re.compile(
    r"\b(powder|shake|drink\s+mix|capsules?|tablets?|softgels?|gumm(?:y|ies))\b",
    re.IGNORECASE,
)
CATEGORY_RE = re.compile(
    r"\b(pre[\s-]?workout|post[\s-]?workout|sports\s+nutrition|multi[\s-]?vitamins?|nootropics?)\b",
    re.IGNORECASE,
)

# Words dropped when building a branded name from the user's description.
_SERVING_WORDS = {"pack", "packs", "packet", "packets", "stick", "sticks", "scoop", "scoops", "serving", "servings"}
_CONNECTOR_WORDS = {"of", "a", "an", "the"}


@dataclass(frozen=True)
class SupplementPattern:
    label: str
    pattern: re.Pattern
    default_name: str
    dosage: str
    units: str
    brand: str | None = None


SUPPLEMENT_PATTERNS: tuple[SupplementPattern, ...] = (
    SupplementPattern("lmnt", re.compile(r"\b(lmnt|element)\b", re.IGNORECASE), "LMNT Electrolyte Drink Mix", "1", "pack", brand="LMNT"),
    SupplementPattern("liquid_iv", re.compile(r"\bliquid\s*i\.?\s*v\b\.?", re.IGNORECASE), "Liquid I.V. Hydration Multiplier", "1", "stick", brand="Liquid I.V."),
    SupplementPattern("nuun", re.compile(r"\bnuun\b", re.IGNORECASE), "Nuun Sport Hydration Tablet", "1", "tablet", brand="Nuun"),
    SupplementPattern("dripdrop", re.compile(r"\bdrip\s*drop\b", re.IGNORECASE), "DripDrop ORS", "1", "stick", brand="DripDrop"),
    SupplementPattern("ultima", re.compile(r"\bultima\b", re.IGNORECASE), "Ultima Replenisher", "1", "scoop", brand="Ultima"),
    SupplementPattern(
        "protein_powder",
        re.compile(r"\b(protein\s+powder|whey\s+(isolate|concentrate)|scoops?\s+of\s+(whey|protein))\b", re.IGNORECASE),
        "Protein Powder",
        "1",
        "scoop",
    ),
    SupplementPattern("creatine", re.compile(r"\bcreatine\b", re.IGNORECASE), "Creatine Monohydrate", "5", "g"),
    SupplementPattern("pre_workout", re.compile(r"\bpre[\s-]?workout\b", re.IGNORECASE), "Pre-Workout", "1", "scoop"),
    SupplementPattern(
        "amino_acids",
        re.compile(r"\b(bcaas?|eaas?|amino\s+acids?)\b", re.IGNORECASE),
        "Amino Acids",
        "1",
        "scoop",
    ),
)


@dataclass(frozen=True)
class Reclassification:
    event_type: EventType
    event_data: dict[str, Any]
    tier: str  # pattern | semantic
    rule: str | None = None
    score: float | None = None


def _dose_from_text(text: str) -> tuple[str, str] | None:
    match = DOSAGE_RE.search(text)
    if not match:
        return None
    return match.group(1), match.group(2).lower()


def _branded_name(description: str, rule: SupplementPattern) -> str:
    remainder = rule.pattern.sub(" ", description)
    remainder = DOSAGE_RE.sub(" ", remainder)
    words = [w for w in re.findall(r"[A-Za-z0-9']+", remainder) if w.lower() not in _SERVING_WORDS | _CONNECTOR_WORDS]
    if not words:
        return rule.default_name
    return f"{rule.brand} {' '.join(w.capitalize() for w in words)}"


def match_supplement_pattern(description: str | None) -> Reclassification | None:
    text = (description or "").strip()
    if not text:
        return None

    for rule in SUPPLEMENT_PATTERNS:
        if not rule.pattern.search(text):
            continue
        name = _branded_name(text, rule) if rule.brand else rule.default_name
        dosage, units = _dose_from_text(text) or (rule.dosage, rule.units)
        return Reclassification(
            event_type=EventType.SUPPLEMENT,
            event_data={"name": name, "dosage": dosage, "units": units},
            tier="pattern",
            rule=rule.label,
        )
    return None


def semantic_supplement_score(description: str | None) -> float:
    text = description or ""
    score = 0.0
    if SUPPLEMENT_KEYWORDS_RE.search(text):
        score += SUPPLEMENT_KEYWORD_WEIGHT
    if DOSAGE_RE.search(text):
        score += DOSAGE_WEIGHT
    if FORM_FACTOR_RE.search(text):
        score += FORM_FACTOR_WEIGHT
    if CATEGORY_RE.search(text):
        score += CATEGORY_WEIGHT
    return round(min(score, 1.0), 2)


def reclassify_food_description(description: str | None) -> Reclassification | None:
    pattern_hit = match_supplement_pattern(description)
    if pattern_hit is not None:
        return pattern_hit

    score = semantic_supplement_score(description)
    if score < SEMANTIC_RECLASSIFY_THRESHOLD:
        return None
    return Reclassification(
        event_type=EventType.SUPPLEMENT,
        event_data={"name": (description or "").strip(), "dosage": DEFAULT_DOSAGE, "units": None},
        tier="semantic",
        score=score,
    )


def apply_reclassification(event: ClassifiedEvent) -> Reclassification | None:
    """Rewrite a food event in place when it looks like a supplement."""
    if event.event_type != EventType.FOOD:
        return None

    description = event.event_data.get("description")
    if not isinstance(description, str):
        return None

    result = reclassify_food_description(description)
    if result is None:
        return None

    logger.info(
        f"Reclassified food -> {result.event_type.value} via {result.tier} tier "
        f"(rule={result.rule}, score={result.score})"
    )
    event.event_type = result.event_type
    event.event_data = dict(result.event_data)
    return result
