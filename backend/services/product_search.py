"""Product lookup across external catalogs.

A query and its phonetic variants are fanned out to every source concurrently.
Each source swallows its own failures (timeouts, HTTP errors, open circuit) and
contributes an empty list, so a single outage never aborts the aggregation.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from services.app_logger import log_event
from services.errors import SearchSourceError
from services.product_catalog import search_catalog
from utils.text_utils import are_phonetically_close, normalize_product_key, phonetic_variants

logger = logging.getLogger(__name__)

MAX_RESULTS = 10
PRIMARY_QUERY_LIMIT = 12
VARIANT_QUERY_LIMIT = 8

EXACT_MATCH_SCORE = 100
CONTAINS_MATCH_SCORE = 80
WORD_OVERLAP_MAX_SCORE = 60
BRAND_MATCH_BOOST = 20
PHONETIC_MATCH_BOOST = 15

USER_AGENT = "HealthEventLogger/1.0"


@dataclass
class ProductSearchResult:
    source: str
    id: str
    name: str
    brand: str | None = None
    serving_size: str | None = None
    nutrients: dict[str, Any] = field(default_factory=dict)
    confidence: int = 0
    category: str | None = None
    event_type: str | None = None  # known category mapped onto an event type

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def calculate_match_confidence(query: str, product_name: str | None, brand: str | None) -> int:
    """Score 0-100 for how well a catalog name/brand matches the query."""
    if not product_name or not (query or "").strip():
        return 0

    query_lower = query.lower().strip()
    name_lower = product_name.lower().strip()
    brand_lower = (brand or "").lower().strip()

    if name_lower == query_lower:
        score = float(EXACT_MATCH_SCORE)
    elif query_lower in name_lower:
        score = float(CONTAINS_MATCH_SCORE)
    else:
        query_words = query_lower.split()
        name_words = name_lower.split()
        matching = [
            qw for qw in query_words
            if any(nw in qw or qw in nw for nw in name_words)
        ]
        score = (len(matching) / len(query_words)) * WORD_OVERLAP_MAX_SCORE if query_words else 0.0

    if brand_lower and brand_lower in query_lower:
        score += BRAND_MATCH_BOOST

    if are_phonetically_close(query_lower, name_lower) or (
        brand_lower and are_phonetically_close(query_lower, brand_lower)
    ):
        score += PHONETIC_MATCH_BOOST

    return max(0, min(100, int(math.floor(score + 0.5))))


def category_event_type(category: str | None) -> str | None:
    """Map a catalog category onto an event type when it is unambiguous."""
    text = (category or "").lower()
    if not text:
        return None
    if any(token in text for token in ("medication", "medicine", "drug", "pharmac")):
        return "medication"
    if any(token in text for token in ("supplement", "vitamin")):
        return "supplement"
    return None


def dedupe_key(result: ProductSearchResult) -> str:
    return (normalize_product_key(result.name) + normalize_product_key(result.brand)).replace(" ", "")


# ---------------------------------------------------------------------------
# Circuit breaker (per source)
# ---------------------------------------------------------------------------

_CB_LOCK = threading.Lock()
_CB_STATE: dict[str, dict[str, float | int]] = {}


def _cb_should_allow(name: str) -> bool:
    now = time.monotonic()
    with _CB_LOCK:
        state = _CB_STATE.setdefault(name, {"failures": 0, "open_until": 0.0})
        return float(state.get("open_until", 0.0)) <= now


def _cb_record_success(name: str) -> None:
    with _CB_LOCK:
        state = _CB_STATE.setdefault(name, {"failures": 0, "open_until": 0.0})
        state["failures"] = 0
        state["open_until"] = 0.0


def _cb_record_failure(name: str) -> None:
    threshold = max(int(settings.PRODUCT_SEARCH_CIRCUIT_FAIL_THRESHOLD), 1)
    open_seconds = max(int(settings.PRODUCT_SEARCH_CIRCUIT_OPEN_SECONDS), 5)
    now = time.monotonic()
    with _CB_LOCK:
        state = _CB_STATE.setdefault(name, {"failures": 0, "open_until": 0.0})
        failures = int(state.get("failures", 0)) + 1
        state["failures"] = failures
        if failures >= threshold:
            state["open_until"] = now + open_seconds


def reset_circuits() -> None:
    with _CB_LOCK:
        _CB_STATE.clear()


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class ProductSource(ABC):
    """A product catalog queried by the aggregator."""

    name = "source"

    @abstractmethod
    async def fetch(self, query: str, limit: int) -> list[ProductSearchResult]:
        """Return raw hits; may raise."""
        ...

    async def search(self, query: str, limit: int) -> list[ProductSearchResult]:
        """Best-effort search scored against `query`. Never raises."""
        if not _cb_should_allow(self.name):
            logger.warning(f"{self.name} circuit open, skipping search for {query!r}")
            return []
        try:
            hits = await asyncio.wait_for(
                self.fetch(query, limit),
                timeout=max(int(settings.PRODUCT_SEARCH_TIMEOUT_SECONDS), 1),
            )
        except Exception as e:  # noqa: BLE001
            _cb_record_failure(self.name)
            logger.error(f"Product search failed for source {self.name}: {e!r}")
            return []

        _cb_record_success(self.name)
        for hit in hits:
            hit.confidence = calculate_match_confidence(query, hit.name, hit.brand)
        return sorted(hits, key=lambda r: r.confidence, reverse=True)


class OpenFoodFactsSource(ProductSource):
    name = "openfoodfacts"

    def __init__(self, base_url: str | None = None):
        self.base_url = base_url or settings.OPENFOODFACTS_SEARCH_URL

    async def fetch(self, query: str, limit: int) -> list[ProductSearchResult]:
        params = {
            "search_terms": query,
            "search_simple": "1",
            "action": "process",
            "json": "1",
            "page_size": str(limit),
        }
        async with httpx.AsyncClient(timeout=settings.PRODUCT_SEARCH_TIMEOUT_SECONDS, follow_redirects=True) as client:
            resp = await client.get(self.base_url, params=params, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict):
            raise SearchSourceError(f"Unexpected {self.name} payload: {type(data).__name__}")

        results: list[ProductSearchResult] = []
        for product in data.get("products") or []:
            if not isinstance(product, dict):
                continue
            name = product.get("product_name") or product.get("product_name_en")
            if not name:
                continue
            nutriments = product.get("nutriments") or {}
            category = product.get("categories")
            results.append(
                ProductSearchResult(
                    source=self.name,
                    id=str(product.get("code") or ""),
                    name=str(name),
                    brand=product.get("brands") or None,
                    serving_size=product.get("serving_size") or None,
                    nutrients={
                        "calories": nutriments.get("energy-kcal_100g"),
                        "protein": nutriments.get("proteins_100g"),
                        "carbs": nutriments.get("carbohydrates_100g"),
                        "fat": nutriments.get("fat_100g"),
                    },
                    category=category,
                    event_type=category_event_type(category),
                )
            )
        return results


_USDA_NUTRIENT_FIELDS = {
    "Energy": "calories",
    "Protein": "protein",
    "Carbohydrate, by difference": "carbs",
    "Total lipid (fat)": "fat",
}


class UsdaFoodDataSource(ProductSource):
    name = "usda"

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self.api_key = api_key if api_key is not None else settings.USDA_API_KEY
        self.base_url = base_url or settings.USDA_SEARCH_URL

    @property
    def enabled(self) -> bool:
        key = (self.api_key or "").strip()
        return bool(key) and key != "your_usda_api_key_here"

    async def fetch(self, query: str, limit: int) -> list[ProductSearchResult]:
        if not self.enabled:
            return []
        params = {"api_key": self.api_key, "query": query, "pageSize": str(limit)}
        async with httpx.AsyncClient(timeout=settings.PRODUCT_SEARCH_TIMEOUT_SECONDS, follow_redirects=True) as client:
            resp = await client.get(self.base_url, params=params, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict):
            raise SearchSourceError(f"Unexpected {self.name} payload: {type(data).__name__}")

        results: list[ProductSearchResult] = []
        for food in data.get("foods") or []:
            if not isinstance(food, dict) or not food.get("description"):
                continue
            nutrients: dict[str, Any] = {}
            for nutrient in food.get("foodNutrients") or []:
                key = _USDA_NUTRIENT_FIELDS.get(str(nutrient.get("nutrientName") or ""))
                if key:
                    nutrients[key] = nutrient.get("value")
            serving_size = None
            if food.get("servingSize"):
                serving_size = f"{food.get('servingSize')} {food.get('servingSizeUnit') or ''}".strip()
            category = food.get("foodCategory")
            results.append(
                ProductSearchResult(
                    source=self.name,
                    id=str(food.get("fdcId") or ""),
                    name=str(food["description"]),
                    brand=food.get("brandOwner") or None,
                    serving_size=serving_size,
                    nutrients=nutrients,
                    category=category,
                    event_type=category_event_type(category),
                )
            )
        return results


class CatalogProductSource(ProductSource):
    """The local product catalog; its product type is a trusted category."""

    name = "catalog"

    def __init__(self, db: Session):
        self.db = db

    async def fetch(self, query: str, limit: int) -> list[ProductSearchResult]:
        try:
            rows = search_catalog(self.db, query, limit=limit)
        except SQLAlchemyError:
            # The session is shared with the request; leave it usable.
            self.db.rollback()
            raise
        results: list[ProductSearchResult] = []
        for row in rows:
            serving_size = None
            if row.serving_quantity and row.serving_unit:
                serving_size = f"{row.serving_quantity:g} {row.serving_unit}"
            results.append(
                ProductSearchResult(
                    source=self.name,
                    id=str(row.id),
                    name=row.product_name,
                    brand=row.brand,
                    serving_size=serving_size,
                    nutrients={
                        "calories": row.calories,
                        "protein": row.protein,
                        "carbs": row.carbs,
                        "fat": row.fat,
                    },
                    category=row.product_type,
                    event_type=row.product_type,
                )
            )
        return results


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class ProductSearchAggregator:
    def __init__(self, sources: list[ProductSource]):
        self.sources = list(sources)

    async def search_all(self, query: str | None, user_id: str | None = None) -> list[ProductSearchResult]:
        """Ranked, de-duplicated results for a query and its phonetic variants.

        Equal confidences keep their first-seen order (query variant order, then
        source order).
        """
        base_query = (query or "").strip()
        if not base_query or not self.sources:
            return []

        queries = [base_query] + phonetic_variants(base_query)
        calls = []
        for index, variant in enumerate(queries):
            limit = PRIMARY_QUERY_LIMIT if index == 0 else VARIANT_QUERY_LIMIT
            for source in self.sources:
                calls.append(source.search(variant, limit))

        batches = await asyncio.gather(*calls)

        unique: list[ProductSearchResult] = []
        seen: set[str] = set()
        for batch in batches:
            for result in batch:
                key = dedupe_key(result)
                if key in seen:
                    continue
                seen.add(key)
                unique.append(result)

        ranked = sorted(unique, key=lambda r: r.confidence, reverse=True)[:MAX_RESULTS]
        log_event(
            "info",
            "product_search",
            "Product search completed",
            {
                "search_query": base_query,
                "variants": queries[1:],
                "results_count": len(ranked),
                "top_results": [
                    {"name": r.name, "brand": r.brand, "confidence": r.confidence}
                    for r in ranked[:3]
                ],
            },
            user_id,
        )
        return ranked


def build_default_aggregator(db: Session | None = None) -> ProductSearchAggregator:
    sources: list[ProductSource] = [OpenFoodFactsSource(), UsdaFoodDataSource()]
    if db is not None:
        sources.append(CatalogProductSource(db))
    return ProductSearchAggregator(sources)
