from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.photo_analyzer import extract_nutrition_label  # noqa: E402
from ai.providers.base import AIProvider  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import AuditRecord, ProductCatalog, UserProductRegistry, VoiceEvent  # noqa: E402
from services.errors import ConfirmationConflictError, InputValidationError  # noqa: E402
from services.event_processor import AuditStatus  # noqa: E402
from services.photo_event_service import (  # noqa: E402
    confirm_and_add_to_catalog,
    create_multi_item_events,
    handle_follow_up_response,
    process_nutrition_label,
    process_photo_input,
)
from utils.nutrients import (  # noqa: E402
    build_supplement_event_data,
    calculate_consumed_nutrients,
    format_serving_size,
    parse_quantity,
)

JPEG = b"\xff\xd8\xff\xe0fake-jpeg-bytes"


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


class FakeVisionProvider(AIProvider):
    name = "fake"
    DEFAULT_VISION_MODEL = "fake-vision"

    def __init__(self, items=None, barcode=None, label=None):
        super().__init__(api_key="test")
        self.items = items or []
        self.barcode = barcode
        self.label = label or {}
        self.prompts: list[str] = []

    async def chat(self, messages, model, system="", max_tokens=1024):
        raise AssertionError("text chat is not used for photos")

    async def chat_with_vision(self, messages, image_bytes, model, system="", max_tokens=2048):
        prompt = messages[0]["content"]
        self.prompts.append(prompt)
        if prompt.startswith("Detect and extract the barcode"):
            payload = {"barcode": self.barcode, "format": "EAN-13" if self.barcode else None, "confidence": 90}
        elif prompt.startswith("Extract nutrition"):
            payload = self.label
        else:
            payload = {"items": self.items, "confidence": 88}
        return {"content": f"```json\n{json.dumps(payload)}\n```", "model": model}


def _catalog_vitamin_d(db, barcode=None):
    row = ProductCatalog(
        barcode=barcode,
        product_key="vitamin d3",
        product_name="Vitamin D3",
        brand="NOW",
        product_type="supplement",
        serving_quantity=1,
        serving_unit="softgel",
        micros={"vitamin_d3": {"amount": 125, "unit": "mcg"}},
        times_logged=0,
    )
    db.add(row)
    db.commit()
    return row


VITAMIN_D_ITEM = {"name": "Vitamin D3", "brand": "NOW", "form": "softgels", "event_type": "supplement"}
FISH_OIL_ITEM = {"name": "Omega-3 Fish Oil", "brand": "Nordic Naturals", "form": "softgels", "event_type": "supplement"}


def test_parse_quantity_variants():
    assert parse_quantity("2") == 2
    assert parse_quantity("3 capsules") == 3
    assert parse_quantity("took 4 of them") == 4
    assert parse_quantity("two pills") == 2
    assert parse_quantity("a few") is None
    assert parse_quantity("") is None


def test_consumed_nutrients_scale_with_serving():
    product = {
        "serving_quantity": 2,
        "micros": {"magnesium": {"amount": 144, "unit": "mg"}, "note": "see label"},
    }
    assert calculate_consumed_nutrients(product, 3) == {"magnesium": {"amount": 216.0, "unit": "mg"}}
    assert calculate_consumed_nutrients({"serving_quantity": 3, "micros": {"zinc": {"amount": 10, "unit": "mg"}}}, 1) == {
        "zinc": {"amount": 3.3, "unit": "mg"}
    }
    assert calculate_consumed_nutrients({"serving_quantity": 0, "micros": {"zinc": {"amount": 10}}}, 1) == {}
    assert calculate_consumed_nutrients({"serving_quantity": 1, "micros": {}}, 1) == {}


def test_format_serving_size():
    assert format_serving_size({"quantity": 2, "unit": "capsule"}) == "2 capsules"
    assert format_serving_size({"quantity": 1, "unit": "scoop"}) == "1 scoop"
    assert format_serving_size(None) is None


def test_supplement_event_data_without_catalog_product():
    data = build_supplement_event_data(None, 2, detected_info={"name": "Vitamin D3", "brand": "NOW", "form": "softgel"})
    assert data == {
        "product_catalog_id": None,
        "name": "Vitamin D3",
        "brand": "NOW",
        "dosage": "2",
        "units": "softgel",
    }


def test_single_item_text_match_then_quantity_follow_up():
    db = _new_db()
    product = _catalog_vitamin_d(db)
    provider = FakeVisionProvider(items=[VITAMIN_D_ITEM])

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1", photo_url="/uploads/u1/a.jpg"))

    assert result["success"] is True
    assert result["is_multi_item"] is False
    assert result["requires_nutrition_label"] is False
    assert result["catalog_match"]["match_method"] == "text_search"
    assert result["missing_fields"] == ["quantity"]
    assert result["follow_up_question"] == "How many softgels of Vitamin D3 did you take?"
    db.refresh(product)
    assert product.times_logged == 1

    audit = db.get(AuditRecord, result["audit_id"])
    assert audit.nlp_status == AuditStatus.AWAITING_CLARIFICATION.value
    assert audit.nlp_metadata["catalog_match"]["product_id"] == product.id

    answer = handle_follow_up_response(db, result["audit_id"], "2 softgels", "u1")

    assert answer["complete"] is True
    event = answer["event"]
    assert event["capture_method"] == "photo"
    assert event["event_data"]["dosage"] == "2"
    assert event["event_data"]["calculated_nutrients"] == {"vitamin_d3": {"amount": 250.0, "unit": "mcg"}}
    entry = db.query(UserProductRegistry).one()
    assert entry.external_source == "catalog"
    assert entry.external_product_id == str(product.id)

    with pytest.raises(ConfirmationConflictError):
        handle_follow_up_response(db, result["audit_id"], "1", "u1")


def test_food_follow_up_saves_a_described_food_event():
    db = _new_db()
    db.add(
        ProductCatalog(
            product_key="granola bar",
            product_name="Granola Bar",
            brand="KIND",
            product_type="food",
            serving_quantity=1,
            serving_unit="bar",
            calories=200,
            times_logged=0,
        )
    )
    db.commit()
    provider = FakeVisionProvider(items=[{"name": "Granola Bar", "brand": "KIND", "form": "bar", "event_type": "food"}])

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1"))
    answer = handle_follow_up_response(db, result["audit_id"], "1", "u1")

    assert answer["event"]["event_type"] == "food"
    assert answer["event"]["event_data"]["description"] == "KIND Granola Bar"


def test_single_item_barcode_match_wins():
    db = _new_db()
    _catalog_vitamin_d(db, barcode="0733739003676")
    provider = FakeVisionProvider(
        items=[{"name": "Sunshine Drops", "brand": None, "form": "softgels", "event_type": "supplement"}],
        barcode="0733739003676",
    )

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1"))

    assert result["catalog_match"]["match_method"] == "barcode"
    assert result["catalog_match"]["product_name"] == "Vitamin D3"


def test_unknown_product_requires_label_then_catalog_entry():
    db = _new_db()
    provider = FakeVisionProvider(
        items=[FISH_OIL_ITEM],
        label={
            "serving_quantity": 2,
            "serving_unit": "softgels",
            "micros": {"epa": {"amount": 650, "unit": "mg"}},
            "barcode": "768990017902",
            "barcode_confidence": 50,
        },
    )

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1"))

    assert result["success"] is True
    assert result["requires_nutrition_label"] is True
    assert result["catalog_match"] is None
    assert "follow_up_question" not in result

    label = asyncio.run(process_nutrition_label(provider, JPEG, result["detected_item"], label_photo_url="/uploads/u1/l.jpg"))
    assert label["success"] is True
    extracted = label["extracted_data"]
    assert extracted["product_name"] == "Omega-3 Fish Oil"
    assert extracted["barcode"] is None

    created = confirm_and_add_to_catalog(db, extracted, result["audit_id"], "u1")
    assert created["success"] is True
    audit = db.get(AuditRecord, result["audit_id"])
    assert audit.nlp_status == AuditStatus.CATALOG_PRODUCT_CREATED.value

    answer = handle_follow_up_response(db, result["audit_id"], "one", "u1")
    event_data = answer["event"]["event_data"]
    assert event_data["product_catalog_id"] == created["catalog_product"]["id"]
    assert event_data["calculated_nutrients"] == {"epa": {"amount": 325.0, "unit": "mg"}}


def test_duplicate_barcode_is_not_added_twice():
    db = _new_db()
    _catalog_vitamin_d(db, barcode="0733739003676")
    audit = AuditRecord(user_id="u1", raw_text="[Photo]", nlp_status="awaiting_user_clarification", nlp_metadata={})
    db.add(audit)
    db.commit()

    result = confirm_and_add_to_catalog(
        db,
        {"product_name": "Vitamin D3 Copy", "product_type": "supplement", "barcode": "0733739003676"},
        audit.id,
        "u1",
    )

    assert result["success"] is False
    assert db.query(ProductCatalog).count() == 1


def test_unreadable_label_asks_for_retake():
    provider = FakeVisionProvider(label={"error": "Unable to read nutrition label", "readable": False})

    result = asyncio.run(extract_nutrition_label(provider, JPEG))

    assert result["success"] is False
    assert result["needs_retake"] is True


def test_multi_item_photo_creates_one_event_per_item():
    db = _new_db()
    _catalog_vitamin_d(db)
    provider = FakeVisionProvider(items=[VITAMIN_D_ITEM, FISH_OIL_ITEM])

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1", photo_url="/uploads/u1/shelf.jpg"))

    assert result["is_multi_item"] is True
    assert result["matched_count"] == 1
    assert result["needs_label_count"] == 1
    vitamin, fish_oil = result["detected_items"]
    assert vitamin["catalog_match"]["product_name"] == "Vitamin D3"
    assert fish_oil["catalog_match"] is None

    created = create_multi_item_events(
        db,
        result["audit_id"],
        [
            {"item": vitamin, "catalog_match": vitamin["catalog_match"], "quantity": 1},
            {"item": fish_oil, "catalog_match": None, "quantity": 2},
            {"item": {"name": "Mystery Pill"}, "catalog_match": None, "quantity": 0},
        ],
        "u1",
        photo_url="/uploads/u1/shelf.jpg",
    )

    assert created["success"] is False
    assert len(created["events"]) == 2
    assert created["errors"] == [{"item": "Mystery Pill", "error": "Quantity must be a positive number"}]
    assert db.query(VoiceEvent).count() == 2
    audit = db.get(AuditRecord, result["audit_id"])
    assert audit.nlp_status == AuditStatus.MULTI_ITEM_EVENTS_CREATED.value
    assert audit.nlp_metadata["events_created"] == 2


def test_multi_item_food_gets_description_and_incomplete_items_are_not_saved():
    db = _new_db()
    granola = {"name": "Granola Bar", "brand": "KIND", "form": "bar", "event_type": "food"}
    provider = FakeVisionProvider(items=[granola, FISH_OIL_ITEM])

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1"))

    created = create_multi_item_events(
        db,
        result["audit_id"],
        [
            {"item": granola, "catalog_match": None, "quantity": 1},
            {"item": {"name": "Meter Strip", "event_type": "glucose"}, "catalog_match": None, "quantity": 1},
        ],
        "u1",
    )

    assert len(created["events"]) == 1
    assert created["errors"] == [{"item": "Meter Strip", "error": "Missing required fields: value, units"}]
    event = db.query(VoiceEvent).one()
    assert event.event_type == "food"
    assert event.event_data["description"] == "KIND Granola Bar"


def test_photo_without_products_fails_cleanly():
    db = _new_db()
    provider = FakeVisionProvider(items=[])

    result = asyncio.run(process_photo_input(db, provider, JPEG, "u1"))

    assert result["success"] is False
    assert db.query(AuditRecord).count() == 0


def test_bad_follow_up_answer_is_rejected():
    db = _new_db()
    with pytest.raises(InputValidationError):
        handle_follow_up_response(db, 1, "not sure", "u1")
    with pytest.raises(InputValidationError):
        asyncio.run(process_photo_input(db, FakeVisionProvider(), b"", "u1"))
