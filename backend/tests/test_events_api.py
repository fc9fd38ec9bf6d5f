from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from api import events as events_api  # noqa: E402
from db.database import Base, get_db  # noqa: E402
from db.models import AuditRecord, UserProductRegistry  # noqa: E402
from main import app  # noqa: E402
from services.event_processor import ProcessingResult  # noqa: E402


def _new_db():
    # Shared connection: the app runs requests on a worker thread.
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


@pytest.fixture()
def db():
    session = _new_db()
    app.dependency_overrides[get_db] = lambda: session
    yield session
    app.dependency_overrides.clear()
    session.close()


def test_health_endpoint():
    client = TestClient(app)
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_text_event_returns_processing_result(db, monkeypatch):
    seen = {}

    async def _fake_process_input(session, text, user_id, classifier, capture_method="manual", transcription=None):
        seen.update({"text": text, "user_id": user_id, "model": classifier.model, "capture_method": capture_method})
        return ProcessingResult(success=True, complete=False, audit_id=7, missing_fields=["dosage"], product_options=[])

    monkeypatch.setattr(events_api, "process_input", _fake_process_input)
    client = TestClient(app)

    res = client.post(
        "/api/events/text",
        json={"user_id": "u1", "text": "vitamin d", "api_key": "test-key", "capture_method": "voice"},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["audit_id"] == 7
    assert body["missing_fields"] == ["dosage"]
    assert seen["capture_method"] == "voice"
    assert seen["model"].startswith("claude")


def test_text_event_maps_invalid_input_to_400(db, monkeypatch):
    async def _fake_process_input(*args, **kwargs):
        return ProcessingResult(success=False, error="Input text is empty", error_code="invalid_input")

    monkeypatch.setattr(events_api, "process_input", _fake_process_input)
    client = TestClient(app)

    res = client.post("/api/events/text", json={"user_id": "u1", "text": " ", "api_key": "test-key"})

    assert res.status_code == 400
    assert res.json()["detail"]["error_code"] == "invalid_input"


def test_text_event_requires_an_api_key(db, monkeypatch):
    monkeypatch.setattr(events_api.settings, "AI_API_KEY", None)
    client = TestClient(app)

    res = client.post("/api/events/text", json={"user_id": "u1", "text": "apple"})

    assert res.status_code == 400


def test_confirm_endpoint_status_codes(db):
    audit = AuditRecord(
        user_id="u1",
        raw_text="Vitamin D",
        record_type="supplement",
        nlp_status="awaiting_user_clarification",
        nlp_metadata={
            "parsed_event": {
                "event_type": "supplement",
                "event_data": {"name": "Vitamin D"},
                "event_time": "2026-05-01T08:00:00+00:00",
            },
            "product_options": [],
            "capture_method": "manual",
        },
    )
    db.add(audit)
    db.commit()
    client = TestClient(app)

    missing = client.post(f"/api/events/{audit.id}/confirm", json={"user_id": "u1"})
    assert missing.status_code == 409
    assert missing.json()["detail"]["missing_fields"] == ["dosage"]

    foreign = client.post(f"/api/events/{audit.id}/confirm", json={"user_id": "u2", "event_data": {"dosage": "1"}})
    assert foreign.status_code == 404

    ok = client.post(f"/api/events/{audit.id}/confirm", json={"user_id": "u1", "event_data": {"dosage": "1000 IU"}})
    assert ok.status_code == 200
    assert ok.json()["event"]["event_data"] == {"name": "Vitamin D", "dosage": "1000 IU"}

    again = client.post(f"/api/events/{audit.id}/confirm", json={"user_id": "u1", "event_data": {"dosage": "1000 IU"}})
    assert again.status_code == 409


def test_registry_endpoint_lists_user_products(db):
    db.add(
        UserProductRegistry(
            user_id="u1",
            product_key="lmnt citrus",
            event_type="supplement",
            product_name="LMNT Citrus",
            times_logged=4,
        )
    )
    db.commit()
    client = TestClient(app)

    res = client.get("/api/registry/u1")

    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 1
    assert body["entries"][0]["product_name"] == "LMNT Citrus"


def test_photo_upload_rejects_non_images(db):
    client = TestClient(app)

    res = client.post(
        "/api/events/photo",
        data={"user_id": "u1", "api_key": "test-key"},
        files={"file": ("note.txt", b"hello", "text/plain")},
    )

    assert res.status_code == 400
