from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, Text, Float, JSON, Index, UniqueConstraint,
    DateTime,
)
from db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AuditRecord(Base):
    __tablename__ = "voice_records_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    raw_text = Column(Text, nullable=False)
    record_type = Column(Text, nullable=False, default="unknown")
    value = Column(Float)
    units = Column(Text)
    # pending | awaiting_user_clarification | parsed | awaiting_user_clarification_success | error
    nlp_status = Column(Text, nullable=False, default="pending")
    nlp_model = Column(Text)  # registry_bypass | registry_fuzzy_bypass | model identifier
    nlp_metadata = Column(JSON)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_voice_records_audit_user_status", "user_id", "nlp_status"),
    )


class UserProductRegistry(Base):
    __tablename__ = "user_product_registry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    product_key = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)  # food | supplement | medication
    product_name = Column(Text, nullable=False)
    brand = Column(Text)
    times_logged = Column(Integer, nullable=False, default=1)
    first_logged_at = Column(DateTime, default=_utcnow)
    last_logged_at = Column(DateTime, default=_utcnow)
    external_product_id = Column(Text)
    external_source = Column(Text)  # openfoodfacts | usda | catalog

    __table_args__ = (
        UniqueConstraint("user_id", "product_key", name="uq_user_product_registry_user_key"),
        Index("ix_user_product_registry_frequent", "user_id", "times_logged"),
    )


class VoiceEvent(Base):
    __tablename__ = "voice_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    event_data = Column(JSON, nullable=False)
    event_time = Column(DateTime, nullable=False, default=_utcnow)
    source_record_id = Column(Integer)  # voice_records_audit.id
    capture_method = Column(Text, nullable=False, default="manual")  # manual | voice | photo
    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_voice_events_user_time", "user_id", "event_time"),
    )


class ProductCatalog(Base):
    __tablename__ = "product_catalog"

    id = Column(Integer, primary_key=True, autoincrement=True)
    barcode = Column(Text, unique=True)
    product_key = Column(Text, nullable=False)
    product_name = Column(Text, nullable=False)
    brand = Column(Text)
    product_type = Column(Text, nullable=False, default="food")  # food | supplement | medication
    serving_quantity = Column(Float)
    serving_unit = Column(Text)
    serving_weight_grams = Column(Float)
    calories = Column(Float)
    protein = Column(Float)
    carbs = Column(Float)
    fat = Column(Float)
    fiber = Column(Float)
    sugar = Column(Float)
    micros = Column(JSON)  # {"magnesium": {"amount": 144, "unit": "mg"}}
    active_ingredients = Column(JSON)  # [{"name": ..., "strength": ...}]
    photo_front_url = Column(Text)
    photo_label_url = Column(Text)
    submitted_by_user_id = Column(Text)
    verification_status = Column(Text, nullable=False, default="unverified")
    times_logged = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)


class AppLog(Base):
    __tablename__ = "app_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text)
    level = Column(Text, nullable=False)  # debug | info | warn | error
    category = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column(JSON)
    created_at = Column(DateTime, default=_utcnow)
