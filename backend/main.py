from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings
from db.database import engine, Base
import db.models  # noqa: F401  registers tables on Base.metadata
from api.events import router as events_router
from api.photo_events import router as photo_events_router
from api.registry import router as registry_router

settings.validate_runtime_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(photo_events_router, prefix="/api")
app.include_router(events_router, prefix="/api")
app.include_router(registry_router, prefix="/api")

# Stored product photos
app.mount("/uploads", StaticFiles(directory=str(settings.UPLOAD_DIR)), name="uploads")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}
