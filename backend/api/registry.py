from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from db.database import get_db
from services.product_registry import list_registry_entries

router = APIRouter(prefix="/registry", tags=["registry"])


@router.get("/{user_id}")
def get_registry(user_id: str, db: Session = Depends(get_db)):
    """Products this user has logged, most frequent first."""
    entries = list_registry_entries(db, user_id)
    return {"user_id": user_id, "count": len(entries), "entries": entries}
