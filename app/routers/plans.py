from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app import registry, schemas
from app.database import get_db

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("", response_model=List[schemas.PlanResponse])
def list_plans(db: Session = Depends(get_db)):
    return registry.list_plans(db)
