from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Actor
from ...db import schemas
from ...db.session import get_db
from ... import operations
from ...services import tier_service

router = APIRouter(prefix="/pricing-tiers", tags=["pricing-tiers"])


@router.get("/{coach_id}", response_model=list[schemas.PricingTier])
def list_tiers(coach_id: int, db: Session = Depends(get_db)):
    return tier_service.get_tiers(db, coach_id)


@router.put("", response_model=list[schemas.PricingTier])
def replace_tiers(
    payload: list[schemas.PricingTierInput],
    actor: Annotated[Actor, Depends(deps.require_roles("coach"))],
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.update_pricing_tiers(db, actor, payload))
