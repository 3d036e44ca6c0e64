from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Actor
from ...db import schemas
from ...db.session import get_db
from ... import operations

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("/{booking_id}", response_model=schemas.Booking)
def open_dispute(
    booking_id: int,
    payload: schemas.DisputeCreate,
    actor: Annotated[Actor, Depends(deps.get_current_actor)],
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.initiate_dispute(db, actor, booking_id, payload))


@router.post("/{booking_id}/resolve", response_model=schemas.Booking)
def resolve_dispute(
    booking_id: int,
    payload: schemas.DisputeResolution,
    actor: Annotated[Actor, Depends(deps.require_roles("admin"))],
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.resolve_dispute(db, actor, booking_id, payload))
