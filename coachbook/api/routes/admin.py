from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Actor
from ...db import schemas
from ...db.session import get_db
from ... import operations

router = APIRouter(prefix="/admin", tags=["admin"])

AdminActor = Annotated[Actor, Depends(deps.require_roles("admin"))]


class RefundRequest(BaseModel):
    amount_cents: int | None = None
    note: str | None = None


@router.put("/coaches/{coach_id}/platform-fee")
def update_platform_fee(
    coach_id: int,
    payload: schemas.PlatformFeeUpdate,
    actor: AdminActor,
    db: Session = Depends(get_db),
):
    profile = deps.unwrap(
        operations.update_platform_fee(db, actor, coach_id, payload.platform_fee_percentage)
    )
    return {"coach_id": profile.user_id, "platform_fee_percentage": float(profile.platform_fee_percentage)}


@router.post("/bookings/{booking_id}/refund", response_model=schemas.Booking)
def refund_booking(
    booking_id: int,
    payload: RefundRequest,
    actor: AdminActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.refund_booking(db, actor, booking_id, payload.amount_cents, payload.note))
