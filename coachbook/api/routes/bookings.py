from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...core.results import returns_result
from ...core.security import Actor
from ...db import schemas
from ...db.session import get_db
from ... import operations
from ...services import audit_service, booking_service, booking_state

router = APIRouter(prefix="/bookings", tags=["bookings"])

CurrentActor = Annotated[Actor, Depends(deps.get_current_actor)]


@router.post("/individual", response_model=schemas.Booking)
def create_individual_booking(
    payload: schemas.IndividualBookingCreate,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.create_individual_booking(db, actor, payload))


@router.post("/private-group", response_model=schemas.Booking)
def create_private_group_booking(
    payload: schemas.PrivateGroupBookingCreate,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.create_private_group_booking(db, actor, payload))


@router.get("/earnings", response_model=schemas.CoachEarnings)
def coach_earnings(actor: CurrentActor, coach_id: int | None = None, db: Session = Depends(get_db)):
    return deps.unwrap(operations.coach_earnings_summary(db, actor, coach_id))


@router.get("/{booking_id}", response_model=schemas.Booking)
def get_booking(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(returns_result(booking_service.get_visible_booking)(db, actor, booking_id))


@router.get("/{booking_id}/status", response_model=schemas.BookingStatusView)
def get_booking_status(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    booking = deps.unwrap(returns_result(booking_service.get_visible_booking)(db, actor, booking_id))
    return schemas.BookingStatusView(booking_id=booking.id, status=booking_state.derive_ui_status(booking))


@router.get("/{booking_id}/history")
def get_booking_history(
    booking_id: int,
    _: Annotated[Actor, Depends(deps.require_roles("admin"))],
    db: Session = Depends(get_db),
):
    return [
        {
            "field": row.field,
            "old_value": row.old_value,
            "new_value": row.new_value,
            "participant_id": row.participant_id,
            "actor": row.actor,
            "reason": row.reason,
            "created_at": row.created_at,
        }
        for row in audit_service.history(db, booking_id)
    ]


@router.post("/{booking_id}/accept", response_model=schemas.Booking)
def accept_booking(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.accept_booking(db, actor, booking_id))


@router.post("/{booking_id}/decline", response_model=schemas.Booking)
def decline_booking(
    booking_id: int,
    payload: schemas.BookingCancel,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.decline_booking(db, actor, booking_id, payload.reason))


@router.post("/{booking_id}/cancel", response_model=schemas.Booking)
def cancel_booking(
    booking_id: int,
    payload: schemas.BookingCancel,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.cancel_booking(db, actor, booking_id, payload.reason))


@router.post("/{booking_id}/payment", response_model=schemas.Booking)
def start_booking_payment(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.start_booking_payment(db, actor, booking_id))


@router.post("/{booking_id}/payment/confirm", response_model=schemas.Booking)
def confirm_booking_payment(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.confirm_booking_payment(db, actor, booking_id))


@router.post("/{booking_id}/complete", response_model=schemas.Booking)
def complete_booking(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.complete_booking(db, actor, booking_id))


@router.post("/{booking_id}/complete/confirm", response_model=schemas.Booking)
def confirm_booking_complete(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.confirm_booking_complete(db, actor, booking_id))
