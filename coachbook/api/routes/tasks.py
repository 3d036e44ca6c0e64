"""Entry points for an external scheduler. Each run is stateless and safe to overlap."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Actor
from ...db import schemas
from ...db.session import get_db
from ...services import (
    booking_service,
    group_lesson_service,
    payment_deadline_service,
    reconciliation_service,
    recurring_service,
)

router = APIRouter(prefix="/tasks", tags=["tasks"])

AdminActor = Annotated[Actor, Depends(deps.require_roles("admin"))]


def _sweep(result) -> schemas.SweepRun:
    return schemas.SweepRun(processed=result.processed, errors=result.errors)


@router.post("/payment-deadlines", response_model=schemas.DeadlineRun)
def run_payment_deadlines(_: AdminActor, db: Session = Depends(get_db)):
    result = payment_deadline_service.run_payment_deadlines(db)
    return schemas.DeadlineRun(
        reminders_sent=result.reminders_sent, cancelled=result.cancelled, errors=result.errors
    )


@router.post("/seat-holds", response_model=schemas.SweepRun)
def release_seat_holds(_: AdminActor, db: Session = Depends(get_db)):
    return _sweep(group_lesson_service.release_expired_seat_holds(db))


@router.post("/underfilled-lessons", response_model=schemas.SweepRun)
def cancel_underfilled_lessons(_: AdminActor, db: Session = Depends(get_db)):
    return _sweep(group_lesson_service.cancel_underfilled_lessons(db))


@router.post("/auto-complete", response_model=schemas.SweepRun)
def auto_complete(_: AdminActor, db: Session = Depends(get_db)):
    return _sweep(booking_service.auto_complete_bookings(db))


@router.post("/recurring", response_model=schemas.SweepRun)
def generate_recurring(_: AdminActor, db: Session = Depends(get_db)):
    return _sweep(recurring_service.generate_all(db))


@router.post("/reconciliation", response_model=schemas.SweepRun)
def reconcile(_: AdminActor, db: Session = Depends(get_db)):
    holds = reconciliation_service.reconcile_pending_holds(db)
    refunds = reconciliation_service.reconcile_pending_refunds(db)
    return schemas.SweepRun(
        processed=holds.processed + refunds.processed, errors=holds.errors + refunds.errors
    )
