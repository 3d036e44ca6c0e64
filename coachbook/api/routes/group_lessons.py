from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from ...api import deps
from ...core.results import returns_result
from ...core.security import Actor
from ...db import models, schemas
from ...db.session import get_db
from ... import operations
from ...services import group_lesson_service, locking

router = APIRouter(prefix="/group-lessons", tags=["group-lessons"])

CurrentActor = Annotated[Actor, Depends(deps.get_current_actor)]


@router.post("", response_model=schemas.Booking)
def create_public_lesson(
    payload: schemas.PublicLessonCreate,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.create_public_group_lesson(db, actor, payload))


@router.post("/{booking_id}/join", response_model=schemas.Participant)
def join_lesson(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.join_public_lesson(db, actor, booking_id))


@router.post("/{booking_id}/leave", response_model=schemas.Participant)
def leave_lesson(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.leave_public_lesson(db, actor, booking_id))


@router.get("/{booking_id}/participants", response_model=list[schemas.Participant])
def list_participants(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    booking = deps.unwrap(returns_result(locking.get_booking)(db, booking_id))
    stmt = (
        select(models.BookingParticipant)
        .where(models.BookingParticipant.booking_id == booking.id)
        .order_by(models.BookingParticipant.id)
    )
    if actor.user_id != booking.coach_id and not actor.is_admin:
        stmt = stmt.where(models.BookingParticipant.user_id == actor.user_id)
    return list(db.execute(stmt).scalars())


@router.get("/{booking_id}/earnings", response_model=schemas.LessonEarnings)
def lesson_earnings(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(returns_result(group_lesson_service.lesson_earnings)(db, actor, booking_id))


@router.post("/participants/{participant_id}/authorize", response_model=schemas.Participant)
def authorize_participant(participant_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.record_participant_authorization(db, actor, participant_id))


@router.post("/participants/{participant_id}/accept", response_model=schemas.Participant)
def accept_participant(participant_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.accept_participant(db, actor, participant_id))


@router.post("/participants/{participant_id}/decline", response_model=schemas.Participant)
def decline_participant(
    participant_id: int,
    payload: schemas.BookingCancel,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.decline_participant(db, actor, participant_id, payload.reason))
