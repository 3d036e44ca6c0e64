"""Row locks for read-check-write sequences.

Every helper issues ``SELECT ... FOR UPDATE`` and refreshes the identity map
so the checks that follow see the committed state, not a stale copy.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.errors import NotFoundError
from ..db import models
from ..db.models import BookingType

DETAIL_MODELS = {
    BookingType.individual: models.IndividualBookingDetails,
    BookingType.private_group: models.PrivateGroupBookingDetails,
    BookingType.public_group: models.PublicGroupLessonDetails,
}


def _locked(stmt):
    return stmt.with_for_update().execution_options(populate_existing=True)


def lock_booking(db: Session, booking_id: int) -> models.Booking:
    booking = db.execute(
        _locked(select(models.Booking).where(models.Booking.id == booking_id))
    ).scalar_one_or_none()
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    detail_model = DETAIL_MODELS[booking.booking_type]
    db.execute(
        _locked(select(detail_model).where(detail_model.booking_id == booking_id))
    ).scalar_one()
    return booking


def lock_participant(db: Session, participant_id: int) -> models.BookingParticipant:
    participant = db.execute(
        _locked(
            select(models.BookingParticipant).where(models.BookingParticipant.id == participant_id)
        )
    ).scalar_one_or_none()
    if participant is None:
        raise NotFoundError("Participant not found", participant_id=participant_id)
    return participant


def lock_participants(db: Session, booking_id: int) -> list[models.BookingParticipant]:
    return list(
        db.execute(
            _locked(
                select(models.BookingParticipant)
                .where(models.BookingParticipant.booking_id == booking_id)
                .order_by(models.BookingParticipant.id)
            )
        ).scalars()
    )


def get_booking(db: Session, booking_id: int) -> models.Booking:
    booking = db.get(models.Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    return booking
