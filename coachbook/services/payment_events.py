"""Processor webhook handling: a hold became capturable on the processor side."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.errors import BookingError, ExternalServiceError
from ..core.security import SYSTEM
from ..db import models
from . import booking_service, group_lesson_service
from .payments.gateway import CAPTURABLE_STATUSES, WebhookEvent

logger = logging.getLogger(__name__)


def _find_booking_by_hold(db: Session, hold_ref: str) -> int | None:
    for detail_model in (models.IndividualBookingDetails, models.PrivateGroupBookingDetails):
        booking_id = db.execute(
            select(detail_model.booking_id).where(detail_model.processor_hold_ref == hold_ref)
        ).scalar_one_or_none()
        if booking_id is not None:
            return booking_id
    return None


def handle_payment_event(db: Session, event: WebhookEvent, now: datetime | None = None) -> str:
    """Apply an authorised hold to whichever booking or seat owns it. Returns what happened."""
    if not event.hold_ref or event.status not in CAPTURABLE_STATUSES:
        logger.info("Payment event ignored", extra={"event_type": event.type, "processor_ref": event.hold_ref})
        return "ignored"

    try:
        booking_id = _find_booking_by_hold(db, event.hold_ref)
        if booking_id is not None:
            booking_service.confirm_booking_payment(db, SYSTEM, booking_id, now)
            return "booking_captured"
        participant_id = db.execute(
            select(models.BookingParticipant.id).where(
                models.BookingParticipant.processor_ref == event.hold_ref
            )
        ).scalar_one_or_none()
        if participant_id is not None:
            group_lesson_service.record_participant_authorization(db, SYSTEM, participant_id, now)
            return "participant_authorized"
    except ExternalServiceError:
        raise
    except BookingError as exc:
        # Stale events are acknowledged so the processor stops redelivering them
        logger.warning(
            "Payment event not applied",
            extra={"event_type": event.type, "processor_ref": event.hold_ref, "reason": exc.message},
        )
        return "rejected"
    logger.warning("Payment event for unknown hold", extra={"processor_ref": event.hold_ref})
    return "unknown"
