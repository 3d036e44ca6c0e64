"""Reminders and auto-cancellation for accepted bookings that are not paid in time.

The enforcer keeps no state between runs. Each run rescans every eligible
booking and relies on per-row guards, so overlapping or repeated runs are safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import PAYMENT_TIMEOUT_REASON
from ..core.security import SYSTEM
from ..core.timeutils import ensure_aware, utc_now
from ..db import models
from ..db.models import ApprovalStatus, DetailPaymentStatus, ParticipantStatus
from ..db.session import atomic
from . import booking_service, booking_state, locking, notification_service
from .notification_service import Notification

logger = logging.getLogger(__name__)

DETAIL_MODELS = (models.IndividualBookingDetails, models.PrivateGroupBookingDetails)


@dataclass(slots=True)
class DeadlineRunResult:
    reminders_sent: int = 0
    cancelled: int = 0
    errors: list[str] = field(default_factory=list)


def _awaiting_payment(db: Session, detail_model) -> list[tuple[int, datetime]]:
    rows = db.execute(
        select(detail_model.booking_id, detail_model.payment_due_at)
        .join(models.Booking, models.Booking.id == detail_model.booking_id)
        .where(
            models.Booking.approval_status == ApprovalStatus.accepted,
            detail_model.payment_status == DetailPaymentStatus.awaiting_client_payment,
            detail_model.payment_due_at.is_not(None),
        )
        .order_by(detail_model.payment_due_at)
    ).all()
    return [(booking_id, ensure_aware(due_at)) for booking_id, due_at in rows]


def cancel_for_nonpayment(db: Session, booking_id: int, now: datetime) -> bool:
    """Cancel one overdue booking. Returns False when another run got there first."""
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        details = booking.details
        if (
            booking.approval_status != ApprovalStatus.accepted
            or details.payment_status != DetailPaymentStatus.awaiting_client_payment
            or now <= ensure_aware(details.payment_due_at)
        ):
            return False
        booking_state.set_approval(db, booking, ApprovalStatus.cancelled, SYSTEM, PAYMENT_TIMEOUT_REASON)
        booking_state.set_payment_status(
            db, booking, DetailPaymentStatus.failed, SYSTEM, PAYMENT_TIMEOUT_REASON
        )
        booking.cancelled_at = now
        booking.cancelled_by = SYSTEM.label
        booking.cancellation_reason = PAYMENT_TIMEOUT_REASON
        for participant in locking.lock_participants(db, booking_id):
            booking_state.set_participant_state(
                db,
                participant,
                SYSTEM,
                status=ParticipantStatus.cancelled,
                payment_status=models.ParticipantPaymentStatus.failed,
                reason=PAYMENT_TIMEOUT_REASON,
            )
            participant.cancelled_at = now
        hold_ref = details.processor_hold_ref

    logger.warning(
        "Booking cancelled for non-payment",
        extra={"booking_id": booking_id, "amount_cents": details.gross_cents, "processor_ref": hold_ref},
    )
    if hold_ref:
        booking_service.release_hold(hold_ref, f"release:booking:{booking_id}", booking_id=booking_id)
    context = {"booking_id": booking_id, "reason": PAYMENT_TIMEOUT_REASON}
    notifications = booking_service._payer_notifications(booking, "payment_deadline_cancelled", context)
    notifications.append(Notification(booking.coach_id, "payment_deadline_cancelled", context))
    notification_service.dispatch(notifications)
    return True


def send_final_reminder(db: Session, detail_model, booking_id: int, due_at: datetime, now: datetime) -> bool:
    """Send the single pre-deadline reminder. The conditional update lets exactly one run win."""
    with atomic(db):
        claimed = db.execute(
            update(detail_model)
            .where(
                detail_model.booking_id == booking_id,
                detail_model.payment_status == DetailPaymentStatus.awaiting_client_payment,
                detail_model.payment_final_reminder_sent_at.is_(None),
            )
            .values(payment_final_reminder_sent_at=now)
        )
    if claimed.rowcount != 1:
        return False
    booking = db.get(models.Booking, booking_id)
    minutes_left = int((due_at - now).total_seconds() // 60)
    logger.info("Payment reminder sent", extra={"booking_id": booking_id, "minutes_left": minutes_left})
    notification_service.dispatch(
        booking_service._payer_notifications(
            booking,
            "payment_reminder",
            {"booking_id": booking_id, "payment_due_at": due_at.isoformat(), "minutes_left": minutes_left},
        )
    )
    return True


def run_payment_deadlines(db: Session, now: datetime | None = None) -> DeadlineRunResult:
    """One pass of the enforcer over individual and private-group bookings."""
    now = now or utc_now()
    settings = get_settings()
    window_start = timedelta(minutes=settings.payment_reminder_window_start_min)
    window_end = timedelta(minutes=settings.payment_reminder_window_end_min)
    result = DeadlineRunResult()

    for detail_model in DETAIL_MODELS:
        for booking_id, due_at in _awaiting_payment(db, detail_model):
            try:
                if now > due_at:
                    if cancel_for_nonpayment(db, booking_id, now):
                        result.cancelled += 1
                elif window_start < due_at - now <= window_end:
                    if send_final_reminder(db, detail_model, booking_id, due_at, now):
                        result.reminders_sent += 1
            except Exception as exc:
                db.rollback()
                logger.exception("Payment deadline processing failed", extra={"booking_id": booking_id})
                result.errors.append(f"{booking_id}: {exc}")

    logger.info(
        "Payment deadline run finished",
        extra={
            "reminders_sent": result.reminders_sent,
            "cancelled": result.cancelled,
            "error_count": len(result.errors),
        },
    )
    return result
