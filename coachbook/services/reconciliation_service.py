"""Settle processor calls whose outcome was never written back locally.

A reservation without a hold reference means the hold call timed out or the
write-back failed. A refunded row without a refund reference means the same
for a refund. Both are retried with the original idempotency keys, so the
processor applies each side effect at most once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import RECONCILIATION_REASON
from ..core.results import SweepResult
from ..core.security import SYSTEM
from ..core.timeutils import utc_now
from ..db import models
from ..db.models import DetailPaymentStatus, ParticipantPaymentStatus, ParticipantStatus
from ..db.session import atomic
from . import booking_service, group_lesson_service, locking, refund_service
from .payments import gateway
from .payments.gateway import ProcessorError

logger = logging.getLogger(__name__)


def reconcile_pending_holds(db: Session, now: datetime | None = None) -> SweepResult:
    """Attach holds that exist at the processor, release seats whose hold never happened."""
    now = now or utc_now()
    settings = get_settings()
    cutoff = now - timedelta(minutes=settings.reconciliation_grace_min)
    pending = list(
        db.execute(
            select(models.BookingParticipant).where(
                models.BookingParticipant.status == ParticipantStatus.awaiting_payment,
                models.BookingParticipant.payment_status == ParticipantPaymentStatus.requires_payment_method,
                models.BookingParticipant.processor_ref.is_(None),
                models.BookingParticipant.hold_idempotency_key.is_not(None),
                models.BookingParticipant.created_at < cutoff,
            )
        ).scalars()
    )
    client = gateway.get_gateway(settings)
    result = SweepResult()
    for participant in pending:
        context = {"booking_id": participant.booking_id, "participant_id": participant.id}
        try:
            hold = client.find_hold(participant.hold_idempotency_key)
        except ProcessorError as exc:
            logger.error("Hold lookup failed", extra=context)
            result.errors.append(f"participant {participant.id}: {exc}")
            continue
        try:
            if hold is None:
                released = group_lesson_service.undo_reservation(
                    db, participant.id, reused=True, now=now, reason=RECONCILIATION_REASON
                )
                if released:
                    logger.warning("Orphaned seat reservation released", extra=context)
                    result.processed += 1
                continue
            with atomic(db):
                locking.lock_booking(db, participant.booking_id)
                locked = locking.lock_participant(db, participant.id)
                attached = locked.status == ParticipantStatus.awaiting_payment and locked.processor_ref is None
                if attached:
                    locked.processor_ref = hold.ref
            if attached:
                logger.warning("Processor hold attached", extra={**context, "processor_ref": hold.ref})
                result.processed += 1
            else:
                # The seat was freed meanwhile, so the hold has no owner
                booking_service.release_hold(
                    hold.ref, group_lesson_service.participant_release_key(participant.id), **context
                )
        except Exception as exc:
            db.rollback()
            logger.exception("Hold reconciliation failed", extra=context)
            result.errors.append(f"participant {participant.id}: {exc}")
    return result


def reconcile_pending_refunds(db: Session, now: datetime | None = None) -> SweepResult:
    """Re-issue refunds that were reserved locally but never confirmed."""
    result = SweepResult()
    for detail_model in (models.IndividualBookingDetails, models.PrivateGroupBookingDetails):
        booking_ids = list(
            db.execute(
                select(detail_model.booking_id).where(
                    detail_model.payment_status == DetailPaymentStatus.refunded,
                    detail_model.refund_ref.is_(None),
                    detail_model.refund_amount_cents.is_not(None),
                )
            ).scalars()
        )
        for booking_id in booking_ids:
            try:
                refund_ref = refund_service.execute_detail_refund(
                    db, booking_id, actor=SYSTEM, revert_on_error=False
                )
            except ProcessorError as exc:
                result.errors.append(f"{booking_id}: {exc}")
                continue
            except Exception as exc:
                db.rollback()
                logger.exception("Refund reconciliation failed", extra={"booking_id": booking_id})
                result.errors.append(f"{booking_id}: {exc}")
                continue
            if refund_ref is not None:
                result.processed += 1

    reserved = [
        (participant_id, amount)
        for participant_id, amount in db.execute(
            select(models.BookingParticipant.id, models.BookingParticipant.refund_amount_cents).where(
                models.BookingParticipant.payment_status == ParticipantPaymentStatus.refunded,
                models.BookingParticipant.refund_ref.is_(None),
                models.BookingParticipant.refund_amount_cents.is_not(None),
            )
        ).all()
    ]
    if reserved:
        outcome = refund_service.execute_participant_refunds(db, reserved, revert_on_error=False)
        result.processed += len(reserved) - outcome.pending - outcome.failed
        if outcome.pending or outcome.failed:
            result.errors.append(
                f"participant refunds unresolved: {outcome.pending} pending, {outcome.failed} failed"
            )
    logger.info(
        "Refund reconciliation finished",
        extra={"processed": result.processed, "error_count": len(result.errors)},
    )
    return result
