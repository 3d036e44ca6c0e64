"""Refund saga shared by cancellation, dispute resolution and reconciliation.

A refund is reserved locally first: the payment status moves off ``captured``
and the amount is recorded before the processor is called, so no retry can
reserve the same charge twice. The processor call then runs outside any
transaction and the outcome is written back afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.errors import ConflictError, ValidationError
from ..core.security import SYSTEM, Actor
from ..core.timeutils import utc_now
from ..db import models
from ..db.models import ApprovalStatus, DetailPaymentStatus, FulfillmentStatus, ParticipantPaymentStatus
from ..db.session import atomic
from . import booking_state, locking
from .payments import gateway
from .payments.gateway import ProcessorError, ProcessorTimeout

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RefundOutcome:
    refunded_cents: int = 0
    pending: int = 0
    failed: int = 0

    @property
    def complete(self) -> bool:
        return self.pending == 0 and self.failed == 0


def detail_refund_key(booking_id: int) -> str:
    return f"refund:booking:{booking_id}"


def participant_refund_key(participant_id: int) -> str:
    return f"refund:participant:{participant_id}"


def split_refund(amount_cents: int, count: int) -> list[int]:
    """Spread ``amount_cents`` over ``count`` payers, the first ones taking the leftover cents."""
    base, remainder = divmod(amount_cents, count)
    return [base + (1 if index < remainder else 0) for index in range(count)]


def _move_participant_payments(
    db: Session,
    booking: models.Booking,
    source: ParticipantPaymentStatus,
    target: ParticipantPaymentStatus,
    actor: Actor,
    reason: str | None,
) -> None:
    """Keep private-group participant rows in step with the booking payment."""
    for participant in locking.lock_participants(db, booking.id):
        if participant.payment_status == source:
            booking_state.set_participant_state(db, participant, actor, payment_status=target, reason=reason)
    # later row locks reload participants with populate_existing
    db.flush()


def reserve_detail_refund(
    db: Session,
    booking: models.Booking,
    amount_cents: int | None,
    actor: Actor,
    reason: str | None,
) -> int:
    """Flip a captured booking to ``refunded``. Must run inside the caller's transaction."""
    details = booking.details
    if details.payment_status != DetailPaymentStatus.captured:
        raise ConflictError(
            "Booking has no captured payment to refund",
            booking_id=booking.id,
            payment_status=details.payment_status.value,
        )
    amount = details.gross_cents if amount_cents is None else amount_cents
    if amount <= 0 or amount > details.gross_cents:
        raise ValidationError(
            "Invalid refund amount", booking_id=booking.id, amount_cents=amount
        )
    booking_state.set_payment_status(db, booking, DetailPaymentStatus.refunded, actor, reason)
    details.refund_amount_cents = amount
    _move_participant_payments(
        db, booking, ParticipantPaymentStatus.captured, ParticipantPaymentStatus.refunded, actor, reason
    )
    return amount


def reserve_participant_refunds(
    db: Session,
    booking: models.Booking,
    amount_cents: int | None,
    actor: Actor,
    reason: str | None,
) -> list[tuple[int, int]]:
    """Flip every captured participant of a lesson to ``refunded``. Returns (participant id, cents)."""
    captured = [
        participant
        for participant in locking.lock_participants(db, booking.id)
        if participant.payment_status == ParticipantPaymentStatus.captured
    ]
    if not captured:
        raise ConflictError("No captured payments found for this booking", booking_id=booking.id)
    total = sum(participant.amount_cents for participant in captured)
    amount = total if amount_cents is None else amount_cents
    if amount <= 0 or amount > total:
        raise ValidationError("Invalid refund amount", booking_id=booking.id, amount_cents=amount)
    reserved = []
    for participant, share in zip(captured, split_refund(amount, len(captured))):
        if share == 0:
            continue
        booking_state.set_participant_state(
            db, participant, actor, payment_status=ParticipantPaymentStatus.refunded, reason=reason
        )
        participant.refund_amount_cents = share
        reserved.append((participant.id, share))
    return reserved


def execute_detail_refund(
    db: Session, booking_id: int, *, actor: Actor, revert_on_error: bool
) -> str | None:
    """Call the processor for a reserved booking refund and record the outcome.

    Returns the refund reference, or ``None`` when the outcome is unknown and
    reconciliation has to finish the job. A definitive rejection either puts the
    payment back to ``captured`` or leaves it reserved for reconciliation.
    Once the money is back a booking still marked accepted is cancelled and an
    open dispute is closed.
    """
    booking = db.get(models.Booking, booking_id)
    details = booking.details
    amount = details.refund_amount_cents
    charge_ref = details.processor_charge_ref
    client = gateway.get_gateway(get_settings())
    try:
        refund_ref = client.refund(charge_ref, amount, idempotency_key=detail_refund_key(booking_id))
    except ProcessorTimeout:
        logger.error(
            "Refund outcome unknown, left for reconciliation",
            extra={"booking_id": booking_id, "amount_cents": amount, "processor_ref": charge_ref},
        )
        return None
    except ProcessorError:
        logger.exception(
            "Refund rejected by processor",
            extra={"booking_id": booking_id, "amount_cents": amount, "processor_ref": charge_ref},
        )
        if revert_on_error:
            with atomic(db):
                locked = locking.lock_booking(db, booking_id)
                locked_details = locked.details
                if locked_details.payment_status == DetailPaymentStatus.refunded and not locked_details.refund_ref:
                    booking_state.set_payment_status(
                        db, locked, DetailPaymentStatus.captured, SYSTEM, "refund_rejected"
                    )
                    locked_details.refund_amount_cents = None
                    _move_participant_payments(
                        db,
                        locked,
                        ParticipantPaymentStatus.refunded,
                        ParticipantPaymentStatus.captured,
                        SYSTEM,
                        "refund_rejected",
                    )
        raise
    with atomic(db):
        locked = locking.lock_booking(db, booking_id)
        locked.details.refund_ref = refund_ref
        locked.details.refunded_at = utc_now()
        if locked.approval_status == ApprovalStatus.accepted:
            booking_state.set_approval(db, locked, ApprovalStatus.cancelled, actor, "refunded")
            locked.cancelled_at = utc_now()
            locked.cancelled_by = actor.label
        if locked.fulfillment_status == FulfillmentStatus.disputed:
            booking_state.set_fulfillment(db, locked, FulfillmentStatus.completed, actor, "refunded")
            locked.completed_at = utc_now()
    logger.info(
        "Refund issued",
        extra={"booking_id": booking_id, "amount_cents": amount, "refund_ref": refund_ref},
    )
    return refund_ref


def execute_participant_refunds(
    db: Session, reserved: list[tuple[int, int]], *, revert_on_error: bool
) -> RefundOutcome:
    outcome = RefundOutcome()
    client = gateway.get_gateway(get_settings())
    for participant_id, amount in reserved:
        participant = db.get(models.BookingParticipant, participant_id)
        charge_ref = participant.processor_charge_ref or participant.processor_ref
        context = {
            "booking_id": participant.booking_id,
            "participant_id": participant_id,
            "amount_cents": amount,
            "processor_ref": charge_ref,
        }
        try:
            refund_ref = client.refund(
                charge_ref, amount, idempotency_key=participant_refund_key(participant_id)
            )
        except ProcessorTimeout:
            logger.error("Participant refund outcome unknown", extra=context)
            outcome.pending += 1
            continue
        except ProcessorError:
            logger.exception("Participant refund rejected by processor", extra=context)
            outcome.failed += 1
            if revert_on_error:
                with atomic(db):
                    locked = locking.lock_participant(db, participant_id)
                    if not locked.refund_ref:
                        booking_state.set_participant_state(
                            db,
                            locked,
                            SYSTEM,
                            payment_status=ParticipantPaymentStatus.captured,
                            reason="refund_rejected",
                        )
                        locked.refund_amount_cents = None
            continue
        with atomic(db):
            locked = locking.lock_participant(db, participant_id)
            locked.refund_ref = refund_ref
            locked.refunded_at = utc_now()
        outcome.refunded_cents += amount
    return outcome

