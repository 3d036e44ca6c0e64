"""Disputes raised after a session and their administrative resolution."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.errors import AuthorizationError, ConflictError, ExternalServiceError, ValidationError
from ..core.security import Actor
from ..core.timeutils import ensure_aware, utc_now
from ..db import models
from ..db.models import ApprovalStatus, BookingType, FulfillmentStatus, ParticipantStatus
from ..db.schemas import DisputeCreate, DisputeResolution
from ..db.session import atomic
from . import booking_state, locking, notification_service, refund_service
from .notification_service import Notification
from .payments.gateway import ProcessorError

logger = logging.getLogger(__name__)

RESOLVE = "resolve"
REFUND = "refund"


def _is_party(db: Session, booking: models.Booking, actor: Actor) -> bool:
    if actor.user_id == booking.coach_id:
        return True
    if booking.booking_type != BookingType.public_group and actor.user_id == booking.payer_id:
        return True
    return (
        db.execute(
            select(models.BookingParticipant.id).where(
                models.BookingParticipant.booking_id == booking.id,
                models.BookingParticipant.user_id == actor.user_id,
                models.BookingParticipant.status == ParticipantStatus.confirmed,
            )
        ).first()
        is not None
    )


def _party_notifications(db: Session, booking: models.Booking, kind: str, context: dict) -> list[Notification]:
    recipients = {booking.coach_id}
    if booking.booking_type != BookingType.public_group:
        recipients.add(booking.payer_id)
    recipients.update(
        db.execute(
            select(models.BookingParticipant.user_id).where(
                models.BookingParticipant.booking_id == booking.id,
                models.BookingParticipant.status != ParticipantStatus.cancelled,
            )
        ).scalars()
    )
    return [Notification(recipient, kind, context) for recipient in sorted(recipients)]


def initiate_dispute(
    db: Session,
    actor: Actor,
    booking_id: int,
    payload: DisputeCreate,
    now: datetime | None = None,
) -> models.Booking:
    now = now or utc_now()
    reason = payload.reason.strip()
    if not reason:
        raise ValidationError("Dispute reason is required", booking_id=booking_id)
    booking = locking.get_booking(db, booking_id)
    if not _is_party(db, booking, actor):
        raise AuthorizationError("Unauthorized", booking_id=booking_id)

    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        if booking.approval_status != ApprovalStatus.accepted:
            raise ConflictError("Only accepted bookings can be disputed", booking_id=booking_id)
        if booking.fulfillment_status != FulfillmentStatus.scheduled:
            raise ConflictError("Booking cannot be disputed", booking_id=booking_id)
        if now < ensure_aware(booking.scheduled_end_at):
            raise ConflictError("Session has not ended yet", booking_id=booking_id)
        booking_state.set_fulfillment(db, booking, FulfillmentStatus.disputed, actor, reason)
        booking.disputed_at = now
        booking.dispute_reason = reason

    logger.warning("Dispute opened", extra={"booking_id": booking_id, "actor": actor.label})
    notification_service.notify(
        notification_service.admin_recipient(),
        "dispute_opened",
        {"booking_id": booking_id, "raised_by": actor.label, "reason": reason},
    )
    return booking


def _refund(
    db: Session,
    actor: Actor,
    booking_id: int,
    amount_cents: int | None,
    note: str,
    now: datetime,
    *,
    require_dispute: bool,
) -> models.Booking:
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        if require_dispute and booking.fulfillment_status != FulfillmentStatus.disputed:
            raise ConflictError("Booking is not disputed", booking_id=booking_id)
        if booking.booking_type == BookingType.public_group:
            reserved = refund_service.reserve_participant_refunds(db, booking, amount_cents, actor, note)
            amount = sum(share for _, share in reserved)
        else:
            amount = refund_service.reserve_detail_refund(db, booking, amount_cents, actor, note)

    context = {"booking_id": booking_id, "amount_cents": amount}
    if booking.booking_type == BookingType.public_group:
        outcome = refund_service.execute_participant_refunds(db, reserved, revert_on_error=True)
        if outcome.failed:
            raise ExternalServiceError("Refund failed", retryable=True, **context)
        if outcome.pending:
            raise ExternalServiceError(
                "Refund outcome unknown, pending reconciliation", retryable=False, **context
            )
    else:
        try:
            refund_ref = refund_service.execute_detail_refund(
                db, booking_id, actor=actor, revert_on_error=True
            )
        except ProcessorError as exc:
            raise ExternalServiceError("Refund failed", retryable=True, **context) from exc
        if refund_ref is None:
            raise ExternalServiceError(
                "Refund outcome unknown, pending reconciliation", retryable=False, **context
            )

    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        if booking.approval_status == ApprovalStatus.accepted:
            booking_state.set_approval(db, booking, ApprovalStatus.cancelled, actor, "refunded")
            booking.cancelled_at = now
            booking.cancelled_by = actor.label
        if booking.fulfillment_status == FulfillmentStatus.disputed:
            booking_state.set_fulfillment(db, booking, FulfillmentStatus.completed, actor, note)
            booking.completed_at = now

    logger.info("Refund issued", extra={**context, "actor": actor.label})
    notification_service.dispatch(_party_notifications(db, booking, "refund_issued", {**context, "note": note}))
    return booking


def resolve_dispute(
    db: Session,
    actor: Actor,
    booking_id: int,
    resolution: DisputeResolution,
    now: datetime | None = None,
) -> models.Booking:
    """Close a dispute without moving money, or refund part or all of the captured charge.

    A refund is reserved before the processor is called, so a second
    resolution of the same booking finds nothing captured and is rejected.
    """
    now = now or utc_now()
    if not actor.is_admin:
        raise AuthorizationError("Only admins can resolve disputes", booking_id=booking_id)
    if resolution.action not in (RESOLVE, REFUND):
        raise ValidationError("Unknown resolution action", action=resolution.action)
    locking.get_booking(db, booking_id)
    note = resolution.note or resolution.action

    if resolution.action == REFUND:
        return _refund(
            db, actor, booking_id, resolution.refund_amount_cents, note, now, require_dispute=True
        )

    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        if booking.fulfillment_status != FulfillmentStatus.disputed:
            raise ConflictError("Booking is not disputed", booking_id=booking_id)
        booking_state.set_fulfillment(db, booking, FulfillmentStatus.completed, actor, note)
        booking.completed_at = now
    logger.info("Dispute resolved without refund", extra={"booking_id": booking_id})
    notification_service.dispatch(
        _party_notifications(db, booking, "dispute_resolved", {"booking_id": booking_id, "note": note})
    )
    return booking


def refund_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    amount_cents: int | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> models.Booking:
    """Administrative refund of a captured booking outside a dispute."""
    now = now or utc_now()
    if not actor.is_admin:
        raise AuthorizationError("Only admins can issue refunds", booking_id=booking_id)
    locking.get_booking(db, booking_id)
    return _refund(db, actor, booking_id, amount_cents, note or "admin_refund", now, require_dispute=False)
