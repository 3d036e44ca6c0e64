"""Allowed status moves per axis and the single-status view shown to users."""

from __future__ import annotations

from sqlalchemy.orm import Session

from ..core.errors import ConflictError
from ..core.security import Actor
from ..db import models
from ..db.models import ApprovalStatus, CapacityStatus, FulfillmentStatus
from . import audit_service

APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.pending_review: frozenset(
        {ApprovalStatus.accepted, ApprovalStatus.declined, ApprovalStatus.cancelled}
    ),
    ApprovalStatus.accepted: frozenset({ApprovalStatus.cancelled, ApprovalStatus.expired}),
    ApprovalStatus.declined: frozenset(),
    ApprovalStatus.cancelled: frozenset(),
    ApprovalStatus.expired: frozenset(),
}

FULFILLMENT_TRANSITIONS: dict[FulfillmentStatus, frozenset[FulfillmentStatus]] = {
    FulfillmentStatus.scheduled: frozenset({FulfillmentStatus.completed, FulfillmentStatus.disputed}),
    FulfillmentStatus.disputed: frozenset({FulfillmentStatus.completed}),
    FulfillmentStatus.completed: frozenset(),
}

CAPACITY_TRANSITIONS: dict[CapacityStatus, frozenset[CapacityStatus]] = {
    CapacityStatus.open: frozenset({CapacityStatus.full, CapacityStatus.cancelled}),
    CapacityStatus.full: frozenset({CapacityStatus.open, CapacityStatus.cancelled}),
    CapacityStatus.cancelled: frozenset(),
}

ACTIVE_APPROVAL_STATUSES = (ApprovalStatus.pending_review, ApprovalStatus.accepted)


def _check(table, current, target, label: str, booking_id: int) -> None:
    if target not in table[current]:
        raise ConflictError(
            f"Cannot move {label} from {current.value} to {target.value}",
            booking_id=booking_id,
        )


def set_approval(
    db: Session,
    booking: models.Booking,
    target: ApprovalStatus,
    actor: Actor,
    reason: str | None = None,
) -> None:
    current = booking.approval_status
    if current == target:
        return
    _check(APPROVAL_TRANSITIONS, current, target, "approval", booking.id)
    booking.approval_status = target
    audit_service.record_transition(
        db,
        booking_id=booking.id,
        field="approval_status",
        old=current,
        new=target,
        actor=actor,
        reason=reason,
    )


def set_fulfillment(
    db: Session,
    booking: models.Booking,
    target: FulfillmentStatus,
    actor: Actor,
    reason: str | None = None,
) -> None:
    current = booking.fulfillment_status
    if current == target:
        return
    _check(FULFILLMENT_TRANSITIONS, current, target, "fulfillment", booking.id)
    # A refunded dispute still closes after approval has moved to cancelled
    if current == FulfillmentStatus.scheduled and booking.approval_status != ApprovalStatus.accepted:
        raise ConflictError("Only accepted bookings can be fulfilled", booking_id=booking.id)
    booking.fulfillment_status = target
    audit_service.record_transition(
        db,
        booking_id=booking.id,
        field="fulfillment_status",
        old=current,
        new=target,
        actor=actor,
        reason=reason,
    )


def set_capacity(
    db: Session,
    booking: models.Booking,
    target: CapacityStatus,
    actor: Actor,
    reason: str | None = None,
) -> None:
    details = booking.public_group_details
    current = details.capacity_status
    if current == target:
        return
    _check(CAPACITY_TRANSITIONS, current, target, "capacity", booking.id)
    details.capacity_status = target
    audit_service.record_transition(
        db,
        booking_id=booking.id,
        field="capacity_status",
        old=current,
        new=target,
        actor=actor,
        reason=reason,
    )


def set_payment_status(
    db: Session,
    booking: models.Booking,
    target: models.DetailPaymentStatus,
    actor: Actor,
    reason: str | None = None,
) -> None:
    details = booking.details
    current = details.payment_status
    details.payment_status = target
    audit_service.record_transition(
        db,
        booking_id=booking.id,
        field="payment_status",
        old=current,
        new=target,
        actor=actor,
        reason=reason,
    )


def set_participant_state(
    db: Session,
    participant: models.BookingParticipant,
    actor: Actor,
    *,
    status: models.ParticipantStatus | None = None,
    payment_status: models.ParticipantPaymentStatus | None = None,
    reason: str | None = None,
) -> None:
    if status is not None:
        audit_service.record_transition(
            db,
            booking_id=participant.booking_id,
            participant_id=participant.id,
            field="participant_status",
            old=participant.status,
            new=status,
            actor=actor,
            reason=reason,
        )
        participant.status = status
    if payment_status is not None:
        audit_service.record_transition(
            db,
            booking_id=participant.booking_id,
            participant_id=participant.id,
            field="participant_payment_status",
            old=participant.payment_status,
            new=payment_status,
            actor=actor,
            reason=reason,
        )
        participant.payment_status = payment_status


def derive_ui_status(booking: models.Booking) -> str:
    if booking.fulfillment_status == FulfillmentStatus.disputed:
        return "disputed"
    if booking.approval_status == ApprovalStatus.declined:
        return "declined"
    if booking.approval_status == ApprovalStatus.cancelled:
        return "cancelled"
    if booking.approval_status == ApprovalStatus.expired:
        return "expired"
    if booking.fulfillment_status == FulfillmentStatus.completed:
        return "completed"
    if booking.booking_type == models.BookingType.public_group:
        if booking.public_group_details.capacity_status == CapacityStatus.open:
            return "open"
    if booking.approval_status == ApprovalStatus.pending_review:
        return "awaiting_coach"
    if booking.booking_type != models.BookingType.public_group:
        if booking.details.payment_status == models.DetailPaymentStatus.awaiting_client_payment:
            return "awaiting_payment"
    return "confirmed"


def record_creation(db: Session, booking: models.Booking, actor: Actor) -> None:
    """Audit the initial statuses of a freshly flushed booking."""
    audit_service.record_transition(
        db,
        booking_id=booking.id,
        field="approval_status",
        old=None,
        new=booking.approval_status,
        actor=actor,
        reason="created",
    )
    if booking.booking_type == models.BookingType.public_group:
        audit_service.record_transition(
            db,
            booking_id=booking.id,
            field="capacity_status",
            old=None,
            new=booking.public_group_details.capacity_status,
            actor=actor,
            reason="created",
        )
    for participant in booking.participants:
        audit_service.record_transition(
            db,
            booking_id=booking.id,
            participant_id=participant.id,
            field="participant_status",
            old=None,
            new=participant.status,
            actor=actor,
            reason="created",
        )
