"""Public group lessons: creation, seat reservation and the participant lifecycle.

Seat counters on the lesson track live reservations::

    captured_participants <= authorized_participants <= current_participants <= max_participants

``current`` counts every seat that is held or paid, ``authorized`` the seats
whose hold the processor has confirmed, ``captured`` the seats that are paid.
Counters only move while the lesson row is locked.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import MAX_GROUP_SIZE, MIN_GROUP_SIZE, SEAT_HOLD_EXPIRED_REASON, UNDERFILLED_REASON
from ..core.errors import (
    AuthorizationError,
    BookingError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from ..core.results import SweepResult
from ..core.security import SYSTEM, Actor
from ..core.timeutils import ensure_aware, utc_now
from ..db import models
from ..db.models import (
    ApprovalStatus,
    BookingType,
    CapacityStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
)
from ..db.schemas import LessonEarnings, PublicLessonCreate
from ..db.session import atomic
from . import audit_service, booking_service, booking_state, locking, notification_service, pricing, refund_service
from .notification_service import Notification
from .payments import gateway
from .payments.gateway import CAPTURABLE_STATUSES, ProcessorError, ProcessorTimeout

logger = logging.getLogger(__name__)

UNCAPTURED = (ParticipantPaymentStatus.requires_payment_method, ParticipantPaymentStatus.created)
REUSABLE_PAYMENT_STATUSES = (ParticipantPaymentStatus.requires_payment_method, ParticipantPaymentStatus.failed)


def participant_hold_key(booking_id: int, user_id: int) -> str:
    # A fresh suffix per attempt so a rejoin never collides with a released hold
    return f"hold:lesson:{booking_id}:user:{user_id}:{uuid.uuid4().hex[:12]}"


def participant_capture_key(participant_id: int) -> str:
    return f"capture:participant:{participant_id}"


def participant_release_key(participant_id: int) -> str:
    return f"release:participant:{participant_id}"


def validate_capacity(min_participants: int, max_participants: int, price_per_person_cents: int) -> None:
    if min_participants < MIN_GROUP_SIZE:
        raise ValidationError(f"Minimum participants must be at least {MIN_GROUP_SIZE}")
    if max_participants < min_participants:
        raise ValidationError("Max participants must be greater than or equal to min")
    if max_participants > MAX_GROUP_SIZE:
        raise ValidationError(f"Max participants cannot exceed {MAX_GROUP_SIZE}")
    if price_per_person_cents <= 0:
        raise ValidationError("Price must be greater than 0")


def _require_public(booking: models.Booking) -> models.PublicGroupLessonDetails:
    if booking.booking_type != BookingType.public_group:
        raise ValidationError("Booking is not a public group lesson", booking_id=booking.id)
    return booking.public_group_details


def build_public_lesson(
    db: Session,
    actor: Actor,
    *,
    coach_id: int,
    start: datetime,
    end: datetime,
    duration_min: int,
    min_participants: int,
    max_participants: int,
    price_per_person_cents: int,
    now: datetime,
    title: str | None = None,
    description: str | None = None,
    location: dict | None = None,
    recurring_template_id: int | None = None,
) -> models.Booking:
    """Insert an open lesson. Must run inside the caller's transaction."""
    booking = models.Booking(
        booking_type=BookingType.public_group,
        coach_id=coach_id,
        scheduled_start_at=start,
        scheduled_end_at=end,
        duration_min=duration_min,
        location=location,
        approval_status=ApprovalStatus.accepted,
        fulfillment_status=FulfillmentStatus.scheduled,
        created_at=now,
    )
    booking.public_group_details = models.PublicGroupLessonDetails(
        title=title,
        description=description,
        min_participants=min_participants,
        max_participants=max_participants,
        price_per_person_cents=price_per_person_cents,
        capacity_status=CapacityStatus.open,
        current_participants=0,
        authorized_participants=0,
        captured_participants=0,
        recurring_template_id=recurring_template_id,
    )
    db.add(booking)
    db.flush()
    booking_state.record_creation(db, booking, actor)
    return booking


def create_public_lesson(
    db: Session, actor: Actor, payload: PublicLessonCreate, now: datetime | None = None
) -> models.Booking:
    now = now or utc_now()
    if actor.role != models.UserRole.coach:
        raise AuthorizationError("Only coaches can create group lessons")
    profile = booking_service.get_coach_profile(db, actor.user_id)
    if not profile.allow_public_groups:
        raise ValidationError("Public group lessons are disabled for this coach")
    validate_capacity(payload.min_participants, payload.max_participants, payload.price_per_person_cents)
    start, end = booking_service.validate_window(payload.scheduled_start_at, payload.duration_min, now)
    # Rejects fee settings that cannot price a seat
    pricing.price_for_payout(payload.price_per_person_cents, profile.platform_fee_percentage)

    with atomic(db):
        booking_service._lock_coach(db, actor.user_id)
        booking_service.ensure_no_overlap(db, actor.user_id, start, end)
        booking = build_public_lesson(
            db,
            actor,
            coach_id=actor.user_id,
            start=start,
            end=end,
            duration_min=payload.duration_min,
            min_participants=payload.min_participants,
            max_participants=payload.max_participants,
            price_per_person_cents=payload.price_per_person_cents,
            now=now,
            title=payload.title,
            description=payload.description,
            location=payload.location,
        )
    logger.info(
        "Public lesson created",
        extra={"booking_id": booking.id, "coach_id": actor.user_id, "max_participants": payload.max_participants},
    )
    return booking


def _release_seat(
    db: Session,
    booking: models.Booking,
    participant: models.BookingParticipant,
    actor: Actor,
    now: datetime,
    *,
    payment_status: ParticipantPaymentStatus | None,
    reason: str | None,
) -> None:
    """Cancel a participant and give the seat back. Booking and participant must be locked."""
    details = booking.public_group_details
    was_authorized = participant.payment_status in (
        ParticipantPaymentStatus.created,
        ParticipantPaymentStatus.captured,
    )
    was_captured = participant.payment_status == ParticipantPaymentStatus.captured
    booking_state.set_participant_state(
        db,
        participant,
        actor,
        status=ParticipantStatus.cancelled,
        payment_status=payment_status,
        reason=reason,
    )
    participant.cancelled_at = now
    details.current_participants -= 1
    if was_authorized:
        details.authorized_participants -= 1
    if was_captured:
        details.captured_participants -= 1
    if (
        details.capacity_status == CapacityStatus.full
        and details.current_participants < details.max_participants
    ):
        booking_state.set_capacity(db, booking, CapacityStatus.open, actor, reason)


def _expire_stale_holds(db: Session, booking: models.Booking, now: datetime) -> int:
    stale = db.execute(
        select(models.BookingParticipant)
        .where(
            models.BookingParticipant.booking_id == booking.id,
            models.BookingParticipant.status == ParticipantStatus.awaiting_payment,
            models.BookingParticipant.payment_status.in_(UNCAPTURED),
            models.BookingParticipant.expires_at <= now,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    for participant in stale:
        _release_seat(
            db,
            booking,
            participant,
            SYSTEM,
            now,
            payment_status=ParticipantPaymentStatus.failed,
            reason=SEAT_HOLD_EXPIRED_REASON,
        )
    return len(stale)


def join_public_lesson(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.BookingParticipant:
    """Reserve a seat, place the payment hold, then record the hold reference.

    The reservation is committed before the processor is called. If the hold is
    rejected the reservation is undone; if the processor does not answer the
    reservation stays for reconciliation to settle.
    """
    now = now or utc_now()
    settings = get_settings()
    booking = locking.get_booking(db, booking_id)
    _require_public(booking)
    if booking.coach_id == actor.user_id:
        raise ValidationError("Coaches cannot join their own lesson", booking_id=booking_id)
    if now >= ensure_aware(booking.scheduled_start_at):
        raise ConflictError("Lesson has already started", booking_id=booking_id)
    profile = booking_service.get_coach_profile(db, booking.coach_id)
    if not profile.processor_account_id:
        raise ValidationError("Coach payment setup incomplete", coach_id=profile.user_id)

    try:
        with atomic(db):
            booking = locking.lock_booking(db, booking_id)
            details = booking.public_group_details
            if booking.approval_status != ApprovalStatus.accepted:
                raise ConflictError("Lesson is not open for joining", booking_id=booking_id)
            if _expire_stale_holds(db, booking, now):
                # the seat reservation below is a conditional UPDATE on the stored counters
                db.flush()
            if details.capacity_status == CapacityStatus.full:
                raise ConflictError("Lesson is full", booking_id=booking_id)
            if details.capacity_status != CapacityStatus.open:
                raise ConflictError("Lesson is not open for joining", booking_id=booking_id)

            existing = db.execute(
                select(models.BookingParticipant)
                .where(
                    models.BookingParticipant.booking_id == booking_id,
                    models.BookingParticipant.user_id == actor.user_id,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if existing is not None:
                if existing.status != ParticipantStatus.cancelled:
                    raise ConflictError("You have already joined this lesson", booking_id=booking_id)
                if existing.payment_status not in REUSABLE_PAYMENT_STATUSES:
                    raise ConflictError("You cannot rejoin this lesson", booking_id=booking_id)
                if existing.processor_ref and existing.hold_released_at is None:
                    raise ConflictError(
                        "Your previous seat is still being released", booking_id=booking_id
                    )

            reserved = db.execute(
                update(models.PublicGroupLessonDetails)
                .where(
                    models.PublicGroupLessonDetails.booking_id == booking_id,
                    models.PublicGroupLessonDetails.capacity_status == CapacityStatus.open,
                    models.PublicGroupLessonDetails.current_participants
                    < models.PublicGroupLessonDetails.max_participants,
                )
                .values(current_participants=models.PublicGroupLessonDetails.current_participants + 1)
            )
            if reserved.rowcount == 0:
                raise ConflictError("Lesson is full", booking_id=booking_id)
            db.refresh(details)
            if details.current_participants >= details.max_participants:
                booking_state.set_capacity(db, booking, CapacityStatus.full, actor, "capacity_reached")

            breakdown = pricing.price_for_payout(
                details.price_per_person_cents, profile.platform_fee_percentage
            )
            hold_key = participant_hold_key(booking_id, actor.user_id)
            fields = dict(
                amount_cents=breakdown.client_pays_cents,
                processor_fee_cents=breakdown.processor_fee_cents,
                platform_fee_cents=breakdown.platform_fee_cents,
                coach_payout_cents=breakdown.coach_payout_cents,
                hold_idempotency_key=hold_key,
                processor_ref=None,
                processor_charge_ref=None,
                expires_at=now + timedelta(hours=settings.seat_hold_hours),
                hold_released_at=None,
                captured_at=None,
                cancelled_at=None,
                refund_amount_cents=None,
                refund_ref=None,
                refunded_at=None,
                created_at=now,
            )
            reused = existing is not None
            if reused:
                participant = existing
                for name, value in fields.items():
                    setattr(participant, name, value)
                booking_state.set_participant_state(
                    db,
                    participant,
                    actor,
                    status=ParticipantStatus.awaiting_payment,
                    payment_status=ParticipantPaymentStatus.requires_payment_method,
                    reason="rejoined",
                )
            else:
                participant = models.BookingParticipant(
                    booking_id=booking_id,
                    user_id=actor.user_id,
                    status=ParticipantStatus.awaiting_payment,
                    payment_status=ParticipantPaymentStatus.requires_payment_method,
                    **fields,
                )
                db.add(participant)
                db.flush()
                audit_service.record_transition(
                    db,
                    booking_id=booking_id,
                    participant_id=participant.id,
                    field="participant_status",
                    old=None,
                    new=participant.status,
                    actor=actor,
                    reason="joined",
                )
            participant_id = participant.id
            amount_cents = participant.amount_cents
    except IntegrityError as exc:
        constraint = getattr(getattr(exc.orig, "diag", None), "constraint_name", "")
        if constraint == "uq_participant_booking_user" or "booking_participants.user_id" in str(exc.orig):
            raise ConflictError("You have already joined this lesson", booking_id=booking_id) from exc
        raise

    client = gateway.get_gateway(settings)
    context = {
        "booking_id": booking_id,
        "participant_id": participant_id,
        "amount_cents": amount_cents,
    }
    try:
        hold = client.create_hold(
            amount_cents,
            profile.processor_account_id,
            {"booking_id": booking_id, "participant_id": participant_id, "user_id": actor.user_id},
            idempotency_key=hold_key,
        )
    except ProcessorTimeout as exc:
        logger.error("Seat hold outcome unknown, left for reconciliation", extra=context)
        raise ExternalServiceError(
            "Payment processor did not respond", retryable=False, **context
        ) from exc
    except ProcessorError as exc:
        logger.error("Seat hold rejected, releasing reservation", extra=context)
        undo_reservation(db, participant_id, reused=reused, now=now)
        raise ExternalServiceError("Payment hold failed", retryable=True, **context) from exc

    stale = False
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        participant = locking.lock_participant(db, participant_id)
        if participant.status == ParticipantStatus.awaiting_payment and participant.processor_ref is None:
            participant.processor_ref = hold.ref
        elif participant.processor_ref != hold.ref:
            stale = True
    if stale:
        booking_service.release_hold(hold.ref, participant_release_key(participant_id), **context)
        raise ConflictError("Seat hold expired before payment started", **context)

    logger.info("Seat reserved", extra={**context, "processor_ref": hold.ref})
    notification_service.notify(
        booking.coach_id,
        "participant_joined",
        {"booking_id": booking_id, "participant_id": participant_id, "user_id": actor.user_id},
    )
    return participant


def undo_reservation(
    db: Session,
    participant_id: int,
    *,
    reused: bool,
    now: datetime | None = None,
    reason: str = "hold_failed",
) -> bool:
    """Compensate a reservation whose hold never materialised."""
    now = now or utc_now()
    participant = db.get(models.BookingParticipant, participant_id)
    if participant is None:
        return False
    with atomic(db):
        booking = locking.lock_booking(db, participant.booking_id)
        participant = locking.lock_participant(db, participant_id)
        if participant.status != ParticipantStatus.awaiting_payment or participant.processor_ref:
            return False
        _release_seat(
            db,
            booking,
            participant,
            SYSTEM,
            now,
            payment_status=ParticipantPaymentStatus.failed,
            reason=reason,
        )
        if not reused:
            db.delete(participant)
    logger.info(
        "Seat reservation released",
        extra={"booking_id": booking.id, "participant_id": participant_id, "reason": reason},
    )
    return True


def _get_participant(db: Session, participant_id: int) -> models.BookingParticipant:
    participant = db.get(models.BookingParticipant, participant_id)
    if participant is None:
        raise NotFoundError("Participant not found", participant_id=participant_id)
    return participant


def record_participant_authorization(
    db: Session, actor: Actor, participant_id: int, now: datetime | None = None
) -> models.BookingParticipant:
    """Mark a seat authorised once the processor reports the hold as capturable."""
    now = now or utc_now()
    participant = _get_participant(db, participant_id)
    if actor.user_id != participant.user_id and actor != SYSTEM:
        raise AuthorizationError("Unauthorized", participant_id=participant_id)
    if participant.payment_status == ParticipantPaymentStatus.created:
        return participant
    if (
        participant.status != ParticipantStatus.awaiting_payment
        or participant.payment_status != ParticipantPaymentStatus.requires_payment_method
    ):
        raise ConflictError("Seat is not awaiting payment", participant_id=participant_id)
    if not participant.processor_ref:
        raise ConflictError("No payment intent found", participant_id=participant_id)

    client = gateway.get_gateway(get_settings())
    try:
        hold = client.retrieve_hold(participant.processor_ref)
    except ProcessorError as exc:
        raise ExternalServiceError(
            "Could not check payment status",
            retryable=True,
            participant_id=participant_id,
        ) from exc
    if hold.status not in CAPTURABLE_STATUSES:
        raise ConflictError(
            "Payment has not been authorised yet",
            participant_id=participant_id,
            hold_status=hold.status,
        )

    with atomic(db):
        booking = locking.lock_booking(db, participant.booking_id)
        participant = locking.lock_participant(db, participant_id)
        if (
            participant.status != ParticipantStatus.awaiting_payment
            or participant.payment_status != ParticipantPaymentStatus.requires_payment_method
        ):
            raise ConflictError("Seat hold has expired", participant_id=participant_id)
        booking_state.set_participant_state(
            db, participant, actor, payment_status=ParticipantPaymentStatus.created, reason="authorized"
        )
        booking.public_group_details.authorized_participants += 1
    logger.info(
        "Seat payment authorised",
        extra={"booking_id": booking.id, "participant_id": participant_id},
    )
    notification_service.notify(
        booking.coach_id,
        "participant_authorized",
        {"booking_id": booking.id, "participant_id": participant_id},
    )
    return participant


def accept_participant(
    db: Session, actor: Actor, participant_id: int, now: datetime | None = None
) -> models.BookingParticipant:
    """Coach confirms a seat: the hold is captured and the seat is paid."""
    now = now or utc_now()
    participant = _get_participant(db, participant_id)
    booking = participant.booking
    _require_public(booking)
    if actor.user_id != booking.coach_id:
        raise AuthorizationError("Unauthorized", participant_id=participant_id)
    if (
        participant.status != ParticipantStatus.awaiting_payment
        or participant.payment_status != ParticipantPaymentStatus.created
    ):
        raise ConflictError("Participant payment is not authorised", participant_id=participant_id)

    context = {
        "booking_id": booking.id,
        "participant_id": participant_id,
        "amount_cents": participant.amount_cents,
        "processor_ref": participant.processor_ref,
    }
    client = gateway.get_gateway(get_settings())
    try:
        capture = client.capture(participant.processor_ref, idempotency_key=participant_capture_key(participant_id))
    except ProcessorTimeout as exc:
        logger.error("Seat capture outcome unknown", extra=context)
        raise ExternalServiceError("Payment capture outcome unknown", retryable=True, **context) from exc
    except ProcessorError as exc:
        logger.error("Seat capture failed", extra=context)
        raise ExternalServiceError("Payment capture failed", retryable=False, **context) from exc

    late = False
    with atomic(db):
        booking = locking.lock_booking(db, booking.id)
        participant = locking.lock_participant(db, participant_id)
        participant.processor_charge_ref = capture.charge_ref
        participant.captured_at = now
        if (
            participant.status == ParticipantStatus.awaiting_payment
            and participant.payment_status == ParticipantPaymentStatus.created
        ):
            booking_state.set_participant_state(
                db,
                participant,
                actor,
                status=ParticipantStatus.confirmed,
                payment_status=ParticipantPaymentStatus.captured,
                reason="accepted",
            )
            booking.public_group_details.captured_participants += 1
        else:
            # The seat expired while the capture was in flight
            late = True
            booking_state.set_participant_state(
                db, participant, SYSTEM, payment_status=ParticipantPaymentStatus.captured, reason="late_capture"
            )
            booking_state.set_participant_state(
                db, participant, SYSTEM, payment_status=ParticipantPaymentStatus.refunded, reason="late_capture"
            )
            participant.refund_amount_cents = participant.amount_cents
            refund = [(participant_id, participant.amount_cents)]

    if late:
        refund_service.execute_participant_refunds(db, refund, revert_on_error=False)
        raise ConflictError("Seat hold expired before capture; the charge is being refunded", **context)

    logger.info("Seat captured", extra={**context, "processor_ref": capture.charge_ref})
    notification_service.notify(
        participant.user_id, "participant_accepted", {"booking_id": booking.id, "participant_id": participant_id}
    )
    return participant


def _release_participant_hold(db: Session, participant_id: int) -> bool:
    participant = db.get(models.BookingParticipant, participant_id)
    if not participant.processor_ref or participant.hold_released_at is not None:
        return False
    released = booking_service.release_hold(
        participant.processor_ref,
        participant_release_key(participant_id),
        booking_id=participant.booking_id,
        participant_id=participant_id,
    )
    if released:
        with atomic(db):
            locked = locking.lock_participant(db, participant_id)
            locked.hold_released_at = utc_now()
    return released


def decline_participant(
    db: Session,
    actor: Actor,
    participant_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.BookingParticipant:
    now = now or utc_now()
    participant = _get_participant(db, participant_id)
    booking = participant.booking
    _require_public(booking)
    if actor.user_id != booking.coach_id:
        raise AuthorizationError("Unauthorized", participant_id=participant_id)

    with atomic(db):
        booking = locking.lock_booking(db, booking.id)
        participant = locking.lock_participant(db, participant_id)
        if (
            participant.status != ParticipantStatus.awaiting_payment
            or participant.payment_status not in UNCAPTURED
        ):
            raise ConflictError("Only pending participants can be declined", participant_id=participant_id)
        _release_seat(
            db,
            booking,
            participant,
            actor,
            now,
            payment_status=ParticipantPaymentStatus.failed,
            reason=reason or "declined",
        )

    _release_participant_hold(db, participant_id)
    logger.info("Participant declined", extra={"booking_id": booking.id, "participant_id": participant_id})
    notification_service.notify(
        participant.user_id,
        "participant_declined",
        {"booking_id": booking.id, "participant_id": participant_id, "reason": reason},
    )
    return participant


def leave_public_lesson(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.BookingParticipant:
    """A participant gives up their seat. Paid seats are refunded per the cancellation policy."""
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_public(booking)
    refund: list[tuple[int, int]] = []

    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        participant = db.execute(
            select(models.BookingParticipant)
            .where(
                models.BookingParticipant.booking_id == booking_id,
                models.BookingParticipant.user_id == actor.user_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if participant is None or participant.status == ParticipantStatus.cancelled:
            raise NotFoundError("You have not joined this lesson", booking_id=booking_id)
        start = ensure_aware(booking.scheduled_start_at)
        if now >= start:
            raise ConflictError("Lesson has already started", booking_id=booking_id)
        was_captured = participant.payment_status == ParticipantPaymentStatus.captured
        if was_captured:
            share = booking_service.refund_share(start - now)
            refund_cents = int(
                (Decimal(participant.amount_cents) * share).quantize(Decimal(1), rounding=ROUND_HALF_EVEN)
            )
            _release_seat(
                db,
                booking,
                participant,
                actor,
                now,
                payment_status=ParticipantPaymentStatus.refunded if refund_cents else None,
                reason="left",
            )
            if refund_cents:
                participant.refund_amount_cents = refund_cents
                refund.append((participant.id, refund_cents))
        else:
            _release_seat(
                db,
                booking,
                participant,
                actor,
                now,
                payment_status=ParticipantPaymentStatus.failed,
                reason="left",
            )
        participant_id = participant.id

    if refund:
        refund_service.execute_participant_refunds(db, refund, revert_on_error=False)
    elif not was_captured:
        _release_participant_hold(db, participant_id)
    logger.info("Participant left lesson", extra={"booking_id": booking_id, "participant_id": participant_id})
    notification_service.notify(
        booking.coach_id, "participant_left", {"booking_id": booking_id, "participant_id": participant_id}
    )
    return participant


def cancel_public_lesson(
    db: Session,
    actor: Actor,
    booking_id: int,
    reason: str | None = None,
    now: datetime | None = None,
    *,
    outcome: ApprovalStatus = ApprovalStatus.cancelled,
) -> models.Booking:
    """Cancel a whole lesson: holds are released and paid seats refunded in full."""
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_public(booking)
    if actor != SYSTEM and actor.user_id != booking.coach_id and not actor.is_admin:
        raise AuthorizationError("Unauthorized", booking_id=booking_id)

    refunds: list[tuple[int, int]] = []
    releases: list[int] = []
    recipients: list[int] = []
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        details = booking.public_group_details
        if (
            booking.approval_status != ApprovalStatus.accepted
            or booking.fulfillment_status != FulfillmentStatus.scheduled
            or details.capacity_status == CapacityStatus.cancelled
        ):
            raise ConflictError("Lesson cannot be cancelled", booking_id=booking_id)
        if actor != SYSTEM and now >= ensure_aware(booking.scheduled_start_at):
            raise ConflictError("Lesson has already started", booking_id=booking_id)
        for participant in locking.lock_participants(db, booking_id):
            if participant.status == ParticipantStatus.cancelled:
                continue
            recipients.append(participant.user_id)
            if participant.payment_status == ParticipantPaymentStatus.captured:
                booking_state.set_participant_state(
                    db,
                    participant,
                    actor,
                    status=ParticipantStatus.cancelled,
                    payment_status=ParticipantPaymentStatus.refunded,
                    reason=reason,
                )
                participant.refund_amount_cents = participant.amount_cents
                refunds.append((participant.id, participant.amount_cents))
            else:
                booking_state.set_participant_state(
                    db,
                    participant,
                    actor,
                    status=ParticipantStatus.cancelled,
                    payment_status=ParticipantPaymentStatus.failed,
                    reason=reason,
                )
                releases.append(participant.id)
            participant.cancelled_at = now
        details.current_participants = 0
        details.authorized_participants = 0
        details.captured_participants = 0
        booking_state.set_capacity(db, booking, CapacityStatus.cancelled, actor, reason)
        booking_state.set_approval(db, booking, outcome, actor, reason)
        booking.cancelled_at = now
        booking.cancelled_by = actor.label
        booking.cancellation_reason = reason

    for participant_id in releases:
        _release_participant_hold(db, participant_id)
    if refunds:
        refund_service.execute_participant_refunds(db, refunds, revert_on_error=False)
    logger.info(
        "Public lesson cancelled",
        extra={"booking_id": booking_id, "refunds": len(refunds), "releases": len(releases)},
    )
    notification_service.dispatch(
        [
            Notification(user_id, "lesson_cancelled", {"booking_id": booking_id, "reason": reason})
            for user_id in recipients
        ]
    )
    return booking


def cancel_underfilled_lessons(db: Session, now: datetime | None = None) -> SweepResult:
    """Cancel lessons that reached their start without enough paid seats."""
    now = now or utc_now()
    booking_ids = list(
        db.execute(
            select(models.Booking.id)
            .join(
                models.PublicGroupLessonDetails,
                models.PublicGroupLessonDetails.booking_id == models.Booking.id,
            )
            .where(
                models.Booking.approval_status == ApprovalStatus.accepted,
                models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                models.Booking.scheduled_start_at <= now,
                models.PublicGroupLessonDetails.capacity_status.in_(
                    (CapacityStatus.open, CapacityStatus.full)
                ),
                models.PublicGroupLessonDetails.captured_participants
                < models.PublicGroupLessonDetails.min_participants,
            )
        ).scalars()
    )
    result = SweepResult()
    for booking_id in booking_ids:
        try:
            cancel_public_lesson(
                db, SYSTEM, booking_id, UNDERFILLED_REASON, now, outcome=ApprovalStatus.expired
            )
        except BookingError as exc:
            logger.info(
                "Lesson skipped by under-fill check",
                extra={"booking_id": booking_id, "reason": exc.message},
            )
            continue
        except Exception as exc:
            db.rollback()
            logger.exception("Under-filled lesson cancellation failed", extra={"booking_id": booking_id})
            result.errors.append(f"{booking_id}: {exc}")
            continue
        result.processed += 1
    return result


def release_expired_seat_holds(db: Session, now: datetime | None = None) -> SweepResult:
    """Free seats whose hold lapsed, then cancel the lapsed holds at the processor."""
    now = now or utc_now()
    result = SweepResult()
    booking_ids = list(
        db.execute(
            select(models.BookingParticipant.booking_id)
            .join(models.Booking, models.Booking.id == models.BookingParticipant.booking_id)
            .where(
                models.Booking.booking_type == BookingType.public_group,
                models.BookingParticipant.status == ParticipantStatus.awaiting_payment,
                models.BookingParticipant.payment_status.in_(UNCAPTURED),
                models.BookingParticipant.expires_at <= now,
            )
            .distinct()
        ).scalars()
    )
    notifications: list[Notification] = []
    for booking_id in booking_ids:
        try:
            with atomic(db):
                booking = locking.lock_booking(db, booking_id)
                expired = _expire_stale_holds(db, booking, now)
        except Exception as exc:
            db.rollback()
            logger.exception("Seat hold expiry failed", extra={"booking_id": booking_id})
            result.errors.append(f"{booking_id}: {exc}")
            continue
        result.processed += expired

    pending_release = list(
        db.execute(
            select(models.BookingParticipant)
            .join(models.Booking, models.Booking.id == models.BookingParticipant.booking_id)
            .where(
                models.Booking.booking_type == BookingType.public_group,
                models.BookingParticipant.status == ParticipantStatus.cancelled,
                models.BookingParticipant.payment_status == ParticipantPaymentStatus.failed,
                models.BookingParticipant.processor_ref.is_not(None),
                models.BookingParticipant.hold_released_at.is_(None),
            )
        ).scalars()
    )
    for participant in pending_release:
        try:
            if _release_participant_hold(db, participant.id):
                notifications.append(
                    Notification(
                        participant.user_id,
                        "seat_hold_expired",
                        {"booking_id": participant.booking_id, "participant_id": participant.id},
                    )
                )
        except Exception as exc:
            db.rollback()
            logger.exception("Seat hold release failed", extra={"participant_id": participant.id})
            result.errors.append(f"participant {participant.id}: {exc}")
    notification_service.dispatch(notifications)
    return result


def lesson_earnings(db: Session, actor: Actor, booking_id: int) -> LessonEarnings:
    """Sum the frozen breakdowns of paid seats only."""
    booking = locking.get_booking(db, booking_id)
    _require_public(booking)
    if actor.user_id != booking.coach_id and not actor.is_admin:
        raise AuthorizationError("Unauthorized", booking_id=booking_id)
    paid = db.execute(
        select(models.BookingParticipant).where(
            models.BookingParticipant.booking_id == booking_id,
            models.BookingParticipant.payment_status == ParticipantPaymentStatus.captured,
        )
    ).scalars().all()
    total = pricing.aggregate(
        pricing.PriceBreakdown(
            client_pays_cents=participant.amount_cents,
            processor_fee_cents=participant.processor_fee_cents,
            platform_fee_cents=participant.platform_fee_cents,
            coach_payout_cents=participant.coach_payout_cents,
        )
        for participant in paid
    )
    return LessonEarnings(booking_id=booking_id, captured_participants=len(paid), **total.as_dict())
