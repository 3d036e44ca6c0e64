from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import (
    AUTO_COMPLETE_REASON,
    CANCELLATION_REFUND_POLICY,
    IDEMPOTENCY_WINDOW,
    MAX_BOOKING_DURATION,
    MAX_GROUP_SIZE,
    MIN_GROUP_SIZE,
)
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
    DetailPaymentStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
)
from ..db.schemas import CoachEarnings, IndividualBookingCreate, PrivateGroupBookingCreate
from ..db.session import atomic
from . import booking_state, locking, notification_service, pricing, refund_service, tier_service
from .notification_service import Notification
from .payments import gateway
from .payments.gateway import ProcessorError, ProcessorTimeout

logger = logging.getLogger(__name__)

PAYER_BACKED = (BookingType.individual, BookingType.private_group)


def idempotency_key(
    organizer_id: int, coach_id: int, start: datetime, participant_ids: Iterable[int]
) -> str:
    """Fingerprint of a creation request; identical requests hash identically."""
    payload = {
        "organizer": organizer_id,
        "coach": coach_id,
        "start": ensure_aware(start).isoformat(),
        "participants": sorted(set(participant_ids)),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def booking_hold_key(booking_id: int) -> str:
    return f"hold:booking:{booking_id}"


def booking_capture_key(booking_id: int) -> str:
    return f"capture:booking:{booking_id}"


def validate_window(start: datetime, duration_min: int, now: datetime) -> tuple[datetime, datetime]:
    start = ensure_aware(start)
    max_minutes = int(MAX_BOOKING_DURATION.total_seconds() // 60)
    if duration_min <= 0 or duration_min > max_minutes:
        raise ValidationError(f"Duration must be between 1 and {max_minutes} minutes")
    if start <= now:
        raise ValidationError("Booking must start in the future")
    return start, start + timedelta(minutes=duration_min)


def get_coach_profile(db: Session, coach_id: int) -> models.CoachProfile:
    profile = db.get(models.CoachProfile, coach_id)
    if profile is None:
        raise NotFoundError("Coach not found", coach_id=coach_id)
    return profile


def ensure_no_overlap(db: Session, coach_id: int, start: datetime, end: datetime) -> None:
    clash = db.execute(
        select(models.Booking.id)
        .where(
            models.Booking.coach_id == coach_id,
            models.Booking.approval_status.in_(booking_state.ACTIVE_APPROVAL_STATUSES),
            models.Booking.scheduled_start_at < end,
            models.Booking.scheduled_end_at > start,
        )
        .limit(1)
    ).scalar_one_or_none()
    if clash is not None:
        raise ConflictError(
            "This time slot is no longer available. Please select a different time.",
            coach_id=coach_id,
            conflicting_booking_id=clash,
        )


def ensure_payout_account(profile: models.CoachProfile) -> str:
    """Confirm with the processor that the coach can receive money."""
    if not profile.processor_account_id:
        raise ValidationError("Coach payment setup incomplete", coach_id=profile.user_id)
    client = gateway.get_gateway(get_settings())
    try:
        status = client.retrieve_account(profile.processor_account_id)
    except ProcessorError as exc:
        logger.error(
            "Could not verify coach payment account",
            extra={"coach_id": profile.user_id, "processor_ref": profile.processor_account_id},
        )
        raise ExternalServiceError(
            "Could not verify coach payment account",
            retryable=isinstance(exc, ProcessorTimeout),
            coach_id=profile.user_id,
        ) from exc
    if not status.ready:
        raise ValidationError("Coach payment setup incomplete", coach_id=profile.user_id)
    return profile.processor_account_id


def release_hold(hold_ref: str, idempotency_key: str, **context) -> bool:
    """Cancel an uncaptured hold. The processor expires holds on its own, so failures are only logged."""
    client = gateway.get_gateway(get_settings())
    try:
        client.cancel_hold(hold_ref, idempotency_key=idempotency_key)
    except ProcessorError:
        logger.exception("Failed to release payment hold", extra={"processor_ref": hold_ref, **context})
        return False
    return True


def _find_recent_duplicate(db: Session, key: str, now: datetime) -> models.Booking | None:
    return (
        db.execute(
            select(models.Booking)
            .where(
                models.Booking.idempotency_key == key,
                models.Booking.created_at > now - IDEMPOTENCY_WINDOW,
            )
            .order_by(models.Booking.id.desc())
        )
        .scalars()
        .first()
    )


def _lock_coach(db: Session, coach_id: int) -> models.CoachProfile:
    # Serializes booking creation per coach so the overlap check cannot race
    return db.execute(
        select(models.CoachProfile)
        .where(models.CoachProfile.user_id == coach_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def _payer_notifications(booking: models.Booking, kind: str, context: dict) -> list[Notification]:
    recipients = [booking.payer_id]
    if booking.booking_type == BookingType.private_group:
        recipients += [
            participant.user_id
            for participant in booking.participants
            if participant.user_id != booking.payer_id
        ]
    return [Notification(recipient, kind, context) for recipient in recipients]


def _require_payer_backed(booking: models.Booking) -> None:
    if booking.booking_type not in PAYER_BACKED:
        raise ValidationError(
            "Operation is not available for public group lessons", booking_id=booking.id
        )


def _require_coach(booking: models.Booking, actor: Actor) -> None:
    if actor.user_id != booking.coach_id:
        raise AuthorizationError("Unauthorized", booking_id=booking.id)


def get_visible_booking(db: Session, actor: Actor, booking_id: int) -> models.Booking:
    """Load a booking for one of its parties. Public lessons are listings anyone may read."""
    booking = locking.get_booking(db, booking_id)
    if booking.booking_type == BookingType.public_group or actor.is_admin:
        return booking
    if actor.user_id in (booking.coach_id, booking.payer_id):
        return booking
    if any(
        participant.user_id == actor.user_id and participant.status != ParticipantStatus.cancelled
        for participant in booking.participants
    ):
        return booking
    raise AuthorizationError("Unauthorized", booking_id=booking_id)


def create_individual_booking(
    db: Session,
    actor: Actor,
    payload: IndividualBookingCreate,
    now: datetime | None = None,
) -> models.Booking:
    now = now or utc_now()
    if actor.role != models.UserRole.client:
        raise AuthorizationError("Only clients can request bookings")
    if payload.coach_id == actor.user_id:
        raise ValidationError("You cannot book yourself")
    start, end = validate_window(payload.scheduled_start_at, payload.duration_min, now)
    profile = get_coach_profile(db, payload.coach_id)
    if not profile.processor_account_id:
        raise ValidationError("Coach payment setup incomplete", coach_id=profile.user_id)
    breakdown = pricing.calculate_booking_pricing(
        profile.hourly_rate, payload.duration_min, profile.platform_fee_percentage
    )
    key = idempotency_key(actor.user_id, payload.coach_id, start, [actor.user_id])

    with atomic(db):
        _lock_coach(db, payload.coach_id)
        existing = _find_recent_duplicate(db, key, now)
        if existing is not None:
            logger.info(
                "Duplicate booking request collapsed",
                extra={"booking_id": existing.id, "client_id": actor.user_id},
            )
            return existing
        ensure_no_overlap(db, payload.coach_id, start, end)
        booking = models.Booking(
            booking_type=BookingType.individual,
            coach_id=payload.coach_id,
            scheduled_start_at=start,
            scheduled_end_at=end,
            duration_min=payload.duration_min,
            location=payload.location,
            approval_status=ApprovalStatus.pending_review,
            fulfillment_status=FulfillmentStatus.scheduled,
            idempotency_key=key,
            created_at=now,
        )
        booking.individual_details = models.IndividualBookingDetails(
            client_id=actor.user_id,
            hourly_rate=profile.hourly_rate,
            client_message=payload.client_message,
            gross_cents=breakdown.client_pays_cents,
            processor_fee_cents=breakdown.processor_fee_cents,
            platform_fee_cents=breakdown.platform_fee_cents,
            coach_payout_cents=breakdown.coach_payout_cents,
            payment_status=DetailPaymentStatus.awaiting_client_payment,
        )
        db.add(booking)
        db.flush()
        booking_state.record_creation(db, booking, actor)

    logger.info(
        "Individual booking requested",
        extra={"booking_id": booking.id, "coach_id": booking.coach_id, "amount_cents": breakdown.client_pays_cents},
    )
    notification_service.notify(
        booking.coach_id,
        "booking_requested",
        {"booking_id": booking.id, "amount_cents": breakdown.coach_payout_cents},
    )
    return booking


def create_private_group_booking(
    db: Session,
    actor: Actor,
    payload: PrivateGroupBookingCreate,
    now: datetime | None = None,
) -> models.Booking:
    now = now or utc_now()
    if actor.role != models.UserRole.client:
        raise AuthorizationError("Only clients can organise group bookings")
    invited = sorted({user_id for user_id in payload.participant_ids if user_id != actor.user_id})
    if payload.coach_id == actor.user_id or payload.coach_id in invited:
        raise ValidationError("The coach cannot be a participant")
    headcount = len(invited) + 1
    if headcount < MIN_GROUP_SIZE or headcount > MAX_GROUP_SIZE:
        raise ValidationError(
            f"A group needs between {MIN_GROUP_SIZE} and {MAX_GROUP_SIZE} participants"
        )
    found = set(db.execute(select(models.User.id).where(models.User.id.in_(invited))).scalars())
    missing = [user_id for user_id in invited if user_id not in found]
    if missing:
        raise NotFoundError("Participant not found", user_ids=missing)
    start, end = validate_window(payload.scheduled_start_at, payload.duration_min, now)
    profile = get_coach_profile(db, payload.coach_id)
    if not profile.processor_account_id:
        raise ValidationError("Coach payment setup incomplete", coach_id=profile.user_id)
    tier = tier_service.resolve_tier(db, payload.coach_id, headcount)
    totals = pricing.calculate_group_totals(
        tier.price_per_person_cents, headcount, profile.platform_fee_percentage
    )
    key = idempotency_key(actor.user_id, payload.coach_id, start, [actor.user_id, *invited])

    try:
        with atomic(db):
            _lock_coach(db, payload.coach_id)
            existing = _find_recent_duplicate(db, key, now)
            if existing is not None:
                logger.info(
                    "Duplicate booking request collapsed",
                    extra={"booking_id": existing.id, "client_id": actor.user_id},
                )
                return existing
            ensure_no_overlap(db, payload.coach_id, start, end)
            booking = models.Booking(
                booking_type=BookingType.private_group,
                coach_id=payload.coach_id,
                scheduled_start_at=start,
                scheduled_end_at=end,
                duration_min=payload.duration_min,
                location=payload.location,
                approval_status=ApprovalStatus.pending_review,
                fulfillment_status=FulfillmentStatus.scheduled,
                idempotency_key=key,
                created_at=now,
            )
            booking.private_group_details = models.PrivateGroupBookingDetails(
                organizer_id=actor.user_id,
                headcount=headcount,
                price_per_person_cents=tier.price_per_person_cents,
                client_message=payload.client_message,
                gross_cents=totals.total.client_pays_cents,
                processor_fee_cents=totals.total.processor_fee_cents,
                platform_fee_cents=totals.total.platform_fee_cents,
                coach_payout_cents=totals.total.coach_payout_cents,
                payment_status=DetailPaymentStatus.awaiting_client_payment,
            )
            per_person = totals.per_person
            for user_id in [actor.user_id, *invited]:
                booking.participants.append(
                    models.BookingParticipant(
                        user_id=user_id,
                        status=ParticipantStatus.awaiting_payment,
                        payment_status=ParticipantPaymentStatus.requires_payment_method,
                        amount_cents=per_person.client_pays_cents,
                        processor_fee_cents=per_person.processor_fee_cents,
                        platform_fee_cents=per_person.platform_fee_cents,
                        coach_payout_cents=per_person.coach_payout_cents,
                        created_at=now,
                    )
                )
            db.add(booking)
            db.flush()
            booking_state.record_creation(db, booking, actor)
    except IntegrityError as exc:
        if "uq_participant_booking_user" in str(exc.orig):
            raise ConflictError("Duplicate participant") from exc
        raise

    logger.info(
        "Private group booking requested",
        extra={
            "booking_id": booking.id,
            "coach_id": booking.coach_id,
            "headcount": headcount,
            "amount_cents": totals.total.client_pays_cents,
        },
    )
    notification_service.notify(
        booking.coach_id,
        "booking_requested",
        {"booking_id": booking.id, "headcount": headcount},
    )
    return booking


def accept_booking(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.Booking:
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    _require_coach(booking, actor)
    ensure_payout_account(get_coach_profile(db, booking.coach_id))
    settings = get_settings()

    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        if booking.approval_status != ApprovalStatus.pending_review:
            raise ConflictError("Booking is not pending", booking_id=booking_id)
        booking_state.set_approval(db, booking, ApprovalStatus.accepted, actor)
        booking.coach_responded_at = now
        details = booking.details
        if details.payment_due_at is None:
            details.payment_due_at = now + timedelta(hours=settings.payment_deadline_hours)

    logger.info(
        "Booking accepted",
        extra={"booking_id": booking_id, "payment_due_at": details.payment_due_at.isoformat()},
    )
    notification_service.dispatch(
        _payer_notifications(
            booking,
            "booking_accepted",
            {
                "booking_id": booking_id,
                "amount_cents": details.gross_cents,
                "payment_due_at": ensure_aware(details.payment_due_at).isoformat(),
            },
        )
    )
    return booking


def decline_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.Booking:
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    _require_coach(booking, actor)

    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        if booking.approval_status != ApprovalStatus.pending_review:
            raise ConflictError("Booking is not pending", booking_id=booking_id)
        booking_state.set_approval(db, booking, ApprovalStatus.declined, actor, reason)
        booking.coach_responded_at = now
        booking.cancellation_reason = reason
        hold_ref = booking.details.processor_hold_ref

    if hold_ref:
        release_hold(hold_ref, f"release:booking:{booking_id}", booking_id=booking_id)
    logger.info("Booking declined", extra={"booking_id": booking_id})
    notification_service.dispatch(
        _payer_notifications(booking, "booking_declined", {"booking_id": booking_id, "reason": reason})
    )
    return booking


def refund_share(notice: timedelta) -> Decimal:
    """Share of the charge returned to a client cancelling with ``notice`` before the start."""
    for minimum_notice, share in CANCELLATION_REFUND_POLICY:
        if notice >= minimum_notice:
            return Decimal(str(share))
    return Decimal(0)


def cancel_booking(
    db: Session,
    actor: Actor,
    booking_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.Booking:
    """Cancel an individual or private-group booking, refunding per the cancellation policy.

    Coach and admin cancellations refund in full. A client cancelling an
    accepted booking gets the policy share for the notice given. A client may
    also withdraw a request that is still pending review.
    """
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    is_payer = actor.user_id == booking.payer_id
    is_coach = actor.user_id == booking.coach_id
    if not (is_payer or is_coach or actor.is_admin):
        raise AuthorizationError("Unauthorized", booking_id=booking_id)

    refund_cents = 0
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        start = ensure_aware(booking.scheduled_start_at)
        if booking.approval_status == ApprovalStatus.pending_review:
            if not (is_payer or actor.is_admin):
                raise ConflictError("Pending requests are declined, not cancelled", booking_id=booking_id)
        elif booking.approval_status == ApprovalStatus.accepted:
            if booking.fulfillment_status != FulfillmentStatus.scheduled or now >= start:
                raise ConflictError("Booking cannot be cancelled", booking_id=booking_id)
        else:
            raise ConflictError("Booking cannot be cancelled", booking_id=booking_id)

        details = booking.details
        hold_ref = None
        if details.payment_status == DetailPaymentStatus.captured:
            share = Decimal(1) if (is_coach or actor.is_admin) else refund_share(start - now)
            refund_cents = int(
                (Decimal(details.gross_cents) * share).quantize(Decimal(1), rounding=ROUND_HALF_EVEN)
            )
            if refund_cents > 0:
                refund_service.reserve_detail_refund(db, booking, refund_cents, actor, reason)
        elif details.payment_status == DetailPaymentStatus.awaiting_client_payment:
            hold_ref = details.processor_hold_ref

        booking_state.set_approval(db, booking, ApprovalStatus.cancelled, actor, reason)
        booking.cancelled_at = now
        booking.cancelled_by = actor.label
        booking.cancellation_reason = reason
        for participant in locking.lock_participants(db, booking_id):
            booking_state.set_participant_state(
                db, participant, actor, status=ParticipantStatus.cancelled, reason=reason
            )
            participant.cancelled_at = now

    logger.info(
        "Booking cancelled",
        extra={"booking_id": booking_id, "actor": actor.label, "refund_cents": refund_cents},
    )
    if refund_cents:
        try:
            refund_service.execute_detail_refund(db, booking_id, actor=actor, revert_on_error=False)
        except ProcessorError:
            logger.error(
                "Cancellation refund left for reconciliation",
                extra={"booking_id": booking_id, "amount_cents": refund_cents},
            )
    if hold_ref:
        release_hold(hold_ref, f"release:booking:{booking_id}", booking_id=booking_id)

    context = {"booking_id": booking_id, "refund_cents": refund_cents, "reason": reason}
    notifications = _payer_notifications(booking, "booking_cancelled", context)
    notifications.append(Notification(booking.coach_id, "booking_cancelled", context))
    notification_service.dispatch(
        [notification for notification in notifications if notification.recipient != actor.user_id]
    )
    return booking


def start_booking_payment(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.Booking:
    """Place the payment hold for an accepted booking's frozen price."""
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    if actor.user_id != booking.payer_id:
        raise AuthorizationError("Unauthorized", booking_id=booking_id)
    details = booking.details
    if (
        booking.approval_status != ApprovalStatus.accepted
        or details.payment_status != DetailPaymentStatus.awaiting_client_payment
    ):
        raise ConflictError("Booking is not awaiting payment", booking_id=booking_id)
    if now > ensure_aware(details.payment_due_at):
        raise ConflictError(
            "Payment deadline has passed. This booking will be cancelled.", booking_id=booking_id
        )
    if details.processor_hold_ref:
        return booking
    profile = get_coach_profile(db, booking.coach_id)
    if not profile.processor_account_id:
        raise ValidationError("Coach payment setup incomplete", coach_id=profile.user_id)

    client = gateway.get_gateway(get_settings())
    try:
        hold = client.create_hold(
            details.gross_cents,
            profile.processor_account_id,
            {"booking_id": booking_id, "payer_id": actor.user_id, "coach_id": booking.coach_id},
            idempotency_key=booking_hold_key(booking_id),
        )
    except ProcessorError as exc:
        logger.error(
            "Payment hold failed",
            extra={"booking_id": booking_id, "amount_cents": details.gross_cents},
        )
        raise ExternalServiceError(
            "Payment processor error", retryable=True, booking_id=booking_id
        ) from exc

    stale = False
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        details = booking.details
        if (
            booking.approval_status != ApprovalStatus.accepted
            or details.payment_status != DetailPaymentStatus.awaiting_client_payment
        ):
            stale = True
        elif details.processor_hold_ref is None:
            details.processor_hold_ref = hold.ref
    if stale:
        release_hold(hold.ref, f"release:booking:{booking_id}", booking_id=booking_id)
        raise ConflictError("Booking is no longer awaiting payment", booking_id=booking_id)
    logger.info(
        "Payment hold placed",
        extra={"booking_id": booking_id, "processor_ref": hold.ref, "amount_cents": details.gross_cents},
    )
    return booking


def confirm_booking_payment(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.Booking:
    """Capture the hold once the client has authorised it."""
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    if actor.user_id != booking.payer_id and actor != SYSTEM:
        raise AuthorizationError("Unauthorized", booking_id=booking_id)
    details = booking.details
    if details.payment_status == DetailPaymentStatus.captured:
        return booking
    if not details.processor_hold_ref:
        raise ConflictError("No payment intent found", booking_id=booking_id)
    if (
        booking.approval_status != ApprovalStatus.accepted
        or details.payment_status != DetailPaymentStatus.awaiting_client_payment
    ):
        raise ConflictError("Booking is not awaiting payment", booking_id=booking_id)
    if now > ensure_aware(details.payment_due_at):
        raise ConflictError(
            "Payment deadline has passed. This booking will be cancelled.", booking_id=booking_id
        )

    hold_ref = details.processor_hold_ref
    client = gateway.get_gateway(get_settings())
    try:
        capture = client.capture(hold_ref, idempotency_key=booking_capture_key(booking_id))
    except ProcessorTimeout as exc:
        logger.error(
            "Payment capture outcome unknown",
            extra={"booking_id": booking_id, "processor_ref": hold_ref, "amount_cents": details.gross_cents},
        )
        raise ExternalServiceError(
            "Payment capture outcome unknown", retryable=True, booking_id=booking_id
        ) from exc
    except ProcessorError as exc:
        logger.error(
            "Payment capture failed",
            extra={"booking_id": booking_id, "processor_ref": hold_ref, "amount_cents": details.gross_cents},
        )
        raise ExternalServiceError(
            "Payment capture failed", retryable=False, booking_id=booking_id
        ) from exc

    compensate = False
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        details = booking.details
        details.processor_charge_ref = capture.charge_ref
        details.captured_at = now
        if (
            booking.approval_status == ApprovalStatus.accepted
            and details.payment_status == DetailPaymentStatus.awaiting_client_payment
        ):
            booking_state.set_payment_status(db, booking, DetailPaymentStatus.captured, actor)
            for participant in locking.lock_participants(db, booking_id):
                booking_state.set_participant_state(
                    db,
                    participant,
                    actor,
                    status=ParticipantStatus.confirmed,
                    payment_status=ParticipantPaymentStatus.captured,
                )
                participant.captured_at = now
        else:
            # Cancelled while the capture was in flight
            compensate = True
            booking_state.set_payment_status(
                db, booking, DetailPaymentStatus.captured, SYSTEM, "late_capture"
            )
            refund_service.reserve_detail_refund(db, booking, None, SYSTEM, "late_capture")

    if compensate:
        logger.warning(
            "Captured a cancelled booking, refunding in full",
            extra={"booking_id": booking_id, "processor_ref": capture.charge_ref},
        )
        try:
            refund_service.execute_detail_refund(db, booking_id, actor=SYSTEM, revert_on_error=False)
        except ProcessorError:
            logger.error(
                "Late capture refund left for reconciliation",
                extra={"booking_id": booking_id, "amount_cents": details.gross_cents},
            )
        raise ConflictError(
            "Booking was cancelled before payment completed; the charge is being refunded",
            booking_id=booking_id,
        )

    logger.info(
        "Payment captured",
        extra={"booking_id": booking_id, "processor_ref": capture.charge_ref, "amount_cents": details.gross_cents},
    )
    notification_service.notify(
        booking.coach_id,
        "payment_received",
        {"booking_id": booking_id, "amount_cents": details.coach_payout_cents},
    )
    return booking


def _check_completable(booking: models.Booking, now: datetime) -> None:
    if booking.approval_status != ApprovalStatus.accepted:
        raise ConflictError("Only accepted bookings can be completed", booking_id=booking.id)
    if booking.fulfillment_status != FulfillmentStatus.scheduled:
        raise ConflictError("Booking cannot be completed", booking_id=booking.id)
    if now < ensure_aware(booking.scheduled_end_at):
        raise ConflictError("Session has not ended yet", booking_id=booking.id)
    if (
        booking.booking_type in PAYER_BACKED
        and booking.details.payment_status != DetailPaymentStatus.captured
    ):
        raise ConflictError("Booking has not been paid", booking_id=booking.id)


def _complete(
    db: Session, booking_id: int, actor: Actor, now: datetime, reason: str | None = None
) -> models.Booking:
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        _check_completable(booking, now)
        booking_state.set_fulfillment(db, booking, FulfillmentStatus.completed, actor, reason)
        booking.completed_at = now
    return booking


def _record_completion(
    db: Session, actor: Actor, booking_id: int, now: datetime, *, by_coach: bool
) -> tuple[models.Booking, bool]:
    """Record one side of a two-sided completion. The session completes once both sides agree."""
    with atomic(db):
        booking = locking.lock_booking(db, booking_id)
        _check_completable(booking, now)
        if by_coach:
            booking.coach_marked_complete_at = booking.coach_marked_complete_at or now
        else:
            booking.client_confirmed_complete_at = booking.client_confirmed_complete_at or now
        done = (
            booking.coach_marked_complete_at is not None
            and booking.client_confirmed_complete_at is not None
        )
        if done:
            booking_state.set_fulfillment(db, booking, FulfillmentStatus.completed, actor, "confirmed_by_both")
            booking.completed_at = now
    return booking, done


def mark_booking_complete(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.Booking:
    """The coach reports the session as delivered."""
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    _require_coach(booking, actor)
    booking, done = _record_completion(db, actor, booking_id, now, by_coach=True)
    logger.info("Booking marked complete by coach", extra={"booking_id": booking_id, "completed": done})
    notification_service.dispatch(
        _payer_notifications(
            booking,
            "booking_completed" if done else "completion_confirmation_requested",
            {"booking_id": booking_id},
        )
    )
    return booking


def confirm_booking_complete(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.Booking:
    """The paying client confirms the session took place."""
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    _require_payer_backed(booking)
    if actor.user_id != booking.payer_id:
        raise AuthorizationError("Unauthorized", booking_id=booking_id)
    booking, done = _record_completion(db, actor, booking_id, now, by_coach=False)
    logger.info("Booking completion confirmed by client", extra={"booking_id": booking_id, "completed": done})
    notification_service.notify(
        booking.coach_id,
        "booking_completed" if done else "completion_confirmed_by_client",
        {"booking_id": booking_id},
    )
    return booking


def complete_booking(
    db: Session, actor: Actor, booking_id: int, now: datetime | None = None
) -> models.Booking:
    """Close a session in one step.

    Coaches close their public lessons this way and admins may close any
    booking. A coach calling this on a one-to-one or private-group booking only
    records their side; the client still has to confirm.
    """
    now = now or utc_now()
    booking = locking.get_booking(db, booking_id)
    if actor.user_id != booking.coach_id and not actor.is_admin:
        raise AuthorizationError("Unauthorized", booking_id=booking_id)
    if booking.booking_type in PAYER_BACKED and not actor.is_admin:
        return mark_booking_complete(db, actor, booking_id, now)
    booking = _complete(db, booking_id, actor, now)
    logger.info("Booking completed", extra={"booking_id": booking_id})
    if booking.booking_type in PAYER_BACKED:
        notification_service.dispatch(_payer_notifications(booking, "booking_completed", {"booking_id": booking_id}))
    return booking


def auto_complete_bookings(db: Session, now: datetime | None = None) -> SweepResult:
    """Complete sessions that ended long enough ago without a dispute."""
    now = now or utc_now()
    cutoff = now - timedelta(hours=get_settings().auto_complete_delay_hours)
    booking_ids = list(
        db.execute(
            select(models.Booking.id).where(
                models.Booking.approval_status == ApprovalStatus.accepted,
                models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                models.Booking.scheduled_end_at <= cutoff,
            )
        ).scalars()
    )
    result = SweepResult()
    for booking_id in booking_ids:
        try:
            _complete(db, booking_id, SYSTEM, now, AUTO_COMPLETE_REASON)
        except BookingError as exc:
            logger.info(
                "Booking skipped by auto-completion",
                extra={"booking_id": booking_id, "reason": exc.message},
            )
            continue
        except Exception as exc:
            db.rollback()
            logger.exception("Auto-completion failed", extra={"booking_id": booking_id})
            result.errors.append(f"{booking_id}: {exc}")
            continue
        result.processed += 1
    return result


def coach_earnings_summary(
    db: Session, actor: Actor, coach_id: int | None = None, now: datetime | None = None
) -> CoachEarnings:
    """Totals over a coach's completed sessions, counting only money still held."""
    now = now or utc_now()
    coach_id = actor.user_id if coach_id is None else coach_id
    if actor.user_id != coach_id and not actor.is_admin:
        raise AuthorizationError("Unauthorized", coach_id=coach_id)
    get_coach_profile(db, coach_id)

    completed = db.execute(
        select(models.Booking).where(
            models.Booking.coach_id == coach_id,
            models.Booking.fulfillment_status == FulfillmentStatus.completed,
        )
    ).scalars().all()
    breakdowns = []
    for booking in completed:
        if booking.booking_type in PAYER_BACKED:
            details = booking.details
            if details.payment_status == DetailPaymentStatus.captured:
                breakdowns.append(
                    pricing.PriceBreakdown(
                        client_pays_cents=details.gross_cents,
                        processor_fee_cents=details.processor_fee_cents,
                        platform_fee_cents=details.platform_fee_cents,
                        coach_payout_cents=details.coach_payout_cents,
                    )
                )
            continue
        breakdowns.extend(
            pricing.PriceBreakdown(
                client_pays_cents=participant.amount_cents,
                processor_fee_cents=participant.processor_fee_cents,
                platform_fee_cents=participant.platform_fee_cents,
                coach_payout_cents=participant.coach_payout_cents,
            )
            for participant in booking.participants
            if participant.payment_status == ParticipantPaymentStatus.captured
        )
    upcoming = len(
        db.execute(
            select(models.Booking.id).where(
                models.Booking.coach_id == coach_id,
                models.Booking.approval_status == ApprovalStatus.accepted,
                models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                models.Booking.scheduled_start_at > now,
            )
        ).scalars().all()
    )
    total = pricing.aggregate(breakdowns)
    return CoachEarnings(
        coach_id=coach_id,
        completed_bookings=len(completed),
        upcoming_bookings=upcoming,
        **total.as_dict(),
    )
