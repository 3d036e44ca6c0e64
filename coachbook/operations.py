"""Internal API surface for callers outside the HTTP layer.

Every operation returns ``Success(value)`` or ``Failure(error)``. Expected
business failures never raise; unexpected exceptions still propagate.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from .core.results import returns_result
from .core.security import Actor
from .db import models
from .db.models import BookingType
from .services import (
    admin_service,
    booking_service,
    dispute_service,
    group_lesson_service,
    locking,
    recurring_service,
    tier_service,
)

create_individual_booking = returns_result(booking_service.create_individual_booking)
create_private_group_booking = returns_result(booking_service.create_private_group_booking)
create_public_group_lesson = returns_result(group_lesson_service.create_public_lesson)
join_public_lesson = returns_result(group_lesson_service.join_public_lesson)
leave_public_lesson = returns_result(group_lesson_service.leave_public_lesson)
accept_booking = returns_result(booking_service.accept_booking)
decline_booking = returns_result(booking_service.decline_booking)
start_booking_payment = returns_result(booking_service.start_booking_payment)
confirm_booking_payment = returns_result(booking_service.confirm_booking_payment)
complete_booking = returns_result(booking_service.complete_booking)
mark_booking_complete = returns_result(booking_service.mark_booking_complete)
confirm_booking_complete = returns_result(booking_service.confirm_booking_complete)
coach_earnings_summary = returns_result(booking_service.coach_earnings_summary)
record_participant_authorization = returns_result(group_lesson_service.record_participant_authorization)
accept_participant = returns_result(group_lesson_service.accept_participant)
decline_participant = returns_result(group_lesson_service.decline_participant)
initiate_dispute = returns_result(dispute_service.initiate_dispute)
resolve_dispute = returns_result(dispute_service.resolve_dispute)
refund_booking = returns_result(dispute_service.refund_booking)
update_pricing_tiers = returns_result(tier_service.update_pricing_tiers)
update_platform_fee = returns_result(admin_service.update_platform_fee)
create_recurring_template = returns_result(recurring_service.create_recurring_template)
update_recurring_template = returns_result(recurring_service.update_recurring_template)
generate_recurring_instances = returns_result(recurring_service.generate_recurring_instances)
cancel_recurring_template = returns_result(recurring_service.cancel_recurring_template)


def _cancel(
    db: Session,
    actor: Actor,
    booking_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.Booking:
    booking = locking.get_booking(db, booking_id)
    if booking.booking_type == BookingType.public_group:
        return group_lesson_service.cancel_public_lesson(db, actor, booking_id, reason, now)
    return booking_service.cancel_booking(db, actor, booking_id, reason, now)


cancel_booking = returns_result(_cancel)


__all__ = [
    "create_individual_booking",
    "create_private_group_booking",
    "create_public_group_lesson",
    "join_public_lesson",
    "leave_public_lesson",
    "accept_booking",
    "decline_booking",
    "cancel_booking",
    "start_booking_payment",
    "confirm_booking_payment",
    "complete_booking",
    "mark_booking_complete",
    "confirm_booking_complete",
    "coach_earnings_summary",
    "record_participant_authorization",
    "accept_participant",
    "decline_participant",
    "initiate_dispute",
    "resolve_dispute",
    "refund_booking",
    "update_pricing_tiers",
    "update_platform_fee",
    "create_recurring_template",
    "update_recurring_template",
    "generate_recurring_instances",
    "cancel_recurring_template",
]
