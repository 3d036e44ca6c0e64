from datetime import timedelta

import pytest
from sqlalchemy import select

from coachbook.core.errors import AuthorizationError, ConflictError, ValidationError
from coachbook.core.security import SYSTEM
from coachbook.core.timeutils import ensure_aware
from coachbook.db import models
from coachbook.db.models import ApprovalStatus, DetailPaymentStatus, FulfillmentStatus
from coachbook.db.schemas import PricingTierInput, PrivateGroupBookingCreate
from coachbook.services import booking_service, booking_state, tier_service

from factories import (
    ADMIN,
    NOW,
    START,
    actor_for,
    book_individual,
    create_coach,
    create_user,
    paid_booking,
)


def test_individual_booking_freezes_price(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")

    booking = book_individual(db_session, client, coach)

    details = booking.individual_details
    assert booking.approval_status == ApprovalStatus.pending_review
    assert booking.fulfillment_status == FulfillmentStatus.scheduled
    assert booking.scheduled_end_at == START + timedelta(hours=1)
    assert details.gross_cents == 12147
    assert details.coach_payout_cents == 10000
    assert details.payment_status == DetailPaymentStatus.awaiting_client_payment
    assert details.payment_due_at is None
    assert (coach.id, "booking_requested") in [(recipient, kind) for recipient, kind, _ in notifications]


def test_later_fee_change_does_not_touch_frozen_price(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)

    profile = db_session.get(models.CoachProfile, coach.id)
    profile.platform_fee_percentage = 30
    db_session.commit()

    db_session.refresh(booking.individual_details)
    assert booking.individual_details.gross_cents == 12147


def test_duplicate_request_returns_same_booking(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")

    first = book_individual(db_session, client, coach)
    second = book_individual(db_session, client, coach, now=NOW + timedelta(minutes=5))

    assert first.id == second.id
    assert db_session.execute(select(models.Booking)).scalars().all() == [first]


def test_duplicate_after_window_creates_new_booking(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    first = book_individual(db_session, client, coach)
    booking_service.decline_booking(db_session, actor_for(coach), first.id, "busy", NOW)

    second = book_individual(db_session, client, coach, now=NOW + timedelta(hours=25))

    assert second.id != first.id
    assert second.approval_status == ApprovalStatus.pending_review


def test_overlapping_request_conflicts(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    other = create_user(db_session, "other@example.com")
    book_individual(db_session, client, coach)

    with pytest.raises(ConflictError):
        book_individual(db_session, other, coach, start=START + timedelta(minutes=30))


def test_adjacent_request_is_allowed(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    other = create_user(db_session, "other@example.com")
    book_individual(db_session, client, coach)

    booking = book_individual(db_session, other, coach, start=START + timedelta(hours=1))

    assert booking.approval_status == ApprovalStatus.pending_review


def test_coach_without_payout_account_rejected(db_session):
    coach = create_coach(db_session, account=None)
    client = create_user(db_session, "client@example.com")

    with pytest.raises(ValidationError):
        book_individual(db_session, client, coach)


def test_booking_in_the_past_rejected(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")

    with pytest.raises(ValidationError):
        book_individual(db_session, client, coach, start=NOW - timedelta(hours=1))


def test_accept_sets_payment_deadline(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)

    booking = booking_service.accept_booking(db_session, actor_for(coach), booking.id, NOW)

    assert booking.approval_status == ApprovalStatus.accepted
    assert ensure_aware(booking.individual_details.payment_due_at) == NOW + timedelta(hours=24)
    assert booking_state.derive_ui_status(booking) == "awaiting_payment"
    assert (client.id, "booking_accepted") in [(recipient, kind) for recipient, kind, _ in notifications]


def test_only_the_coach_can_accept(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)

    with pytest.raises(AuthorizationError):
        booking_service.accept_booking(db_session, actor_for(client), booking.id, NOW)


def test_decline_is_terminal(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)

    booking_service.decline_booking(db_session, actor_for(coach), booking.id, "busy", NOW)

    with pytest.raises(ConflictError):
        booking_service.accept_booking(db_session, actor_for(coach), booking.id, NOW)
    assert booking_state.derive_ui_status(booking) == "declined"


def test_payment_hold_and_capture(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")

    booking = paid_booking(db_session, client, coach)

    details = booking.individual_details
    assert details.payment_status == DetailPaymentStatus.captured
    assert details.processor_hold_ref
    assert details.processor_charge_ref
    assert booking_state.derive_ui_status(booking) == "confirmed"
    assert (coach.id, "payment_received") in [(recipient, kind) for recipient, kind, _ in notifications]


def test_confirm_twice_is_a_no_op(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    again = booking_service.confirm_booking_payment(db_session, actor_for(client), booking.id, NOW)

    assert again.individual_details.payment_status == DetailPaymentStatus.captured


def test_payment_after_deadline_rejected(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)
    booking_service.accept_booking(db_session, actor_for(coach), booking.id, NOW)

    with pytest.raises(ConflictError):
        booking_service.start_booking_payment(
            db_session, actor_for(client), booking.id, NOW + timedelta(hours=25)
        )


def test_client_withdraws_pending_request(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)

    booking = booking_service.cancel_booking(db_session, actor_for(client), booking.id, "changed plans", NOW)

    assert booking.approval_status == ApprovalStatus.cancelled
    assert booking.cancelled_by == str(client.id)


def test_coach_cannot_cancel_pending_request(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)

    with pytest.raises(ConflictError):
        booking_service.cancel_booking(db_session, actor_for(coach), booking.id, None, NOW)


@pytest.mark.parametrize(
    "notice,expected_refund",
    [(timedelta(hours=30), 12147), (timedelta(hours=13), 6074)],
)
def test_client_cancellation_refund_policy(db_session, notice, expected_refund):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    booking = booking_service.cancel_booking(
        db_session, actor_for(client), booking.id, "sick", START - notice
    )

    details = booking.individual_details
    db_session.refresh(details)
    assert booking.approval_status == ApprovalStatus.cancelled
    assert details.payment_status == DetailPaymentStatus.refunded
    assert details.refund_amount_cents == expected_refund
    assert details.refund_ref


def test_late_client_cancellation_keeps_payment(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    booking = booking_service.cancel_booking(
        db_session, actor_for(client), booking.id, "sick", START - timedelta(hours=2)
    )

    assert booking.approval_status == ApprovalStatus.cancelled
    assert booking.individual_details.payment_status == DetailPaymentStatus.captured
    assert booking.individual_details.refund_amount_cents is None


def test_coach_cancellation_refunds_in_full(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    booking = booking_service.cancel_booking(
        db_session, actor_for(coach), booking.id, "injury", START - timedelta(hours=2)
    )

    assert booking.individual_details.refund_amount_cents == 12147
    assert (client.id, "booking_cancelled") in [(recipient, kind) for recipient, kind, _ in notifications]
    assert (coach.id, "booking_cancelled") not in [(recipient, kind) for recipient, kind, _ in notifications]


def test_complete_only_after_session_end(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    with pytest.raises(ConflictError):
        booking_service.complete_booking(db_session, actor_for(coach), booking.id, START)

    booking = booking_service.complete_booking(
        db_session, actor_for(coach), booking.id, START + timedelta(hours=2)
    )
    assert booking.coach_marked_complete_at is not None
    assert booking.fulfillment_status == FulfillmentStatus.scheduled
    assert (client.id, "completion_confirmation_requested", {"booking_id": booking.id}) in notifications

    booking = booking_service.confirm_booking_complete(
        db_session, actor_for(client), booking.id, START + timedelta(hours=3)
    )
    assert booking.fulfillment_status == FulfillmentStatus.completed
    assert ensure_aware(booking.completed_at) == START + timedelta(hours=3)
    assert booking_state.derive_ui_status(booking) == "completed"
    assert (coach.id, "booking_completed", {"booking_id": booking.id}) in notifications


def test_client_may_confirm_before_coach_marks(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)
    after = START + timedelta(hours=2)

    booking = booking_service.confirm_booking_complete(db_session, actor_for(client), booking.id, after)
    assert booking.client_confirmed_complete_at is not None
    assert booking.fulfillment_status == FulfillmentStatus.scheduled

    booking = booking_service.mark_booking_complete(db_session, actor_for(coach), booking.id, after)
    assert booking.fulfillment_status == FulfillmentStatus.completed
    assert (client.id, "booking_completed", {"booking_id": booking.id}) in notifications


def test_only_the_payer_confirms_completion(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    stranger = create_user(db_session, "stranger@example.com")
    booking = paid_booking(db_session, client, coach)
    after = START + timedelta(hours=2)

    with pytest.raises(AuthorizationError):
        booking_service.confirm_booking_complete(db_session, actor_for(stranger), booking.id, after)
    with pytest.raises(AuthorizationError):
        booking_service.confirm_booking_complete(db_session, actor_for(coach), booking.id, after)
    with pytest.raises(AuthorizationError):
        booking_service.mark_booking_complete(db_session, actor_for(client), booking.id, after)


def test_admin_completes_in_one_step(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    booking = booking_service.complete_booking(db_session, ADMIN, booking.id, START + timedelta(hours=2))

    assert booking.fulfillment_status == FulfillmentStatus.completed
    assert booking.coach_marked_complete_at is None


def test_half_confirmed_booking_still_auto_completes(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)
    booking_service.mark_booking_complete(db_session, actor_for(coach), booking.id, START + timedelta(hours=2))

    result = booking_service.auto_complete_bookings(db_session, START + timedelta(days=8))

    assert result.processed == 1
    db_session.refresh(booking)
    assert booking.fulfillment_status == FulfillmentStatus.completed


def test_unpaid_booking_cannot_complete(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)
    booking_service.accept_booking(db_session, actor_for(coach), booking.id, NOW)

    with pytest.raises(ConflictError):
        booking_service.complete_booking(
            db_session, actor_for(coach), booking.id, START + timedelta(hours=2)
        )


def test_auto_complete_after_delay(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)

    early = booking_service.auto_complete_bookings(db_session, START + timedelta(days=1))
    late = booking_service.auto_complete_bookings(db_session, START + timedelta(days=8))

    db_session.refresh(booking)
    assert early.processed == 0
    assert late.processed == 1
    assert booking.fulfillment_status == FulfillmentStatus.completed


def test_private_group_priced_from_tier(db_session):
    coach = create_coach(db_session)
    organizer = create_user(db_session, "organizer@example.com")
    friends = [create_user(db_session, f"friend{index}@example.com") for index in range(2)]
    tier_service.update_pricing_tiers(
        db_session,
        actor_for(coach),
        [PricingTierInput(min_participants=2, max_participants=4, price_per_person_cents=5000)],
    )
    payload = PrivateGroupBookingCreate(
        coach_id=coach.id,
        scheduled_start_at=START,
        duration_min=60,
        participant_ids=[friend.id for friend in friends],
    )

    booking = booking_service.create_private_group_booking(db_session, actor_for(organizer), payload, NOW)

    details = booking.private_group_details
    assert details.headcount == 3
    assert details.price_per_person_cents == 5000
    assert details.coach_payout_cents == 15000
    assert sorted(participant.user_id for participant in booking.participants) == sorted(
        [organizer.id] + [friend.id for friend in friends]
    )

    booking_service.accept_booking(db_session, actor_for(coach), booking.id, NOW)
    booking_service.start_booking_payment(db_session, actor_for(organizer), booking.id, NOW)
    booking = booking_service.confirm_booking_payment(db_session, SYSTEM, booking.id, NOW)

    assert booking.private_group_details.payment_status == DetailPaymentStatus.captured
    assert {participant.status for participant in booking.participants} == {
        models.ParticipantStatus.confirmed
    }


def test_private_group_without_matching_tier_rejected(db_session):
    coach = create_coach(db_session)
    organizer = create_user(db_session, "organizer@example.com")
    friend = create_user(db_session, "friend@example.com")
    payload = PrivateGroupBookingCreate(
        coach_id=coach.id, scheduled_start_at=START, duration_min=60, participant_ids=[friend.id]
    )

    with pytest.raises(ValidationError):
        booking_service.create_private_group_booking(db_session, actor_for(organizer), payload, NOW)


def paid_private_group(session):
    coach = create_coach(session)
    organizer = create_user(session, "organizer@example.com")
    friend = create_user(session, "friend@example.com")
    tier_service.update_pricing_tiers(
        session,
        actor_for(coach),
        [PricingTierInput(min_participants=2, max_participants=4, price_per_person_cents=5000)],
    )
    payload = PrivateGroupBookingCreate(
        coach_id=coach.id, scheduled_start_at=START, duration_min=60, participant_ids=[friend.id]
    )
    booking = booking_service.create_private_group_booking(session, actor_for(organizer), payload, NOW)
    booking_service.accept_booking(session, actor_for(coach), booking.id, NOW)
    booking_service.start_booking_payment(session, actor_for(organizer), booking.id, NOW)
    booking_service.confirm_booking_payment(session, actor_for(organizer), booking.id, NOW)
    return coach, booking


def test_private_group_refund_reaches_participant_rows(db_session, notifications):
    coach, booking = paid_private_group(db_session)

    booking_service.cancel_booking(db_session, actor_for(coach), booking.id, "injury", NOW)

    participants = db_session.execute(
        select(models.BookingParticipant).where(models.BookingParticipant.booking_id == booking.id)
    ).scalars().all()
    for participant in participants:
        db_session.refresh(participant)
    db_session.refresh(booking.private_group_details)
    assert booking.private_group_details.payment_status == DetailPaymentStatus.refunded
    assert {participant.payment_status for participant in participants} == {
        models.ParticipantPaymentStatus.refunded
    }
    assert {participant.status for participant in participants} == {models.ParticipantStatus.cancelled}
