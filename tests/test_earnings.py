from datetime import timedelta

import pytest

from coachbook.core.errors import AuthorizationError
from coachbook.services import booking_service, group_lesson_service

from factories import ADMIN, NOW, START, actor_for, create_coach, create_lesson, create_user, paid_booking


def paid_seat(session, coach, user, lesson):
    participant = group_lesson_service.join_public_lesson(session, actor_for(user), lesson.id, NOW)
    group_lesson_service.record_participant_authorization(session, actor_for(user), participant.id, NOW)
    return group_lesson_service.accept_participant(session, actor_for(coach), participant.id, NOW)


def test_summary_totals_completed_sessions(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    alice = create_user(db_session, "alice@example.com")
    bob = create_user(db_session, "bob@example.com")

    individual = paid_booking(db_session, client, coach)
    booking_service.complete_booking(db_session, ADMIN, individual.id, START + timedelta(hours=2))

    lesson = create_lesson(db_session, coach, start=START + timedelta(days=1))
    paid_seat(db_session, coach, alice, lesson)
    paid_seat(db_session, coach, bob, lesson)
    booking_service.complete_booking(db_session, actor_for(coach), lesson.id, START + timedelta(days=1, hours=2))

    paid_booking(db_session, client, coach, start=START + timedelta(days=2))

    summary = booking_service.coach_earnings_summary(
        db_session, actor_for(coach), now=START + timedelta(days=1, hours=3)
    )

    assert summary.coach_id == coach.id
    assert summary.completed_bookings == 2
    assert summary.upcoming_bookings == 1
    assert summary.client_pays_cents == 12147 + 2 * 6089
    assert summary.coach_payout_cents == 20000
    assert (
        summary.processor_fee_cents + summary.platform_fee_cents + summary.coach_payout_cents
        == summary.client_pays_cents
    )


def test_summary_is_empty_for_new_coach(db_session):
    coach = create_coach(db_session)

    summary = booking_service.coach_earnings_summary(db_session, actor_for(coach), now=NOW)

    assert summary.completed_bookings == 0
    assert summary.upcoming_bookings == 0
    assert summary.coach_payout_cents == 0


def test_summary_is_private_to_the_coach(db_session):
    coach = create_coach(db_session)
    other = create_user(db_session, "other@example.com")

    with pytest.raises(AuthorizationError):
        booking_service.coach_earnings_summary(db_session, actor_for(other), coach.id, NOW)

    summary = booking_service.coach_earnings_summary(db_session, ADMIN, coach.id, NOW)
    assert summary.coach_id == coach.id
