from datetime import timedelta

from sqlalchemy import select

from coachbook.db import models
from coachbook.db.models import ApprovalStatus, DetailPaymentStatus
from coachbook.services import booking_service, payment_deadline_service

from factories import NOW, actor_for, book_individual, create_coach, create_user

DUE = NOW + timedelta(hours=24)


def accepted_booking(session):
    coach = create_coach(session)
    client = create_user(session, "client@example.com")
    booking = book_individual(session, client, coach)
    booking_service.accept_booking(session, actor_for(coach), booking.id, NOW)
    return booking, client, coach


def kinds(notifications, kind):
    return [recipient for recipient, sent_kind, _ in notifications if sent_kind == kind]


def test_nothing_happens_early(db_session, notifications):
    accepted_booking(db_session)

    result = payment_deadline_service.run_payment_deadlines(db_session, NOW + timedelta(hours=2))

    assert (result.reminders_sent, result.cancelled, result.errors) == (0, 0, [])


def test_single_reminder_inside_window(db_session, notifications):
    booking, client, _ = accepted_booking(db_session)

    first = payment_deadline_service.run_payment_deadlines(db_session, DUE - timedelta(minutes=60))
    second = payment_deadline_service.run_payment_deadlines(db_session, DUE - timedelta(minutes=45))

    details = db_session.get(models.IndividualBookingDetails, booking.id)
    db_session.refresh(details)
    assert first.reminders_sent == 1
    assert second.reminders_sent == 0
    assert details.payment_final_reminder_sent_at is not None
    assert kinds(notifications, "payment_reminder") == [client.id]


def test_no_reminder_outside_window(db_session, notifications):
    accepted_booking(db_session)

    payment_deadline_service.run_payment_deadlines(db_session, DUE - timedelta(minutes=120))
    payment_deadline_service.run_payment_deadlines(db_session, DUE - timedelta(minutes=20))

    assert kinds(notifications, "payment_reminder") == []


def test_overdue_booking_cancelled_once(db_session, notifications):
    booking, client, coach = accepted_booking(db_session)
    booking_service.start_booking_payment(db_session, actor_for(client), booking.id, NOW)

    first = payment_deadline_service.run_payment_deadlines(db_session, DUE + timedelta(minutes=1))
    second = payment_deadline_service.run_payment_deadlines(db_session, DUE + timedelta(minutes=20))

    db_session.refresh(booking)
    details = booking.individual_details
    db_session.refresh(details)
    assert first.cancelled == 1
    assert second.cancelled == 0
    assert booking.approval_status == ApprovalStatus.cancelled
    assert booking.cancellation_reason == "payment_deadline_passed"
    assert details.payment_status == DetailPaymentStatus.failed
    assert sorted(kinds(notifications, "payment_deadline_cancelled")) == sorted([client.id, coach.id])
    audit = db_session.execute(
        select(models.StateTransition).where(
            models.StateTransition.booking_id == booking.id,
            models.StateTransition.new_value == "cancelled",
        )
    ).scalars().all()
    assert [row.actor for row in audit] == ["system"]


def test_direct_cancel_rechecks_state(db_session):
    booking, client, coach = accepted_booking(db_session)
    booking_service.start_booking_payment(db_session, actor_for(client), booking.id, NOW)
    booking_service.confirm_booking_payment(db_session, actor_for(client), booking.id, NOW)

    assert payment_deadline_service.cancel_for_nonpayment(db_session, booking.id, DUE + timedelta(hours=1)) is False
    db_session.refresh(booking)
    assert booking.approval_status == ApprovalStatus.accepted


def test_paid_booking_is_left_alone(db_session, notifications):
    booking, client, _ = accepted_booking(db_session)
    booking_service.start_booking_payment(db_session, actor_for(client), booking.id, NOW)
    booking_service.confirm_booking_payment(db_session, actor_for(client), booking.id, NOW)

    result = payment_deadline_service.run_payment_deadlines(db_session, DUE + timedelta(hours=1))

    assert result.cancelled == 0
    assert kinds(notifications, "payment_deadline_cancelled") == []
