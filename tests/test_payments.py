import json
from decimal import Decimal

import pytest

from coachbook.config import get_settings
from coachbook.core.errors import AuthorizationError, ValidationError
from coachbook.db import models
from coachbook.db.models import DetailPaymentStatus, ParticipantPaymentStatus
from coachbook.services import admin_service, booking_service, group_lesson_service, payment_events
from coachbook.services.payments import gateway
from coachbook.services.payments.gateway import ProcessorError, WebhookEvent
from coachbook.services.payments.stub import StubGateway

from factories import ADMIN, NOW, actor_for, book_individual, create_coach, create_lesson, create_user


def capturable(hold_ref):
    return WebhookEvent(
        type="payment_intent.amount_capturable_updated", hold_ref=hold_ref, status="requires_capture"
    )


def test_stub_gateway_is_deterministic():
    client = gateway.get_gateway(get_settings())

    first = client.create_hold(1000, "acct_1", {}, idempotency_key="hold:booking:1")
    second = client.create_hold(1000, "acct_1", {}, idempotency_key="hold:booking:1")

    assert isinstance(client, StubGateway)
    assert first.ref == second.ref
    assert client.find_hold("hold:booking:1").ref == first.ref
    with pytest.raises(ProcessorError):
        client.create_hold(0, "acct_1", {}, idempotency_key="hold:booking:2")


def test_stub_webhook_parses_json_body():
    client = gateway.get_gateway(get_settings())

    event = client.parse_webhook(json.dumps({"type": "x", "hold_ref": "hold_1", "status": "requires_capture"}).encode(), None)

    assert (event.type, event.hold_ref, event.status) == ("x", "hold_1", "requires_capture")


def test_webhook_captures_booking(db_session, notifications):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = book_individual(db_session, client, coach)
    booking_service.accept_booking(db_session, actor_for(coach), booking.id, NOW)
    booking = booking_service.start_booking_payment(db_session, actor_for(client), booking.id, NOW)

    outcome = payment_events.handle_payment_event(
        db_session, capturable(booking.individual_details.processor_hold_ref), NOW
    )

    db_session.refresh(booking.individual_details)
    assert outcome == "booking_captured"
    assert booking.individual_details.payment_status == DetailPaymentStatus.captured


def test_webhook_authorises_seat(db_session):
    coach = create_coach(db_session)
    alice = create_user(db_session, "alice@example.com")
    lesson = create_lesson(db_session, coach)
    seat = group_lesson_service.join_public_lesson(db_session, actor_for(alice), lesson.id, NOW)

    outcome = payment_events.handle_payment_event(db_session, capturable(seat.processor_ref), NOW)
    replay = payment_events.handle_payment_event(db_session, capturable(seat.processor_ref), NOW)

    db_session.refresh(seat)
    assert outcome == "participant_authorized"
    assert replay == "participant_authorized"
    assert seat.payment_status == ParticipantPaymentStatus.created
    assert db_session.get(models.PublicGroupLessonDetails, lesson.id).authorized_participants == 1


def test_webhook_for_cancelled_seat_is_rejected(db_session):
    coach = create_coach(db_session)
    alice = create_user(db_session, "alice@example.com")
    lesson = create_lesson(db_session, coach)
    seat = group_lesson_service.join_public_lesson(db_session, actor_for(alice), lesson.id, NOW)
    group_lesson_service.leave_public_lesson(db_session, actor_for(alice), lesson.id, NOW)

    assert payment_events.handle_payment_event(db_session, capturable(seat.processor_ref), NOW) == "rejected"


def test_irrelevant_and_unknown_events(db_session):
    assert payment_events.handle_payment_event(db_session, WebhookEvent(type="charge.updated")) == "ignored"
    assert payment_events.handle_payment_event(db_session, capturable("hold_missing"), NOW) == "unknown"


def test_admin_updates_platform_fee(db_session):
    coach = create_coach(db_session)

    profile = admin_service.update_platform_fee(db_session, ADMIN, coach.id, 12.5)

    assert profile.platform_fee_percentage == Decimal("12.5")


def test_platform_fee_limits(db_session):
    coach = create_coach(db_session)

    with pytest.raises(ValidationError):
        admin_service.update_platform_fee(db_session, ADMIN, coach.id, 75)
    with pytest.raises(AuthorizationError):
        admin_service.update_platform_fee(db_session, actor_for(coach), coach.id, 5)
