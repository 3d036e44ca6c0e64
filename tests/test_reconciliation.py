from datetime import timedelta

import pytest
from sqlalchemy import select

from coachbook.core.errors import ExternalServiceError
from coachbook.db import models
from coachbook.db.models import (
    ApprovalStatus,
    DetailPaymentStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
)
from coachbook.db.schemas import DisputeCreate, DisputeResolution
from coachbook.services import dispute_service, group_lesson_service, reconciliation_service
from coachbook.services.payments import gateway
from coachbook.services.payments.gateway import ProcessorTimeout
from coachbook.services.payments.stub import StubGateway

from factories import ADMIN, NOW, START, actor_for, create_coach, create_lesson, create_user, paid_booking


class SilentHoldGateway(StubGateway):
    def create_hold(self, amount_cents, destination_account, metadata, *, idempotency_key):
        raise ProcessorTimeout("read timeout")


class MissingHoldGateway(StubGateway):
    def find_hold(self, idempotency_key):
        return None


class SilentRefundGateway(StubGateway):
    def refund(self, charge_ref, amount_cents=None, *, idempotency_key):
        raise ProcessorTimeout("read timeout")


def use_gateway(monkeypatch, gateway_class):
    monkeypatch.setattr(gateway, "get_gateway", lambda settings: gateway_class(settings))


def unanswered_join(session, monkeypatch):
    coach = create_coach(session)
    alice = create_user(session, "alice@example.com")
    lesson = create_lesson(session, coach)
    use_gateway(monkeypatch, SilentHoldGateway)
    with pytest.raises(ExternalServiceError):
        group_lesson_service.join_public_lesson(session, actor_for(alice), lesson.id, NOW)
    participant = session.execute(select(models.BookingParticipant)).scalar_one()
    return lesson, participant


def test_recent_reservation_is_left_alone(db_session, monkeypatch):
    _, participant = unanswered_join(db_session, monkeypatch)
    use_gateway(monkeypatch, StubGateway)

    result = reconciliation_service.reconcile_pending_holds(db_session, NOW + timedelta(minutes=5))

    assert result.processed == 0
    assert participant.processor_ref is None


def test_hold_found_at_processor_is_attached(db_session, monkeypatch):
    lesson, participant = unanswered_join(db_session, monkeypatch)
    use_gateway(monkeypatch, StubGateway)

    result = reconciliation_service.reconcile_pending_holds(db_session, NOW + timedelta(minutes=15))

    db_session.refresh(participant)
    assert result.processed == 1
    assert participant.processor_ref
    assert participant.status == ParticipantStatus.awaiting_payment


def test_missing_hold_releases_seat(db_session, monkeypatch):
    lesson, participant = unanswered_join(db_session, monkeypatch)
    use_gateway(monkeypatch, MissingHoldGateway)

    result = reconciliation_service.reconcile_pending_holds(db_session, NOW + timedelta(minutes=15))

    db_session.refresh(participant)
    details = db_session.get(models.PublicGroupLessonDetails, lesson.id)
    db_session.refresh(details)
    assert result.processed == 1
    assert participant.status == ParticipantStatus.cancelled
    assert participant.payment_status == ParticipantPaymentStatus.failed
    assert details.current_participants == 0


def test_unconfirmed_booking_refund_is_reissued(db_session, monkeypatch):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    booking = paid_booking(db_session, client, coach)
    after = START + timedelta(hours=2)
    dispute_service.initiate_dispute(db_session, actor_for(client), booking.id, DisputeCreate(reason="No show"), after)
    use_gateway(monkeypatch, SilentRefundGateway)
    with pytest.raises(ExternalServiceError) as excinfo:
        dispute_service.resolve_dispute(db_session, ADMIN, booking.id, DisputeResolution(action="refund"), after)
    assert excinfo.value.retryable is False
    db_session.refresh(booking.individual_details)
    assert booking.individual_details.payment_status == DetailPaymentStatus.refunded
    assert booking.individual_details.refund_ref is None

    use_gateway(monkeypatch, StubGateway)
    result = reconciliation_service.reconcile_pending_refunds(db_session)

    db_session.refresh(booking)
    db_session.refresh(booking.individual_details)
    assert result.processed == 1
    assert booking.individual_details.refund_ref
    assert booking.approval_status == ApprovalStatus.cancelled
    assert booking.fulfillment_status == FulfillmentStatus.completed


def test_unconfirmed_seat_refund_is_reissued(db_session, monkeypatch):
    coach = create_coach(db_session)
    alice = create_user(db_session, "alice@example.com")
    lesson = create_lesson(db_session, coach)
    seat = group_lesson_service.join_public_lesson(db_session, actor_for(alice), lesson.id, NOW)
    group_lesson_service.record_participant_authorization(db_session, actor_for(alice), seat.id, NOW)
    group_lesson_service.accept_participant(db_session, actor_for(coach), seat.id, NOW)
    use_gateway(monkeypatch, SilentRefundGateway)
    group_lesson_service.cancel_public_lesson(db_session, actor_for(coach), lesson.id, "venue closed", NOW)
    db_session.refresh(seat)
    assert seat.payment_status == ParticipantPaymentStatus.refunded
    assert seat.refund_ref is None

    use_gateway(monkeypatch, StubGateway)
    result = reconciliation_service.reconcile_pending_refunds(db_session)

    db_session.refresh(seat)
    assert result.processed == 1
    assert result.errors == []
    assert seat.refund_ref
