from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import select

from coachbook.core.errors import AuthorizationError, ConflictError, ValidationError
from coachbook.core.timeutils import ensure_aware
from coachbook.db import models
from coachbook.db.schemas import RecurringTemplateCreate, RecurringTemplateUpdate
from coachbook.services import group_lesson_service, recurring_service

from factories import NOW, actor_for, book_individual, create_coach, create_user


def template_payload(**overrides):
    values = dict(
        day_of_week=0,
        start_time=time(18, 0),
        duration_min=60,
        min_participants=2,
        max_participants=6,
        price_per_person_cents=2500,
        starts_on=date(2026, 10, 1),
        timezone="UTC",
        title="Monday drills",
    )
    values.update(overrides)
    return RecurringTemplateCreate(**values)


def instance_starts(session, template_id):
    return sorted(
        ensure_aware(value)
        for value in session.execute(
            select(models.Booking.scheduled_start_at)
            .join(models.PublicGroupLessonDetails, models.PublicGroupLessonDetails.booking_id == models.Booking.id)
            .where(models.PublicGroupLessonDetails.recurring_template_id == template_id)
        ).scalars()
    )


def test_template_generates_weekly_instances(db_session):
    coach = create_coach(db_session)

    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)

    starts = instance_starts(db_session, template.id)
    assert len(starts) == 8
    assert starts[0] == datetime(2026, 10, 5, 18, 0, tzinfo=timezone.utc)
    assert all(later - earlier == timedelta(weeks=1) for earlier, later in zip(starts, starts[1:]))


def test_generation_is_idempotent(db_session):
    coach = create_coach(db_session)
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)

    result = recurring_service.generate_recurring_instances(db_session, actor_for(coach), template.id, NOW)

    assert result.created == 0
    assert len(instance_starts(db_session, template.id)) == 8


def test_horizon_rolls_forward(db_session):
    coach = create_coach(db_session)
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)

    result = recurring_service.generate_all(db_session, NOW + timedelta(weeks=1))

    assert result.processed == 1
    assert len(instance_starts(db_session, template.id)) == 9


def test_local_time_follows_daylight_saving(db_session):
    coach = create_coach(db_session)

    template = recurring_service.create_recurring_template(
        db_session, actor_for(coach), template_payload(timezone="America/Chicago"), NOW
    )

    starts = instance_starts(db_session, template.id)
    assert starts[0] == datetime(2026, 10, 5, 23, 0, tzinfo=timezone.utc)
    assert datetime(2026, 11, 3, 0, 0, tzinfo=timezone.utc) in starts


def test_busy_slot_is_skipped(db_session):
    coach = create_coach(db_session)
    client = create_user(db_session, "client@example.com")
    book_individual(db_session, client, coach, start=datetime(2026, 10, 12, 18, 0, tzinfo=timezone.utc))

    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)

    starts = instance_starts(db_session, template.id)
    assert len(starts) == 7
    assert datetime(2026, 10, 12, 18, 0, tzinfo=timezone.utc) not in starts


def test_ends_on_caps_generation(db_session):
    coach = create_coach(db_session)

    template = recurring_service.create_recurring_template(
        db_session, actor_for(coach), template_payload(ends_on=date(2026, 10, 20)), NOW
    )

    assert len(instance_starts(db_session, template.id)) == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"day_of_week": 7},
        {"timezone": "Nowhere/City"},
        {"ends_on": date(2026, 9, 1)},
        {"min_participants": 1},
        {"duration_min": 0},
    ],
)
def test_invalid_template_rejected(db_session, overrides):
    coach = create_coach(db_session)

    with pytest.raises(ValidationError):
        recurring_service.create_recurring_template(
            db_session, actor_for(coach), template_payload(**overrides), NOW
        )


def test_cancel_keeps_joined_instances(db_session):
    coach = create_coach(db_session)
    alice = create_user(db_session, "alice@example.com")
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)
    first_lesson_id = db_session.execute(
        select(models.PublicGroupLessonDetails.booking_id)
        .join(models.Booking, models.Booking.id == models.PublicGroupLessonDetails.booking_id)
        .where(models.PublicGroupLessonDetails.recurring_template_id == template.id)
        .order_by(models.Booking.scheduled_start_at)
        .limit(1)
    ).scalar_one()
    group_lesson_service.join_public_lesson(db_session, actor_for(alice), first_lesson_id, NOW)

    cancelled = recurring_service.cancel_recurring_template(db_session, actor_for(coach), template.id, NOW)

    assert cancelled.is_active is False
    assert instance_starts(db_session, template.id) == [datetime(2026, 10, 5, 18, 0, tzinfo=timezone.utc)]
    with pytest.raises(ConflictError):
        recurring_service.generate_recurring_instances(db_session, actor_for(coach), template.id, NOW)


def first_instance_id(session, template_id):
    return session.execute(
        select(models.PublicGroupLessonDetails.booking_id)
        .join(models.Booking, models.Booking.id == models.PublicGroupLessonDetails.booking_id)
        .where(models.PublicGroupLessonDetails.recurring_template_id == template_id)
        .order_by(models.Booking.scheduled_start_at)
        .limit(1)
    ).scalar_one()


def test_edit_reschedules_empty_instances(db_session):
    coach = create_coach(db_session)
    alice = create_user(db_session, "alice@example.com")
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)
    group_lesson_service.join_public_lesson(
        db_session, actor_for(alice), first_instance_id(db_session, template.id), NOW
    )

    updated = recurring_service.update_recurring_template(
        db_session,
        actor_for(coach),
        template.id,
        RecurringTemplateUpdate(start_time=time(19, 0), price_per_person_cents=3000),
        NOW,
    )

    assert updated.start_time == time(19, 0)
    starts = instance_starts(db_session, template.id)
    assert starts[0] == datetime(2026, 10, 5, 18, 0, tzinfo=timezone.utc)
    assert len(starts) == 8
    assert all(start.hour == 19 for start in starts[1:])
    prices = db_session.execute(
        select(models.PublicGroupLessonDetails.price_per_person_cents)
        .join(models.Booking, models.Booking.id == models.PublicGroupLessonDetails.booking_id)
        .where(models.PublicGroupLessonDetails.recurring_template_id == template.id)
        .order_by(models.Booking.scheduled_start_at)
    ).scalars().all()
    assert prices == [2500] + [3000] * 7


def test_edit_rejects_invalid_values(db_session):
    coach = create_coach(db_session)
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)

    with pytest.raises(ValidationError):
        recurring_service.update_recurring_template(
            db_session, actor_for(coach), template.id, RecurringTemplateUpdate(max_participants=1), NOW
        )

    db_session.refresh(template)
    assert template.max_participants == 6
    assert len(instance_starts(db_session, template.id)) == 8


def test_edit_is_owner_only(db_session):
    coach = create_coach(db_session)
    rival = create_coach(db_session, email="rival@example.com")
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)

    with pytest.raises(AuthorizationError):
        recurring_service.update_recurring_template(
            db_session, actor_for(rival), template.id, RecurringTemplateUpdate(title="Mine now"), NOW
        )


def test_cancelled_template_cannot_be_edited(db_session):
    coach = create_coach(db_session)
    template = recurring_service.create_recurring_template(db_session, actor_for(coach), template_payload(), NOW)
    recurring_service.cancel_recurring_template(db_session, actor_for(coach), template.id, NOW)

    with pytest.raises(ConflictError):
        recurring_service.update_recurring_template(
            db_session, actor_for(coach), template.id, RecurringTemplateUpdate(title="Again"), NOW
        )
