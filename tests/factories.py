from datetime import datetime, timedelta, timezone
from decimal import Decimal

from coachbook.core.security import Actor
from coachbook.db import models
from coachbook.db.schemas import IndividualBookingCreate, PublicLessonCreate
from coachbook.services import booking_service, group_lesson_service

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
START = NOW + timedelta(days=3)

ADMIN = Actor(user_id=999, role="admin")


def create_user(session, email: str, role: str = "client") -> models.User:
    user = models.User(email=email, name=email.split("@")[0], role=models.UserRole(role))
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def create_coach(
    session,
    email: str = "coach@example.com",
    hourly_rate: str = "100",
    fee: str = "15",
    account: str | None = "acct_1",
) -> models.User:
    user = create_user(session, email, role="coach")
    session.add(
        models.CoachProfile(
            user_id=user.id,
            hourly_rate=Decimal(hourly_rate),
            platform_fee_percentage=Decimal(fee),
            processor_account_id=account,
            allow_public_groups=True,
        )
    )
    session.commit()
    return user


def actor_for(user: models.User) -> Actor:
    return Actor(user_id=user.id, role=user.role.value)


def book_individual(session, client, coach, start=START, duration_min=60, now=NOW) -> models.Booking:
    payload = IndividualBookingCreate(coach_id=coach.id, scheduled_start_at=start, duration_min=duration_min)
    return booking_service.create_individual_booking(session, actor_for(client), payload, now)


def paid_booking(session, client, coach, start=START, now=NOW) -> models.Booking:
    booking = book_individual(session, client, coach, start=start, now=now)
    booking_service.accept_booking(session, actor_for(coach), booking.id, now)
    booking_service.start_booking_payment(session, actor_for(client), booking.id, now)
    return booking_service.confirm_booking_payment(session, actor_for(client), booking.id, now)


def create_lesson(
    session,
    coach,
    *,
    start=START,
    min_participants=2,
    max_participants=3,
    price_per_person_cents=5000,
    now=NOW,
) -> models.Booking:
    payload = PublicLessonCreate(
        scheduled_start_at=start,
        duration_min=60,
        min_participants=min_participants,
        max_participants=max_participants,
        price_per_person_cents=price_per_person_cents,
        title="Footwork",
    )
    return group_lesson_service.create_public_lesson(session, actor_for(coach), payload, now)
