from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.errors import AuthorizationError, BookingError, ConflictError, NotFoundError, ValidationError
from ..core.results import SweepResult
from ..core.constants import MAX_BOOKING_DURATION
from ..core.security import SYSTEM, Actor
from ..core.timeutils import ensure_aware, utc_now
from ..db import models
from ..db.models import ApprovalStatus
from ..db.schemas import GenerationResult, RecurringTemplateCreate, RecurringTemplateUpdate
from ..db.session import atomic
from . import booking_service, group_lesson_service

logger = logging.getLogger(__name__)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError("Unknown timezone", timezone=name) from exc


def _get_template(db: Session, template_id: int) -> models.RecurringLessonTemplate:
    template = db.get(models.RecurringLessonTemplate, template_id)
    if template is None:
        raise NotFoundError("Recurring template not found", template_id=template_id)
    return template


def _lock_template(db: Session, template_id: int) -> models.RecurringLessonTemplate:
    return db.execute(
        select(models.RecurringLessonTemplate)
        .where(models.RecurringLessonTemplate.id == template_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def _validate_schedule(template) -> None:
    if not 0 <= template.day_of_week <= 6:
        raise ValidationError("Day of week must be between 0 (Monday) and 6 (Sunday)")
    if template.duration_min <= 0 or timedelta(minutes=template.duration_min) > MAX_BOOKING_DURATION:
        raise ValidationError("Invalid duration", duration_min=template.duration_min)
    if template.ends_on is not None and template.ends_on < template.starts_on:
        raise ValidationError("End date must be on or after the start date")
    group_lesson_service.validate_capacity(
        template.min_participants, template.max_participants, template.price_per_person_cents
    )


def _remove_empty_future_instances(db: Session, template_id: int, now: datetime) -> int:
    empty_future = db.execute(
        select(models.Booking)
        .join(
            models.PublicGroupLessonDetails,
            models.PublicGroupLessonDetails.booking_id == models.Booking.id,
        )
        .where(
            models.PublicGroupLessonDetails.recurring_template_id == template_id,
            models.Booking.scheduled_start_at > now,
            models.Booking.approval_status == ApprovalStatus.accepted,
            ~models.Booking.participants.any(),
        )
        .with_for_update()
    ).scalars().all()
    for booking in empty_future:
        db.delete(booking)
    return len(empty_future)


def occurrences(template: models.RecurringLessonTemplate, now: datetime, weeks: int) -> list[datetime]:
    """UTC start times of the template's future sessions within ``weeks`` from ``now``."""
    zone = _zone(template.timezone)
    today = now.astimezone(zone).date()
    first = max(template.starts_on, today)
    last = today + timedelta(weeks=weeks)
    if template.ends_on is not None:
        last = min(last, template.ends_on)
    first += timedelta(days=(template.day_of_week - first.weekday()) % 7)
    starts = []
    day = first
    while day <= last:
        local = datetime.combine(day, template.start_time, tzinfo=zone)
        start = local.astimezone(timezone.utc)
        if start > now:
            starts.append(start)
        day += timedelta(weeks=1)
    return starts


def create_recurring_template(
    db: Session, actor: Actor, payload: RecurringTemplateCreate, now: datetime | None = None
) -> models.RecurringLessonTemplate:
    now = now or utc_now()
    if actor.role != models.UserRole.coach:
        raise AuthorizationError("Only coaches can create recurring lessons")
    profile = booking_service.get_coach_profile(db, actor.user_id)
    if not profile.allow_public_groups:
        raise ValidationError("Public group lessons are disabled for this coach")
    _validate_schedule(payload)
    tz_name = payload.timezone or get_settings().timezone
    _zone(tz_name)

    with atomic(db):
        template = models.RecurringLessonTemplate(
            coach_id=actor.user_id,
            title=payload.title,
            description=payload.description,
            day_of_week=payload.day_of_week,
            start_time=payload.start_time,
            duration_min=payload.duration_min,
            min_participants=payload.min_participants,
            max_participants=payload.max_participants,
            price_per_person_cents=payload.price_per_person_cents,
            location=payload.location,
            starts_on=payload.starts_on,
            ends_on=payload.ends_on,
            timezone=tz_name,
            is_active=True,
            created_at=now,
        )
        db.add(template)
    logger.info("Recurring template created", extra={"template_id": template.id, "coach_id": actor.user_id})
    generate_recurring_instances(db, actor, template.id, now)
    return template


def update_recurring_template(
    db: Session,
    actor: Actor,
    template_id: int,
    payload: RecurringTemplateUpdate,
    now: datetime | None = None,
) -> models.RecurringLessonTemplate:
    """Edit a template and rebuild its schedule.

    Future instances nobody has joined are dropped and regenerated from the
    new settings. Lessons with participants keep their original terms.
    """
    now = now or utc_now()
    template = _get_template(db, template_id)
    if actor.user_id != template.coach_id:
        raise AuthorizationError("Unauthorized", template_id=template_id)

    with atomic(db):
        template = _lock_template(db, template_id)
        if not template.is_active:
            raise ConflictError("Recurring template is inactive", template_id=template_id)
        for key, value in payload.model_dump(exclude_unset=True).items():
            setattr(template, key, value)
        _validate_schedule(template)
        removed = _remove_empty_future_instances(db, template_id, now)
    logger.info(
        "Recurring template updated",
        extra={"template_id": template_id, "removed_instances": removed},
    )
    generate_recurring_instances(db, actor, template_id, now)
    return template


def generate_recurring_instances(
    db: Session, actor: Actor, template_id: int, now: datetime | None = None
) -> GenerationResult:
    """Create the lessons a template is missing within the generation horizon.

    Days that already have an instance are skipped, as are starts that
    collide with another booking of the coach.
    """
    now = now or utc_now()
    template = _get_template(db, template_id)
    if actor != SYSTEM and actor.user_id != template.coach_id and not actor.is_admin:
        raise AuthorizationError("Unauthorized", template_id=template_id)
    if not template.is_active:
        raise ConflictError("Recurring template is inactive", template_id=template_id)

    starts = occurrences(template, now, get_settings().recurring_horizon_weeks)
    duration = timedelta(minutes=template.duration_min)
    created = 0
    with atomic(db):
        booking_service._lock_coach(db, template.coach_id)
        zone = _zone(template.timezone)
        # at most one instance per local day
        existing_days = {
            ensure_aware(value).astimezone(zone).date()
            for value in db.execute(
                select(models.Booking.scheduled_start_at)
                .join(
                    models.PublicGroupLessonDetails,
                    models.PublicGroupLessonDetails.booking_id == models.Booking.id,
                )
                .where(models.PublicGroupLessonDetails.recurring_template_id == template_id)
            ).scalars()
        }
        for start in starts:
            if start.astimezone(zone).date() in existing_days:
                continue
            end = start + duration
            try:
                booking_service.ensure_no_overlap(db, template.coach_id, start, end)
            except ConflictError:
                logger.info(
                    "Recurring instance skipped, slot taken",
                    extra={"template_id": template_id, "scheduled_start_at": start.isoformat()},
                )
                continue
            group_lesson_service.build_public_lesson(
                db,
                actor,
                coach_id=template.coach_id,
                start=start,
                end=end,
                duration_min=template.duration_min,
                min_participants=template.min_participants,
                max_participants=template.max_participants,
                price_per_person_cents=template.price_per_person_cents,
                now=now,
                title=template.title,
                description=template.description,
                location=template.location,
                recurring_template_id=template_id,
            )
            created += 1
    logger.info("Recurring instances generated", extra={"template_id": template_id, "instances_created": created})
    return GenerationResult(template_id=template_id, created=created)


def generate_all(db: Session, now: datetime | None = None) -> SweepResult:
    now = now or utc_now()
    result = SweepResult()
    template_ids = list(
        db.execute(
            select(models.RecurringLessonTemplate.id).where(models.RecurringLessonTemplate.is_active.is_(True))
        ).scalars()
    )
    for template_id in template_ids:
        try:
            result.processed += generate_recurring_instances(db, SYSTEM, template_id, now).created
        except BookingError as exc:
            logger.warning(
                "Recurring generation skipped",
                extra={"template_id": template_id, "reason": exc.message},
            )
        except Exception as exc:
            db.rollback()
            logger.exception("Recurring generation failed", extra={"template_id": template_id})
            result.errors.append(f"{template_id}: {exc}")
    return result


def cancel_recurring_template(
    db: Session, actor: Actor, template_id: int, now: datetime | None = None
) -> models.RecurringLessonTemplate:
    """Deactivate a template. Future instances nobody has joined are removed, the rest stay."""
    now = now or utc_now()
    template = _get_template(db, template_id)
    if actor.user_id != template.coach_id and not actor.is_admin:
        raise AuthorizationError("Unauthorized", template_id=template_id)

    with atomic(db):
        template = _lock_template(db, template_id)
        if not template.is_active:
            return template
        template.is_active = False
        template.deactivated_at = now
        removed = _remove_empty_future_instances(db, template_id, now)
    logger.info(
        "Recurring template cancelled",
        extra={"template_id": template_id, "removed_instances": removed},
    )
    return template

