from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.errors import AuthorizationError, NotFoundError, ValidationError
from ..core.security import Actor
from ..db import models
from ..db.session import atomic

logger = logging.getLogger(__name__)


def update_platform_fee(
    db: Session, actor: Actor, coach_id: int, percentage: float | Decimal
) -> models.CoachProfile:
    """Set a coach's commission. Prices already frozen on bookings keep the old fee."""
    if not actor.is_admin:
        raise AuthorizationError("Only admins can change platform fees")
    value = Decimal(str(percentage))
    maximum = Decimal(str(get_settings().max_platform_fee_percentage))
    if value < 0 or value > maximum:
        raise ValidationError(
            f"Platform fee must be between 0 and {maximum}%", coach_id=coach_id, percentage=str(value)
        )
    with atomic(db):
        profile = db.execute(
            select(models.CoachProfile)
            .where(models.CoachProfile.user_id == coach_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if profile is None:
            raise NotFoundError("Coach profile not found", coach_id=coach_id)
        previous = profile.platform_fee_percentage
        profile.platform_fee_percentage = value
    logger.info(
        "Platform fee updated",
        extra={"coach_id": coach_id, "previous": str(previous), "percentage": str(value)},
    )
    return profile
