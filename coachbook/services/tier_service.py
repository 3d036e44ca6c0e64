from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..core.constants import MIN_GROUP_SIZE
from ..core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..core.security import Actor
from ..db import models
from ..db.schemas import PricingTierInput
from ..db.session import atomic

logger = logging.getLogger(__name__)


def validate_tiers(tiers: Sequence[PricingTierInput]) -> list[PricingTierInput]:
    """Check each tier and the set as a whole, returning the tiers sorted by minimum."""
    for tier in tiers:
        if tier.min_participants < MIN_GROUP_SIZE:
            raise ValidationError(f"Minimum participants must be at least {MIN_GROUP_SIZE}")
        if tier.max_participants is not None and tier.max_participants < tier.min_participants:
            raise ValidationError("Max participants must be greater than or equal to min")
        if tier.price_per_person_cents <= 0:
            raise ValidationError("Price must be greater than 0")

    ordered = sorted(tiers, key=lambda tier: tier.min_participants)
    for index, (current, following) in enumerate(zip(ordered, ordered[1:]), start=1):
        if current.max_participants is None:
            raise ConflictError(
                f"Tier {index} ({current.min_participants}+) overlaps with tier {index + 1}. "
                "Only the last tier can have unlimited participants."
            )
        if current.max_participants >= following.min_participants:
            raise ConflictError(
                f"Tiers {index} and {index + 1} overlap. Tier {index} ends at "
                f"{current.max_participants}, but tier {index + 1} starts at "
                f"{following.min_participants}."
            )
    return ordered


def matching_tier(tiers, headcount: int):
    for tier in tiers:
        if headcount < tier.min_participants:
            continue
        if tier.max_participants is None or headcount <= tier.max_participants:
            return tier
    return None


def get_tiers(db: Session, coach_id: int) -> list[models.GroupPricingTier]:
    return list(
        db.execute(
            select(models.GroupPricingTier)
            .where(models.GroupPricingTier.coach_id == coach_id)
            .order_by(models.GroupPricingTier.min_participants)
        ).scalars()
    )


def resolve_tier(db: Session, coach_id: int, headcount: int) -> models.GroupPricingTier:
    tier = matching_tier(get_tiers(db, coach_id), headcount)
    if tier is None:
        raise ValidationError(
            "No pricing tier found for this participant count",
            coach_id=coach_id,
            headcount=headcount,
        )
    return tier


def update_pricing_tiers(
    db: Session, actor: Actor, tiers: Sequence[PricingTierInput]
) -> list[models.GroupPricingTier]:
    """Replace the coach's whole tier set in one transaction."""
    if actor.role != models.UserRole.coach.value:
        raise AuthorizationError("Only coaches can manage pricing tiers")
    ordered = validate_tiers(tiers)
    with atomic(db):
        profile = db.execute(
            select(models.CoachProfile)
            .where(models.CoachProfile.user_id == actor.user_id)
            .with_for_update()
        ).scalar_one_or_none()
        if profile is None:
            raise NotFoundError("Coach profile not found", coach_id=actor.user_id)
        db.execute(
            delete(models.GroupPricingTier).where(models.GroupPricingTier.coach_id == actor.user_id)
        )
        for position, tier in enumerate(ordered):
            db.add(
                models.GroupPricingTier(
                    coach_id=actor.user_id,
                    min_participants=tier.min_participants,
                    max_participants=tier.max_participants,
                    price_per_person_cents=tier.price_per_person_cents,
                    position=position,
                )
            )
    logger.info(
        "Pricing tiers replaced",
        extra={"coach_id": actor.user_id, "tier_count": len(ordered)},
    )
    return get_tiers(db, actor.user_id)
