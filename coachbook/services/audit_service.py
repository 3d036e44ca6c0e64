from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.security import Actor
from ..db import models

logger = logging.getLogger(__name__)


def _value(status) -> str | None:
    if isinstance(status, Enum):
        return status.value
    return status


def record_transition(
    db: Session,
    *,
    booking_id: int,
    field: str,
    old,
    new,
    actor: Actor,
    reason: str | None = None,
    participant_id: int | None = None,
) -> models.StateTransition | None:
    """Append an audit row inside the caller's transaction. No row when nothing changed."""
    old_value, new_value = _value(old), _value(new)
    if old_value == new_value:
        return None
    entry = models.StateTransition(
        booking_id=booking_id,
        participant_id=participant_id,
        field=field,
        old_value=old_value,
        new_value=new_value,
        actor=actor.label,
        reason=reason,
    )
    db.add(entry)
    logger.info(
        "State transition",
        extra={
            "booking_id": booking_id,
            "participant_id": participant_id,
            "field": field,
            "old": old_value,
            "new": new_value,
            "actor": actor.label,
        },
    )
    return entry


def history(db: Session, booking_id: int) -> list[models.StateTransition]:
    return list(
        db.execute(
            select(models.StateTransition)
            .where(models.StateTransition.booking_id == booking_id)
            .order_by(models.StateTransition.id)
        ).scalars()
    )
