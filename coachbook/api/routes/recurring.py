from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Actor
from ...db import schemas
from ...db.session import get_db
from ... import operations

router = APIRouter(prefix="/recurring-templates", tags=["recurring"])

CurrentActor = Annotated[Actor, Depends(deps.get_current_actor)]


@router.post("", response_model=schemas.RecurringTemplate)
def create_template(
    payload: schemas.RecurringTemplateCreate,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.create_recurring_template(db, actor, payload))


@router.post("/{template_id}/generate", response_model=schemas.GenerationResult)
def generate_instances(template_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.generate_recurring_instances(db, actor, template_id))


@router.post("/{template_id}/cancel", response_model=schemas.RecurringTemplate)
def cancel_template(template_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return deps.unwrap(operations.cancel_recurring_template(db, actor, template_id))


@router.patch("/{template_id}", response_model=schemas.RecurringTemplate)
def update_template(
    template_id: int,
    payload: schemas.RecurringTemplateUpdate,
    actor: CurrentActor,
    db: Session = Depends(get_db),
):
    return deps.unwrap(operations.update_recurring_template(db, actor, template_id, payload))
