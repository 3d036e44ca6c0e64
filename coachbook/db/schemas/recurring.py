from datetime import date, time
from typing import Any
from pydantic import BaseModel


class RecurringTemplateCreate(BaseModel):
    day_of_week: int
    start_time: time
    duration_min: int
    min_participants: int
    max_participants: int
    price_per_person_cents: int
    starts_on: date
    ends_on: date | None = None
    timezone: str | None = None
    title: str | None = None
    description: str | None = None
    location: dict[str, Any] | None = None


class RecurringTemplate(RecurringTemplateCreate):
    id: int
    coach_id: int
    timezone: str
    is_active: bool

    class Config:
        from_attributes = True


class GenerationResult(BaseModel):
    template_id: int
    created: int


class RecurringTemplateUpdate(BaseModel):
    day_of_week: int | None = None
    start_time: time | None = None
    duration_min: int | None = None
    min_participants: int | None = None
    max_participants: int | None = None
    price_per_person_cents: int | None = None
    ends_on: date | None = None
    title: str | None = None
    description: str | None = None
    location: dict[str, Any] | None = None
