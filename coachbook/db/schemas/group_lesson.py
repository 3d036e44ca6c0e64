from datetime import datetime
from typing import Any
from pydantic import BaseModel


class PublicLessonCreate(BaseModel):
    scheduled_start_at: datetime
    duration_min: int
    min_participants: int
    max_participants: int
    price_per_person_cents: int
    title: str | None = None
    description: str | None = None
    location: dict[str, Any] | None = None


class Participant(BaseModel):
    id: int
    booking_id: int
    user_id: int
    status: str
    payment_status: str
    amount_cents: int
    processor_ref: str | None = None
    expires_at: datetime | None = None
    captured_at: datetime | None = None

    class Config:
        from_attributes = True


class LessonEarnings(BaseModel):
    booking_id: int
    captured_participants: int
    client_pays_cents: int
    processor_fee_cents: int
    platform_fee_cents: int
    coach_payout_cents: int
