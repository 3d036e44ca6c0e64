from datetime import datetime
from typing import Any
from pydantic import BaseModel


class IndividualBookingCreate(BaseModel):
    coach_id: int
    scheduled_start_at: datetime
    duration_min: int
    location: dict[str, Any] | None = None
    client_message: str | None = None


class PrivateGroupBookingCreate(BaseModel):
    coach_id: int
    scheduled_start_at: datetime
    duration_min: int
    participant_ids: list[int]
    location: dict[str, Any] | None = None
    client_message: str | None = None


class BookingCancel(BaseModel):
    reason: str | None = None


class PaymentDetails(BaseModel):
    gross_cents: int
    processor_fee_cents: int
    platform_fee_cents: int
    coach_payout_cents: int
    payment_status: str
    payment_due_at: datetime | None = None
    payment_final_reminder_sent_at: datetime | None = None
    processor_hold_ref: str | None = None
    refund_amount_cents: int | None = None

    class Config:
        from_attributes = True


class IndividualDetails(PaymentDetails):
    client_id: int


class PrivateGroupDetails(PaymentDetails):
    organizer_id: int
    headcount: int
    price_per_person_cents: int


class PublicGroupDetails(BaseModel):
    title: str | None = None
    min_participants: int
    max_participants: int
    price_per_person_cents: int
    capacity_status: str
    current_participants: int
    authorized_participants: int
    captured_participants: int
    recurring_template_id: int | None = None

    class Config:
        from_attributes = True


class Booking(BaseModel):
    id: int
    booking_type: str
    coach_id: int
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    duration_min: int
    location: dict[str, Any] | None = None
    approval_status: str
    fulfillment_status: str
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    coach_marked_complete_at: datetime | None = None
    client_confirmed_complete_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    individual_details: IndividualDetails | None = None
    private_group_details: PrivateGroupDetails | None = None
    public_group_details: PublicGroupDetails | None = None

    class Config:
        from_attributes = True


class BookingStatusView(BaseModel):
    booking_id: int
    status: str


class CoachEarnings(BaseModel):
    coach_id: int
    completed_bookings: int
    upcoming_bookings: int
    client_pays_cents: int
    processor_fee_cents: int
    platform_fee_cents: int
    coach_payout_cents: int
