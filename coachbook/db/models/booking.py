from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Integer, JSON, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class BookingType(str, PyEnum):
    individual = "individual"
    private_group = "private_group"
    public_group = "public_group"


class ApprovalStatus(str, PyEnum):
    pending_review = "pending_review"
    accepted = "accepted"
    declined = "declined"
    cancelled = "cancelled"
    expired = "expired"


class FulfillmentStatus(str, PyEnum):
    scheduled = "scheduled"
    completed = "completed"
    disputed = "disputed"


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("scheduled_end_at > scheduled_start_at", name="ck_booking_window"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_type: Mapped[BookingType] = mapped_column(Enum(BookingType), nullable=False)
    coach_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    scheduled_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    scheduled_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    location: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus), default=ApprovalStatus.pending_review, index=True
    )
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        Enum(FulfillmentStatus), default=FulfillmentStatus.scheduled
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(64), index=True)
    coach_responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    coach_marked_complete_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    client_confirmed_complete_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispute_reason: Mapped[str | None] = mapped_column(String(1000))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(64))
    cancellation_reason: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    coach = relationship("User")
    individual_details = relationship(
        "IndividualBookingDetails",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    private_group_details = relationship(
        "PrivateGroupBookingDetails",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    public_group_details = relationship(
        "PublicGroupLessonDetails",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    participants = relationship(
        "BookingParticipant",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingParticipant.id",
    )

    @property
    def details(self):
        """The type-specific detail record for this booking."""
        if self.booking_type == BookingType.individual:
            return self.individual_details
        if self.booking_type == BookingType.private_group:
            return self.private_group_details
        if self.booking_type == BookingType.public_group:
            return self.public_group_details
        raise ValueError(f"Unknown booking type {self.booking_type}")

    @property
    def payer_id(self) -> int | None:
        if self.booking_type == BookingType.individual:
            return self.individual_details.client_id
        if self.booking_type == BookingType.private_group:
            return self.private_group_details.organizer_id
        return None
