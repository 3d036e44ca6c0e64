from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class ParticipantStatus(str, PyEnum):
    awaiting_payment = "awaiting_payment"
    confirmed = "confirmed"
    cancelled = "cancelled"


class ParticipantPaymentStatus(str, PyEnum):
    requires_payment_method = "requires_payment_method"
    created = "created"
    captured = "captured"
    failed = "failed"
    refunded = "refunded"


class BookingParticipant(Base):
    __tablename__ = "booking_participants"
    __table_args__ = (
        UniqueConstraint("booking_id", "user_id", name="uq_participant_booking_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status: Mapped[ParticipantStatus] = mapped_column(
        Enum(ParticipantStatus), default=ParticipantStatus.awaiting_payment
    )
    payment_status: Mapped[ParticipantPaymentStatus] = mapped_column(
        Enum(ParticipantPaymentStatus), default=ParticipantPaymentStatus.requires_payment_method
    )
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    coach_payout_cents: Mapped[int] = mapped_column(Integer, default=0)
    hold_idempotency_key: Mapped[str | None] = mapped_column(String(128))
    processor_ref: Mapped[str | None] = mapped_column(String(128))
    processor_charge_ref: Mapped[str | None] = mapped_column(String(128))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    hold_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_amount_cents: Mapped[int | None] = mapped_column(Integer)
    refund_ref: Mapped[str | None] = mapped_column(String(128))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="participants")
    user = relationship("User")
