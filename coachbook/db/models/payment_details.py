from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column


class DetailPaymentStatus(str, PyEnum):
    awaiting_client_payment = "awaiting_client_payment"
    captured = "captured"
    failed = "failed"
    refunded = "refunded"


class PaymentDetailsMixin:
    """Frozen price breakdown and payment tracking shared by payer-backed bookings."""

    gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    coach_payout_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[DetailPaymentStatus] = mapped_column(
        Enum(DetailPaymentStatus), default=DetailPaymentStatus.awaiting_client_payment
    )
    payment_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_final_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processor_hold_ref: Mapped[str | None] = mapped_column(String(128))
    processor_charge_ref: Mapped[str | None] = mapped_column(String(128))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_amount_cents: Mapped[int | None] = mapped_column(Integer)
    refund_ref: Mapped[str | None] = mapped_column(String(128))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
