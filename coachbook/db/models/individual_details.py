from decimal import Decimal
from sqlalchemy import ForeignKey, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from .payment_details import PaymentDetailsMixin


class IndividualBookingDetails(PaymentDetailsMixin, Base):
    __tablename__ = "individual_booking_details"

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    client_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    client_message: Mapped[str | None] = mapped_column(Text)

    booking = relationship("Booking", back_populates="individual_details")
    client = relationship("User")
