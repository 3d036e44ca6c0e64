from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from .payment_details import PaymentDetailsMixin


class PrivateGroupBookingDetails(PaymentDetailsMixin, Base):
    __tablename__ = "private_group_booking_details"

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    organizer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    headcount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_person_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    client_message: Mapped[str | None] = mapped_column(Text)

    booking = relationship("Booking", back_populates="private_group_details")
    organizer = relationship("User")
