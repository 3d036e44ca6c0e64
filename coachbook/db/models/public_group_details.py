from enum import Enum as PyEnum
from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class CapacityStatus(str, PyEnum):
    open = "open"
    full = "full"
    cancelled = "cancelled"


class PublicGroupLessonDetails(Base):
    __tablename__ = "public_group_lesson_details"
    __table_args__ = (
        CheckConstraint("min_participants >= 2", name="ck_public_lesson_min"),
        CheckConstraint("max_participants >= min_participants", name="ck_public_lesson_max"),
        CheckConstraint(
            "captured_participants <= authorized_participants"
            " AND authorized_participants <= current_participants"
            " AND current_participants <= max_participants",
            name="ck_public_lesson_counters",
        ),
    )

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    title: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_person_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity_status: Mapped[CapacityStatus] = mapped_column(
        Enum(CapacityStatus), default=CapacityStatus.open
    )
    current_participants: Mapped[int] = mapped_column(Integer, default=0)
    authorized_participants: Mapped[int] = mapped_column(Integer, default=0)
    captured_participants: Mapped[int] = mapped_column(Integer, default=0)
    recurring_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_lesson_templates.id", ondelete="SET NULL"), index=True
    )

    booking = relationship("Booking", back_populates="public_group_details")
    recurring_template = relationship("RecurringLessonTemplate", back_populates="instances")
