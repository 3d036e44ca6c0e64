from decimal import Decimal
from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base


class CoachProfile(Base):
    __tablename__ = "coach_profiles"
    __table_args__ = (
        CheckConstraint(
            "platform_fee_percentage >= 0 AND platform_fee_percentage < 100",
            name="ck_coach_platform_fee_range",
        ),
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("15"))
    processor_account_id: Mapped[str | None] = mapped_column(String(128))
    allow_public_groups: Mapped[bool] = mapped_column(Boolean, default=True)

    user = relationship("User", back_populates="coach_profile")
