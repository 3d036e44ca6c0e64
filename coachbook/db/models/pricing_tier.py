from sqlalchemy import CheckConstraint, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column
from ..session import Base


class GroupPricingTier(Base):
    __tablename__ = "group_pricing_tiers"
    __table_args__ = (
        CheckConstraint("min_participants >= 2", name="ck_tier_min"),
        CheckConstraint(
            "max_participants IS NULL OR max_participants >= min_participants",
            name="ck_tier_max",
        ),
        CheckConstraint("price_per_person_cents > 0", name="ck_tier_price"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coach_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    # NULL means the tier has no upper bound
    max_participants: Mapped[int | None] = mapped_column(Integer)
    price_per_person_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
