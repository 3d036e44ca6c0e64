from pydantic import BaseModel


class PricingTierBase(BaseModel):
    min_participants: int
    max_participants: int | None = None
    price_per_person_cents: int


class PricingTierInput(PricingTierBase):
    pass


class PricingTier(PricingTierBase):
    id: int
    coach_id: int

    class Config:
        from_attributes = True


class PlatformFeeUpdate(BaseModel):
    platform_fee_percentage: float
