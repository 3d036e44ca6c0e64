from pydantic import BaseModel


class DisputeCreate(BaseModel):
    reason: str


class DisputeResolution(BaseModel):
    action: str
    refund_amount_cents: int | None = None
    note: str | None = None
