from pydantic import BaseModel


class DeadlineRun(BaseModel):
    reminders_sent: int
    cancelled: int
    errors: list[str]


class SweepRun(BaseModel):
    processed: int
    errors: list[str]


class PaymentWebhook(BaseModel):
    type: str
    hold_ref: str | None = None
    status: str | None = None
