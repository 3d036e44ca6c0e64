from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ...config import Settings


class ProcessorError(Exception):
    """The processor rejected the request."""


class ProcessorTimeout(ProcessorError):
    """No answer from the processor; the request may or may not have been applied."""


@dataclass(slots=True)
class Hold:
    ref: str
    status: str
    amount_cents: int | None = None


@dataclass(slots=True)
class Capture:
    charge_ref: str
    amount_cents: int


@dataclass(slots=True)
class AccountStatus:
    charges_enabled: bool
    payouts_enabled: bool

    @property
    def ready(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


@dataclass(slots=True)
class WebhookEvent:
    type: str
    hold_ref: str | None = None
    status: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


# Processor hold statuses that mean the client's card has been authorised
CAPTURABLE_STATUSES = frozenset({"requires_capture"})


class BasePaymentGateway(ABC):
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    def create_hold(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, Any],
        *,
        idempotency_key: str,
    ) -> Hold:
        raise NotImplementedError

    @abstractmethod
    def capture(self, hold_ref: str, *, idempotency_key: str) -> Capture:
        raise NotImplementedError

    @abstractmethod
    def cancel_hold(self, hold_ref: str, *, idempotency_key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def refund(
        self, charge_ref: str, amount_cents: int | None = None, *, idempotency_key: str
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def retrieve_account(self, account_id: str) -> AccountStatus:
        raise NotImplementedError

    @abstractmethod
    def retrieve_hold(self, hold_ref: str) -> Hold:
        raise NotImplementedError

    @abstractmethod
    def find_hold(self, idempotency_key: str) -> Hold | None:
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        raise NotImplementedError


def get_gateway(settings: Settings) -> BasePaymentGateway:
    if settings.payment_provider == "stub":
        from .stub import StubGateway

        return StubGateway(settings)
    if settings.payment_provider == "stripe":
        from .stripe_gateway import StripeGateway

        return StripeGateway(settings)
    raise ValueError(f"Unsupported payment provider {settings.payment_provider}")
