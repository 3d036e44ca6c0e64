from __future__ import annotations

import logging
from typing import Any

import stripe

from ...config import Settings
from .gateway import (
    AccountStatus,
    BasePaymentGateway,
    Capture,
    Hold,
    ProcessorError,
    ProcessorTimeout,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

HOLD_KEY_METADATA = "hold_key"


def _translate(exc: stripe.StripeError, action: str) -> ProcessorError:
    if isinstance(exc, stripe.APIConnectionError):
        logger.warning("Stripe did not answer", extra={"action": action})
        return ProcessorTimeout(f"Stripe timeout during {action}: {exc}")
    logger.error("Stripe error", extra={"action": action, "stripe_code": exc.code})
    return ProcessorError(f"Stripe error during {action}: {exc}")


class StripeGateway(BasePaymentGateway):
    """Manual-capture PaymentIntents paid out to the coach's connected account."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        stripe.api_key = settings.payment_api_key
        stripe.max_network_retries = 1

    def create_hold(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, Any],
        *,
        idempotency_key: str,
    ) -> Hold:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.settings.payment_currency,
            "capture_method": "manual",
            "metadata": {**{k: str(v) for k, v in metadata.items()}, HOLD_KEY_METADATA: idempotency_key},
        }
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            raise _translate(exc, "create_hold") from exc
        logger.info(
            "Stripe hold created",
            extra={"payment_intent": intent.id, "amount_cents": amount_cents},
        )
        return Hold(ref=intent.id, status=intent.status, amount_cents=intent.amount)

    def capture(self, hold_ref: str, *, idempotency_key: str) -> Capture:
        try:
            intent = stripe.PaymentIntent.capture(hold_ref, idempotency_key=idempotency_key)
        except stripe.StripeError as exc:
            raise _translate(exc, "capture") from exc
        charge_ref = intent.get("latest_charge") or intent.id
        return Capture(charge_ref=charge_ref, amount_cents=intent.get("amount_received") or 0)

    def cancel_hold(self, hold_ref: str, *, idempotency_key: str) -> None:
        try:
            stripe.PaymentIntent.cancel(hold_ref, idempotency_key=idempotency_key)
        except stripe.StripeError as exc:
            raise _translate(exc, "cancel_hold") from exc

    def refund(
        self, charge_ref: str, amount_cents: int | None = None, *, idempotency_key: str
    ) -> str:
        params: dict[str, Any] = {"reverse_transfer": True}
        if charge_ref.startswith("pi_"):
            params["payment_intent"] = charge_ref
        else:
            params["charge"] = charge_ref
        if amount_cents is not None:
            params["amount"] = amount_cents
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            raise _translate(exc, "refund") from exc
        return refund.id

    def retrieve_account(self, account_id: str) -> AccountStatus:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as exc:
            raise _translate(exc, "retrieve_account") from exc
        return AccountStatus(
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
        )

    def retrieve_hold(self, hold_ref: str) -> Hold:
        try:
            intent = stripe.PaymentIntent.retrieve(hold_ref)
        except stripe.StripeError as exc:
            raise _translate(exc, "retrieve_hold") from exc
        return Hold(ref=intent.id, status=intent.status, amount_cents=intent.amount)

    def find_hold(self, idempotency_key: str) -> Hold | None:
        try:
            result = stripe.PaymentIntent.search(
                query=f"metadata['{HOLD_KEY_METADATA}']:'{idempotency_key}'", limit=1
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "find_hold") from exc
        if not result.data:
            return None
        intent = result.data[0]
        return Hold(ref=intent.id, status=intent.status, amount_cents=intent.amount)

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        try:
            event = stripe.Webhook.construct_event(
                payload, signature or "", self.settings.payment_webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ProcessorError("Invalid webhook payload") from exc
        obj = event["data"]["object"]
        return WebhookEvent(
            type=event["type"],
            hold_ref=obj.get("id") if obj.get("object") == "payment_intent" else None,
            status=obj.get("status"),
            data=dict(obj),
        )
