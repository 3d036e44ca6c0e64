from __future__ import annotations

import hashlib
import json
from typing import Any

from .gateway import (
    AccountStatus,
    BasePaymentGateway,
    Capture,
    Hold,
    ProcessorError,
    WebhookEvent,
)


def _ref(prefix: str, key: str) -> str:
    return f"{prefix}_{hashlib.sha256(key.encode()).hexdigest()[:24]}"


class StubGateway(BasePaymentGateway):
    """Offline gateway: every request succeeds and references derive from idempotency keys."""

    def create_hold(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, Any],
        *,
        idempotency_key: str,
    ) -> Hold:
        if amount_cents <= 0:
            raise ProcessorError("Amount must be positive")
        return Hold(ref=_ref("hold", idempotency_key), status="requires_capture", amount_cents=amount_cents)

    def capture(self, hold_ref: str, *, idempotency_key: str) -> Capture:
        return Capture(charge_ref=_ref("ch", hold_ref), amount_cents=0)

    def cancel_hold(self, hold_ref: str, *, idempotency_key: str) -> None:
        return None

    def refund(
        self, charge_ref: str, amount_cents: int | None = None, *, idempotency_key: str
    ) -> str:
        return _ref("re", idempotency_key)

    def retrieve_account(self, account_id: str) -> AccountStatus:
        enabled = bool(account_id)
        return AccountStatus(charges_enabled=enabled, payouts_enabled=enabled)

    def retrieve_hold(self, hold_ref: str) -> Hold:
        return Hold(ref=hold_ref, status="requires_capture")

    def find_hold(self, idempotency_key: str) -> Hold | None:
        return Hold(ref=_ref("hold", idempotency_key), status="requires_capture")

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        # No signatures for the stub provider, the body is trusted as is
        data = json.loads(payload or b"{}")
        return WebhookEvent(
            type=data.get("type", ""),
            hold_ref=data.get("hold_ref"),
            status=data.get("status"),
            data=data,
        )
