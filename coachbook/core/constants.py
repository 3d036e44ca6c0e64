"""Common application-wide constants."""

from datetime import timedelta

# Duplicate creation requests inside this window collapse onto the first booking
IDEMPOTENCY_WINDOW = timedelta(hours=24)

# Group sizes, organizer included
MIN_GROUP_SIZE = 2
MAX_GROUP_SIZE = 50

MAX_BOOKING_DURATION = timedelta(hours=8)

# Cancellation refund policy: (minimum notice, refunded share)
CANCELLATION_REFUND_POLICY = (
    (timedelta(hours=24), 1.0),
    (timedelta(hours=12), 0.5),
)

# Metadata for system-driven transitions
SYSTEM_ACTOR = "system"
PAYMENT_TIMEOUT_REASON = "payment_deadline_passed"
SEAT_HOLD_EXPIRED_REASON = "seat_hold_expired"
UNDERFILLED_REASON = "minimum_participants_not_reached"
AUTO_COMPLETE_REASON = "auto_completed"
RECONCILIATION_REASON = "reconciliation"


__all__ = [
    "IDEMPOTENCY_WINDOW",
    "MIN_GROUP_SIZE",
    "MAX_GROUP_SIZE",
    "MAX_BOOKING_DURATION",
    "CANCELLATION_REFUND_POLICY",
    "SYSTEM_ACTOR",
    "PAYMENT_TIMEOUT_REASON",
    "SEAT_HOLD_EXPIRED_REASON",
    "UNDERFILLED_REASON",
    "AUTO_COMPLETE_REASON",
    "RECONCILIATION_REASON",
]
