from . import (
    admin_service,
    audit_service,
    booking_service,
    booking_state,
    dispute_service,
    group_lesson_service,
    locking,
    notification_service,
    payment_deadline_service,
    payment_events,
    pricing,
    reconciliation_service,
    recurring_service,
    refund_service,
    tier_service,
)

__all__ = [
    "admin_service",
    "audit_service",
    "booking_service",
    "booking_state",
    "dispute_service",
    "group_lesson_service",
    "locking",
    "notification_service",
    "payment_deadline_service",
    "payment_events",
    "pricing",
    "reconciliation_service",
    "recurring_service",
    "refund_service",
    "tier_service",
]
