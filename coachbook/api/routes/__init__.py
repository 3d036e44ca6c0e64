from . import (
    admin,
    bookings,
    disputes,
    group_lessons,
    payments,
    pricing_tiers,
    recurring,
    tasks,
)

__all__ = [
    "admin",
    "bookings",
    "disputes",
    "group_lessons",
    "payments",
    "pricing_tiers",
    "recurring",
    "tasks",
]
