from .booking import (
    Booking,
    BookingCancel,
    BookingStatusView,
    CoachEarnings,
    IndividualBookingCreate,
    PrivateGroupBookingCreate,
)
from .group_lesson import LessonEarnings, Participant, PublicLessonCreate
from .pricing_tier import PlatformFeeUpdate, PricingTier, PricingTierInput
from .dispute import DisputeCreate, DisputeResolution
from .recurring import GenerationResult, RecurringTemplate, RecurringTemplateCreate, RecurringTemplateUpdate
from .tasks import DeadlineRun, PaymentWebhook, SweepRun
