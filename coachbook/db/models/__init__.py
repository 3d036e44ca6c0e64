from .user import User, UserRole
from .coach_profile import CoachProfile
from .booking import Booking, BookingType, ApprovalStatus, FulfillmentStatus
from .payment_details import DetailPaymentStatus
from .individual_details import IndividualBookingDetails
from .private_group_details import PrivateGroupBookingDetails
from .public_group_details import PublicGroupLessonDetails, CapacityStatus
from .participant import BookingParticipant, ParticipantStatus, ParticipantPaymentStatus
from .pricing_tier import GroupPricingTier
from .recurring_template import RecurringLessonTemplate
from .state_transition import StateTransition
