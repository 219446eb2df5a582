from app.core.database import Base
from .user import User, UserRole
from .tutor_profile import TutorProfile
from .booking import Booking, BookingStatus, NON_TERMINAL_STATUSES, TERMINAL_STATUSES
from .payment import Payment, PaymentType, PaymentStatus
from .stripe_models import StripeWebhookEvent
from .audit_log import AuditLog

__all__ = [
    "Base",

    # Core models
    "User",
    "UserRole",
    "TutorProfile",

    # Booking
    "Booking",
    "BookingStatus",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",

    # Payment and Stripe
    "Payment",
    "PaymentType",
    "PaymentStatus",
    "StripeWebhookEvent",

    # Audit
    "AuditLog"
]
