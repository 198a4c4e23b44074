from collospot.models.user import User, UserRole, ADMIN_ROLES
from collospot.models.plan import Plan
from collospot.models.payment import Payment, PaymentStatus
from collospot.models.session import HotspotSession, SessionStatus

__all__ = [
    "User",
    "UserRole",
    "ADMIN_ROLES",
    "Plan",
    "Payment",
    "PaymentStatus",
    "HotspotSession",
    "SessionStatus",
]
