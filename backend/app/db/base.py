# noqa: F401 to ensure models are imported for metadata
from app.models.audit import AuditLog
from app.models.notification import NotificationLog, UserNotification
from app.models.organization import Organization
from app.models.second_factor import SecondFactorEnrollment, SecondFactorExemption
from app.models.user import User
from app.models.workflow import Signer, SigningRequest

__all__ = [
    "AuditLog",
    "NotificationLog",
    "UserNotification",
    "Organization",
    "SecondFactorEnrollment",
    "SecondFactorExemption",
    "User",
    "Signer",
    "SigningRequest",
]
