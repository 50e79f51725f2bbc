from app.services.audit import AuditService
from app.services.artifact import CompletionArtifactService
from app.services.cascade import CascadeResolver
from app.services.engine import SigningEngine
from app.services.notification import NotificationDispatcher
from app.services.reconciliation import ReconciliationScheduler
from app.services.second_factor import SecondFactorGate
from app.services.signer_registry import SignerRegistry
from app.services.user_notifications import UserNotificationService
from app.services.workflow import WorkflowStateMachine

__all__ = [
    "AuditService",
    "CascadeResolver",
    "CompletionArtifactService",
    "NotificationDispatcher",
    "ReconciliationScheduler",
    "SecondFactorGate",
    "SignerRegistry",
    "SigningEngine",
    "UserNotificationService",
    "WorkflowStateMachine",
]
