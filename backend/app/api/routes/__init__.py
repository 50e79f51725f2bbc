from . import audit, health, notifications, reconciliation, second_factor, signing_requests

__all__ = [
    "audit",
    "health",
    "notifications",
    "reconciliation",
    "second_factor",
    "signing_requests",
]
