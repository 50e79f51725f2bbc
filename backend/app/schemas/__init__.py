from app.schemas import audit, common, notification, reconciliation, second_factor, workflow

__all__ = [
    "audit",
    "common",
    "notification",
    "reconciliation",
    "second_factor",
    "workflow",
]
