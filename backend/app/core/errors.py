from __future__ import annotations

from enum import Enum


class WorkflowErrorKind(str, Enum):
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    REQUEST_NOT_SENT = "REQUEST_NOT_SENT"
    REQUEST_ALREADY_TERMINAL = "REQUEST_ALREADY_TERMINAL"
    SIGNER_NOT_FOUND = "SIGNER_NOT_FOUND"
    SIGNER_ALREADY_TERMINAL = "SIGNER_ALREADY_TERMINAL"
    OUT_OF_ORDER = "OUT_OF_ORDER"
    SECOND_FACTOR_REQUIRED = "SECOND_FACTOR_REQUIRED"
    SECOND_FACTOR_INVALID = "SECOND_FACTOR_INVALID"
    CONCURRENT_CONFLICT = "CONCURRENT_CONFLICT"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    NOTIFICATION_DISPATCH_FAILED = "NOTIFICATION_DISPATCH_FAILED"
    EXEMPTION_NOT_FOUND = "EXEMPTION_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"


DEFAULT_MESSAGES: dict[WorkflowErrorKind, str] = {
    WorkflowErrorKind.REQUEST_NOT_FOUND: "Signing request not found",
    WorkflowErrorKind.REQUEST_NOT_SENT: "Signing request has not been sent yet",
    WorkflowErrorKind.REQUEST_ALREADY_TERMINAL: "Signing request is already closed",
    WorkflowErrorKind.SIGNER_NOT_FOUND: "Signer not found for this request",
    WorkflowErrorKind.SIGNER_ALREADY_TERMINAL: "Signer has already acted on this request",
    WorkflowErrorKind.OUT_OF_ORDER: "Another signer must act first",
    WorkflowErrorKind.SECOND_FACTOR_REQUIRED: "A verification code is required to continue",
    WorkflowErrorKind.SECOND_FACTOR_INVALID: "Invalid verification code",
    WorkflowErrorKind.CONCURRENT_CONFLICT: "The request was modified concurrently, try again",
    WorkflowErrorKind.PERSISTENCE_FAILURE: "Could not persist the signing request",
    WorkflowErrorKind.NOTIFICATION_DISPATCH_FAILED: "Notification could not be delivered",
    WorkflowErrorKind.EXEMPTION_NOT_FOUND: "Exemption not found",
    WorkflowErrorKind.INVALID_REQUEST: "Invalid signing request",
}


class WorkflowError(Exception):
    """Expected, typed rejection of a workflow operation."""

    kind: WorkflowErrorKind = WorkflowErrorKind.INVALID_REQUEST

    def __init__(self, message: str | None = None, *, kind: WorkflowErrorKind | None = None) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message or DEFAULT_MESSAGES[self.kind]
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


class RequestNotFound(WorkflowError):
    kind = WorkflowErrorKind.REQUEST_NOT_FOUND


class RequestNotSent(WorkflowError):
    kind = WorkflowErrorKind.REQUEST_NOT_SENT


class RequestAlreadyTerminal(WorkflowError):
    kind = WorkflowErrorKind.REQUEST_ALREADY_TERMINAL


class SignerNotFound(WorkflowError):
    kind = WorkflowErrorKind.SIGNER_NOT_FOUND


class SignerAlreadyTerminal(WorkflowError):
    kind = WorkflowErrorKind.SIGNER_ALREADY_TERMINAL


class OutOfOrder(WorkflowError):
    kind = WorkflowErrorKind.OUT_OF_ORDER


class SecondFactorRequired(WorkflowError):
    kind = WorkflowErrorKind.SECOND_FACTOR_REQUIRED


class SecondFactorInvalid(WorkflowError):
    kind = WorkflowErrorKind.SECOND_FACTOR_INVALID


class ConcurrentConflict(WorkflowError):
    kind = WorkflowErrorKind.CONCURRENT_CONFLICT


class PersistenceFailure(WorkflowError):
    kind = WorkflowErrorKind.PERSISTENCE_FAILURE


class NotificationDispatchFailed(WorkflowError):
    kind = WorkflowErrorKind.NOTIFICATION_DISPATCH_FAILED


class ExemptionNotFound(WorkflowError):
    kind = WorkflowErrorKind.EXEMPTION_NOT_FOUND


class InvalidRequest(WorkflowError):
    kind = WorkflowErrorKind.INVALID_REQUEST


_BY_KIND: dict[WorkflowErrorKind, type[WorkflowError]] = {
    cls.kind: cls
    for cls in (
        RequestNotFound,
        RequestNotSent,
        RequestAlreadyTerminal,
        SignerNotFound,
        SignerAlreadyTerminal,
        OutOfOrder,
        SecondFactorRequired,
        SecondFactorInvalid,
        ConcurrentConflict,
        PersistenceFailure,
        NotificationDispatchFailed,
        ExemptionNotFound,
        InvalidRequest,
    )
}


def error_for(kind: WorkflowErrorKind, message: str | None = None) -> WorkflowError:
    return _BY_KIND[kind](message)
