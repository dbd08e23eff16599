"""
Mediation error taxonomy.

Every rejected command raises one of these. Each carries a stable ``code`` that
callers map to messages, and a human-readable ``reason``.
"""

from typing import Optional


class MediationError(Exception):
    """Base class for rejected commands."""

    code = "MediationError"
    http_status = 400
    default_reason = "Request rejected"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.reason}


class InvalidTransition(MediationError):
    code = "InvalidTransition"
    http_status = 409
    default_reason = "Case status does not allow this transition"


class InvalidCaseState(MediationError):
    code = "InvalidCaseState"
    http_status = 409
    default_reason = "Case is not in a state that allows this operation"


class IncompletePanel(MediationError):
    code = "IncompletePanel"
    http_status = 422
    default_reason = "Panel must include at least one lawyer, one religious scholar, and one social expert"


class InvalidPanelMember(MediationError):
    code = "InvalidPanelMember"
    http_status = 422
    default_reason = "Panel members must be distinct, active, verified users"


class PanelAlreadyExists(MediationError):
    code = "PanelAlreadyExists"
    http_status = 409
    default_reason = "A panel already exists for this case"


class AgreementLocked(MediationError):
    code = "AgreementLocked"
    http_status = 409
    default_reason = "Cannot modify signed agreement"


class AlreadySigned(MediationError):
    code = "AlreadySigned"
    http_status = 409
    default_reason = "Already signed this agreement"


class AgreementAlreadyExists(MediationError):
    code = "AgreementAlreadyExists"
    http_status = 409
    default_reason = "Agreement already exists for this case"


class AccessDenied(MediationError):
    code = "AccessDenied"
    http_status = 403
    default_reason = "Access denied"


class NotFound(MediationError):
    code = "NotFound"
    http_status = 404
    default_reason = "Record not found"


class ConcurrentModification(MediationError):
    code = "ConcurrentModification"
    http_status = 409
    default_reason = "The record was modified concurrently; reload and retry"


class ValidationFailed(MediationError):
    code = "ValidationFailed"
    http_status = 422
    default_reason = "Validation error"


class Unavailable(MediationError):
    """Storage or infrastructure failure. Safe for the caller to retry."""

    code = "Unavailable"
    http_status = 503
    default_reason = "Storage temporarily unavailable"
