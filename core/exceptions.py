"""
Access Control Exceptions
=========================
Custom exception classes for the multi-site access-control layer.

Ordinary deny outcomes are returned as `Decision` values; exceptions are
reserved for malformed requests, missing upstream records and the fatal
kinds (`AuditWriteError`, `EmergencyNotEnabledError`).
"""

from typing import Optional

from core.models import ErrorKind


class AccessControlError(Exception):
    """Base exception for all access-control errors."""

    kind: ErrorKind = ErrorKind.ACCESS_ERROR
    fatal: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# =============================================================================
# Identity and Lookup Exceptions
# =============================================================================


class AuthenticationRequiredError(AccessControlError):
    """Exception raised when no actor can be resolved for a request."""

    kind = ErrorKind.AUTHENTICATION_REQUIRED

    def __init__(self, message: str = "No authenticated actor for this request"):
        super().__init__(message, error_code="AUTHENTICATION_REQUIRED")


class UserNotFoundError(AccessControlError):
    """Exception raised when the identity service has no such user."""

    kind = ErrorKind.USER_NOT_FOUND

    def __init__(self, user_id: str):
        super().__init__(
            f"User not found: {user_id}",
            error_code="USER_NOT_FOUND",
            details={"user_id": user_id},
        )
        self.user_id = user_id


class PatientNotFoundError(AccessControlError):
    """Exception raised when the patient-record service has no such patient."""

    kind = ErrorKind.PATIENT_NOT_FOUND

    def __init__(self, patient_id: str):
        super().__init__(
            f"Patient not found: {patient_id}",
            error_code="PATIENT_NOT_FOUND",
            details={"patient_id": patient_id},
        )
        self.patient_id = patient_id


class SiteNotFoundError(AccessControlError):
    """Exception raised when a site is not registered in the network."""

    def __init__(self, site_id: str):
        super().__init__(
            f"Site not registered in network: {site_id}",
            error_code="SITE_NOT_FOUND",
            details={"site_id": site_id},
        )
        self.site_id = site_id


class DuplicateSiteError(AccessControlError):
    """Exception raised when registering a site id twice."""

    def __init__(self, site_id: str):
        super().__init__(
            f"Site already registered: {site_id}",
            error_code="DUPLICATE_SITE",
            details={"site_id": site_id},
        )
        self.site_id = site_id


class CollaboratorError(AccessControlError):
    """Exception raised when an upstream service call fails."""

    def __init__(self, service: str, reason: str):
        super().__init__(
            f"Call to {service} failed: {reason}",
            error_code="COLLABORATOR_ERROR",
            details={"service": service, "reason": reason},
        )
        self.service = service
        self.reason = reason


# =============================================================================
# Decision Exceptions
# =============================================================================


class AccessDeniedError(AccessControlError):
    """Exception raised by operations that require an allowed decision."""

    def __init__(self, kind: ErrorKind, message: str, audit_id: Optional[str] = None):
        super().__init__(
            message,
            error_code="ACCESS_DENIED",
            details={"kind": kind.value, "audit_id": audit_id},
        )
        self.kind = kind
        self.audit_id = audit_id


class EmergencyNotEnabledError(AccessControlError):
    """Exception raised when break-glass is attempted where it is disabled."""

    kind = ErrorKind.EMERGENCY_NOT_ENABLED
    fatal = True

    def __init__(self, scope: str = "network", audit_id: Optional[str] = None):
        super().__init__(
            f"Emergency access not enabled for {scope}",
            error_code="EMERGENCY_NOT_ENABLED",
            details={"scope": scope, "audit_id": audit_id},
        )
        self.audit_id = audit_id


class AuditWriteError(AccessControlError):
    """Exception raised when the durable audit sink cannot record an entry."""

    kind = ErrorKind.AUDIT_WRITE_FAILURE
    fatal = True

    def __init__(self, message: str, log_entry: Optional[dict] = None):
        super().__init__(
            message,
            error_code="AUDIT_WRITE_FAILURE",
            details={"log_entry": log_entry},
        )


class InvalidRequestError(AccessControlError):
    """Exception raised for malformed access requests."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message,
            error_code="INVALID_REQUEST",
            details={"field": field},
        )
        self.field = field


class InvalidTransitionError(AccessControlError):
    """Exception raised for an illegal state-machine transition."""

    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} {entity_id} from '{current}' to '{target}'",
            error_code="INVALID_TRANSITION",
            details={"entity": entity, "entity_id": entity_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class WorkflowNotFoundError(AccessControlError):
    """Exception raised for an approval callback with an unknown workflow id."""

    def __init__(self, workflow_id: str):
        super().__init__(
            f"No pending request for approval workflow: {workflow_id}",
            error_code="WORKFLOW_NOT_FOUND",
            details={"workflow_id": workflow_id},
        )
        self.workflow_id = workflow_id


class ReferralNotFoundError(AccessControlError):
    def __init__(self, referral_id: str):
        super().__init__(
            f"Referral not found: {referral_id}",
            error_code="REFERRAL_NOT_FOUND",
            details={"referral_id": referral_id},
        )
        self.referral_id = referral_id


class InvalidReferralError(InvalidRequestError):
    """Exception raised when referral endpoints are unknown or identical."""

    def __init__(self, from_site: str, to_site: str, reason: str):
        super().__init__(
            f"Invalid referral {from_site} -> {to_site}: {reason}",
            field="to_site",
        )
        self.from_site = from_site
        self.to_site = to_site
        self.reason = reason


# =============================================================================
# Configuration Exceptions
# =============================================================================


class ConfigurationError(AccessControlError):
    """Exception raised for configuration errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(
            message,
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key},
        )
