"""
Emergency Access Gate
=====================
Break-glass override: immediate patient access on justification alone when
no consent exists.

Only the consent step is bypassed; site access and patient restrictions
still apply. Every attempt, successful or not, writes exactly one
`break_glass` audit entry, and the grant is only stored after that entry is
durable.
"""

from datetime import datetime
from typing import Callable, Optional
import structlog

from core.models import (
    AuditEventType,
    AuditResult,
    BreakGlassResult,
    ErrorKind,
    TemporaryAccess,
    TemporaryAccessReason,
    TemporaryAccessState,
    TemporaryAccessType,
)
from core.exceptions import (
    AuthenticationRequiredError,
    CollaboratorError,
    EmergencyNotEnabledError,
    InvalidRequestError,
    PatientNotFoundError,
    UserNotFoundError,
)
from core.utils import generate_id, mask_id, utc_now

from access_control.audit_recorder import AuditRecorder
from access_control.collaborators import PatientDirectory
from access_control.decision_engine import AccessDecisionEngine
from access_control.network_directory import NetworkDirectory
from access_control.permission_store import PermissionStore

logger = structlog.get_logger(__name__)


BREAK_GLASS_ACTION = "break_glass"


class EmergencyAccessGate:
    """Grants time-boxed emergency access to a single patient."""

    def __init__(
        self,
        directory: NetworkDirectory,
        permission_store: PermissionStore,
        patient_directory: PatientDirectory,
        engine: AccessDecisionEngine,
        audit_recorder: AuditRecorder,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize emergency access gate.

        Args:
            directory: Network settings (emergency switch, review flag, level).
            permission_store: Where the break-glass grant is appended.
            patient_directory: Source of patient site metadata.
            engine: Supplies the site-access and restriction checks.
            audit_recorder: Append-only audit trail.
            clock: Callable returning the current UTC datetime.
        """
        self.directory = directory
        self.permission_store = permission_store
        self.patient_directory = patient_directory
        self.engine = engine
        self.audit_recorder = audit_recorder
        self.clock = clock or utc_now

    def break_glass(
        self,
        actor_id: Optional[str],
        patient_id: str,
        justification: str,
    ) -> BreakGlassResult:
        """
        Request emergency access to a patient record.

        Args:
            actor_id: Requesting user.
            patient_id: Patient whose record is needed.
            justification: Free-text clinical justification (required).

        Returns:
            BreakGlassResult; `granted=False` with a reason when the site
            or restriction checks fail.

        Raises:
            AuthenticationRequiredError: If no actor id is given (not audited).
            UserNotFoundError: If the actor is unknown.
            InvalidRequestError: If the justification is blank.
            EmergencyNotEnabledError: If break-glass is disabled for the
                network or the patient's site.
            PatientNotFoundError: If the patient is unknown.
            AuditWriteError: If the attempt cannot be audited; no grant is
                stored in that case.
        """
        if not actor_id:
            raise AuthenticationRequiredError()

        at = self.clock()
        settings = self.directory.settings

        try:
            actor = self.permission_store.snapshot(actor_id)
        except (UserNotFoundError, CollaboratorError) as e:
            self._audit(actor_id, patient_id, justification, at, AuditResult.ERROR, reason=e.kind)
            raise

        if not justification or not justification.strip():
            self._audit(
                actor_id, patient_id, justification, at, AuditResult.ERROR,
                reason=ErrorKind.INVALID_REQUEST,
            )
            raise InvalidRequestError("Break-glass justification is required", field="justification")

        if not settings.emergency_access_enabled:
            audit_id = self._audit(
                actor_id, patient_id, justification, at, AuditResult.ERROR,
                reason=ErrorKind.EMERGENCY_NOT_ENABLED,
            )
            logger.error(
                "Break-glass attempted while disabled",
                user_id=mask_id(actor_id),
                patient_id=mask_id(patient_id),
            )
            raise EmergencyNotEnabledError("network", audit_id=audit_id)

        try:
            patient = self.patient_directory.get_patient_metadata(patient_id)
        except (PatientNotFoundError, CollaboratorError) as e:
            self._audit(actor_id, patient_id, justification, at, AuditResult.ERROR, reason=e.kind)
            raise

        site_id = patient.primary_site
        if not self.directory.emergency_enabled_for(site_id):
            audit_id = self._audit(
                actor_id, patient_id, justification, at, AuditResult.ERROR,
                reason=ErrorKind.EMERGENCY_NOT_ENABLED, site_context=site_id,
            )
            logger.error(
                "Break-glass attempted at site without emergency access",
                user_id=mask_id(actor_id),
                site_id=site_id,
            )
            raise EmergencyNotEnabledError(f"site {site_id}", audit_id=audit_id)

        denial = None
        if not self.engine.check_site_access(actor, patient, at):
            denial = ErrorKind.SITE_ACCESS_DENIED
        elif not self.engine.check_patient_restriction(actor, patient, at):
            denial = ErrorKind.PATIENT_RESTRICTED

        if denial is not None:
            audit_id = self._audit(
                actor_id, patient_id, justification, at, AuditResult.DENIED,
                reason=denial, site_context=site_id,
            )
            logger.warning(
                "Break-glass denied",
                user_id=mask_id(actor_id),
                patient_id=mask_id(patient_id),
                reason=denial.value,
            )
            return BreakGlassResult(granted=False, audit_id=audit_id, reason=denial)

        grant = TemporaryAccess(
            grant_id=generate_id("bg"),
            type=TemporaryAccessType.PATIENT,
            target_id=patient_id,
            reason=TemporaryAccessReason.EMERGENCY,
            access_level=settings.break_glass_access_level,
            granted_by="break-glass",
            granted_at=at,
            duration_hours=settings.break_glass_duration_hours,
            state=TemporaryAccessState.ACTIVE,
            justification=justification,
        )
        review_required = settings.break_glass_audit_required

        # Grant is stored only once the audit entry is durable
        audit_id = self._audit(
            actor_id, patient_id, justification, at, AuditResult.GRANTED,
            site_context=site_id,
            review_required=review_required,
            details={
                "grant_id": grant.grant_id,
                "access_level": grant.access_level.value,
                "expires_at": grant.expires_at.isoformat(),
                "home_site": actor.home_site,
            },
        )
        self.permission_store.add_temporary_access(actor_id, grant)

        logger.warning(
            "Break-glass access granted",
            user_id=mask_id(actor_id),
            patient_id=mask_id(patient_id),
            site_id=site_id,
            access_level=grant.access_level.value,
            expires_at=grant.expires_at.isoformat(),
            review_required=review_required,
        )
        return BreakGlassResult(
            granted=True,
            access_level=grant.access_level,
            expires_at=grant.expires_at,
            audit_id=audit_id,
            review_required=review_required,
            grant_id=grant.grant_id,
        )

    def _audit(
        self,
        actor_id: str,
        patient_id: str,
        justification: Optional[str],
        at: datetime,
        result: AuditResult,
        reason: Optional[ErrorKind] = None,
        site_context: Optional[str] = None,
        review_required: bool = False,
        details: Optional[dict] = None,
    ) -> str:
        return self.audit_recorder.record(
            event_type=AuditEventType.BREAK_GLASS,
            actor_id=actor_id,
            resource_id=patient_id,
            action=BREAK_GLASS_ACTION,
            result=result,
            site_context=site_context,
            reason=reason,
            justification=justification,
            review_required=review_required,
            details=details,
            at=at,
        )
