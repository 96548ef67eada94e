"""
Access Decision Engine
======================
Core authorizer for patient-record access across network sites.

Evaluation short-circuits in a fixed order, first failure wins:

1. Site access: the actor must reach the patient's primary site (home site,
   a valid SiteAccess grant, or an active site-type temporary grant).
2. Patient restriction: the patient must be authorized at one of the
   actor's accessible sites, and `highly_restricted` records additionally
   need an active `legal_hold` or `quality_assurance` permission.
3. Consent: implicit when the actor's home site is the patient's primary
   site; otherwise an active consent must name the actor's home site, or
   the actor must hold an active patient grant covering the action.

Every outcome is written to the audit trail before it is returned. If the
audit write fails the decision is a denial.
"""

from datetime import datetime
from typing import Callable, List, Optional, Union
import structlog

from core.models import (
    AccessAction,
    AccessiblePatients,
    AuditEventType,
    AuditResult,
    DataClassification,
    Decision,
    DecisionBasis,
    ErrorKind,
    PatientAccessSummary,
    PatientSiteMetadata,
    SpecialPermissionType,
    TemporaryAccessReason,
    TemporaryAccessType,
    UserPermission,
)
from core.exceptions import (
    AuditWriteError,
    CollaboratorError,
    InvalidRequestError,
    PatientNotFoundError,
    UserNotFoundError,
)
from core.utils import mask_id, utc_now

from access_control.audit_recorder import AuditRecorder
from access_control.collaborators import PatientDirectory
from access_control.consent_ledger import ConsentLedger
from access_control.network_directory import NetworkDirectory
from access_control.permission_store import PermissionStore

logger = structlog.get_logger(__name__)


# Special permissions that lift the highly_restricted classification
RESTRICTION_OVERRIDES = [
    SpecialPermissionType.LEGAL_HOLD,
    SpecialPermissionType.QUALITY_ASSURANCE,
]


class AccessDecisionEngine:
    """
    Combines site membership, patient restrictions and consent into an
    allow/deny decision.

    The engine holds no per-user state. Each call captures the clock once
    and evaluates every check against that instant.
    """

    def __init__(
        self,
        directory: NetworkDirectory,
        permission_store: PermissionStore,
        consent_ledger: ConsentLedger,
        patient_directory: PatientDirectory,
        audit_recorder: AuditRecorder,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize decision engine.

        Args:
            directory: Registered sites and network settings.
            permission_store: User permission profiles.
            consent_ledger: Patient data-sharing consents.
            patient_directory: Source of patient site metadata.
            audit_recorder: Append-only audit trail.
            clock: Callable returning the current UTC datetime.
        """
        self.directory = directory
        self.permission_store = permission_store
        self.consent_ledger = consent_ledger
        self.patient_directory = patient_directory
        self.audit_recorder = audit_recorder
        self.clock = clock or utc_now

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(
        self,
        actor: Optional[UserPermission],
        patient_id: str,
        action: Union[AccessAction, str],
    ) -> Decision:
        """
        Decide whether an actor may perform an action on a patient record.

        Args:
            actor: Resolved permission snapshot of the requesting user.
            patient_id: Target patient.
            action: One of view, edit, export.

        Returns:
            Decision carrying the outcome, reason code and audit id.
        """
        at = self.clock()
        if actor is None:
            logger.warning("Access evaluation without actor", patient_id=mask_id(patient_id))
            return Decision(
                allowed=False,
                reason=ErrorKind.AUTHENTICATION_REQUIRED,
                evaluated_at=at,
            )

        action = self._coerce_action(action, actor.user_id, patient_id, at)

        try:
            patient = self.patient_directory.get_patient_metadata(patient_id)
        except PatientNotFoundError:
            return self._conclude(
                actor, patient_id, action, at,
                allowed=False, reason=ErrorKind.PATIENT_NOT_FOUND, result=AuditResult.ERROR,
            )
        except CollaboratorError as e:
            return self._conclude(
                actor, patient_id, action, at,
                allowed=False, reason=ErrorKind.ACCESS_ERROR, result=AuditResult.ERROR,
                details={"error": e.message},
            )
        except Exception as e:
            logger.exception("Patient metadata lookup failed", patient_id=mask_id(patient_id))
            return self._conclude(
                actor, patient_id, action, at,
                allowed=False, reason=ErrorKind.ACCESS_ERROR, result=AuditResult.ERROR,
                details={"error": f"{type(e).__name__}: {e}"},
            )

        site_context = patient.primary_site
        if not self.directory.has_site(site_context):
            return self._conclude(
                actor, patient_id, action, at,
                allowed=False, reason=ErrorKind.ACCESS_ERROR, result=AuditResult.ERROR,
                site_context=site_context,
                details={"error": f"primary site not registered: {site_context}"},
            )

        if not self.check_site_access(actor, patient, at):
            return self._conclude(
                actor, patient_id, action, at,
                allowed=False, reason=ErrorKind.SITE_ACCESS_DENIED, site_context=site_context,
            )

        if not self.check_patient_restriction(actor, patient, at):
            return self._conclude(
                actor, patient_id, action, at,
                allowed=False, reason=ErrorKind.PATIENT_RESTRICTED, site_context=site_context,
            )

        if actor.home_site == patient.primary_site:
            return self._conclude(
                actor, patient_id, action, at,
                allowed=True, basis=DecisionBasis.SAME_SITE, site_context=site_context,
            )

        consents = self.consent_ledger.snapshot(
            patient_id, at, extra_consents=patient.data_sharing_consents
        )
        consent = consents.authorizing_consent(actor.home_site)
        if consent is not None:
            return self._conclude(
                actor, patient_id, action, at,
                allowed=True, basis=DecisionBasis.CONSENT, site_context=site_context,
                details={"consent_id": consent.consent_id},
            )

        grant = actor.patient_grant(patient_id, action, at)
        if grant is not None:
            return self._conclude(
                actor, patient_id, action, at,
                allowed=True, basis=DecisionBasis.TEMPORARY_GRANT, site_context=site_context,
                grant_id=grant.grant_id,
                details={"grant_reason": grant.reason.value},
            )

        return self._conclude(
            actor, patient_id, action, at,
            allowed=False, reason=ErrorKind.CONSENT_REQUIRED, site_context=site_context,
            requires_justification=True,
        )

    def evaluate_user(
        self,
        user_id: Optional[str],
        patient_id: str,
        action: Union[AccessAction, str],
    ) -> Decision:
        """
        Resolve a user through the permission store, then evaluate.

        An unknown user is denied with `user_not_found` and audited as an
        error. A profile lookup that fails for any other reason is denied
        with `access_error`.
        """
        if not user_id:
            return self.evaluate(None, patient_id, action)
        try:
            actor = self.permission_store.snapshot(user_id)
        except UserNotFoundError:
            at = self.clock()
            return self._conclude(
                None, patient_id, self._coerce_action(action, user_id, patient_id, at), at,
                allowed=False, reason=ErrorKind.USER_NOT_FOUND, result=AuditResult.ERROR,
                actor_id=user_id,
            )
        except CollaboratorError as e:
            at = self.clock()
            return self._conclude(
                None, patient_id, self._coerce_action(action, user_id, patient_id, at), at,
                allowed=False, reason=ErrorKind.ACCESS_ERROR, result=AuditResult.ERROR,
                actor_id=user_id, details={"error": e.message},
            )
        except Exception as e:
            logger.exception("User permission lookup failed", user_id=mask_id(user_id))
            at = self.clock()
            return self._conclude(
                None, patient_id, self._coerce_action(action, user_id, patient_id, at), at,
                allowed=False, reason=ErrorKind.ACCESS_ERROR, result=AuditResult.ERROR,
                actor_id=user_id, details={"error": f"{type(e).__name__}: {e}"},
            )
        return self.evaluate(actor, patient_id, action)

    def filter_accessible_patients(
        self,
        actor: UserPermission,
        patient_ids: List[str],
        action: Union[AccessAction, str] = AccessAction.VIEW,
    ) -> List[str]:
        """Return the subset of patients the actor may access, in input order."""
        return self.accessible_patients(actor, patient_ids, action).patient_ids

    def accessible_patients(
        self,
        actor: UserPermission,
        patient_ids: List[str],
        action: Union[AccessAction, str] = AccessAction.VIEW,
    ) -> AccessiblePatients:
        """
        Evaluate each patient and summarize what allowed the access.

        Every evaluation is audited individually. Patient grants are counted
        as `temporary_grant_patients` and additionally by their reason, so a
        consultation grant also counts towards `consultation_patients` and a
        break-glass grant towards `emergency_access`.

        Args:
            actor: Resolved permission snapshot of the requesting user.
            patient_ids: Candidate patients, in display order.
            action: Action to evaluate for every patient.

        Returns:
            AccessiblePatients with allowed ids in input order.
        """
        allowed: List[str] = []
        summary = PatientAccessSummary()
        grants = {g.grant_id: g for g in actor.temporary_access}

        for patient_id in patient_ids:
            decision = self.evaluate(actor, patient_id, action)
            if not decision.allowed:
                continue
            allowed.append(patient_id)
            if decision.basis == DecisionBasis.SAME_SITE:
                summary.home_site_patients += 1
            elif decision.basis == DecisionBasis.CONSENT:
                summary.consent_patients += 1
            elif decision.basis == DecisionBasis.TEMPORARY_GRANT:
                summary.temporary_grant_patients += 1
                grant = grants.get(decision.grant_id)
                if grant is not None and grant.reason == TemporaryAccessReason.CONSULTATION:
                    summary.consultation_patients += 1
                elif grant is not None and grant.reason == TemporaryAccessReason.EMERGENCY:
                    summary.emergency_access += 1

        logger.info(
            "Accessible patients resolved",
            user_id=mask_id(actor.user_id),
            requested=len(patient_ids),
            allowed=len(allowed),
        )
        return AccessiblePatients(patient_ids=allowed, total_count=len(allowed), summary=summary)

    # -------------------------------------------------------------------------
    # Individual Checks
    # -------------------------------------------------------------------------

    def has_site_access(self, actor: UserPermission, site_id: str, at: Optional[datetime] = None) -> bool:
        return actor.has_site_access(site_id, at or self.clock())

    def accessible_sites(self, actor: UserPermission, at: Optional[datetime] = None) -> List[str]:
        """
        Home site plus every site reachable through a currently valid grant.

        Only sites registered in the network directory are returned.
        """
        at = at or self.clock()
        sites = [actor.home_site]
        for access in actor.authorized_sites:
            if access.is_valid(at, actor.role) and access.site_id not in sites:
                sites.append(access.site_id)
        for grant in actor.temporary_access:
            if (
                grant.type == TemporaryAccessType.SITE
                and grant.is_valid(at)
                and grant.target_id not in sites
            ):
                sites.append(grant.target_id)
        return [site_id for site_id in sites if self.directory.has_site(site_id)]

    def check_site_access(
        self, actor: UserPermission, patient: PatientSiteMetadata, at: datetime
    ) -> bool:
        return actor.has_site_access(patient.primary_site, at)

    def check_patient_restriction(
        self, actor: UserPermission, patient: PatientSiteMetadata, at: datetime
    ) -> bool:
        accessible = set(self.accessible_sites(actor, at))
        if not accessible.intersection(patient.authorized_sites):
            return False
        if patient.data_classification == DataClassification.HIGHLY_RESTRICTED:
            return actor.has_special_permission(RESTRICTION_OVERRIDES, at)
        return True

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _coerce_action(
        self,
        action: Union[AccessAction, str],
        actor_id: str,
        patient_id: str,
        at: datetime,
    ) -> AccessAction:
        """Parse an action, auditing the request as an error if it is unknown."""
        try:
            return AccessAction(action)
        except ValueError:
            pass

        audit_id = None
        try:
            audit_id = self.audit_recorder.record(
                event_type=AuditEventType.ACCESS_DECISION,
                actor_id=actor_id,
                resource_id=patient_id,
                action=str(action),
                result=AuditResult.ERROR,
                reason=ErrorKind.INVALID_REQUEST,
                details={"error": f"unknown action: {action}"},
                at=at,
            )
        except AuditWriteError as e:
            logger.error("Audit write failed for invalid request", error=e.message)
        logger.warning(
            "Unknown action rejected",
            user_id=mask_id(actor_id),
            patient_id=mask_id(patient_id),
            action=str(action),
            audit_id=audit_id,
        )
        raise InvalidRequestError(f"Unknown action: {action}", field="action")

    def _conclude(
        self,
        actor: Optional[UserPermission],
        patient_id: str,
        action: AccessAction,
        at: datetime,
        allowed: bool,
        reason: Optional[ErrorKind] = None,
        result: Optional[AuditResult] = None,
        site_context: Optional[str] = None,
        basis: Optional[DecisionBasis] = None,
        grant_id: Optional[str] = None,
        requires_justification: bool = False,
        actor_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> Decision:
        """Audit an outcome, then turn it into a Decision."""
        actor_id = actor.user_id if actor is not None else actor_id
        if result is None:
            result = AuditResult.ALLOWED if allowed else AuditResult.DENIED

        audit_details = dict(details or {})
        if actor is not None:
            audit_details.setdefault("home_site", actor.home_site)
            audit_details.setdefault("role", actor.role.value)
        if basis is not None:
            audit_details["basis"] = basis.value
        if grant_id is not None:
            audit_details["grant_id"] = grant_id

        try:
            audit_id = self.audit_recorder.record(
                event_type=AuditEventType.ACCESS_DECISION,
                actor_id=actor_id or "unknown",
                resource_id=patient_id,
                action=action.value,
                result=result,
                site_context=site_context,
                reason=reason,
                details=audit_details,
                at=at,
            )
        except AuditWriteError as e:
            logger.error(
                "Access denied: audit write failed",
                user_id=mask_id(actor_id),
                patient_id=mask_id(patient_id),
                action=action.value,
                error=e.message,
            )
            return Decision(
                allowed=False,
                reason=ErrorKind.AUDIT_WRITE_FAILURE,
                site_context=site_context,
                evaluated_at=at,
            )

        log_fields = dict(
            user_id=mask_id(actor_id),
            patient_id=mask_id(patient_id),
            action=action.value,
            site_context=site_context,
            audit_id=audit_id,
        )
        if allowed:
            logger.info("Access allowed", basis=basis.value if basis else None, **log_fields)
        elif result == AuditResult.ERROR:
            logger.error("Access evaluation failed", reason=reason.value if reason else None, **log_fields)
        else:
            logger.warning("Access denied", reason=reason.value if reason else None, **log_fields)

        return Decision(
            allowed=allowed,
            reason=reason,
            site_context=site_context,
            requires_justification=requires_justification,
            basis=basis,
            grant_id=grant_id,
            audit_id=audit_id,
            evaluated_at=at,
        )
