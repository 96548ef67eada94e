"""
Referral Coordinator
====================
Creates and tracks patient hand-offs between network sites.

Referral status moves ``pending -> accepted | declined | expired``. Expiry
is derived from ``created_at + referral_expiry_days`` and never stored.
Every creation and transition is audited.
"""

import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import structlog

from core.models import (
    AuditEventType,
    AuditResult,
    CrossSiteReferral,
    ErrorKind,
    ReferralDetails,
    ReferralStatus,
    UserPermission,
)
from core.exceptions import (
    AccessDeniedError,
    AuthenticationRequiredError,
    InvalidReferralError,
    InvalidTransitionError,
    ReferralNotFoundError,
)
from core.utils import mask_id, utc_now

from access_control.audit_recorder import AuditRecorder
from access_control.decision_engine import AccessDecisionEngine
from access_control.network_directory import NetworkDirectory

logger = structlog.get_logger(__name__)


def generate_referral_id(at: datetime) -> str:
    """Referral ids look like REF-<epoch ms>-<random>."""
    return f"REF-{int(at.timestamp() * 1000)}-{secrets.token_hex(4).upper()}"


class ReferralCoordinator:
    """Validates, stores and transitions cross-site referrals."""

    def __init__(
        self,
        directory: NetworkDirectory,
        engine: AccessDecisionEngine,
        audit_recorder: AuditRecorder,
        db=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize referral coordinator.

        Args:
            directory: Registered sites and referral expiry setting.
            engine: Used to check the requester's and responder's site access.
            audit_recorder: Append-only audit trail.
            db: Optional AccessControlDB for SQLite persistence.
            clock: Callable returning the current UTC datetime.
        """
        self.directory = directory
        self.engine = engine
        self.audit_recorder = audit_recorder
        self.clock = clock or utc_now
        self._db = db
        self._referrals: Dict[str, CrossSiteReferral] = {}
        self._lock = threading.Lock()

        if self._db is not None:
            for row in self._db.list_referrals():
                referral = CrossSiteReferral(**row)
                self._referrals[referral.referral_id] = referral

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_referral(
        self,
        actor: Optional[UserPermission],
        from_site: str,
        to_site: str,
        patient_id: str,
        details: Optional[ReferralDetails] = None,
    ) -> CrossSiteReferral:
        """
        Create a pending referral.

        Raises:
            AuthenticationRequiredError: If no actor is given.
            InvalidReferralError: If either site is unknown or both are the same.
            AccessDeniedError: If the actor cannot access `from_site`.
        """
        if actor is None:
            raise AuthenticationRequiredError()

        for site_id in (from_site, to_site):
            if not self.directory.has_site(site_id):
                raise InvalidReferralError(from_site, to_site, f"unknown site {site_id}")
        if from_site == to_site:
            raise InvalidReferralError(from_site, to_site, "sites must differ")

        at = self.clock()
        details = details or ReferralDetails()

        if not self.engine.has_site_access(actor, from_site, at):
            audit_id = self.audit_recorder.record(
                event_type=AuditEventType.REFERRAL,
                actor_id=actor.user_id,
                resource_id=patient_id,
                action="referral_create",
                result=AuditResult.DENIED,
                site_context=from_site,
                reason=ErrorKind.SITE_ACCESS_DENIED,
                details={"to_site": to_site},
                at=at,
            )
            logger.warning(
                "Referral denied",
                user_id=mask_id(actor.user_id),
                from_site=from_site,
                to_site=to_site,
            )
            raise AccessDeniedError(
                ErrorKind.SITE_ACCESS_DENIED,
                f"No access to referring site {from_site}",
                audit_id=audit_id,
            )

        referral = CrossSiteReferral(
            referral_id=generate_referral_id(at),
            from_site=from_site,
            to_site=to_site,
            patient_id=patient_id,
            requested_by=actor.user_id,
            specialty=details.specialty,
            urgency=details.urgency,
            reason=details.reason,
            from_provider=details.from_provider or actor.user_id,
            to_provider=details.to_provider,
            status=ReferralStatus.PENDING,
            created_at=at,
            data_shared=details.data_shared,
            follow_up_required=details.follow_up_required,
            expires_at=at + timedelta(days=self.directory.settings.referral_expiry_days),
        )

        self._audit_transition(referral, actor.user_id, "referral_create", at)
        self._store(referral)

        logger.info(
            "Referral created",
            referral_id=referral.referral_id,
            patient_id=mask_id(patient_id),
            from_site=from_site,
            to_site=to_site,
            urgency=referral.urgency.value,
        )
        return referral

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def accept(self, referral_id: str, actor: Optional[UserPermission]) -> CrossSiteReferral:
        """Accept a pending referral on behalf of the receiving site."""
        return self._respond(referral_id, actor, ReferralStatus.ACCEPTED)

    def decline(self, referral_id: str, actor: Optional[UserPermission]) -> CrossSiteReferral:
        """Decline a pending referral on behalf of the receiving site."""
        return self._respond(referral_id, actor, ReferralStatus.DECLINED)

    def _respond(
        self,
        referral_id: str,
        actor: Optional[UserPermission],
        target: ReferralStatus,
    ) -> CrossSiteReferral:
        if actor is None:
            raise AuthenticationRequiredError()

        at = self.clock()
        with self._lock:
            referral = self._referrals.get(referral_id)
            if referral is None:
                raise ReferralNotFoundError(referral_id)

            current = referral.status_at(at)
            if current != ReferralStatus.PENDING:
                raise InvalidTransitionError("referral", referral_id, current.value, target.value)

            if not self.engine.has_site_access(actor, referral.to_site, at):
                raise AccessDeniedError(
                    ErrorKind.SITE_ACCESS_DENIED,
                    f"No access to receiving site {referral.to_site}",
                )

            updated = referral.model_copy(update={
                "status": target,
                "responded_at": at,
                "responded_by": actor.user_id,
            })
            self._audit_transition(updated, actor.user_id, f"referral_{target.value}", at)
            self._referrals[referral_id] = updated
            if self._db is not None:
                self._db.save_referral(updated)

        logger.info(
            "Referral updated",
            referral_id=referral_id,
            status=target.value,
            user_id=mask_id(actor.user_id),
        )
        return updated

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_referral(self, referral_id: str) -> CrossSiteReferral:
        """
        Retrieve a referral.

        Raises:
            ReferralNotFoundError: If the id is unknown.
        """
        referral = self._referrals.get(referral_id)
        if referral is None:
            raise ReferralNotFoundError(referral_id)
        return referral

    def status_of(self, referral_id: str) -> ReferralStatus:
        return self.get_referral(referral_id).status_at(self.clock())

    def referrals_for_site(
        self,
        site_id: str,
        status: Optional[ReferralStatus] = None,
    ) -> List[CrossSiteReferral]:
        """Referrals sent from or to a site, optionally filtered by effective status."""
        at = self.clock()
        return [
            r for r in self._referrals.values()
            if site_id in (r.from_site, r.to_site)
            and (status is None or r.status_at(at) == status)
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _store(self, referral: CrossSiteReferral) -> None:
        with self._lock:
            self._referrals[referral.referral_id] = referral
            if self._db is not None:
                self._db.save_referral(referral)

    def _audit_transition(
        self,
        referral: CrossSiteReferral,
        actor_id: str,
        action: str,
        at: datetime,
    ) -> str:
        return self.audit_recorder.record(
            event_type=AuditEventType.REFERRAL,
            actor_id=actor_id,
            resource_id=referral.patient_id,
            action=action,
            result=AuditResult.RECORDED,
            site_context=referral.from_site,
            details={
                "referral_id": referral.referral_id,
                "to_site": referral.to_site,
                "status": referral.status.value,
                "urgency": referral.urgency.value,
            },
            at=at,
        )
