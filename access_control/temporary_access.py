"""
Temporary Access Broker
=======================
Handles requests for time-boxed elevated access (coverage, consultation,
transfer).

Grant lifecycle::

    requested -> auto_granted                 (pre-authorized coverage/transfer)
    requested -> pending_approval -> active   (external approval callback)
                                  -> rejected
    auto_granted | active -> expired          (derived from granted_at + duration)

Emergency requests are not handled here; they are redirected to the
break-glass gate. Grants are never renewed in place.
"""

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional
import structlog

from core.models import (
    AuditEventType,
    AuditResult,
    ErrorKind,
    TemporaryAccess,
    TemporaryAccessReason,
    TemporaryAccessRequest,
    TemporaryAccessResult,
    TemporaryAccessState,
    TemporaryAccessType,
    UserPermission,
)
from core.exceptions import (
    AuditWriteError,
    AuthenticationRequiredError,
    CollaboratorError,
    InvalidRequestError,
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from core.utils import generate_id, mask_id, utc_now

from access_control.audit_recorder import AuditRecorder
from access_control.collaborators import ApprovalWorkflow
from access_control.network_directory import NetworkDirectory
from access_control.permission_store import PermissionStore

logger = structlog.get_logger(__name__)


AUTO_APPROVE_REASONS = {TemporaryAccessReason.COVERAGE, TemporaryAccessReason.TRANSFER}

# Decided workflow ids remembered for duplicate-callback detection
MAX_DECIDED_WORKFLOWS = 10000

# Explicit transitions; expiry is derived and never stored.
GRANT_TRANSITIONS = {
    TemporaryAccessState.REQUESTED: {
        TemporaryAccessState.AUTO_GRANTED,
        TemporaryAccessState.PENDING_APPROVAL,
    },
    TemporaryAccessState.PENDING_APPROVAL: {
        TemporaryAccessState.ACTIVE,
        TemporaryAccessState.REJECTED,
    },
    TemporaryAccessState.AUTO_GRANTED: set(),
    TemporaryAccessState.ACTIVE: set(),
    TemporaryAccessState.REJECTED: set(),
    TemporaryAccessState.EXPIRED: set(),
}


def transition(grant: TemporaryAccess, target: TemporaryAccessState, **updates) -> TemporaryAccess:
    """
    Move a grant to a new state.

    Raises:
        InvalidTransitionError: If the move is not in GRANT_TRANSITIONS.
    """
    if target not in GRANT_TRANSITIONS[grant.state]:
        raise InvalidTransitionError(
            "temporary access", grant.grant_id, grant.state.value, target.value
        )
    return grant.model_copy(update={"state": target, **updates})


class TemporaryAccessBroker:
    """
    Entry point for temporary access requests and approval callbacks.

    Pending requests are held until the approval workflow calls back with
    `on_approval_decision`.
    """

    def __init__(
        self,
        directory: NetworkDirectory,
        permission_store: PermissionStore,
        approval_workflow: ApprovalWorkflow,
        audit_recorder: AuditRecorder,
        clock: Optional[Callable[[], datetime]] = None,
        max_decided: int = MAX_DECIDED_WORKFLOWS,
    ):
        self.directory = directory
        self.permission_store = permission_store
        self.approval_workflow = approval_workflow
        self.audit_recorder = audit_recorder
        self.clock = clock or utc_now

        self._pending: Dict[str, Dict] = {}
        self._decided: OrderedDict[str, TemporaryAccessState] = OrderedDict()
        self.max_decided = max_decided
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _validate(self, request: TemporaryAccessRequest) -> None:
        if not request.justification or not request.justification.strip():
            raise InvalidRequestError("Justification is required", field="justification")

        settings = self.directory.settings
        if not (
            settings.min_temporary_access_hours
            <= request.duration_hours
            <= settings.max_temporary_access_hours
        ):
            raise InvalidRequestError(
                f"duration_hours must be between {settings.min_temporary_access_hours} "
                f"and {settings.max_temporary_access_hours}",
                field="duration_hours",
            )

    def _is_pre_authorized(self, actor: UserPermission, request: TemporaryAccessRequest) -> bool:
        if request.reason not in AUTO_APPROVE_REASONS:
            return False
        if request.type != TemporaryAccessType.SITE:
            return False
        site = self.directory.get_site(request.target_id)
        return actor.role in site.auto_approve_roles

    def request_temporary_access(
        self,
        actor: Optional[UserPermission],
        request: TemporaryAccessRequest,
    ) -> TemporaryAccessResult:
        """
        Request time-boxed elevated access.

        Args:
            actor: Permission snapshot of the requesting user.
            request: Target, reason, justification and duration.

        Returns:
            TemporaryAccessResult describing the grant, the pending approval
            or the break-glass redirect.

        Raises:
            AuthenticationRequiredError: If no actor is given.
            InvalidRequestError: If justification or duration is invalid.
            SiteNotFoundError: If a site-type request targets an unknown site.
            CollaboratorError: If the approval workflow cannot be reached;
                the failure is audited and nothing is left pending.
            AuditWriteError: If the outcome cannot be audited; nothing is
                granted in that case.
        """
        if actor is None:
            raise AuthenticationRequiredError()

        at = self.clock()
        self._validate(request)

        if request.reason == TemporaryAccessReason.EMERGENCY:
            audit_id = self._audit(
                actor, request, AuditResult.REDIRECTED, at,
                details={"redirect": "break_glass"},
            )
            logger.info(
                "Emergency request redirected to break-glass",
                user_id=mask_id(actor.user_id),
                target_id=mask_id(request.target_id),
            )
            return TemporaryAccessResult(approved=False, redirect="break_glass", audit_id=audit_id)

        grant = TemporaryAccess(
            grant_id=generate_id("ta"),
            type=request.type,
            target_id=request.target_id,
            reason=request.reason,
            access_level=request.requested_access_level,
            granted_by="system",
            granted_at=at,
            duration_hours=request.duration_hours,
            state=TemporaryAccessState.REQUESTED,
            justification=request.justification,
        )

        if self._is_pre_authorized(actor, request):
            grant = transition(grant, TemporaryAccessState.AUTO_GRANTED)
            # Audit first: an unaudited grant must never exist
            audit_id = self._audit(
                actor, request, AuditResult.GRANTED_AUTO, at,
                details={"grant_id": grant.grant_id, "expires_at": grant.expires_at.isoformat()},
            )
            self.permission_store.add_temporary_access(actor.user_id, grant)
            logger.info(
                "Temporary access auto-granted",
                user_id=mask_id(actor.user_id),
                grant_id=grant.grant_id,
                site_id=request.target_id,
                duration_hours=request.duration_hours,
            )
            return TemporaryAccessResult(approved=True, access_granted=grant, audit_id=audit_id)

        grant = transition(grant, TemporaryAccessState.PENDING_APPROVAL)

        # Audit before submitting so no workflow exists without a record
        audit_id = self._audit(
            actor, request, AuditResult.PENDING_APPROVAL, at,
            reason=ErrorKind.APPROVAL_REQUIRED,
            details={"grant_id": grant.grant_id},
        )

        try:
            workflow_id = self.approval_workflow.submit_approval_request({
                "grant_id": grant.grant_id,
                "audit_id": audit_id,
                "user_id": actor.user_id,
                "role": actor.role.value,
                "home_site": actor.home_site,
                "type": request.type.value,
                "target_id": request.target_id,
                "reason": request.reason.value,
                "justification": request.justification,
                "duration_hours": request.duration_hours,
                "requested_access_level": request.requested_access_level.value,
                "requested_at": at.isoformat(),
            })
        except CollaboratorError as e:
            logger.error(
                "Approval workflow unreachable",
                user_id=mask_id(actor.user_id),
                grant_id=grant.grant_id,
                error=e.message,
            )
            self._audit(
                actor, request, AuditResult.ERROR, at,
                reason=ErrorKind.ACCESS_ERROR,
                details={"grant_id": grant.grant_id, "error": e.message},
            )
            raise

        grant = grant.model_copy(update={"workflow_id": workflow_id})
        with self._lock:
            self._pending[workflow_id] = {"user_id": actor.user_id, "grant": grant}

        logger.info(
            "Temporary access pending approval",
            user_id=mask_id(actor.user_id),
            grant_id=grant.grant_id,
            workflow_id=workflow_id,
            reason=request.reason.value,
        )
        return TemporaryAccessResult(
            approved=False,
            requires_approval=True,
            approval_workflow_id=workflow_id,
            audit_id=audit_id,
        )

    # -------------------------------------------------------------------------
    # Approval Callback
    # -------------------------------------------------------------------------

    def on_approval_decision(
        self,
        workflow_id: str,
        approved: bool,
        decided_by: str = "approval-workflow",
    ) -> TemporaryAccess:
        """
        Apply the external approval decision for a pending request.

        On approval the grant becomes active from the decision time and is
        appended to the requester's profile.

        Raises:
            WorkflowNotFoundError: If the workflow id was never issued here,
                or was decided before the `max_decided` most recent ones.
            InvalidTransitionError: If the workflow was already decided.
        """
        at = self.clock()
        with self._lock:
            if workflow_id in self._decided:
                raise InvalidTransitionError(
                    "approval workflow",
                    workflow_id,
                    self._decided[workflow_id].value,
                    (TemporaryAccessState.ACTIVE if approved else TemporaryAccessState.REJECTED).value,
                )
            pending = self._pending.pop(workflow_id, None)
            if pending is None:
                raise WorkflowNotFoundError(workflow_id)

            user_id = pending["user_id"]
            grant = pending["grant"]
            if approved:
                grant = transition(
                    grant, TemporaryAccessState.ACTIVE, granted_at=at, granted_by=decided_by
                )
            else:
                grant = transition(grant, TemporaryAccessState.REJECTED)
            self._decided[workflow_id] = grant.state
            while len(self._decided) > self.max_decided:
                self._decided.popitem(last=False)

        try:
            self.audit_recorder.record(
                event_type=AuditEventType.TEMPORARY_ACCESS,
                actor_id=decided_by,
                resource_type=grant.type.value,
                resource_id=grant.target_id,
                action=f"temporary_access_{grant.reason.value}",
                result=AuditResult.APPROVED if approved else AuditResult.REJECTED,
                justification=grant.justification,
                details={
                    "grant_id": grant.grant_id,
                    "workflow_id": workflow_id,
                    "user_id": user_id,
                },
                at=at,
            )
        except AuditWriteError:
            # Roll back so the callback can be retried
            with self._lock:
                self._decided.pop(workflow_id, None)
                self._pending[workflow_id] = pending
            raise

        if approved:
            self.permission_store.add_temporary_access(user_id, grant)

        logger.info(
            "Approval decision applied",
            workflow_id=workflow_id,
            user_id=mask_id(user_id),
            approved=approved,
        )
        return grant

    def pending_requests(self) -> List[TemporaryAccess]:
        """Grants still awaiting an approval decision."""
        with self._lock:
            return [p["grant"] for p in self._pending.values()]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _audit(
        self,
        actor: UserPermission,
        request: TemporaryAccessRequest,
        result: AuditResult,
        at: datetime,
        reason: Optional[ErrorKind] = None,
        details: Optional[dict] = None,
    ) -> str:
        return self.audit_recorder.record(
            event_type=AuditEventType.TEMPORARY_ACCESS,
            actor_id=actor.user_id,
            resource_type=request.type.value,
            resource_id=request.target_id,
            action=f"temporary_access_{request.reason.value}",
            result=result,
            site_context=request.target_id if request.type == TemporaryAccessType.SITE else None,
            reason=reason,
            justification=request.justification,
            details={
                "duration_hours": request.duration_hours,
                "access_level": request.requested_access_level.value,
                **(details or {}),
            },
            at=at,
        )
