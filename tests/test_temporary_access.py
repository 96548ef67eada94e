"""
Tests for the Temporary Access Broker
=====================================
"""

import pytest
from datetime import timedelta

from core.models import (
    AccessLevel,
    AuditResult,
    ClinicalRole,
    ErrorKind,
    TemporaryAccess,
    TemporaryAccessReason,
    TemporaryAccessRequest,
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
    SiteNotFoundError,
    WorkflowNotFoundError,
)
from access_control.collaborators import ApprovalWorkflow
from access_control.temporary_access import TemporaryAccessBroker, transition

from conftest import NOW


def make_request(**overrides) -> TemporaryAccessRequest:
    fields = dict(
        type=TemporaryAccessType.SITE,
        target_id="site-2",
        reason=TemporaryAccessReason.COVERAGE,
        justification="Covering weekend oncology rounds",
        duration_hours=8,
    )
    fields.update(overrides)
    return TemporaryAccessRequest(**fields)


class UnreachableWorkflow(ApprovalWorkflow):
    def submit_approval_request(self, request):
        raise CollaboratorError("approval-workflow", "connection refused")


@pytest.fixture
def home_only(permission_store):
    actor = UserPermission(
        user_id="user-h", role=ClinicalRole.ATTENDING_PHYSICIAN, home_site="site-1",
    )
    permission_store.put(actor)
    return actor


class TestGrantExpiry:
    """Validity is derived from granted_at + duration_hours."""

    def test_one_hour_grant_boundaries(self):
        grant = TemporaryAccess(
            grant_id="ta-1",
            type=TemporaryAccessType.PATIENT,
            target_id="patient-p",
            reason=TemporaryAccessReason.CONSULTATION,
            granted_at=NOW,
            duration_hours=1,
            state=TemporaryAccessState.ACTIVE,
        )

        assert grant.expires_at == NOW + timedelta(hours=1)
        assert grant.is_valid(NOW + timedelta(minutes=59)) is True
        assert grant.is_valid(NOW + timedelta(minutes=61)) is False
        assert grant.state_at(NOW + timedelta(minutes=61)) == TemporaryAccessState.EXPIRED
        # Stored state is never rewritten
        assert grant.state == TemporaryAccessState.ACTIVE

    def test_pending_grant_never_valid(self):
        grant = TemporaryAccess(
            grant_id="ta-2",
            type=TemporaryAccessType.SITE,
            target_id="site-2",
            reason=TemporaryAccessReason.CONSULTATION,
            granted_at=NOW,
            duration_hours=4,
            state=TemporaryAccessState.PENDING_APPROVAL,
        )
        assert grant.is_valid(NOW) is False


class TestTransitions:
    """Tests for the grant state machine."""

    def test_requested_to_auto_granted(self):
        grant = TemporaryAccess(
            grant_id="ta-3", type=TemporaryAccessType.SITE, target_id="site-2",
            reason=TemporaryAccessReason.COVERAGE, duration_hours=2,
        )
        assert transition(grant, TemporaryAccessState.AUTO_GRANTED).state == TemporaryAccessState.AUTO_GRANTED

    def test_active_cannot_return_to_pending(self):
        grant = TemporaryAccess(
            grant_id="ta-4", type=TemporaryAccessType.SITE, target_id="site-2",
            reason=TemporaryAccessReason.COVERAGE, duration_hours=2,
            state=TemporaryAccessState.ACTIVE,
        )
        with pytest.raises(InvalidTransitionError):
            transition(grant, TemporaryAccessState.PENDING_APPROVAL)

    def test_requested_cannot_skip_to_active(self):
        grant = TemporaryAccess(
            grant_id="ta-5", type=TemporaryAccessType.SITE, target_id="site-2",
            reason=TemporaryAccessReason.COVERAGE, duration_hours=2,
        )
        with pytest.raises(InvalidTransitionError):
            transition(grant, TemporaryAccessState.ACTIVE)


class TestAutoApproval:
    """Coverage and transfer for pre-authorized roles."""

    @pytest.mark.parametrize("reason", [TemporaryAccessReason.COVERAGE, TemporaryAccessReason.TRANSFER])
    def test_auto_granted(self, broker, engine, permission_store, recorder, home_only, reason):
        result = broker.request_temporary_access(home_only, make_request(reason=reason))

        assert result.approved is True
        assert result.requires_approval is False
        assert result.access_granted.state == TemporaryAccessState.AUTO_GRANTED
        assert result.access_granted.granted_at == NOW

        stored = permission_store.snapshot("user-h")
        assert [g.grant_id for g in stored.temporary_access] == [result.access_granted.grant_id]
        assert engine.has_site_access(stored, "site-2") is True

        entry = recorder.get_entry(result.audit_id)
        assert entry.result == AuditResult.GRANTED_AUTO
        assert entry.result.value == "granted-auto"

    def test_auto_grant_expires(self, broker, engine, permission_store, clock, home_only):
        broker.request_temporary_access(home_only, make_request(duration_hours=1))
        stored = permission_store.snapshot("user-h")

        clock.advance(minutes=59)
        assert engine.has_site_access(stored, "site-2") is True
        clock.advance(minutes=2)
        assert engine.has_site_access(stored, "site-2") is False

    def test_role_not_pre_authorized(self, broker, permission_store):
        nurse = UserPermission(user_id="user-n", role=ClinicalRole.NURSE, home_site="site-1")
        permission_store.put(nurse)

        result = broker.request_temporary_access(nurse, make_request())

        assert result.approved is False
        assert result.requires_approval is True
        assert permission_store.snapshot("user-n").temporary_access == []

    def test_patient_target_requires_approval(self, broker, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(type=TemporaryAccessType.PATIENT, target_id="patient-p"),
        )
        assert result.requires_approval is True

    def test_unknown_site(self, broker, home_only):
        with pytest.raises(SiteNotFoundError):
            broker.request_temporary_access(home_only, make_request(target_id="site-9"))

    def test_audit_failure_leaves_no_grant(
        self, directory, permission_store, workflow, failing_recorder, clock, home_only
    ):
        broker = TemporaryAccessBroker(
            directory, permission_store, workflow, failing_recorder, clock=clock
        )

        with pytest.raises(AuditWriteError):
            broker.request_temporary_access(home_only, make_request())

        assert permission_store.snapshot("user-h").temporary_access == []


class TestApprovalWorkflow:
    """Requests routed to human sign-off."""

    def test_consultation_pending(self, broker, workflow, recorder, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(reason=TemporaryAccessReason.CONSULTATION),
        )

        assert result.approved is False
        assert result.requires_approval is True
        assert result.access_granted is None
        submitted = workflow.get_request(result.approval_workflow_id)
        assert submitted["user_id"] == "user-h"
        assert submitted["reason"] == "consultation"
        assert recorder.get_entry(result.audit_id).result == AuditResult.PENDING_APPROVAL
        assert [g.workflow_id for g in broker.pending_requests()] == [result.approval_workflow_id]
        grant_id = broker.pending_requests()[0].grant_id
        assert submitted["grant_id"] == grant_id
        assert submitted["audit_id"] == result.audit_id
        assert recorder.get_entry(result.audit_id).details["grant_id"] == grant_id

    def test_pending_audit_failure_submits_nothing(
        self, directory, permission_store, workflow, failing_recorder, clock, home_only
    ):
        broker = TemporaryAccessBroker(
            directory, permission_store, workflow, failing_recorder, clock=clock
        )

        with pytest.raises(AuditWriteError):
            broker.request_temporary_access(
                home_only, make_request(reason=TemporaryAccessReason.CONSULTATION),
            )

        assert workflow.submitted == {}
        assert broker.pending_requests() == []

    def test_workflow_unreachable_is_audited(
        self, directory, permission_store, recorder, clock, home_only
    ):
        broker = TemporaryAccessBroker(
            directory, permission_store, UnreachableWorkflow(), recorder, clock=clock
        )

        with pytest.raises(CollaboratorError):
            broker.request_temporary_access(
                home_only, make_request(reason=TemporaryAccessReason.CONSULTATION),
            )

        entries = recorder.entries()
        assert [e.result for e in entries] == [AuditResult.PENDING_APPROVAL, AuditResult.ERROR]
        assert entries[-1].reason == ErrorKind.ACCESS_ERROR
        assert "connection refused" in entries[-1].details["error"]
        assert entries[-1].details["grant_id"] == entries[0].details["grant_id"]
        assert broker.pending_requests() == []
        assert permission_store.snapshot("user-h").temporary_access == []

    def test_approval_activates_grant(self, broker, permission_store, recorder, clock, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(reason=TemporaryAccessReason.CONSULTATION, duration_hours=4),
        )
        clock.advance(hours=2)

        grant = broker.on_approval_decision(result.approval_workflow_id, True, decided_by="chief-1")

        assert grant.state == TemporaryAccessState.ACTIVE
        assert grant.granted_at == NOW + timedelta(hours=2)
        assert grant.expires_at == NOW + timedelta(hours=6)
        assert permission_store.snapshot("user-h").temporary_access[0].grant_id == grant.grant_id
        assert broker.pending_requests() == []
        assert recorder.entries()[-1].result == AuditResult.APPROVED

    def test_rejection(self, broker, permission_store, recorder, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(reason=TemporaryAccessReason.CONSULTATION),
        )

        grant = broker.on_approval_decision(result.approval_workflow_id, False)

        assert grant.state == TemporaryAccessState.REJECTED
        assert permission_store.snapshot("user-h").temporary_access == []
        assert recorder.entries()[-1].result == AuditResult.REJECTED

    def test_second_callback_rejected(self, broker, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(reason=TemporaryAccessReason.CONSULTATION),
        )
        broker.on_approval_decision(result.approval_workflow_id, True)

        with pytest.raises(InvalidTransitionError):
            broker.on_approval_decision(result.approval_workflow_id, False)

    def test_unknown_workflow(self, broker):
        with pytest.raises(WorkflowNotFoundError):
            broker.on_approval_decision("wf-unknown", True)

    def test_decided_workflows_bounded(self, directory, permission_store, workflow, recorder, clock, home_only):
        broker = TemporaryAccessBroker(
            directory, permission_store, workflow, recorder, clock=clock, max_decided=2
        )
        workflow_ids = [
            broker.request_temporary_access(
                home_only, make_request(reason=TemporaryAccessReason.CONSULTATION),
            ).approval_workflow_id
            for _ in range(3)
        ]
        for workflow_id in workflow_ids:
            broker.on_approval_decision(workflow_id, False)

        assert len(broker._decided) == 2
        with pytest.raises(WorkflowNotFoundError):
            broker.on_approval_decision(workflow_ids[0], True)
        with pytest.raises(InvalidTransitionError):
            broker.on_approval_decision(workflow_ids[2], True)


class TestRequestValidation:
    """Tests for malformed requests and redirects."""

    def test_emergency_redirected(self, broker, permission_store, recorder, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(reason=TemporaryAccessReason.EMERGENCY),
        )

        assert result.approved is False
        assert result.redirect == "break_glass"
        assert permission_store.snapshot("user-h").temporary_access == []
        assert recorder.get_entry(result.audit_id).result == AuditResult.REDIRECTED

    @pytest.mark.parametrize("justification", ["", "   "])
    def test_blank_justification(self, broker, recorder, home_only, justification):
        with pytest.raises(InvalidRequestError):
            broker.request_temporary_access(home_only, make_request(justification=justification))
        assert recorder.count == 0

    @pytest.mark.parametrize("hours", [0, 721])
    def test_duration_out_of_bounds(self, broker, home_only, hours):
        with pytest.raises(InvalidRequestError):
            broker.request_temporary_access(home_only, make_request(duration_hours=hours))

    @pytest.mark.parametrize("hours", [1, 720])
    def test_duration_bounds_inclusive(self, broker, home_only, hours):
        assert broker.request_temporary_access(home_only, make_request(duration_hours=hours)).approved

    def test_requested_access_level_carried(self, broker, home_only):
        result = broker.request_temporary_access(
            home_only, make_request(requested_access_level=AccessLevel.READ_WRITE),
        )
        assert result.access_granted.access_level == AccessLevel.READ_WRITE

    def test_no_actor(self, broker):
        with pytest.raises(AuthenticationRequiredError):
            broker.request_temporary_access(None, make_request())
