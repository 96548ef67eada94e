"""
Tests for the Referral Coordinator
==================================
"""

import pytest
from datetime import timedelta

from core.models import (
    AuditEventType,
    AuditResult,
    ClinicalRole,
    ErrorKind,
    ReferralDetails,
    ReferralStatus,
    ReferralUrgency,
    SiteAccess,
    UserPermission,
)
from core.exceptions import (
    AccessDeniedError,
    AuthenticationRequiredError,
    InvalidReferralError,
    InvalidTransitionError,
    ReferralNotFoundError,
)

from conftest import NOW


@pytest.fixture
def receiver():
    """Oncologist at site-2."""
    return UserPermission(user_id="user-r", role=ClinicalRole.ATTENDING_PHYSICIAN, home_site="site-2")


class TestCreateReferral:
    """Tests for referral creation."""

    def test_creates_pending_referral(self, referrals, recorder, actor_a):
        referral = referrals.create_referral(
            actor_a, "site-1", "site-2", "patient-p",
            ReferralDetails(specialty="radiation oncology", urgency=ReferralUrgency.URGENT),
        )

        assert referral.referral_id.startswith("REF-")
        assert referral.status == ReferralStatus.PENDING
        assert referral.created_at == NOW
        assert referral.expires_at == NOW + timedelta(days=30)
        assert referral.requested_by == "user-a"
        assert referral.urgency == ReferralUrgency.URGENT

        entry = recorder.entries()[-1]
        assert entry.event_type == AuditEventType.REFERRAL
        assert entry.action == "referral_create"
        assert entry.details["referral_id"] == referral.referral_id

    def test_unknown_site(self, referrals, actor_a):
        with pytest.raises(InvalidReferralError):
            referrals.create_referral(actor_a, "site-1", "site-9", "patient-p")

    def test_same_site(self, referrals, actor_a):
        with pytest.raises(InvalidReferralError):
            referrals.create_referral(actor_a, "site-2", "site-2", "patient-p")

    def test_requester_without_access_to_origin(self, referrals, recorder, actor_a):
        with pytest.raises(AccessDeniedError) as exc_info:
            referrals.create_referral(actor_a, "site-3", "site-1", "patient-p")

        assert exc_info.value.kind == ErrorKind.SITE_ACCESS_DENIED
        entry = recorder.get_entry(exc_info.value.audit_id)
        assert entry.result == AuditResult.DENIED
        assert referrals.referrals_for_site("site-3") == []

    def test_no_actor(self, referrals):
        with pytest.raises(AuthenticationRequiredError):
            referrals.create_referral(None, "site-1", "site-2", "patient-p")


class TestReferralTransitions:
    """pending -> accepted | declined | expired."""

    def test_accept(self, referrals, clock, actor_a, receiver):
        referral = referrals.create_referral(actor_a, "site-1", "site-2", "patient-p")
        clock.advance(days=2)

        accepted = referrals.accept(referral.referral_id, receiver)

        assert accepted.status == ReferralStatus.ACCEPTED
        assert accepted.responded_by == "user-r"
        assert accepted.responded_at == NOW + timedelta(days=2)
        assert referrals.get_referral(referral.referral_id).status == ReferralStatus.ACCEPTED

    def test_decline(self, referrals, recorder, actor_a, receiver):
        referral = referrals.create_referral(actor_a, "site-1", "site-2", "patient-p")

        declined = referrals.decline(referral.referral_id, receiver)

        assert declined.status == ReferralStatus.DECLINED
        assert recorder.entries()[-1].action == "referral_declined"

    def test_terminal_states_are_final(self, referrals, actor_a, receiver):
        referral = referrals.create_referral(actor_a, "site-1", "site-2", "patient-p")
        referrals.accept(referral.referral_id, receiver)

        with pytest.raises(InvalidTransitionError):
            referrals.decline(referral.referral_id, receiver)

    def test_expiry_is_derived(self, referrals, clock, actor_a, receiver):
        referral = referrals.create_referral(actor_a, "site-1", "site-2", "patient-p")
        clock.advance(days=30)

        assert referrals.status_of(referral.referral_id) == ReferralStatus.EXPIRED
        assert referrals.get_referral(referral.referral_id).status == ReferralStatus.PENDING
        with pytest.raises(InvalidTransitionError):
            referrals.accept(referral.referral_id, receiver)

    def test_responder_needs_receiving_site(self, referrals, actor_a):
        referral = referrals.create_referral(actor_a, "site-1", "site-2", "patient-p")
        outsider = UserPermission(user_id="user-o", role=ClinicalRole.NURSE, home_site="site-3")

        with pytest.raises(AccessDeniedError):
            referrals.accept(referral.referral_id, outsider)

        assert referrals.status_of(referral.referral_id) == ReferralStatus.PENDING

    def test_unknown_referral(self, referrals, receiver):
        with pytest.raises(ReferralNotFoundError):
            referrals.accept("REF-0-MISSING", receiver)


class TestReferralLookup:
    """Tests for listing referrals."""

    def test_referrals_for_site(self, referrals, clock, actor_a, receiver):
        actor = actor_a.model_copy(update={
            "authorized_sites": [SiteAccess(site_id="site-2"), SiteAccess(site_id="site-3")],
        })
        first = referrals.create_referral(actor, "site-1", "site-2", "patient-p")
        referrals.create_referral(actor, "site-3", "site-1", "patient-q")
        referrals.accept(first.referral_id, receiver)

        assert len(referrals.referrals_for_site("site-1")) == 2
        assert len(referrals.referrals_for_site("site-2")) == 1
        pending = referrals.referrals_for_site("site-1", status=ReferralStatus.PENDING)
        assert [r.patient_id for r in pending] == ["patient-q"]
