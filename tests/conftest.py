"""Shared fixtures for the access-control tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure project root is on sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.models import (
    AuditLogEntry,
    ClinicalRole,
    Consent,
    DataClassification,
    NetworkSettings,
    NetworkSite,
    PatientSiteMetadata,
    SiteAccess,
    SiteType,
    UserPermission,
)
from access_control.audit_recorder import AuditRecorder, AuditSink, InMemoryAuditSink
from access_control.collaborators import InMemoryApprovalWorkflow, InMemoryPatientDirectory
from access_control.consent_ledger import ConsentLedger
from access_control.decision_engine import AccessDecisionEngine
from access_control.emergency_access import EmergencyAccessGate
from access_control.network_directory import NetworkDirectory
from access_control.permission_store import PermissionStore
from access_control.referrals import ReferralCoordinator
from access_control.temporary_access import TemporaryAccessBroker


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock returning timezone-aware UTC datetimes."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingAuditSink(AuditSink):
    """Sink whose durable store is unreachable."""

    def __init__(self):
        self.attempts = 0

    def persist(self, entry: AuditLogEntry) -> str:
        self.attempts += 1
        raise OSError("audit store unreachable")

    def entries(self):
        return []


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sites():
    return [
        NetworkSite(
            site_id="site-1",
            site_name="University Cancer Center",
            site_type=SiteType.ACADEMIC_MEDICAL_CENTER,
            auto_approve_roles=[ClinicalRole.ATTENDING_PHYSICIAN, ClinicalRole.NURSE_PRACTITIONER],
        ),
        NetworkSite(
            site_id="site-2",
            site_name="Riverside Community Hospital",
            site_type=SiteType.COMMUNITY_HOSPITAL,
            auto_approve_roles=[ClinicalRole.ATTENDING_PHYSICIAN],
        ),
        NetworkSite(
            site_id="site-3",
            site_name="Northern Research Institute",
            site_type=SiteType.RESEARCH_INSTITUTE,
            emergency_access_enabled=False,
        ),
    ]


@pytest.fixture
def directory(sites):
    return NetworkDirectory(sites=sites, settings=NetworkSettings(), network_id="test-network")


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def recorder(sink, clock):
    return AuditRecorder(sink, clock=clock)


@pytest.fixture
def failing_recorder(clock):
    return AuditRecorder(FailingAuditSink(), clock=clock)


@pytest.fixture
def patients():
    return InMemoryPatientDirectory()


@pytest.fixture
def permission_store():
    return PermissionStore()


@pytest.fixture
def consent_ledger():
    return ConsentLedger()


@pytest.fixture
def workflow():
    return InMemoryApprovalWorkflow()


@pytest.fixture
def engine(directory, permission_store, consent_ledger, patients, recorder, clock):
    return AccessDecisionEngine(
        directory, permission_store, consent_ledger, patients, recorder, clock=clock
    )


@pytest.fixture
def broker(directory, permission_store, workflow, recorder, clock):
    return TemporaryAccessBroker(directory, permission_store, workflow, recorder, clock=clock)


@pytest.fixture
def gate(directory, permission_store, patients, engine, recorder, clock):
    return EmergencyAccessGate(
        directory, permission_store, patients, engine, recorder, clock=clock
    )


@pytest.fixture
def referrals(directory, engine, recorder, clock):
    return ReferralCoordinator(directory, engine, recorder, clock=clock)


# =============================================================================
# Actors and Patients
# =============================================================================


@pytest.fixture
def actor_a(permission_store):
    """Attending at site-1 with a standing grant to site-2."""
    actor = UserPermission(
        user_id="user-a",
        role=ClinicalRole.ATTENDING_PHYSICIAN,
        home_site="site-1",
        authorized_sites=[SiteAccess(site_id="site-2", authorized_by="admin-1", authorized_at=NOW)],
    )
    permission_store.put(actor)
    return actor


@pytest.fixture
def patient_p(patients):
    """Standard patient whose primary site is site-2."""
    patient = PatientSiteMetadata(
        patient_id="patient-p",
        origin_site="site-2",
        primary_site="site-2",
        authorized_sites=["site-1", "site-2"],
        data_classification=DataClassification.STANDARD,
    )
    patients.add(patient)
    return patient


@pytest.fixture
def consent_p(consent_ledger, patient_p):
    """Active consent authorizing site-1 for patient P."""
    consent = Consent(
        consent_id="consent-1",
        patient_id=patient_p.patient_id,
        authorized_sites=["site-1"],
        granted_at=NOW - timedelta(days=30),
        expires_at=NOW + timedelta(days=30),
    )
    consent_ledger.record_consent(consent)
    return consent
