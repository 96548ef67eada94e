"""
Tests for SQLite Persistence
============================
"""

import sqlite3

import pytest
from datetime import timedelta

from core.models import (
    AuditEventType,
    AuditQuery,
    AuditResult,
    Consent,
    ConsentState,
    ReferralStatus,
)
from access_control.audit_recorder import AuditRecorder, SqliteAuditSink
from access_control.consent_ledger import ConsentLedger
from access_control.persistence import AccessControlDB
from access_control.referrals import ReferralCoordinator

from conftest import NOW


@pytest.fixture
def db():
    database = AccessControlDB(":memory:")
    yield database
    database.close()


class TestAuditTable:
    """Audit log storage."""

    def test_recorder_round_trip(self, db, clock):
        recorder = AuditRecorder(SqliteAuditSink(db), clock=clock)
        first = recorder.record(
            event_type=AuditEventType.ACCESS_DECISION,
            actor_id="user-a",
            resource_id="patient-p",
            action="view",
            result=AuditResult.ALLOWED,
            site_context="site-2",
            details={"basis": "consent"},
        )
        clock.advance(microseconds=1500)
        recorder.record(
            event_type=AuditEventType.BREAK_GLASS,
            actor_id="user-a",
            resource_id="patient-p",
            action="break_glass",
            result=AuditResult.GRANTED,
            review_required=True,
        )

        entry = recorder.get_entry(first)
        assert entry.timestamp == NOW
        assert entry.details == {"basis": "consent"}
        assert recorder.count == 2
        assert recorder.verify_chain() is True
        assert len(recorder.pending_reviews()) == 1

    def test_sql_query(self, db, clock):
        recorder = AuditRecorder(SqliteAuditSink(db), clock=clock)
        for hours, action in [(0, "view"), (1, "edit"), (2, "view"), (3, "export")]:
            recorder.record(
                event_type=AuditEventType.ACCESS_DECISION,
                actor_id="user-a",
                resource_id="patient-p",
                action=action,
                result=AuditResult.ALLOWED,
                at=NOW + timedelta(hours=hours),
            )

        page = recorder.query(AuditQuery(patient_id="patient-p", actions=["view", "edit"], page_size=2))
        assert page.total == 3
        assert [e.action for e in page.entries] == ["view", "edit"]

        window = recorder.query(AuditQuery(
            start_date=NOW + timedelta(minutes=30), end_date=NOW + timedelta(hours=2),
        ))
        assert window.total == 2

    def test_resume_chain_from_database(self, db, clock):
        AuditRecorder(SqliteAuditSink(db), clock=clock).record(
            event_type=AuditEventType.ACCESS_DECISION,
            actor_id="user-a",
            resource_id="patient-p",
            action="view",
            result=AuditResult.DENIED,
        )

        resumed = AuditRecorder(SqliteAuditSink(db), clock=clock)
        audit_id = resumed.record(
            event_type=AuditEventType.ACCESS_DECISION,
            actor_id="user-a",
            resource_id="patient-p",
            action="view",
            result=AuditResult.DENIED,
        )

        assert resumed.get_entry(audit_id).sequence == 2
        assert resumed.verify_chain() is True

    def test_duplicate_audit_id_rejected(self, db, recorder):
        recorder.record(
            event_type=AuditEventType.ACCESS_DECISION,
            actor_id="user-a",
            resource_id="patient-p",
            action="view",
            result=AuditResult.ALLOWED,
        )
        entry = recorder.entries()[0]

        db.insert_audit_entry(entry)
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_audit_entry(entry)


class TestConsentTable:
    """Consent write-through and preload."""

    def test_ledger_preloads(self, db):
        ledger = ConsentLedger(db)
        ledger.record_consent(Consent(
            consent_id="consent-1",
            patient_id="patient-p",
            authorized_sites=["site-1"],
            granted_at=NOW,
            expires_at=NOW + timedelta(days=30),
        ))
        ledger.withdraw_consent("patient-p", "consent-1", at=NOW + timedelta(days=1))

        reloaded = ConsentLedger(db)
        consent = reloaded.consents_for("patient-p")[0]

        assert consent.withdrawn_at == NOW + timedelta(days=1)
        assert consent.state_at(NOW) == ConsentState.WITHDRAWN
        assert reloaded.is_authorized("patient-p", "site-1", NOW) is False

    def test_list_by_patient(self, db):
        db.save_consent(Consent(consent_id="c-1", patient_id="patient-p", authorized_sites=["site-1"]))
        db.save_consent(Consent(consent_id="c-2", patient_id="patient-q", authorized_sites=["site-2"]))

        assert [c["consent_id"] for c in db.list_consents("patient-q")] == ["c-2"]
        assert len(db.list_consents()) == 2


class TestReferralTable:
    """Referral persistence."""

    def test_referrals_survive_restart(self, db, directory, engine, recorder, clock, actor_a, permission_store):
        coordinator = ReferralCoordinator(directory, engine, recorder, db=db, clock=clock)
        referral = coordinator.create_referral(actor_a, "site-1", "site-2", "patient-p")
        coordinator.accept(referral.referral_id, actor_a)

        reloaded = ReferralCoordinator(directory, engine, recorder, db=db, clock=clock)
        stored = reloaded.get_referral(referral.referral_id)

        assert stored.status == ReferralStatus.ACCEPTED
        assert stored.responded_by == "user-a"
        assert stored.expires_at == NOW + timedelta(days=30)
