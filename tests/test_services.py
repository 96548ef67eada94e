"""
Tests for Service Wiring
========================
"""

import pytest

from core.models import (
    ClinicalRole,
    DecisionBasis,
    ErrorKind,
    PatientSiteMetadata,
    SiteAccess,
    UserPermission,
)
from config.config_loader import reload_config
from access_control import services as services_module
from access_control.audit_recorder import InMemoryAuditSink, SqliteAuditSink
from access_control.collaborators import InMemoryPatientDirectory, InMemoryUserDirectory
from access_control.services import build_directory, create_services

from conftest import NOW, FakeClock


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    monkeypatch.delenv("MSA_AUDIT_BACKEND", raising=False)
    monkeypatch.delenv("MSA_EMERGENCY_ACCESS_ENABLED", raising=False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def users():
    return InMemoryUserDirectory([
        UserPermission(
            user_id="user-a",
            role=ClinicalRole.ATTENDING_PHYSICIAN,
            home_site="site-1",
            authorized_sites=[SiteAccess(site_id="site-2")],
        ),
    ])


@pytest.fixture
def patient_directory():
    return InMemoryPatientDirectory([
        PatientSiteMetadata(
            patient_id="patient-p",
            primary_site="site-2",
            authorized_sites=["site-1", "site-2"],
        ),
    ])


class TestBuildDirectory:
    """Directory built from config.yaml."""

    def test_sites_and_settings(self):
        directory = build_directory()

        assert directory.network_id == "oncology-network"
        assert directory.count == 3
        assert directory.emergency_enabled_for("site-3") is False

    def test_env_disables_emergency(self, monkeypatch):
        monkeypatch.setenv("MSA_EMERGENCY_ACCESS_ENABLED", "false")
        assert build_directory().emergency_enabled_for("site-1") is False


class TestCreateServices:
    """End-to-end wiring."""

    def test_memory_backend(self, users, patient_directory):
        services = create_services(patient_directory, users, clock=FakeClock())

        assert isinstance(services.audit_recorder.sink, InMemoryAuditSink)
        assert services.db is None

        denied = services.engine.evaluate_user("user-a", "patient-p", "view")
        assert denied.allowed is False
        assert denied.reason == ErrorKind.CONSENT_REQUIRED

        result = services.gate.break_glass("user-a", "patient-p", "Patient unresponsive in ED")
        assert result.granted is True

        allowed = services.engine.evaluate_user("user-a", "patient-p", "view")
        assert allowed.allowed is True
        assert allowed.basis == DecisionBasis.TEMPORARY_GRANT
        assert services.audit_recorder.verify_chain() is True

    def test_sqlite_backend(self, monkeypatch, tmp_path, users, patient_directory):
        monkeypatch.setattr(services_module, "get_audit_settings", lambda: {
            "backend": "sqlite",
            "storage_path": str(tmp_path),
            "db_path": str(tmp_path / "access.db"),
            "retention_days": 365,
        })
        clock = FakeClock()

        services = create_services(patient_directory, users, clock=clock)
        services.engine.evaluate_user("user-a", "patient-p", "view")

        assert isinstance(services.audit_recorder.sink, SqliteAuditSink)
        assert services.audit_recorder.retention_days == 365

        restarted = create_services(patient_directory, users, clock=clock)
        assert restarted.audit_recorder.count == 1
        assert restarted.audit_recorder.entries()[0].timestamp == NOW
        services.db.close()
        restarted.db.close()


class TestConfigureLogging:
    """Logging section applied through setup_logging."""

    def test_level_from_env(self, monkeypatch):
        monkeypatch.setenv("MSA_LOG_LEVEL", "warning")
        calls = {}

        def fake_setup(level, log_format, log_file):
            calls.update(level=level, log_format=log_format, log_file=log_file)
            return "logger"

        monkeypatch.setattr(services_module, "setup_logging", fake_setup)

        assert services_module.configure_logging() == "logger"
        assert calls == {"level": "warning", "log_format": "json", "log_file": None}
