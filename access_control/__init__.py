"""
Multi-Site Access Control Layer
===============================
Site directory, permission and consent stores, the access decision engine,
temporary and break-glass access, audit trail and cross-site referrals.
"""

from .network_directory import NetworkDirectory
from .permission_store import PermissionStore
from .consent_ledger import ConsentLedger, ConsentSnapshot
from .collaborators import (
    PatientDirectory,
    UserDirectory,
    ApprovalWorkflow,
    InMemoryPatientDirectory,
    InMemoryUserDirectory,
    InMemoryApprovalWorkflow,
    RestPatientDirectory,
    RestUserDirectory,
    RestApprovalWorkflow,
)
from .audit_recorder import (
    AuditRecorder,
    AuditSink,
    InMemoryAuditSink,
    JsonlAuditSink,
    SqliteAuditSink,
    create_sink,
)
from .decision_engine import AccessDecisionEngine
from .temporary_access import TemporaryAccessBroker
from .emergency_access import EmergencyAccessGate
from .referrals import ReferralCoordinator
from .persistence import AccessControlDB
from .services import AccessControlServices, build_directory, configure_logging, create_services

__all__ = [
    # Directory and stores
    "NetworkDirectory",
    "PermissionStore",
    "ConsentLedger",
    "ConsentSnapshot",
    # Collaborators
    "PatientDirectory",
    "UserDirectory",
    "ApprovalWorkflow",
    "InMemoryPatientDirectory",
    "InMemoryUserDirectory",
    "InMemoryApprovalWorkflow",
    "RestPatientDirectory",
    "RestUserDirectory",
    "RestApprovalWorkflow",
    # Audit
    "AuditRecorder",
    "AuditSink",
    "InMemoryAuditSink",
    "JsonlAuditSink",
    "SqliteAuditSink",
    "create_sink",
    # Decisions
    "AccessDecisionEngine",
    "TemporaryAccessBroker",
    "EmergencyAccessGate",
    "ReferralCoordinator",
    # Persistence
    "AccessControlDB",
    # Wiring
    "AccessControlServices",
    "build_directory",
    "configure_logging",
    "create_services",
]
