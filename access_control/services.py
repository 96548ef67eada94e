"""
Service Wiring
==============
Builds a complete, mutually consistent set of access-control services from
config.yaml (network settings, sites, audit backend).
"""

from datetime import datetime
from typing import Callable, Optional
import structlog

from core.models import NetworkSettings, NetworkSite
from core.exceptions import ConfigurationError
from core.utils import setup_logging, utc_now
from config.config_loader import (
    get_audit_settings,
    get_logging_settings,
    get_network_settings,
    get_site_definitions,
    load_config,
)

from access_control.audit_recorder import AuditRecorder, create_sink
from access_control.collaborators import (
    ApprovalWorkflow,
    InMemoryApprovalWorkflow,
    InMemoryPatientDirectory,
    PatientDirectory,
    UserDirectory,
)
from access_control.consent_ledger import ConsentLedger
from access_control.decision_engine import AccessDecisionEngine
from access_control.emergency_access import EmergencyAccessGate
from access_control.network_directory import NetworkDirectory
from access_control.permission_store import PermissionStore
from access_control.persistence import AccessControlDB
from access_control.referrals import ReferralCoordinator
from access_control.temporary_access import TemporaryAccessBroker

logger = structlog.get_logger(__name__)


def configure_logging() -> structlog.BoundLogger:
    """Apply the `logging` config section (MSA_LOG_LEVEL overrides the level)."""
    settings = get_logging_settings()
    return setup_logging(
        level=settings["level"],
        log_format=settings["format"],
        log_file=settings["file"],
    )


def build_directory() -> NetworkDirectory:
    """
    Build the network directory from config.yaml with MSA_* overrides.

    Raises:
        ConfigurationError: If settings or a site definition are invalid.
    """
    try:
        settings = NetworkSettings(**get_network_settings())
        sites = [NetworkSite(**raw) for raw in get_site_definitions()]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid network configuration: {e}", config_key="network")

    network_id = load_config().get("network", {}).get("network_id", "default-network")
    return NetworkDirectory(sites=sites, settings=settings, network_id=network_id)


class AccessControlServices:
    """Holds one instance of every access-control component."""

    def __init__(
        self,
        directory: NetworkDirectory,
        patient_directory: PatientDirectory,
        user_directory: Optional[UserDirectory] = None,
        approval_workflow: Optional[ApprovalWorkflow] = None,
        audit_recorder: Optional[AuditRecorder] = None,
        db: Optional[AccessControlDB] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock or utc_now
        self.db = db
        self.directory = directory
        self.patient_directory = patient_directory
        self.approval_workflow = approval_workflow or InMemoryApprovalWorkflow()
        self.audit_recorder = audit_recorder or AuditRecorder(clock=self.clock)

        self.permission_store = PermissionStore(user_directory)
        self.consent_ledger = ConsentLedger(db)
        self.engine = AccessDecisionEngine(
            directory,
            self.permission_store,
            self.consent_ledger,
            patient_directory,
            self.audit_recorder,
            clock=self.clock,
        )
        self.broker = TemporaryAccessBroker(
            directory,
            self.permission_store,
            self.approval_workflow,
            self.audit_recorder,
            clock=self.clock,
        )
        self.gate = EmergencyAccessGate(
            directory,
            self.permission_store,
            patient_directory,
            self.engine,
            self.audit_recorder,
            clock=self.clock,
        )
        self.referrals = ReferralCoordinator(
            directory, self.engine, self.audit_recorder, db=db, clock=self.clock
        )


def create_services(
    patient_directory: Optional[PatientDirectory] = None,
    user_directory: Optional[UserDirectory] = None,
    approval_workflow: Optional[ApprovalWorkflow] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AccessControlServices:
    """
    Create services from configuration.

    The audit backend comes from the `audit` config section. The sqlite
    backend also persists consents and referrals in the same database.
    """
    directory = build_directory()
    audit = get_audit_settings()

    db = AccessControlDB(audit["db_path"]) if audit["backend"] == "sqlite" else None
    sink = create_sink(audit["backend"], storage_path=audit["storage_path"], db=db)
    recorder = AuditRecorder(sink, clock=clock, retention_days=audit["retention_days"])

    logger.info(
        "Access control services created",
        network_id=directory.network_id,
        sites=directory.count,
        audit_backend=audit["backend"],
    )
    return AccessControlServices(
        directory,
        patient_directory or InMemoryPatientDirectory(),
        user_directory=user_directory,
        approval_workflow=approval_workflow,
        audit_recorder=recorder,
        db=db,
        clock=clock,
    )
